"""Pytest fixtures for Cloak Gateway tests."""

import os
from unittest.mock import AsyncMock, MagicMock

import pytest


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """Set up test environment variables before any imports.

    Keeps a developer's ``CLOAK_*`` variables or ``.env`` from leaking into
    the defaults the tests rely on.
    """
    for key in list(os.environ):
        if key.startswith("CLOAK_"):
            del os.environ[key]
    os.environ["CLOAK_ENVIRONMENT"] = "test"

    from cloak_gateway.config import get_settings

    get_settings.cache_clear()

    yield

    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def clear_settings_cache():
    """Clear settings cache before each test."""
    from cloak_gateway.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def test_settings():
    """Settings built without reading any .env file."""
    from cloak_gateway.config import Settings

    return Settings(_env_file=None, environment="test", log_level="DEBUG")


@pytest.fixture
def mock_classifier():
    """A RemoteClassifier stand-in: healthy probe, no remote threats."""
    from cloak_gateway.security.models import SecurityAnalysis, ThreatLevel

    classifier = MagicMock()
    classifier.classify = AsyncMock(
        return_value=SecurityAnalysis(
            threat_level=ThreatLevel.SAFE,
            confidence=0.9,
            reasoning="Looks like a normal request",
            processing_time_ms=5,
        )
    )
    classifier.probe = AsyncMock(return_value=True)
    classifier.close = AsyncMock()
    return classifier


@pytest.fixture
def audit_store():
    """In-memory audit store."""
    from cloak_gateway.storage.audit import AuditStore

    return AuditStore(max_entries=1000)
