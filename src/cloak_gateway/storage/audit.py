"""Audit storage for security events.

Events and analysis summaries are kept in memory and, when ``db_path`` is
set, mirrored to a lightweight SQLite database. Both collections rotate: once
the count reaches ``max_entries * rotation_threshold`` only the newest
``max_entries // 2`` records are kept.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
from collections import Counter
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from cloak_gateway.logging import get_logger
from cloak_gateway.security.models import (
    AuditEvent,
    AuditEventKind,
    DecisionAction,
    PromptSource,
    StoredAnalysisResult,
    ThreatLevel,
)

log = get_logger("cloak_gateway.storage.audit")

_SCHEMA = """
-- Audit events (digests only, never prompt content)
CREATE TABLE IF NOT EXISTS audit_events (
    id TEXT PRIMARY KEY,
    timestamp TEXT NOT NULL,
    kind TEXT NOT NULL,
    payload TEXT NOT NULL
);

-- Per-prompt analysis summaries
CREATE TABLE IF NOT EXISTS analysis_results (
    prompt_id TEXT PRIMARY KEY,
    timestamp TEXT NOT NULL,
    payload TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_audit_kind ON audit_events(kind);
CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_events(timestamp);
"""


class AuditSink(Protocol):
    """Append/query interface the decision engine writes to."""

    async def append(self, event: AuditEvent) -> None: ...

    def query_by_kind(self, kind: AuditEventKind) -> list[AuditEvent]: ...

    def query_by_time_range(self, start: datetime, end: datetime) -> list[AuditEvent]: ...


def _result_from_dict(data: dict[str, Any]) -> StoredAnalysisResult:
    return StoredAnalysisResult(
        prompt_id=data["prompt_id"],
        prompt_digest=data["prompt_digest"],
        source=PromptSource(data["source"]),
        action=DecisionAction(data["action"]),
        threat_level=ThreatLevel(data["threat_level"]),
        confidence=float(data["confidence"]),
        categories=tuple(data.get("categories", ())),
        processing_time_ms=int(data.get("processing_time_ms", 0)),
        timestamp=datetime.fromisoformat(data["timestamp"]),
    )


class AuditStore:
    """In-memory audit log with optional SQLite persistence."""

    def __init__(
        self,
        max_entries: int = 1000,
        rotation_threshold: float = 0.8,
        db_path: str | Path | None = None,
    ) -> None:
        """Initialize the audit store.

        Args:
            max_entries: Upper bound on retained records per collection.
            rotation_threshold: Fraction of ``max_entries`` that triggers rotation.
            db_path: Optional SQLite file; existing records are loaded on start.
        """
        self._max_entries = max_entries
        self._rotation_threshold = rotation_threshold
        self._events: list[AuditEvent] = []
        self._results: list[StoredAnalysisResult] = []
        self._lock = asyncio.Lock()
        self._db_path = Path(db_path) if db_path else None
        if self._db_path is not None:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._init_db()
            self._load()

    # ------------------------------------------------------------------
    # SQLite helpers
    # ------------------------------------------------------------------

    def _init_db(self) -> None:
        with self._get_connection() as conn:
            conn.executescript(_SCHEMA)
            conn.commit()
        log.info("audit_database_initialized", path=str(self._db_path))

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self._db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _load(self) -> None:
        with self._get_connection() as conn:
            event_rows = conn.execute(
                "SELECT payload FROM audit_events ORDER BY rowid DESC LIMIT ?",
                (self._max_entries,),
            ).fetchall()
            result_rows = conn.execute(
                "SELECT payload FROM analysis_results ORDER BY rowid DESC LIMIT ?",
                (self._max_entries,),
            ).fetchall()
        self._events = [AuditEvent.from_dict(json.loads(r["payload"])) for r in reversed(event_rows)]
        self._results = [_result_from_dict(json.loads(r["payload"])) for r in reversed(result_rows)]
        log.info("audit_log_loaded", events=len(self._events), results=len(self._results))

    def _persist_event(self, event: AuditEvent) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO audit_events (id, timestamp, kind, payload) "
                "VALUES (?, ?, ?, ?)",
                (
                    event.id,
                    event.timestamp.isoformat(),
                    event.kind.value,
                    json.dumps(event.to_dict()),
                ),
            )
            conn.commit()

    def _persist_result(self, result: StoredAnalysisResult) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO analysis_results (prompt_id, timestamp, payload) "
                "VALUES (?, ?, ?)",
                (result.prompt_id, result.timestamp.isoformat(), json.dumps(result.to_dict())),
            )
            conn.commit()

    def _prune(self, table: str, keep: int) -> None:
        with self._get_connection() as conn:
            conn.execute(
                f"DELETE FROM {table} WHERE rowid NOT IN "  # nosec B608
                f"(SELECT rowid FROM {table} ORDER BY rowid DESC LIMIT ?)",
                (keep,),
            )
            conn.commit()

    def _wipe(self) -> None:
        with self._get_connection() as conn:
            conn.execute("DELETE FROM audit_events")
            conn.execute("DELETE FROM analysis_results")
            conn.commit()

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def _needs_rotation(self, count: int) -> bool:
        return count >= self._max_entries * self._rotation_threshold

    @property
    def _keep(self) -> int:
        return self._max_entries // 2

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def append(self, event: AuditEvent) -> None:
        """Append an audit event, rotating when the threshold is reached."""
        async with self._lock:
            self._events.append(event)
            if self._db_path is not None:
                await asyncio.to_thread(self._persist_event, event)

            if self._needs_rotation(len(self._events)):
                before = len(self._events)
                self._events = self._events[-self._keep :]
                if self._db_path is not None:
                    await asyncio.to_thread(self._prune, "audit_events", self._keep)
                log.info("audit_log_rotated", before=before, after=len(self._events))

    async def store_result(self, result: StoredAnalysisResult) -> None:
        """Store an analysis summary, with the same rotation as events."""
        async with self._lock:
            self._results.append(result)
            if self._db_path is not None:
                await asyncio.to_thread(self._persist_result, result)

            if self._needs_rotation(len(self._results)):
                self._results = self._results[-self._keep :]
                if self._db_path is not None:
                    await asyncio.to_thread(self._prune, "analysis_results", self._keep)
                log.info("analysis_results_rotated", after=len(self._results))

    @property
    def events(self) -> list[AuditEvent]:
        return list(self._events)

    @property
    def results(self) -> list[StoredAnalysisResult]:
        return list(self._results)

    def query_by_kind(self, kind: AuditEventKind | str) -> list[AuditEvent]:
        kind = AuditEventKind(kind)
        return [e for e in self._events if e.kind == kind]

    def query_by_time_range(self, start: datetime, end: datetime) -> list[AuditEvent]:
        """Events with ``start <= timestamp <= end``."""
        return [e for e in self._events if start <= e.timestamp <= end]

    def recent_results(self, limit: int = 10) -> list[StoredAnalysisResult]:
        """Most recent analysis results, newest first."""
        return list(reversed(self._results[-limit:]))

    def statistics(self) -> dict[str, Any]:
        """Aggregate counts over retained events and results."""
        by_kind = Counter(e.kind.value for e in self._events)
        by_action = Counter(r.action.value for r in self._results)
        by_level = Counter(r.threat_level.value for r in self._results)
        total_results = len(self._results)

        return {
            "total_events": len(self._events),
            "events_by_kind": {k.value: by_kind.get(k.value, 0) for k in AuditEventKind},
            "total_analyses": total_results,
            "analyses_by_action": {a.value: by_action.get(a.value, 0) for a in DecisionAction},
            "analyses_by_threat_level": {
                t.value: by_level.get(t.value, 0) for t in ThreatLevel
            },
            "average_processing_time_ms": (
                sum(r.processing_time_ms for r in self._results) / total_results
                if total_results
                else 0.0
            ),
            "average_confidence": (
                sum(r.confidence for r in self._results) / total_results if total_results else 0.0
            ),
        }

    def export_json(self) -> str:
        """Export retained events and results as a JSON document."""
        return json.dumps(
            {
                "exported_at": datetime.now(UTC).isoformat(),
                "events": [e.to_dict() for e in self._events],
                "results": [r.to_dict() for r in self._results],
                "statistics": self.statistics(),
            },
            indent=2,
        )

    async def clear(self) -> None:
        """Drop every retained record."""
        async with self._lock:
            self._events.clear()
            self._results.clear()
            if self._db_path is not None:
                await asyncio.to_thread(self._wipe)
        log.info("audit_log_cleared")
