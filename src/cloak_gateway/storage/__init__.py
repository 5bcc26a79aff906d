"""Audit storage."""

from cloak_gateway.storage.audit import AuditSink, AuditStore

__all__ = ["AuditSink", "AuditStore"]
