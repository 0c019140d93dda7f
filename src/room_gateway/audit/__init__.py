"""Audit journal."""

from room_gateway.audit.models import AuditEvent, AuditFilters
from room_gateway.audit.sink import AuditSink

__all__ = ["AuditEvent", "AuditFilters", "AuditSink"]
