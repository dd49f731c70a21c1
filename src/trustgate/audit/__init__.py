"""Audit trail module.

Buffered, append-only audit events persisted as one JSONL file per UTC day.
"""

from trustgate.audit.logger import (
    AuditLogger,
    generate_event_id,
    log_api_event,
    log_auth_event,
    log_org_event,
    log_tool_event,
)
from trustgate.audit.models import AuditEvent, AuditOutcome, AuditSource

__all__ = [
    # Logger
    "AuditLogger",
    "generate_event_id",
    "log_api_event",
    "log_auth_event",
    "log_org_event",
    "log_tool_event",
    # Models
    "AuditEvent",
    "AuditOutcome",
    "AuditSource",
]
