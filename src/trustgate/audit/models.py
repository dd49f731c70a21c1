"""Pydantic models for audit events."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class AuditOutcome(str, Enum):
    """Outcome of an audited action."""

    SUCCESS = "success"
    FAILURE = "failure"


class AuditSource(str, Enum):
    """Component that produced an audit event."""

    TOKEN_MANAGER = "token_manager"
    API_CLIENT = "api_client"
    TOOL_EXECUTION = "tool_execution"
    AUTH = "auth"
    SYSTEM = "system"
    POLICY = "policy"
    GATEWAY = "gateway"


class AuditEvent(BaseModel):
    """A single audit trail entry. Immutable once constructed."""

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    event_id: str = Field(..., description="Unique event identifier")
    timestamp: datetime = Field(..., description="UTC time the event was logged")
    subject_id: str | None = Field(default=None, description="Acting user or client")
    organization_id: str | None = Field(default=None, description="Organization context")
    action: str = Field(..., description="Audited action name")
    outcome: AuditOutcome = Field(..., description="success or failure")
    resource: str | None = Field(default=None, description="Resource acted upon")
    details: dict[str, Any] | None = Field(default=None, description="Structured details")
    source: AuditSource = Field(..., description="Emitting component")
    ip_address: str | None = Field(default=None, description="Caller IP address")
    user_agent: str | None = Field(default=None, description="Caller User-Agent")

    def to_json_line(self) -> str:
        """Serialize as one JSONL record with an ISO-8601 timestamp."""
        return self.model_dump_json()
