"""Pydantic models for access policies."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ConditionType(str, Enum):
    """Kinds of policy condition."""

    USER_IN_LIST = "user_in_list"
    USER_IS_ADMIN = "user_is_admin"
    ORG_MEMBER = "org_member"
    TEAM_MEMBER = "team_member"
    MFA_ENABLED = "mfa_enabled"
    REPO_VISIBILITY = "repo_visibility"


class Operator(str, Enum):
    """Comparison applied between a context field and a condition value."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    IN = "in"
    NOT_IN = "not_in"
    CONTAINS = "contains"


class ActionType(str, Enum):
    """Actions a matched policy can carry."""

    ALLOW = "allow"
    DENY = "deny"
    REQUIRE_APPROVAL = "require_approval"
    AUDIT_LOG = "audit_log"
    RATE_LIMIT = "rate_limit"


class PolicyCondition(BaseModel):
    """A single condition. All conditions of a policy must hold.

    Unrecognised types and operators are kept as plain strings and never
    match.
    """

    model_config = ConfigDict(frozen=True)

    type: ConditionType | str = Field(..., description="Condition kind")
    field: str = Field(..., description="Context field the condition reads")
    operator: Operator | str = Field(..., description="Comparison operator")
    value: str | list[str] | bool = Field(..., description="Expected value")


class PolicyAction(BaseModel):
    """An action applied when a policy matches."""

    model_config = ConfigDict(frozen=True)

    type: ActionType = Field(..., description="Action kind")
    parameters: dict[str, Any] | None = Field(default=None, description="Action parameters")


class Policy(BaseModel):
    """A declarative access policy."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Policy identifier")
    name: str = Field(..., description="Human-readable name")
    description: str = Field(default="", description="What the policy enforces")
    enabled: bool = Field(default=True, description="Whether the policy is evaluated")
    conditions: tuple[PolicyCondition, ...] = Field(default=(), description="ANDed conditions")
    actions: tuple[PolicyAction, ...] = Field(default=(), description="Actions on match")


class PolicyEvaluationContext(BaseModel):
    """Facts about the request being evaluated."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str | None = Field(default=None, alias="userId")
    organization_id: str | None = Field(default=None, alias="organizationId")
    resource: str | None = None
    action: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class PolicyMatch(BaseModel):
    """Per-policy outcome of an evaluation."""

    policy_id: str
    matched: bool
    action: ActionType


class PolicyAuditEntry(BaseModel):
    """Audit event requested by a matched policy, emitted by the caller."""

    action: str
    details: dict[str, Any] = Field(default_factory=dict)


class PolicyEvaluationResult(BaseModel):
    """Aggregate outcome of evaluating every enabled policy."""

    allowed: bool = True
    policies: list[PolicyMatch] = Field(default_factory=list)
    requirements: list[str] = Field(default_factory=list)
    audit_events: list[PolicyAuditEntry] = Field(default_factory=list)
