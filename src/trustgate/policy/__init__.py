"""Access policy module."""

from trustgate.policy.engine import PolicyEngine, evaluate_operator, get_context_value
from trustgate.policy.models import (
    ActionType,
    ConditionType,
    Operator,
    Policy,
    PolicyAction,
    PolicyAuditEntry,
    PolicyCondition,
    PolicyEvaluationContext,
    PolicyEvaluationResult,
    PolicyMatch,
)

__all__ = [
    # Engine
    "PolicyEngine",
    "evaluate_operator",
    "get_context_value",
    # Models
    "ActionType",
    "ConditionType",
    "Operator",
    "Policy",
    "PolicyAction",
    "PolicyAuditEntry",
    "PolicyCondition",
    "PolicyEvaluationContext",
    "PolicyEvaluationResult",
    "PolicyMatch",
]
