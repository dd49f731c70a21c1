"""Condition/action policy evaluation."""

import logging
from collections.abc import Callable
from typing import Any

from trustgate.config import Settings, get_settings
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

logger = logging.getLogger(__name__)

_CONTEXT_FIELDS = {
    "user_id": "user_id",
    "userId": "user_id",
    "organization_id": "organization_id",
    "organizationId": "organization_id",
    "resource": "resource",
    "action": "action",
}


def get_context_value(field: str, context: PolicyEvaluationContext) -> Any:
    """Resolve a condition field against the context, then its metadata."""
    attribute = _CONTEXT_FIELDS.get(field)
    if attribute is not None:
        return getattr(context, attribute)
    return context.metadata.get(field)


def evaluate_operator(field_value: Any, operator: Operator | str, expected: Any) -> bool:
    """Apply a comparison operator. Unknown operators never match."""
    try:
        operator = Operator(operator)
    except ValueError:
        return False

    if operator == Operator.EQUALS:
        return field_value == expected
    if operator == Operator.NOT_EQUALS:
        return field_value != expected
    if operator == Operator.IN:
        return isinstance(expected, list) and field_value in expected
    if operator == Operator.NOT_IN:
        return isinstance(expected, list) and field_value not in expected
    if operator == Operator.CONTAINS:
        return (
            isinstance(field_value, str)
            and isinstance(expected, str)
            and expected in field_value
        )
    return False


class PolicyEngine:
    """Evaluates registered policies against a request context.

    Evaluation is read-only. Audit and rate limit actions are returned to
    the caller in the result rather than executed here.
    """

    def __init__(self, settings: Settings | None = None):
        """Initialize policy engine.

        Args:
            settings: Application settings.
        """
        self._settings = settings or get_settings()
        self._policies: dict[str, Policy] = {}
        self._initialized = False
        self._condition_handlers: dict[
            ConditionType, Callable[[PolicyCondition, PolicyEvaluationContext], bool]
        ] = {
            ConditionType.USER_IN_LIST: self._compare_field,
            ConditionType.USER_IS_ADMIN: self._user_is_admin,
            ConditionType.ORG_MEMBER: self._compare_field,
            ConditionType.TEAM_MEMBER: self._unsupported,
            ConditionType.MFA_ENABLED: self._unsupported,
            ConditionType.REPO_VISIBILITY: self._compare_field,
        }

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        """Load the default policies. Safe to call more than once."""
        if self._initialized:
            return
        self._initialized = True
        self._load_default_policies()
        logger.info("Policy engine initialized with %d policies", len(self._policies))

    def register_policy(self, policy: Policy) -> None:
        """Add or replace a policy."""
        self._policies[policy.id] = policy

    def remove_policy(self, policy_id: str) -> bool:
        """Remove a policy.

        Returns:
            True if a policy was removed.
        """
        return self._policies.pop(policy_id, None) is not None

    def get_policy(self, policy_id: str) -> Policy | None:
        return self._policies.get(policy_id)

    def get_policies(self) -> list[Policy]:
        return list(self._policies.values())

    def clear_policies(self) -> None:
        self._policies.clear()

    async def evaluate(
        self, context: PolicyEvaluationContext
    ) -> PolicyEvaluationResult:
        """Evaluate every enabled policy.

        Args:
            context: Request facts.

        Returns:
            Aggregate result. Any matched deny makes it disallowed.
        """
        if not self._initialized:
            return PolicyEvaluationResult(allowed=True)

        result = PolicyEvaluationResult(allowed=True)

        for policy in list(self._policies.values()):
            if not policy.enabled:
                continue

            matched = all(
                self.evaluate_condition(condition, context)
                for condition in policy.conditions
            )
            result.policies.append(
                PolicyMatch(
                    policy_id=policy.id,
                    matched=matched,
                    action=self._primary_action(policy),
                )
            )

            if matched:
                for action in policy.actions:
                    self._apply_action(policy, action, context, result)

        return result

    def evaluate_condition(
        self, condition: PolicyCondition, context: PolicyEvaluationContext
    ) -> bool:
        """Evaluate one condition. Unknown condition types never match."""
        try:
            condition_type = ConditionType(condition.type)
        except ValueError:
            logger.debug("Unknown policy condition type: %s", condition.type)
            return False
        return self._condition_handlers[condition_type](condition, context)

    def is_mfa_required(self, organization_id: str | None = None) -> bool:
        """Whether the MFA policy applies to an organization."""
        if not organization_id:
            return False
        policy = self._policies.get("require_mfa")
        return bool(policy and policy.enabled)

    def is_repository_access_restricted(self, organization_id: str | None = None) -> bool:
        """Whether repository access is limited to organization members."""
        if not organization_id:
            return False
        policy = self._policies.get("restrict_repo_access")
        return bool(policy and policy.enabled)

    async def check_user_access(
        self,
        user_id: str,
        organization_id: str | None = None,
        resource: str | None = None,
    ) -> tuple[bool, list[str]]:
        """Quick access check for a user.

        Returns:
            Tuple of (allowed, requirements).
        """
        result = await self.evaluate(
            PolicyEvaluationContext(
                user_id=user_id,
                organization_id=organization_id,
                resource=resource,
                action="access",
            )
        )
        return result.allowed, result.requirements

    def get_stats(self) -> dict[str, Any]:
        """Get policy engine statistics.

        Returns:
            Statistics dictionary.
        """
        policies = list(self._policies.values())
        return {
            "initialized": self._initialized,
            "total_policies": len(policies),
            "enabled_policies": sum(1 for p in policies if p.enabled),
            "policies": [
                {"id": p.id, "name": p.name, "enabled": p.enabled} for p in policies
            ],
        }

    @staticmethod
    def _primary_action(policy: Policy) -> ActionType:
        for action in policy.actions:
            if action.type in (ActionType.DENY, ActionType.ALLOW):
                return action.type
        return ActionType.ALLOW

    @staticmethod
    def _apply_action(
        policy: Policy,
        action: PolicyAction,
        context: PolicyEvaluationContext,
        result: PolicyEvaluationResult,
    ) -> None:
        if action.type == ActionType.DENY:
            result.allowed = False
        elif action.type == ActionType.REQUIRE_APPROVAL:
            result.requirements.append(f"Approval required by policy: {policy.name}")
        elif action.type == ActionType.AUDIT_LOG:
            result.audit_events.append(
                PolicyAuditEntry(
                    action=f"policy_{policy.id}_triggered",
                    details={
                        "policy_name": policy.name,
                        "context": context.model_dump(),
                        **(action.parameters or {}),
                    },
                )
            )
        elif action.type == ActionType.RATE_LIMIT:
            result.audit_events.append(
                PolicyAuditEntry(
                    action="policy_rate_limit_applied",
                    details={
                        "policy_name": policy.name,
                        "parameters": action.parameters,
                    },
                )
            )

    @staticmethod
    def _compare_field(
        condition: PolicyCondition, context: PolicyEvaluationContext
    ) -> bool:
        return evaluate_operator(
            get_context_value(condition.field, context),
            condition.operator,
            condition.value,
        )

    def _user_is_admin(
        self, condition: PolicyCondition, context: PolicyEvaluationContext
    ) -> bool:
        subject = get_context_value(condition.field, context)
        is_admin = subject is not None and subject in self._settings.admin_users
        # value=False selects non-admins
        if condition.value is False:
            return not is_admin
        return is_admin

    @staticmethod
    def _unsupported(
        condition: PolicyCondition, context: PolicyEvaluationContext
    ) -> bool:
        # The resource server exposes neither team membership nor MFA state
        return False

    def _load_default_policies(self) -> None:
        organization = self._settings.github_organization or ""

        if self._settings.require_mfa:
            self.register_policy(
                Policy(
                    id="require_mfa",
                    name="Multi-Factor Authentication Required",
                    description="Requires users to have MFA enabled for organization access",
                    conditions=[
                        PolicyCondition(
                            type=ConditionType.ORG_MEMBER,
                            field="organization_id",
                            operator=Operator.EQUALS,
                            value=organization,
                        )
                    ],
                    actions=[
                        PolicyAction(
                            type=ActionType.AUDIT_LOG,
                            parameters={"event": "mfa_policy_checked"},
                        )
                    ],
                )
            )

        if self._settings.restrict_to_members:
            self.register_policy(
                Policy(
                    id="restrict_repo_access",
                    name="Restrict Repository Access to Members",
                    description="Only organization members can access repositories",
                    conditions=[
                        PolicyCondition(
                            type=ConditionType.ORG_MEMBER,
                            field="organization_id",
                            operator=Operator.EQUALS,
                            value=organization,
                        )
                    ],
                    actions=[
                        PolicyAction(
                            type=ActionType.AUDIT_LOG,
                            parameters={"event": "repo_access_policy_checked"},
                        )
                    ],
                )
            )

        admin_users = self._settings.admin_users
        if admin_users:
            self.register_policy(
                Policy(
                    id="admin_users",
                    name="Administrative Users",
                    description="Grants administrative privileges to specified users",
                    conditions=[
                        PolicyCondition(
                            type=ConditionType.USER_IN_LIST,
                            field="user_id",
                            operator=Operator.IN,
                            value=admin_users,
                        )
                    ],
                    actions=[
                        PolicyAction(type=ActionType.ALLOW),
                        PolicyAction(
                            type=ActionType.AUDIT_LOG,
                            parameters={"event": "admin_access_granted"},
                        ),
                    ],
                )
            )
