"""Safety policy for autonomous remediation.

Decides whether a candidate healing action may run without a human, and
validates individual steps against a deny-list of dangerous primitives.
The validator is stateless: throttling is the caller's job (see
:mod:`healguard.core.rate_limiter`).
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from loguru import logger

from healguard.errors import StepRejected, ValidationBlocked
from healguard.models import DetectedIssue, HealingAction, HealingStep, Severity


@dataclass(frozen=True)
class StrategyPolicy:
    """Governance policy for one healing strategy."""

    autonomous: bool
    requires_approval: bool = False
    code_level: bool = False
    always_review: bool = False


STRATEGY_POLICIES: dict[str, StrategyPolicy] = {
    # Require a human before anything happens
    "auto_patch": StrategyPolicy(autonomous=False, requires_approval=True, code_level=True, always_review=True),
    "configuration_reset": StrategyPolicy(autonomous=False, requires_approval=True),
    "data_reconciliation": StrategyPolicy(autonomous=False, requires_approval=True, always_review=True),
    "security_lockdown": StrategyPolicy(autonomous=False, requires_approval=True, always_review=True),
    "emergency_shutdown": StrategyPolicy(autonomous=False, requires_approval=True, always_review=True),
    # Safe to run unattended
    "retry_with_backoff": StrategyPolicy(autonomous=True),
    "circuit_breaker": StrategyPolicy(autonomous=True),
    "fallback_to_cache": StrategyPolicy(autonomous=True),
    "graceful_degradation": StrategyPolicy(autonomous=True),
    "state_rollback": StrategyPolicy(autonomous=True),
    "resource_cleanup": StrategyPolicy(autonomous=True),
    "cache_invalidation": StrategyPolicy(autonomous=True),
    "session_recovery": StrategyPolicy(autonomous=True),
    "dependency_rollback": StrategyPolicy(autonomous=True),
}

# Unknown strategies are treated as not autonomous
UNKNOWN_STRATEGY = StrategyPolicy(autonomous=False)


def get_policy(strategy: str, policies: dict[str, StrategyPolicy] | None = None) -> StrategyPolicy:
    """Look up the policy for a strategy."""
    return (policies or STRATEGY_POLICIES).get(strategy, UNKNOWN_STRATEGY)


def approval_required_strategies(policies: dict[str, StrategyPolicy] | None = None) -> set[str]:
    return {name for name, p in (policies or STRATEGY_POLICIES).items() if p.requires_approval}


def autonomous_strategies(policies: dict[str, StrategyPolicy] | None = None) -> set[str]:
    return {name for name, p in (policies or STRATEGY_POLICIES).items() if p.autonomous}


# Protected resource patterns, evaluated in this order. A boundary is the
# start of the locator, a path separator or a scheme colon.
PROTECTED_RESOURCE_PATTERNS: dict[str, list[str]] = {
    "core_libraries": [
        r"(^|[/:])package(-lock)?\.json$",
        r"(^|[/:])(yarn\.lock|pnpm-lock\.yaml|poetry\.lock|uv\.lock|Pipfile(\.lock)?)$",
        r"(^|[/:])pyproject\.toml$",
        r"(^|[/:])requirements[^/]*\.txt$",
        r"(^|[/:])setup\.(py|cfg)$",
        r"(^|[/:])tsconfig[^/]*\.json$",
        r"(^|[/:])(vite|webpack|rollup|babel|eslint)\.config\.[^/]+$",
        r"(^|[/:])node_modules(/|$)",
        r"(^|[/:])(Dockerfile|docker-compose\.ya?ml|Makefile)$",
    ],
    "shared_libraries": [
        r"(^|[/:])src/(lib|shared|utils|types|common)(/|$)",
        r"(^|[/:])(lib|shared)/",
    ],
    "infrastructure": [
        r"(^|[/:])\.env(\.[^/]*)?$",
        r"(^|[/:])\.github/workflows(/|$)",
        r"(^|[/:])(supabase/)?migrations(/|$)",
        r"(^|[/:])(terraform|infra|infrastructure|k8s|kubernetes|helm)(/|$)",
        r"\.(pem|key|crt|p12|pfx)$",
        r"(^|[/:])(secrets?|credentials)([./]|$)",
        r"(^|[/:])\.ssh(/|$)",
        r"(^|[/:])/?etc(/|$)",
    ],
    "security_critical": [
        r"(^|[/:])(auth|authentication|authorization|auth[_-][^/]*)(\.[^/]*)?(/|$)",
        r"(^|[/:])(security|encryption|crypto|rbac|permissions?)(/|$)",
        r"(^|[/:])healguard(/|$)",
    ],
}

# Step actions rejected regardless of target, by category
DENIED_STEP_ACTIONS: dict[str, frozenset[str]] = {
    "file_write": frozenset({
        "write_file", "create_file", "modify_file", "edit_file", "delete_file",
        "patch_file", "append_file", "overwrite_file", "rename_file", "move_file",
        "apply_patch", "fs_write", "chmod",
    }),
    "deploy_publish": frozenset({
        "deploy", "redeploy", "publish", "release", "promote", "rollout",
        "push", "git_push", "npm_publish", "push_image",
    }),
    "code_generation": frozenset({
        "generate_code", "codegen", "ai_generate", "llm_generate", "ai_fix",
        "rewrite_code", "generate_patch", "auto_fix_code",
    }),
    "schema_mutation": frozenset({
        "alter_table", "create_table", "drop_table", "truncate_table",
        "add_column", "drop_column", "alter_schema", "schema_change",
        "migrate_schema", "run_migration",
    }),
}


def normalize_action(action: str) -> str:
    """Normalize a step action name for deny-list lookups."""
    return re.sub(r"[\s\-]+", "_", action.strip().lower())


@dataclass(frozen=True)
class SafetyDecision:
    """Result of an autonomy check."""

    allowed: bool
    reason: str
    requires_approval: bool = False
    category: str | None = None
    pattern: str | None = None

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "requires_approval": self.requires_approval,
            "category": self.category,
            "pattern": self.pattern,
        }


@dataclass(frozen=True)
class ProtectedMatch:
    """Result of a protected resource lookup."""

    protected: bool
    category: str | None = None
    pattern: str | None = None


@dataclass(frozen=True)
class StepValidation:
    """Result of validating one step."""

    valid: bool
    reason: str | None = None
    category: str | None = None


class SafetyValidator:
    """Pure policy engine over healing actions."""

    def __init__(
        self,
        policies: dict[str, StrategyPolicy] | None = None,
        protected_patterns: dict[str, list[str]] | None = None,
        denied_actions: dict[str, frozenset[str]] | None = None,
    ):
        self.policies = policies or STRATEGY_POLICIES
        self.denied_actions = denied_actions or DENIED_STEP_ACTIONS
        self._patterns: list[tuple[str, str, re.Pattern[str]]] = [
            (category, pattern, re.compile(pattern, re.IGNORECASE))
            for category, patterns in (protected_patterns or PROTECTED_RESOURCE_PATTERNS).items()
            for pattern in patterns
        ]

    def policy_for(self, strategy: str) -> StrategyPolicy:
        return get_policy(strategy, self.policies)

    def can_execute_autonomously(self, action: HealingAction, issue: DetectedIssue) -> SafetyDecision:
        """Decide whether an action may run without human approval.

        Checks run in order and the first match wins: approval-required
        strategy, non-autonomous strategy, protected step target, then the
        critical data-integrity override.
        """
        policy = self.policy_for(action.strategy)

        if policy.requires_approval:
            return SafetyDecision(
                allowed=False,
                reason=f"Strategy '{action.strategy}' requires human approval",
                requires_approval=True,
            )

        if not policy.autonomous:
            return SafetyDecision(
                allowed=False,
                reason=f"Strategy '{action.strategy}' is not approved for autonomous execution",
                requires_approval=True,
            )

        for step in action.steps:
            match = self.is_protected_resource(step.target)
            if match.protected:
                return SafetyDecision(
                    allowed=False,
                    reason=(
                        f"Step target '{step.target}' is a protected resource "
                        f"({match.category}: {match.pattern})"
                    ),
                    requires_approval=True,
                    category=match.category,
                    pattern=match.pattern,
                )

        if issue.severity == Severity.CRITICAL and issue.signature.estimated_impact.data_integrity:
            return SafetyDecision(
                allowed=False,
                reason="Critical issue with data integrity impact requires human review",
                requires_approval=True,
            )

        return SafetyDecision(allowed=True, reason=f"Strategy '{action.strategy}' is safe for autonomous execution")

    def ensure_autonomous(self, action: HealingAction, issue: DetectedIssue) -> SafetyDecision:
        """Like can_execute_autonomously, but raise ValidationBlocked when denied."""
        decision = self.can_execute_autonomously(action, issue)
        if not decision.allowed:
            raise ValidationBlocked(decision.reason, decision.requires_approval)
        return decision

    def is_protected_resource(self, target: str) -> ProtectedMatch:
        """Return the first protected category matching a resource locator."""
        if not target:
            return ProtectedMatch(protected=False)

        normalized = target.strip().replace("\\", "/")
        for category, pattern, compiled in self._patterns:
            if compiled.search(normalized):
                logger.debug(f"Target '{target}' matched {category} pattern {pattern}")
                return ProtectedMatch(protected=True, category=category, pattern=pattern)

        return ProtectedMatch(protected=False)

    def validate_step(self, step: HealingStep) -> StepValidation:
        """Reject steps whose action is a deny-listed primitive."""
        action = normalize_action(step.action)
        for category, names in self.denied_actions.items():
            if action in names:
                return StepValidation(
                    valid=False,
                    reason=f"Action '{step.action}' is forbidden ({category})",
                    category=category,
                )
        return StepValidation(valid=True)

    def ensure_step(self, step: HealingStep) -> None:
        """Raise StepRejected if a step is deny-listed."""
        result = self.validate_step(step)
        if not result.valid:
            raise StepRejected(step, result.reason or "forbidden action")
