"""Dry-run sandbox for healing actions.

Walks an action's steps, records what each would do and applies step
validation. Nothing here touches the file system or the network.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock

from loguru import logger

from healguard.core.safety import SafetyValidator
from healguard.models import DetectedIssue, HealingAction, HealingStep

# Verbs used when describing a step's intended side effect
SIDE_EFFECT_TEMPLATES: dict[str, str] = {
    "retry": "Would retry the failed operation against {target}",
    "retry_request": "Would retry the failed request against {target}",
    "open_circuit": "Would open the circuit breaker for {target}",
    "close_circuit": "Would close the circuit breaker for {target}",
    "serve_from_cache": "Would serve cached responses for {target}",
    "invalidate_cache": "Would invalidate cached entries for {target}",
    "clear_cache": "Would clear the cache for {target}",
    "restore_state": "Would restore the last known-good state of {target}",
    "rollback": "Would roll back {target}",
    "rollback_dependency": "Would pin {target} back to its golden version",
    "release_resources": "Would release held resources for {target}",
    "cleanup": "Would clean up stale resources on {target}",
    "restart": "Would restart {target}",
    "reset_session": "Would reset the session on {target}",
    "degrade": "Would switch {target} to degraded mode",
    "notify": "Would send a notification about {target}",
}


@dataclass
class SandboxReport:
    """Outcome of a dry run."""

    success: bool
    errors: list[str] = field(default_factory=list)
    side_effects: list[str] = field(default_factory=list)
    duration_ms: float = 0.0
    timed_out: bool = False

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "errors": self.errors,
            "side_effects": self.side_effects,
            "duration_ms": self.duration_ms,
            "timed_out": self.timed_out,
        }


@dataclass
class PendingFix:
    """An action deferred to human review."""

    action: HealingAction
    issue: DetectedIssue
    reason: str | None = None
    stored_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "action_id": self.action.id,
            "issue_id": self.issue.id,
            "strategy": self.action.strategy,
            "description": self.action.description,
            "severity": self.issue.severity.value,
            "category": self.issue.category,
            "reason": self.reason,
            "stored_at": self.stored_at.isoformat(),
        }


def describe_side_effect(step: HealingStep) -> str:
    """Human-readable description of what a step would do."""
    target = step.target or "(no target)"
    template = SIDE_EFFECT_TEMPLATES.get(step.action.strip().lower())
    if template:
        text = template.format(target=target)
    else:
        text = f"Would perform '{step.action}' on {target}"
    if step.parameters:
        params = ", ".join(f"{k}={v}" for k, v in sorted(step.parameters.items()))
        text += f" ({params})"
    return text


class SandboxEnvironment:
    """Simulates healing actions and holds fixes awaiting review."""

    def __init__(self, validator: SafetyValidator, timeout_seconds: float = 30.0):
        self.validator = validator
        self.timeout_seconds = timeout_seconds
        self._pending: dict[str, PendingFix] = {}
        self._lock = Lock()

    async def _simulate(self, action: HealingAction, report: SandboxReport) -> None:
        for index, step in enumerate(action.steps, start=1):
            report.side_effects.append(describe_side_effect(step))
            result = self.validator.validate_step(step)
            if not result.valid:
                report.errors.append(f"Step {index}: {result.reason}")
            # Yield between steps so long plans stay cancellable
            await asyncio.sleep(0)

    async def test_fix(self, action: HealingAction, issue: DetectedIssue) -> SandboxReport:
        """Dry-run an action, bounded by the sandbox time ceiling."""
        report = SandboxReport(success=False)
        started = time.monotonic()

        try:
            await asyncio.wait_for(self._simulate(action, report), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            report.timed_out = True
            report.errors.append(f"Sandbox simulation exceeded {self.timeout_seconds:.0f}s")

        report.duration_ms = (time.monotonic() - started) * 1000
        report.success = not report.errors

        if report.success:
            logger.debug(
                f"Sandbox passed for {action.strategy} ({action.id}) on issue {issue.id}: "
                f"{len(report.side_effects)} side effects"
            )
        else:
            logger.warning(f"Sandbox rejected {action.strategy} ({action.id}): {'; '.join(report.errors)}")

        return report

    def store_pending_fix(
        self,
        action_id: str,
        action: HealingAction,
        issue: DetectedIssue,
        reason: str | None = None,
    ) -> PendingFix:
        """Hold an action for human review."""
        fix = PendingFix(action=action, issue=issue, reason=reason)
        with self._lock:
            self._pending[action_id] = fix
        logger.info(f"Stored pending fix {action_id} ({action.strategy}) for review")
        return fix

    def get_pending_fixes(self) -> dict[str, PendingFix]:
        with self._lock:
            return dict(self._pending)

    def get_pending_fix(self, action_id: str) -> PendingFix | None:
        with self._lock:
            return self._pending.get(action_id)

    def release_pending_fix(self, action_id: str) -> PendingFix | None:
        """Remove a fix from the pending store once a reviewer has handled it."""
        with self._lock:
            fix = self._pending.pop(action_id, None)
        if fix:
            logger.debug(f"Released pending fix {action_id}")
        return fix
