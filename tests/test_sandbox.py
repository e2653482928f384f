"""Tests for the dry-run sandbox."""

import asyncio

import pytest

from healguard.core.safety import SafetyValidator
from healguard.core.sandbox import SandboxEnvironment, describe_side_effect
from healguard.models import DetectedIssue, HealingAction, HealingStep, IssueSignature


def make_issue():
    return DetectedIssue(signature=IssueSignature(category="api_error"))


@pytest.fixture
def sandbox():
    return SandboxEnvironment(SafetyValidator(), timeout_seconds=5)


class TestDescribeSideEffect:
    """Tests for side effect descriptions."""

    def test_known_action(self):
        step = HealingStep(action="open_circuit", target="api:/billing")
        assert describe_side_effect(step) == "Would open the circuit breaker for api:/billing"

    def test_unknown_action_with_params(self):
        step = HealingStep(action="warm_up", target="cache:users", parameters={"ttl": 30})
        assert describe_side_effect(step) == "Would perform 'warm_up' on cache:users (ttl=30)"

    def test_missing_target(self):
        assert "(no target)" in describe_side_effect(HealingStep(action="restart"))


class TestSandboxEnvironment:
    """Tests for SandboxEnvironment.test_fix."""

    @pytest.mark.asyncio
    async def test_safe_action_passes(self, sandbox):
        action = HealingAction(
            strategy="retry_with_backoff",
            steps=[HealingStep(action="retry", target="api:/a"), HealingStep(action="notify", target="ops")],
        )
        report = await sandbox.test_fix(action, make_issue())

        assert report.success is True
        assert report.errors == []
        assert len(report.side_effects) == 2
        assert report.timed_out is False

    @pytest.mark.asyncio
    async def test_denied_steps_reported_with_index(self, sandbox):
        action = HealingAction(
            strategy="retry_with_backoff",
            steps=[
                HealingStep(action="retry", target="api:/a"),
                HealingStep(action="write_file", target="src/app.py"),
                HealingStep(action="deploy", target="prod"),
            ],
        )
        report = await sandbox.test_fix(action, make_issue())

        assert report.success is False
        assert len(report.errors) == 2
        assert report.errors[0].startswith("Step 2:")
        assert report.errors[1].startswith("Step 3:")
        # Every step is still described
        assert len(report.side_effects) == 3

    @pytest.mark.asyncio
    async def test_timeout_fails_closed(self):
        """A simulation exceeding the ceiling is a failure."""
        sandbox = SandboxEnvironment(SafetyValidator(), timeout_seconds=0.01)

        async def slow(action, report):
            await asyncio.sleep(1)

        sandbox._simulate = slow
        report = await sandbox.test_fix(HealingAction(strategy="retry_with_backoff"), make_issue())

        assert report.success is False
        assert report.timed_out is True
        assert "exceeded" in report.errors[0]


class TestPendingFixes:
    """Tests for the pending fix store."""

    def test_store_and_release(self, sandbox):
        action = HealingAction(strategy="auto_patch")
        issue = make_issue()
        sandbox.store_pending_fix(action.id, action, issue, reason="needs review")

        fix = sandbox.get_pending_fix(action.id)
        assert fix is not None
        assert fix.to_dict()["reason"] == "needs review"
        assert action.id in sandbox.get_pending_fixes()

        assert sandbox.release_pending_fix(action.id) is fix
        assert sandbox.get_pending_fix(action.id) is None
        assert sandbox.release_pending_fix(action.id) is None
