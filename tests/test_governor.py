"""Tests for the governance pipeline."""

import asyncio
import tempfile
from pathlib import Path

import pytest

from healguard.core.governor import Governor
from healguard.db import Database
from healguard.models import (
    CodeChange,
    DetectedIssue,
    Disposition,
    EstimatedImpact,
    EventType,
    ExecutionConfig,
    GovernanceConfig,
    HealingAction,
    HealingResult,
    HealingStep,
    IssueSignature,
    ProposalStatus,
    Severity,
    TicketStatus,
)


@pytest.fixture
def temp_db():
    """Create a temporary database."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    db = Database(db_path)
    yield db

    if db_path.exists():
        db_path.unlink()


@pytest.fixture
def governor(temp_db):
    return Governor.from_config(GovernanceConfig(), db=temp_db)


class RecordingExecutor:
    """Executor that records calls and returns a fixed result."""

    def __init__(self, success=True, error=None, delay=0.0):
        self.success = success
        self.error = error
        self.delay = delay
        self.calls = []

    async def __call__(self, action, issue):
        self.calls.append(action.id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return HealingResult(
            success=self.success,
            steps_completed=len(action.steps) if self.success else 0,
            total_steps=len(action.steps),
            outcome_description="Recovered" if self.success else "Upstream still failing",
        )


def make_issue(severity=Severity.MEDIUM, category="api_error", data_integrity=False):
    return DetectedIssue(
        signature=IssueSignature(
            category=category,
            description="Patient list failing",
            estimated_impact=EstimatedImpact(data_integrity=data_integrity),
        ),
        severity=severity,
    )


def make_action(strategy="retry_with_backoff", target="api:/patients", action="retry"):
    return HealingAction(strategy=strategy, steps=[HealingStep(action=action, target=target)])


class TestHandleIssue:
    """Tests for Governor.handle_issue."""

    @pytest.mark.asyncio
    async def test_safe_action_executes(self, governor, temp_db):
        executor = RecordingExecutor()
        action = make_action()
        outcome = await governor.handle_issue(make_issue(), action, executor)

        assert outcome.disposition == Disposition.EXECUTED
        assert executor.calls == [action.id]
        assert outcome.entry.event_type == EventType.HEALING_SUCCEEDED
        assert outcome.ticket is None
        assert outcome.result.metrics.time_to_heal >= 0
        assert governor.rate_limiter.get_usage() == {"retry_with_backoff": 1}
        assert temp_db.count("audit_logs") == 1

    @pytest.mark.asyncio
    async def test_approval_required_is_blocked(self, governor):
        executor = RecordingExecutor()
        action = make_action(strategy="configuration_reset", target="config:feature-flags")
        outcome = await governor.handle_issue(make_issue(Severity.LOW), action, executor)

        assert outcome.disposition == Disposition.BLOCKED
        assert executor.calls == []
        assert outcome.entry.event_type == EventType.HEALING_BLOCKED
        assert outcome.ticket.status == TicketStatus.PENDING
        assert governor.sandbox.get_pending_fix(action.id) is not None
        assert governor.rate_limiter.get_usage() == {}

    @pytest.mark.asyncio
    async def test_protected_target_is_blocked(self, governor):
        executor = RecordingExecutor()
        outcome = await governor.handle_issue(
            make_issue(), make_action(target="src/services/auth/session.ts"), executor
        )

        assert outcome.disposition == Disposition.BLOCKED
        assert outcome.decision.category == "security_critical"
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_critical_data_integrity_is_blocked(self, governor):
        outcome = await governor.handle_issue(
            make_issue(Severity.CRITICAL, data_integrity=True), make_action(), RecordingExecutor()
        )
        assert outcome.disposition == Disposition.BLOCKED

    @pytest.mark.asyncio
    async def test_fourth_action_is_rate_limited(self, governor, temp_db):
        executor = RecordingExecutor()
        outcomes = []
        for _ in range(4):
            outcomes.append(await governor.handle_issue(make_issue(), make_action(), executor))

        assert [o.disposition for o in outcomes] == [Disposition.EXECUTED] * 3 + [Disposition.RATE_LIMITED]
        assert len(executor.calls) == 3
        limited = outcomes[-1]
        assert limited.entry is None
        assert 0 < limited.retry_after <= 60
        assert temp_db.count("audit_logs") == 3

    @pytest.mark.asyncio
    async def test_sandbox_rejection(self, governor):
        executor = RecordingExecutor()
        outcome = await governor.handle_issue(
            make_issue(), make_action(action="write_file", target="api:/patients"), executor
        )

        assert outcome.disposition == Disposition.SANDBOX_REJECTED
        assert outcome.sandbox.success is False
        assert "Sandbox test failed" in outcome.reason
        assert outcome.ticket is not None
        assert executor.calls == []
        assert governor.rate_limiter.get_usage() == {}

    @pytest.mark.asyncio
    async def test_failed_execution_opens_ticket(self, governor):
        outcome = await governor.handle_issue(make_issue(), make_action(), RecordingExecutor(success=False))

        assert outcome.disposition == Disposition.FAILED
        assert outcome.entry.event_type == EventType.HEALING_FAILED
        assert outcome.ticket is not None

    @pytest.mark.asyncio
    async def test_executor_exception_is_failure(self, governor):
        outcome = await governor.handle_issue(
            make_issue(), make_action(), RecordingExecutor(error=RuntimeError("connection reset"))
        )

        assert outcome.disposition == Disposition.FAILED
        assert "connection reset" in outcome.result.outcome_description
        assert outcome.ticket is not None

    @pytest.mark.asyncio
    async def test_executor_timeout(self, temp_db):
        config = GovernanceConfig(execution=ExecutionConfig(timeout_seconds=0.05))
        governor = Governor.from_config(config, db=temp_db)

        outcome = await governor.handle_issue(make_issue(), make_action(), RecordingExecutor(delay=1))

        assert outcome.disposition == Disposition.FAILED
        assert "timed out" in outcome.result.outcome_description

    @pytest.mark.asyncio
    async def test_repeat_is_duplicate(self, governor, temp_db):
        issue, action = make_issue(), make_action()
        first = await governor.handle_issue(issue, action, RecordingExecutor())
        second = await governor.handle_issue(issue, action, RecordingExecutor())

        assert first.disposition == Disposition.EXECUTED
        assert second.disposition == Disposition.DUPLICATE
        assert second.entry.id == first.entry.id
        assert temp_db.count("audit_logs") == 1

    @pytest.mark.asyncio
    async def test_code_level_fix_becomes_proposal(self, governor):
        executor = RecordingExecutor()
        action = make_action(strategy="auto_patch", target="src/components/PatientCard.tsx", action="propose_patch")
        changes = [CodeChange(file_path="src/components/PatientCard.tsx", after="fixed")]

        outcome = await governor.handle_issue(make_issue(), action, executor, changes=changes)

        assert outcome.disposition == Disposition.PROPOSED
        assert executor.calls == []
        assert outcome.proposal.status == ProposalStatus.PROPOSED
        assert outcome.proposal.reference_id == "local-1"
        assert outcome.ticket is not None
        assert outcome.entry.event_type == EventType.HEALING_BLOCKED
        await governor.close()

    @pytest.mark.asyncio
    async def test_code_level_without_changes_is_blocked(self, governor):
        outcome = await governor.handle_issue(make_issue(), make_action(strategy="auto_patch"), RecordingExecutor())
        assert outcome.disposition == Disposition.BLOCKED
        assert outcome.proposal is None

    @pytest.mark.asyncio
    async def test_escalation_drains_outbox(self, governor, temp_db):
        outcome = await governor.handle_issue(
            make_issue(Severity.CRITICAL), make_action(), RecordingExecutor()
        )

        assert outcome.disposition == Disposition.EXECUTED
        assert outcome.alerts_delivered == 1
        feed = temp_db.get_dashboard_feed()
        assert len(feed) == 1
        assert feed[0]["title"].startswith("[CRITICAL]")

    @pytest.mark.asyncio
    async def test_to_dict(self, governor):
        outcome = await governor.handle_issue(make_issue(), make_action(strategy="auto_patch"), RecordingExecutor())
        data = outcome.to_dict()
        assert data["disposition"] == "blocked"
        assert data["ticket_id"] == outcome.ticket.id


class TestReviewAndEvaluate:
    """Tests for reviewer actions and dry runs."""

    @pytest.mark.asyncio
    async def test_approve_releases_pending_fix(self, governor):
        action = make_action(strategy="data_reconciliation")
        outcome = await governor.handle_issue(make_issue(), action, RecordingExecutor())

        ticket = governor.approve_ticket(outcome.ticket.id, "alice", "ok to run manually")
        assert ticket.status == TicketStatus.APPROVED
        assert governor.sandbox.get_pending_fix(action.id) is None

    @pytest.mark.asyncio
    async def test_reject_releases_pending_fix(self, governor):
        action = make_action(strategy="emergency_shutdown")
        outcome = await governor.handle_issue(make_issue(), action, RecordingExecutor())

        governor.reject_ticket(outcome.ticket.id, "alice")
        assert governor.sandbox.get_pending_fixes() == {}

    @pytest.mark.asyncio
    async def test_evaluate_records_nothing(self, governor, temp_db):
        allowed = await governor.evaluate(make_issue(), make_action())
        blocked = await governor.evaluate(make_issue(), make_action(strategy="auto_patch"))

        assert allowed.disposition == Disposition.EXECUTED
        assert allowed.sandbox.success is True
        assert blocked.disposition == Disposition.BLOCKED
        assert temp_db.count("audit_logs") == 0
        assert governor.rate_limiter.get_usage() == {}
