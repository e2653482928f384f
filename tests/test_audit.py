"""Tests for audit logging and review tickets."""

import sqlite3
import tempfile
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from healguard.core.audit import AuditLogger, calculate_ticket_priority, requires_human_review
from healguard.core.persistence import AuditPersistence
from healguard.core.versions import VersionManifest
from healguard.db import Database
from healguard.errors import TicketStateError
from healguard.models import (
    AuditFilters,
    DetectedIssue,
    EventType,
    HealingAction,
    HealingResult,
    HealingStep,
    IssueSignature,
    Severity,
    TicketPriority,
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
def audit():
    return AuditLogger(VersionManifest(release="v1"))


@pytest.fixture
def durable_audit(temp_db):
    return AuditLogger(VersionManifest(release="v1"), persistence=AuditPersistence(temp_db))


def make_issue(severity=Severity.MEDIUM, category="api_error"):
    return DetectedIssue(signature=IssueSignature(category=category, description="boom"), severity=severity)


def make_action(strategy="retry_with_backoff", requires_approval=False):
    return HealingAction(
        strategy=strategy,
        steps=[HealingStep(action="retry", target="api:/x")],
        requires_approval=requires_approval,
    )


def ok(success=True):
    return HealingResult(success=success, steps_completed=1 if success else 0, total_steps=1)


class TestReviewRules:
    """Tests for review and priority rules."""

    def test_successful_autonomous_needs_no_review(self):
        assert requires_human_review(make_action(), ok()) is False

    def test_failure_needs_review(self):
        assert requires_human_review(make_action(), ok(False)) is True

    def test_flagged_action_needs_review(self):
        assert requires_human_review(make_action(requires_approval=True), ok()) is True

    def test_always_review_strategy(self):
        assert requires_human_review(make_action("data_reconciliation"), ok()) is True

    @pytest.mark.parametrize(
        "severity,strategy,expected",
        [
            (Severity.CRITICAL, "retry_with_backoff", TicketPriority.CRITICAL),
            (Severity.LOW, "emergency_shutdown", TicketPriority.CRITICAL),
            (Severity.HIGH, "retry_with_backoff", TicketPriority.HIGH),
            (Severity.LOW, "security_lockdown", TicketPriority.HIGH),
            (Severity.MEDIUM, "retry_with_backoff", TicketPriority.MEDIUM),
            (Severity.LOW, "retry_with_backoff", TicketPriority.LOW),
        ],
    )
    def test_priority(self, severity, strategy, expected):
        assert calculate_ticket_priority(make_issue(severity), make_action(strategy)) == expected


class TestAuditLogger:
    """Tests for AuditLogger logging."""

    def test_success_without_ticket(self, audit):
        outcome = audit.log_healing_action(make_issue(), make_action(), ok())

        assert outcome.entry.event_type == EventType.HEALING_SUCCEEDED
        assert outcome.entry.success is True
        assert outcome.ticket is None
        assert outcome.entry.requires_review is False
        assert outcome.entry.before_version == "v1"

    def test_failure_opens_ticket(self, audit):
        outcome = audit.log_healing_action(make_issue(Severity.HIGH), make_action(), ok(False))

        assert outcome.entry.event_type == EventType.HEALING_FAILED
        assert outcome.ticket is not None
        assert outcome.ticket.status == TicketStatus.PENDING
        assert outcome.ticket.priority == TicketPriority.HIGH
        assert outcome.ticket.audit_log_id == outcome.entry.id
        assert "Execution failed" in outcome.ticket.reason

    def test_blocked_always_opens_ticket(self, audit):
        outcome = audit.log_blocked_action(make_issue(), make_action("auto_patch"), "requires approval")

        assert outcome.entry.event_type == EventType.HEALING_BLOCKED
        assert outcome.entry.success is None
        assert outcome.entry.block_reason == "requires approval"
        assert outcome.ticket.reason == "requires approval"
        assert "Blocked auto_patch" in outcome.entry.narrative

    def test_idempotent_per_issue_action(self, audit):
        """A repeated call for the same pair returns the original entry."""
        issue, action = make_issue(), make_action()
        first = audit.log_healing_action(issue, action, ok(False))
        second = audit.log_healing_action(issue, action, ok(False))

        assert second.duplicate is True
        assert second.entry.id == first.entry.id
        assert second.ticket.id == first.ticket.id
        assert len(audit.get_tickets()) == 1

    def test_entries_are_immutable(self, audit):
        outcome = audit.log_healing_action(make_issue(), make_action(), ok())
        with pytest.raises(Exception):
            outcome.entry.success = False

    def test_buffer_is_bounded(self):
        audit = AuditLogger(VersionManifest(), buffer_size=2)
        for _ in range(5):
            audit.log_healing_action(make_issue(), make_action(), ok())
        assert len(audit.get_audit_logs()) == 2

    def test_query_filters(self, audit):
        audit.log_healing_action(make_issue(), make_action(), ok())
        audit.log_blocked_action(make_issue(), make_action("auto_patch"), "x")

        blocked = audit.get_audit_logs(AuditFilters(event_type=EventType.HEALING_BLOCKED))
        assert [e.strategy for e in blocked] == ["auto_patch"]
        assert len(audit.get_audit_logs(AuditFilters(requires_review=True))) == 1


class TestTickets:
    """Tests for ticket transitions."""

    def test_pending_ordered_by_priority(self, audit):
        audit.log_blocked_action(make_issue(Severity.LOW), make_action(), "a")
        audit.log_blocked_action(make_issue(Severity.CRITICAL), make_action(), "b")
        audit.log_blocked_action(make_issue(Severity.MEDIUM), make_action(), "c")

        priorities = [t.priority for t in audit.get_pending_review_tickets()]
        assert priorities == [TicketPriority.CRITICAL, TicketPriority.MEDIUM, TicketPriority.LOW]

    def test_approve(self, audit):
        ticket = audit.log_blocked_action(make_issue(), make_action(), "x").ticket
        updated = audit.approve_ticket(ticket.id, "alice", "looks fine")

        assert updated.status == TicketStatus.APPROVED
        assert updated.reviewed_by == "alice"
        assert updated.review_notes == "looks fine"
        assert audit.get_pending_review_tickets() == []

    def test_reject_from_escalated(self, audit):
        ticket = audit.log_blocked_action(make_issue(), make_action(), "x").ticket
        audit.escalate_ticket(ticket.id, "bob", "needs security")
        assert audit.get_ticket(ticket.id).status == TicketStatus.ESCALATED
        assert audit.get_ticket(ticket.id).escalation_reason == "needs security"
        # Escalated tickets are still open
        assert len(audit.get_pending_review_tickets()) == 1

        updated = audit.reject_ticket(ticket.id, "carol")
        assert updated.status == TicketStatus.REJECTED

    def test_terminal_ticket_cannot_transition(self, audit):
        ticket = audit.log_blocked_action(make_issue(), make_action(), "x").ticket
        audit.approve_ticket(ticket.id, "alice")

        with pytest.raises(TicketStateError):
            audit.reject_ticket(ticket.id, "bob")
        with pytest.raises(TicketStateError):
            audit.escalate_ticket(ticket.id, "bob", "late")

    def test_escalate_only_from_pending(self, audit):
        ticket = audit.log_blocked_action(make_issue(), make_action(), "x").ticket
        audit.escalate_ticket(ticket.id, "bob", "first")
        with pytest.raises(TicketStateError):
            audit.escalate_ticket(ticket.id, "bob", "second")

    def test_unknown_ticket(self, audit):
        with pytest.raises(TicketStateError, match="not found"):
            audit.approve_ticket("ticket-missing", "alice")


class TestDurableAudit:
    """Tests for AuditLogger backed by the database."""

    def test_entry_persisted(self, durable_audit, temp_db):
        issue = make_issue()
        action = make_action()
        durable_audit.log_healing_action(issue, action, ok())

        assert temp_db.get_audit_log(issue.id, action.id)["strategy"] == "retry_with_backoff"
        for table in ("audit_logs", "security_events", "audit_trail", "alert_queue", "admin_actions"):
            assert temp_db.count(table) == 1

    def test_duplicate_detected_across_restart(self, temp_db):
        """A new logger sees entries written by an earlier one."""
        issue, action = make_issue(), make_action()
        first = AuditLogger(VersionManifest(), persistence=AuditPersistence(temp_db))
        original = first.log_blocked_action(issue, action, "x")

        second = AuditLogger(VersionManifest(), persistence=AuditPersistence(temp_db))
        again = second.log_blocked_action(issue, action, "x")

        assert again.duplicate is True
        assert again.entry.id == original.entry.id
        assert again.ticket.id == original.ticket.id
        assert temp_db.count("audit_logs") == 1

    def test_ticket_transition_persisted(self, durable_audit, temp_db):
        ticket = durable_audit.log_blocked_action(make_issue(), make_action(), "x").ticket
        durable_audit.approve_ticket(ticket.id, "alice")

        stored = temp_db.get_tickets(TicketStatus.APPROVED)
        assert [t.id for t in stored] == [ticket.id]
        assert temp_db.count("admin_actions") == 3

    def test_persistence_failure_is_soft(self):
        """A failed durable write keeps the entry in memory."""
        db = MagicMock()
        db.get_tickets.return_value = []
        db.get_audit_log.return_value = None
        db.write_audit_bundle.side_effect = sqlite3.OperationalError("disk I/O error")
        audit = AuditLogger(VersionManifest(), persistence=AuditPersistence(db))

        outcome = audit.log_blocked_action(make_issue(), make_action(), "x")

        assert outcome.ticket is not None
        assert audit.get_ticket(outcome.ticket.id) is not None

    def test_critical_category_raises_alert(self, durable_audit, temp_db):
        outcome = durable_audit.log_blocked_action(make_issue(Severity.LOW, "authentication"), make_action(), "x")

        assert outcome.alert is not None
        assert temp_db.get_security_alert(outcome.alert.id) is not None
