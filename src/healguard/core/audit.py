"""Audit logging and review ticketing.

Builds one immutable AuditLogEntry for every executed or blocked action,
decides whether a human must look at it, and manages the resulting
ReviewTickets. Durable writes go through AuditPersistence; a failed write
is logged and never changes the decision already taken.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from threading import Lock

from loguru import logger

from healguard.core.narrative import describe, render
from healguard.core.persistence import AuditPersistence
from healguard.core.safety import STRATEGY_POLICIES, StrategyPolicy, get_policy
from healguard.core.versions import VersionManifest
from healguard.errors import PersistenceFailed, TicketStateError
from healguard.models import (
    AuditFilters,
    AuditLogEntry,
    DetectedIssue,
    EventType,
    HealingAction,
    HealingResult,
    ReviewTicket,
    SecurityAlert,
    Severity,
    TicketPriority,
    TicketStatus,
)

# Tickets a reviewer can still act on
OPEN_TICKET_STATES = {TicketStatus.PENDING, TicketStatus.ESCALATED}


@dataclass
class AuditOutcome:
    """Entry, optional ticket and optional alert produced by one log call."""

    entry: AuditLogEntry
    ticket: ReviewTicket | None = None
    alert: SecurityAlert | None = None
    duplicate: bool = False


def requires_human_review(
    action: HealingAction,
    result: HealingResult,
    policies: dict[str, StrategyPolicy] | None = None,
) -> bool:
    """True if the outcome must be looked at by a human."""
    if not result.success:
        return True
    if action.requires_approval:
        return True
    return get_policy(action.strategy, policies).always_review


def calculate_ticket_priority(issue: DetectedIssue, action: HealingAction) -> TicketPriority:
    if issue.severity == Severity.CRITICAL or action.strategy == "emergency_shutdown":
        return TicketPriority.CRITICAL
    if issue.severity == Severity.HIGH or action.strategy == "security_lockdown":
        return TicketPriority.HIGH
    if issue.severity == Severity.MEDIUM:
        return TicketPriority.MEDIUM
    return TicketPriority.LOW


class AuditLogger:
    """Audit trail and review ticket manager."""

    def __init__(
        self,
        versions: VersionManifest,
        persistence: AuditPersistence | None = None,
        actor: str = "healguard",
        environment: str = "production",
        buffer_size: int = 1000,
        policies: dict[str, StrategyPolicy] | None = None,
    ):
        self.versions = versions
        self.persistence = persistence
        self.actor = actor
        self.environment = environment
        self.buffer_size = buffer_size
        self.policies = policies or STRATEGY_POLICIES

        self._lock = Lock()
        self._entries: OrderedDict[tuple[str, str], AuditOutcome] = OrderedDict()
        self._tickets: dict[str, ReviewTicket] = {}

        self._restore_tickets()

    def _restore_tickets(self) -> None:
        """Load tickets from the durable store."""
        if self.persistence is None:
            return
        try:
            tickets = self.persistence.db.get_tickets()
        except Exception as e:
            logger.warning(f"Failed to restore review tickets: {e}")
            return
        for ticket in tickets:
            self._tickets[ticket.id] = ticket
        if tickets:
            logger.info(f"Restored {len(tickets)} review tickets")

    # ========================================================================
    # Logging
    # ========================================================================

    def _find_existing(self, issue_id: str, action_id: str) -> AuditOutcome | None:
        """Look up an earlier log call for the same (issue, action). Caller holds the lock."""
        key = (issue_id, action_id)
        existing = self._entries.get(key)
        if existing:
            return AuditOutcome(entry=existing.entry, ticket=existing.ticket, alert=existing.alert, duplicate=True)

        if self.persistence is None:
            return None
        try:
            payload = self.persistence.db.get_audit_log(issue_id, action_id)
        except Exception as e:
            logger.warning(f"Failed to check for existing audit entry {issue_id}/{action_id}: {e}")
            return None
        if payload is None:
            return None

        ticket = next(
            (t for t in self._tickets.values() if t.issue_id == issue_id and t.action_id == action_id),
            None,
        )
        return AuditOutcome(entry=AuditLogEntry.model_validate(payload), ticket=ticket, duplicate=True)

    def _build_entry(
        self,
        issue: DetectedIssue,
        action: HealingAction,
        result: HealingResult | None,
        block_reason: str | None,
        requires_review: bool,
    ) -> AuditLogEntry:
        before, after = self.versions.capture(action, result)
        record = describe(issue, action, result, block_reason, before, after)

        if result is None:
            event_type = EventType.HEALING_BLOCKED
        elif result.success:
            event_type = EventType.HEALING_SUCCEEDED
        else:
            event_type = EventType.HEALING_FAILED

        return AuditLogEntry(
            event_type=event_type,
            issue_id=issue.id,
            action_id=action.id,
            strategy=action.strategy,
            severity=issue.severity,
            category=issue.category,
            actor=self.actor,
            environment=issue.context.environment or self.environment,
            component=issue.context.component,
            user_id=issue.context.user_id,
            session_id=issue.context.session_id,
            success=None if result is None else result.success,
            block_reason=block_reason,
            steps_completed=result.steps_completed if result else 0,
            total_steps=result.total_steps if result else len(action.steps),
            before_version=before,
            after_version=after,
            narrative=render(record),
            narrative_record=record.model_dump(mode="json"),
            metrics=result.metrics.model_dump() if result else {},
            lessons=list(result.lessons) if result else [],
            preventive_measures=list(result.preventive_measures) if result else [],
            affected_resources=list(issue.affected_resources),
            requires_review=requires_review,
        )

    def _review_reason(self, action: HealingAction, result: HealingResult) -> str:
        reasons = []
        if not result.success:
            reasons.append(f"Execution failed: {result.outcome_description or 'no details'}")
        if action.requires_approval:
            reasons.append("Action requires approval")
        if get_policy(action.strategy, self.policies).always_review:
            reasons.append(f"Strategy '{action.strategy}' always requires review")
        return "; ".join(reasons)

    def _record(
        self,
        issue: DetectedIssue,
        action: HealingAction,
        result: HealingResult | None,
        block_reason: str | None,
        ticket_reason: str | None,
    ) -> AuditOutcome:
        with self._lock:
            existing = self._find_existing(issue.id, action.id)
            if existing:
                logger.debug(f"Audit entry for {issue.id}/{action.id} already exists, skipping")
                return existing

            entry = self._build_entry(issue, action, result, block_reason, ticket_reason is not None)

            ticket = None
            if ticket_reason is not None:
                ticket = ReviewTicket(
                    audit_log_id=entry.id,
                    issue_id=issue.id,
                    action_id=action.id,
                    strategy=action.strategy,
                    title=entry.narrative_record.get("headline", action.strategy),
                    reason=ticket_reason,
                    priority=calculate_ticket_priority(issue, action),
                )
                self._tickets[ticket.id] = ticket

            outcome = AuditOutcome(entry=entry, ticket=ticket)
            self._entries[(issue.id, action.id)] = outcome
            while len(self._entries) > self.buffer_size:
                self._entries.popitem(last=False)

        if self.persistence is not None:
            try:
                outcome.alert = self.persistence.persist(entry, issue, ticket).alert
            except PersistenceFailed as e:
                logger.warning(f"Audit entry {entry.id} kept in memory only: {e}")

        return outcome

    def log_healing_action(
        self,
        issue: DetectedIssue,
        action: HealingAction,
        result: HealingResult,
    ) -> AuditOutcome:
        """Record an executed action; open a ticket if a human must review it."""
        needs_review = requires_human_review(action, result, self.policies)
        outcome = self._record(
            issue,
            action,
            result,
            block_reason=None,
            ticket_reason=self._review_reason(action, result) if needs_review else None,
        )

        if not outcome.duplicate:
            status = "succeeded" if result.success else "failed"
            logger.info(
                f"Logged {action.strategy} {status} for issue {issue.id}"
                + (f", review ticket {outcome.ticket.id}" if outcome.ticket else "")
            )
        return outcome

    def log_blocked_action(
        self,
        issue: DetectedIssue,
        action: HealingAction,
        block_reason: str,
    ) -> AuditOutcome:
        """Record a blocked action. Always opens a pending review ticket."""
        outcome = self._record(issue, action, None, block_reason=block_reason, ticket_reason=block_reason)
        if not outcome.duplicate:
            logger.warning(f"Blocked {action.strategy} for issue {issue.id}: {block_reason}")
        return outcome

    # ========================================================================
    # Tickets
    # ========================================================================

    def get_ticket(self, ticket_id: str) -> ReviewTicket | None:
        with self._lock:
            return self._tickets.get(ticket_id)

    def get_tickets(self, status: TicketStatus | None = None) -> list[ReviewTicket]:
        with self._lock:
            tickets = list(self._tickets.values())
        if status:
            tickets = [t for t in tickets if t.status == status]
        return sorted(tickets, key=lambda t: t.created_at)

    def get_pending_review_tickets(self) -> list[ReviewTicket]:
        """Open tickets, highest priority first."""
        order = [TicketPriority.CRITICAL, TicketPriority.HIGH, TicketPriority.MEDIUM, TicketPriority.LOW]
        with self._lock:
            tickets = [t for t in self._tickets.values() if t.status in OPEN_TICKET_STATES]
        return sorted(tickets, key=lambda t: (order.index(t.priority), t.created_at))

    def _transition(
        self,
        ticket_id: str,
        allowed_from: set[TicketStatus],
        to_status: TicketStatus,
        actor: str,
        notes: str | None,
        action_type: str,
    ) -> ReviewTicket:
        with self._lock:
            ticket = self._tickets.get(ticket_id)
            if ticket is None:
                raise TicketStateError(f"Ticket not found: {ticket_id}")
            if ticket.status not in allowed_from:
                raise TicketStateError(
                    f"Ticket {ticket_id} is {ticket.status.value}, cannot move to {to_status.value}"
                )

            now = datetime.now()
            if to_status == TicketStatus.ESCALATED:
                updated = ticket.model_copy(
                    update={"status": to_status, "escalated_at": now, "escalation_reason": notes}
                )
            else:
                updated = ticket.model_copy(
                    update={"status": to_status, "reviewed_by": actor, "reviewed_at": now, "review_notes": notes}
                )
            self._tickets[ticket_id] = updated

        if self.persistence is not None:
            try:
                self.persistence.save_ticket(updated, actor, action_type)
            except PersistenceFailed as e:
                logger.warning(f"Ticket {ticket_id} transition kept in memory only: {e}")

        logger.info(f"Ticket {ticket_id} {to_status.value} by {actor}")
        return updated

    def approve_ticket(self, ticket_id: str, reviewed_by: str, notes: str | None = None) -> ReviewTicket:
        return self._transition(
            ticket_id, OPEN_TICKET_STATES, TicketStatus.APPROVED, reviewed_by, notes, "ticket_approved"
        )

    def reject_ticket(self, ticket_id: str, reviewed_by: str, notes: str | None = None) -> ReviewTicket:
        return self._transition(
            ticket_id, OPEN_TICKET_STATES, TicketStatus.REJECTED, reviewed_by, notes, "ticket_rejected"
        )

    def escalate_ticket(self, ticket_id: str, escalated_by: str, reason: str) -> ReviewTicket:
        """Raise a pending ticket to the escalated queue."""
        return self._transition(
            ticket_id, {TicketStatus.PENDING}, TicketStatus.ESCALATED, escalated_by, reason, "ticket_escalated"
        )

    # ========================================================================
    # Queries
    # ========================================================================

    @staticmethod
    def _matches(entry: AuditLogEntry, filters: AuditFilters) -> bool:
        if filters.issue_id and entry.issue_id != filters.issue_id:
            return False
        if filters.strategy and entry.strategy != filters.strategy:
            return False
        if filters.event_type and entry.event_type != filters.event_type:
            return False
        if filters.severity and entry.severity != filters.severity:
            return False
        if filters.since and entry.timestamp < filters.since:
            return False
        if filters.requires_review is not None and entry.requires_review != filters.requires_review:
            return False
        return True

    def get_audit_logs(self, filters: AuditFilters | None = None) -> list[AuditLogEntry]:
        """Query audit entries, newest first.

        Reads from the durable store when one is configured, otherwise from
        the in-memory buffer.
        """
        filters = filters or AuditFilters()

        if self.persistence is not None:
            try:
                return [AuditLogEntry.model_validate(p) for p in self.persistence.db.get_audit_logs(filters)]
            except Exception as e:
                logger.warning(f"Audit query fell back to memory buffer: {e}")

        with self._lock:
            entries = [o.entry for o in self._entries.values()]
        matched = [e for e in entries if self._matches(e, filters)]
        matched.sort(key=lambda e: e.timestamp, reverse=True)
        return matched[: filters.limit]
