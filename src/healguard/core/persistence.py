"""Durable persistence for audit entries.

Every entry is mirrored into four streams (security events, audit trail,
alert queue, administrative actions) in one transaction. Entries for
critical categories or high/critical severities also get a SecurityAlert
with severity-derived channels.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from typing import TYPE_CHECKING

from loguru import logger

from healguard.db import AuditBundle
from healguard.errors import PersistenceFailed
from healguard.models import (
    AlertsConfig,
    AuditLogEntry,
    DetectedIssue,
    EventType,
    ReviewTicket,
    SecurityAlert,
    Severity,
)

if TYPE_CHECKING:
    from healguard.db import Database

DEFAULT_CRITICAL_CATEGORIES = frozenset({
    "security",
    "data_corruption",
    "authentication",
    "authorization",
    "data_breach",
})

ALERT_PRIORITY = {
    Severity.CRITICAL: "urgent",
    Severity.HIGH: "high",
    Severity.MEDIUM: "normal",
    Severity.LOW: "low",
}


def channels_for_severity(severity: Severity, alerts: AlertsConfig | None = None) -> list[str]:
    """Notification channels for a severity: critical fans out widest."""
    alerts = alerts or AlertsConfig()
    if severity == Severity.CRITICAL:
        return [alerts.primary, alerts.secondary, alerts.dashboard]
    if severity == Severity.HIGH:
        return [alerts.primary, alerts.dashboard]
    return [alerts.dashboard]


@dataclass
class PersistResult:
    """What a persist call wrote."""

    written: bool
    alert: SecurityAlert | None = None


class AuditPersistence:
    """Mirrors audit entries into the durable store."""

    def __init__(
        self,
        db: "Database",
        critical_categories: set[str] | frozenset[str] | None = None,
        alerts: AlertsConfig | None = None,
    ):
        self.db = db
        self.critical_categories = frozenset(critical_categories or DEFAULT_CRITICAL_CATEGORIES)
        self.alerts = alerts or AlertsConfig()

    def should_escalate(self, issue: DetectedIssue) -> bool:
        return (
            issue.category in self.critical_categories
            or issue.severity in (Severity.CRITICAL, Severity.HIGH)
        )

    def build_alert(self, entry: AuditLogEntry, issue: DetectedIssue) -> SecurityAlert:
        headline = entry.narrative_record.get("headline") or f"{entry.event_type.value}: {entry.strategy}"
        return SecurityAlert(
            issue_id=entry.issue_id,
            action_id=entry.action_id,
            audit_log_id=entry.id,
            severity=issue.severity,
            category=issue.category,
            title=f"[{issue.severity.value.upper()}] {headline}",
            summary=entry.block_reason or entry.narrative_record.get("outcome", ""),
            channels=channels_for_severity(issue.severity, self.alerts),
        )

    def build_bundle(
        self,
        entry: AuditLogEntry,
        issue: DetectedIssue,
        ticket: ReviewTicket | None,
        alert: SecurityAlert | None,
    ) -> AuditBundle:
        """Derive the stream rows for one entry."""
        created_at = entry.timestamp.isoformat()
        key = {"issue_id": entry.issue_id, "action_id": entry.action_id}

        admin_actions = [
            {
                **key,
                "action_type": entry.event_type.value,
                "actor": entry.actor,
                "ticket_id": None,
                "details": json.dumps({"strategy": entry.strategy, "block_reason": entry.block_reason}),
                "created_at": created_at,
            }
        ]
        if ticket is not None:
            admin_actions.append(
                {
                    **key,
                    "action_type": "ticket_created",
                    "actor": entry.actor,
                    "ticket_id": ticket.id,
                    "details": json.dumps({"priority": ticket.priority.value, "reason": ticket.reason}),
                    "created_at": created_at,
                }
            )

        channels = alert.channels if alert else channels_for_severity(issue.severity, self.alerts)
        title = alert.title if alert else entry.narrative_record.get("headline", entry.strategy)

        return AuditBundle(
            audit_log={
                "id": entry.id,
                **key,
                "event_type": entry.event_type.value,
                "timestamp": created_at,
                "strategy": entry.strategy,
                "severity": entry.severity.value,
                "category": entry.category,
                "success": None if entry.success is None else int(entry.success),
                "requires_review": int(entry.requires_review),
                "payload": entry.model_dump_json(),
            },
            security_event={
                **key,
                "event_type": entry.event_type.value,
                "severity": entry.severity.value,
                "category": entry.category,
                "component": entry.component,
                "user_id": entry.user_id,
                "session_id": entry.session_id,
                "details": json.dumps(
                    {
                        "strategy": entry.strategy,
                        "success": entry.success,
                        "block_reason": entry.block_reason,
                        "affected_resources": entry.affected_resources,
                    }
                ),
                "created_at": created_at,
            },
            audit_trail={
                **key,
                "audit_log_id": entry.id,
                "actor": entry.actor,
                "environment": entry.environment,
                "operation": entry.strategy,
                "before_version": entry.before_version,
                "after_version": entry.after_version,
                "narrative": entry.narrative,
                "created_at": created_at,
            },
            alert_queue={
                **key,
                "alert_id": alert.id if alert else None,
                "title": title,
                "body": entry.narrative,
                "priority": ALERT_PRIORITY[issue.severity],
                "channels": json.dumps(channels),
                "status": "pending",
                "attempts": 0,
                "created_at": created_at,
            },
            admin_actions=admin_actions,
            ticket=self._ticket_row(ticket) if ticket else None,
            security_alert=self._alert_row(alert) if alert else None,
        )

    @staticmethod
    def _ticket_row(ticket: ReviewTicket) -> dict:
        return {
            "id": ticket.id,
            "audit_log_id": ticket.audit_log_id,
            "issue_id": ticket.issue_id,
            "action_id": ticket.action_id,
            "status": ticket.status.value,
            "priority": ticket.priority.value,
            "created_at": ticket.created_at.isoformat(),
            "payload": ticket.model_dump_json(),
        }

    @staticmethod
    def _alert_row(alert: SecurityAlert) -> dict:
        return {
            "id": alert.id,
            "issue_id": alert.issue_id,
            "action_id": alert.action_id,
            "audit_log_id": alert.audit_log_id,
            "severity": alert.severity.value,
            "category": alert.category,
            "title": alert.title,
            "summary": alert.summary,
            "channels": json.dumps(alert.channels),
            "created_at": alert.created_at.isoformat(),
        }

    def persist(
        self,
        entry: AuditLogEntry,
        issue: DetectedIssue,
        ticket: ReviewTicket | None = None,
    ) -> PersistResult:
        """Write an entry and its stream rows.

        Raises:
            PersistenceFailed: if the durable store rejected the write.
        """
        alert = self.build_alert(entry, issue) if self.should_escalate(issue) else None
        bundle = self.build_bundle(entry, issue, ticket, alert)

        try:
            written = self.db.write_audit_bundle(bundle)
        except (sqlite3.Error, OSError) as e:
            raise PersistenceFailed("write_audit_bundle", e) from e

        if not written:
            return PersistResult(written=False)

        if alert:
            logger.info(f"Security alert {alert.id} raised for {entry.category} ({alert.severity.value})")
        if entry.event_type == EventType.HEALING_BLOCKED:
            logger.debug(f"Persisted blocked action {entry.action_id} with ticket {ticket.id if ticket else None}")

        return PersistResult(written=True, alert=alert)

    def save_ticket(self, ticket: ReviewTicket, actor: str, action_type: str) -> None:
        """Persist a ticket transition and record it as an administrative action.

        Raises:
            PersistenceFailed: if the durable store rejected the write.
        """
        try:
            self.db.save_ticket(ticket)
            self.db.record_admin_action(
                issue_id=ticket.issue_id,
                action_id=ticket.action_id,
                action_type=action_type,
                actor=actor,
                ticket_id=ticket.id,
                details={"status": ticket.status.value, "notes": ticket.review_notes},
            )
        except (sqlite3.Error, OSError) as e:
            raise PersistenceFailed(action_type, e) from e
