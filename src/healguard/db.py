"""SQLite database for HealGuard audit records, tickets, alerts and proposals."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Generator

from loguru import logger

from healguard.config import DEFAULT_DB_FILE
from healguard.models import AuditFilters, ReviewTicket, TicketStatus

# Schema version for migrations
SCHEMA_VERSION = 2

SCHEMA_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Audit log entries (system of record)
CREATE TABLE IF NOT EXISTS audit_logs (
    id TEXT PRIMARY KEY,
    issue_id TEXT NOT NULL,
    action_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    strategy TEXT NOT NULL,
    severity TEXT NOT NULL,
    category TEXT NOT NULL,
    success INTEGER,
    requires_review INTEGER DEFAULT 0,
    payload TEXT NOT NULL,
    UNIQUE(issue_id, action_id)
);

-- Review tickets
CREATE TABLE IF NOT EXISTS review_tickets (
    id TEXT PRIMARY KEY,
    audit_log_id TEXT NOT NULL,
    issue_id TEXT NOT NULL,
    action_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    priority TEXT NOT NULL DEFAULT 'low',
    created_at TEXT NOT NULL,
    reviewed_by TEXT,
    reviewed_at TEXT,
    review_notes TEXT,
    payload TEXT NOT NULL,
    UNIQUE(issue_id, action_id)
);

-- Stream: security events
CREATE TABLE IF NOT EXISTS security_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    issue_id TEXT NOT NULL,
    action_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    severity TEXT NOT NULL,
    category TEXT NOT NULL,
    component TEXT,
    user_id TEXT,
    session_id TEXT,
    details TEXT,
    created_at TEXT NOT NULL,
    UNIQUE(issue_id, action_id)
);

-- Stream: audit trail
CREATE TABLE IF NOT EXISTS audit_trail (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    issue_id TEXT NOT NULL,
    action_id TEXT NOT NULL,
    audit_log_id TEXT NOT NULL,
    actor TEXT NOT NULL,
    environment TEXT NOT NULL,
    operation TEXT NOT NULL,
    before_version TEXT,
    after_version TEXT,
    narrative TEXT,
    created_at TEXT NOT NULL,
    UNIQUE(issue_id, action_id)
);

-- Stream: alert queue (outbox)
CREATE TABLE IF NOT EXISTS alert_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    issue_id TEXT NOT NULL,
    action_id TEXT NOT NULL,
    alert_id TEXT,
    title TEXT NOT NULL,
    body TEXT,
    priority TEXT DEFAULT 'normal',
    channels TEXT NOT NULL,
    status TEXT DEFAULT 'pending',
    attempts INTEGER DEFAULT 0,
    last_error TEXT,
    created_at TEXT NOT NULL,
    delivered_at TEXT,
    claimed_at TEXT,
    UNIQUE(issue_id, action_id)
);

-- Stream: administrative actions
CREATE TABLE IF NOT EXISTS admin_actions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    issue_id TEXT NOT NULL,
    action_id TEXT NOT NULL,
    action_type TEXT NOT NULL,
    actor TEXT NOT NULL,
    ticket_id TEXT,
    details TEXT,
    created_at TEXT NOT NULL,
    UNIQUE(issue_id, action_id, action_type)
);

-- Security alerts (derived, escalation only)
CREATE TABLE IF NOT EXISTS security_alerts (
    id TEXT PRIMARY KEY,
    issue_id TEXT NOT NULL,
    action_id TEXT NOT NULL,
    audit_log_id TEXT NOT NULL,
    severity TEXT NOT NULL,
    category TEXT NOT NULL,
    title TEXT NOT NULL,
    summary TEXT,
    channels TEXT NOT NULL,
    created_at TEXT NOT NULL,
    notification TEXT,
    notified_at TEXT,
    UNIQUE(issue_id, action_id)
);

-- Dashboard feed (dashboard-push channel sink)
CREATE TABLE IF NOT EXISTS dashboard_feed (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    alert_id TEXT,
    title TEXT NOT NULL,
    body TEXT,
    priority TEXT DEFAULT 'normal',
    created_at TEXT NOT NULL,
    acknowledged_at TEXT
);

-- Code change proposals
CREATE TABLE IF NOT EXISTS proposals (
    id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    branch_name TEXT NOT NULL,
    reference_id TEXT,
    updated_at TEXT NOT NULL,
    payload TEXT NOT NULL
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_audit_logs_timestamp ON audit_logs(timestamp);
CREATE INDEX IF NOT EXISTS idx_review_tickets_status ON review_tickets(status);
CREATE INDEX IF NOT EXISTS idx_alert_queue_status ON alert_queue(status, created_at);
CREATE INDEX IF NOT EXISTS idx_proposals_status ON proposals(status);
"""


@dataclass
class AuditBundle:
    """Rows describing one audit entry across every durable stream.

    Written in a single transaction; `audit_log` gates the rest so a retried
    write for the same (issue_id, action_id) adds nothing.
    """

    audit_log: dict[str, Any]
    security_event: dict[str, Any]
    audit_trail: dict[str, Any]
    alert_queue: dict[str, Any]
    admin_actions: list[dict[str, Any]] = field(default_factory=list)
    ticket: dict[str, Any] | None = None
    security_alert: dict[str, Any] | None = None


def _insert(conn: sqlite3.Connection, table: str, row: dict[str, Any], ignore: bool = True) -> int:
    """Insert a row dict, returning the number of rows written."""
    columns = ", ".join(row)
    placeholders = ", ".join("?" for _ in row)
    verb = "INSERT OR IGNORE" if ignore else "INSERT"
    cursor = conn.execute(
        f"{verb} INTO {table} ({columns}) VALUES ({placeholders})",
        tuple(row.values()),
    )
    return cursor.rowcount


class Database:
    """SQLite database manager for HealGuard."""

    def __init__(self, db_path: Path | None = None):
        """Initialize the database."""
        self.db_path = db_path or DEFAULT_DB_FILE
        self._ensure_db()

    def _ensure_db(self) -> None:
        """Ensure the database exists and is up to date."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._connect() as conn:
            conn.executescript(SCHEMA_SQL)

            cursor = conn.execute("SELECT version FROM schema_version LIMIT 1")
            row = cursor.fetchone()

            if row is None:
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
                logger.debug(f"Initialized database at {self.db_path}")
            elif row[0] < SCHEMA_VERSION:
                self._migrate(conn, row[0], SCHEMA_VERSION)

    def _migrate(self, conn: sqlite3.Connection, from_version: int, to_version: int) -> None:
        """Run database migrations."""
        logger.info(f"Migrating database from version {from_version} to {to_version}")
        if from_version < 2:
            columns = {row["name"] for row in conn.execute("PRAGMA table_info(alert_queue)")}
            if "claimed_at" not in columns:
                conn.execute("ALTER TABLE alert_queue ADD COLUMN claimed_at TEXT")
        conn.execute("UPDATE schema_version SET version = ?", (to_version,))

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ========================================================================
    # Audit Methods
    # ========================================================================

    def write_audit_bundle(self, bundle: AuditBundle) -> bool:
        """Write an audit entry and its stream rows in one transaction.

        Returns:
            True if written, False if an entry for the same
            (issue_id, action_id) already existed.
        """
        with self._connect() as conn:
            if _insert(conn, "audit_logs", bundle.audit_log) == 0:
                logger.debug(
                    f"Audit entry for {bundle.audit_log['issue_id']}/"
                    f"{bundle.audit_log['action_id']} already persisted"
                )
                return False

            _insert(conn, "security_events", bundle.security_event)
            _insert(conn, "audit_trail", bundle.audit_trail)
            _insert(conn, "alert_queue", bundle.alert_queue)
            for row in bundle.admin_actions:
                _insert(conn, "admin_actions", row)
            if bundle.ticket is not None:
                _insert(conn, "review_tickets", bundle.ticket)
            if bundle.security_alert is not None:
                _insert(conn, "security_alerts", bundle.security_alert)

        return True

    def get_audit_log(self, issue_id: str, action_id: str) -> dict | None:
        """Get the persisted audit payload for an (issue, action) pair."""
        with self._connect() as conn:
            cursor = conn.execute(
                "SELECT payload FROM audit_logs WHERE issue_id = ? AND action_id = ?",
                (issue_id, action_id),
            )
            row = cursor.fetchone()
            return json.loads(row["payload"]) if row else None

    def get_audit_logs(self, filters: AuditFilters | None = None) -> list[dict]:
        """Get persisted audit payloads, newest first."""
        filters = filters or AuditFilters()
        query = "SELECT payload FROM audit_logs WHERE 1=1"
        params: list = []

        if filters.issue_id:
            query += " AND issue_id = ?"
            params.append(filters.issue_id)
        if filters.strategy:
            query += " AND strategy = ?"
            params.append(filters.strategy)
        if filters.event_type:
            query += " AND event_type = ?"
            params.append(filters.event_type.value)
        if filters.severity:
            query += " AND severity = ?"
            params.append(filters.severity.value)
        if filters.since:
            query += " AND timestamp >= ?"
            params.append(filters.since.isoformat())
        if filters.requires_review is not None:
            query += " AND requires_review = ?"
            params.append(int(filters.requires_review))

        query += " ORDER BY timestamp DESC LIMIT ?"
        params.append(filters.limit)

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
            return [json.loads(row["payload"]) for row in rows]

    def record_admin_action(
        self,
        issue_id: str,
        action_id: str,
        action_type: str,
        actor: str,
        ticket_id: str | None = None,
        details: dict | None = None,
    ) -> None:
        """Append a reviewer or system action to the administrative stream."""
        with self._connect() as conn:
            _insert(
                conn,
                "admin_actions",
                {
                    "issue_id": issue_id,
                    "action_id": action_id,
                    "action_type": action_type,
                    "actor": actor,
                    "ticket_id": ticket_id,
                    "details": json.dumps(details or {}),
                    "created_at": datetime.now().isoformat(),
                },
            )

    # ========================================================================
    # Ticket Methods
    # ========================================================================

    def save_ticket(self, ticket: ReviewTicket) -> None:
        """Insert or update a review ticket."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO review_tickets
                (id, audit_log_id, issue_id, action_id, status, priority, created_at,
                 reviewed_by, reviewed_at, review_notes, payload)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    ticket.id,
                    ticket.audit_log_id,
                    ticket.issue_id,
                    ticket.action_id,
                    ticket.status.value,
                    ticket.priority.value,
                    ticket.created_at.isoformat(),
                    ticket.reviewed_by,
                    ticket.reviewed_at.isoformat() if ticket.reviewed_at else None,
                    ticket.review_notes,
                    ticket.model_dump_json(),
                ),
            )

    def get_tickets(self, status: TicketStatus | None = None) -> list[ReviewTicket]:
        """Get review tickets, oldest first."""
        query = "SELECT payload FROM review_tickets"
        params: list = []
        if status:
            query += " WHERE status = ?"
            params.append(status.value)
        query += " ORDER BY created_at ASC"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
            return [ReviewTicket.model_validate_json(row["payload"]) for row in rows]

    # ========================================================================
    # Alert Methods
    # ========================================================================

    def get_security_alert(self, alert_id: str) -> dict | None:
        """Get a security alert row."""
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM security_alerts WHERE id = ?", (alert_id,)).fetchone()
            if row is None:
                return None
            alert = dict(row)
            alert["channels"] = json.loads(alert["channels"])
            alert["notification"] = json.loads(alert["notification"]) if alert["notification"] else None
            return alert

    def update_alert_notification(self, alert_id: str, notification: dict) -> bool:
        """Write a notification outcome back onto its alert."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE security_alerts SET notification = ?, notified_at = ? WHERE id = ?",
                (json.dumps(notification, default=str), datetime.now().isoformat(), alert_id),
            )
            return cursor.rowcount > 0

    def get_pending_alerts(self, max_attempts: int, limit: int = 50) -> list[dict]:
        """Get outbox rows that still need delivery."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM alert_queue
                WHERE (status = 'pending' OR status = 'failed') AND attempts < ?
                ORDER BY created_at ASC LIMIT ?
                """,
                (max_attempts, limit),
            ).fetchall()
            entries = []
            for row in rows:
                entry = dict(row)
                entry["channels"] = json.loads(entry["channels"])
                entries.append(entry)
            return entries

    def claim_pending_alerts(self, max_attempts: int, limit: int = 50, lease_seconds: float = 300.0) -> list[dict]:
        """Claim outbox rows for delivery.

        A row is claimed by moving it to 'sending'; only one caller can win
        that update, so concurrent drains never send the same row. Claims
        older than `lease_seconds` are considered abandoned and can be
        claimed again.
        """
        now = datetime.now()
        stale_before = datetime.fromtimestamp(now.timestamp() - lease_seconds).isoformat()
        claimable = """
            attempts < ? AND (
                status IN ('pending', 'failed')
                OR (status = 'sending' AND (claimed_at IS NULL OR claimed_at < ?))
            )
        """
        claimed = []
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM alert_queue WHERE {claimable} ORDER BY created_at ASC LIMIT ?",
                (max_attempts, stale_before, limit),
            ).fetchall()
            for row in rows:
                cursor = conn.execute(
                    f"UPDATE alert_queue SET status = 'sending', claimed_at = ? WHERE id = ? AND {claimable}",
                    (now.isoformat(), row["id"], max_attempts, stale_before),
                )
                if cursor.rowcount != 1:
                    continue
                entry = dict(row)
                entry["channels"] = json.loads(entry["channels"])
                claimed.append(entry)
        return claimed

    def mark_alert_delivered(self, queue_id: int) -> None:
        """Mark an outbox row as delivered."""
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE alert_queue
                SET status = 'delivered', attempts = attempts + 1, delivered_at = ?, last_error = NULL
                WHERE id = ?
                """,
                (datetime.now().isoformat(), queue_id),
            )

    def mark_alert_failed(self, queue_id: int, error: str) -> None:
        """Record a failed delivery attempt for an outbox row."""
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE alert_queue
                SET status = 'failed', attempts = attempts + 1, last_error = ?
                WHERE id = ?
                """,
                (error, queue_id),
            )

    def add_dashboard_item(
        self,
        title: str,
        body: str,
        priority: str = "normal",
        alert_id: str | None = None,
    ) -> int:
        """Push an item onto the dashboard feed."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO dashboard_feed (alert_id, title, body, priority, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (alert_id, title, body, priority, datetime.now().isoformat()),
            )
            return cursor.lastrowid or 0

    def get_dashboard_feed(self, limit: int = 50) -> list[dict]:
        """Get the most recent dashboard items."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM dashboard_feed ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
            return [dict(row) for row in rows]

    # ========================================================================
    # Proposal Methods
    # ========================================================================

    def save_proposal(
        self,
        proposal_id: str,
        status: str,
        branch_name: str,
        reference_id: str | None,
        payload: str,
    ) -> None:
        """Insert or update a proposal snapshot."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO proposals (id, status, branch_name, reference_id, updated_at, payload)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (proposal_id, status, branch_name, reference_id, datetime.now().isoformat(), payload),
            )

    def get_proposals(self, status: str | None = None) -> list[str]:
        """Get proposal payloads (JSON strings)."""
        query = "SELECT payload FROM proposals"
        params: list = []
        if status:
            query += " WHERE status = ?"
            params.append(status)
        query += " ORDER BY updated_at ASC"

        with self._connect() as conn:
            return [row["payload"] for row in conn.execute(query, params).fetchall()]

    # ========================================================================
    # Generic Query Methods
    # ========================================================================

    def query(self, sql: str, params: tuple = ()) -> list[dict]:
        """Execute a SELECT query and return results as dicts."""
        with self._connect() as conn:
            cursor = conn.execute(sql, params)
            return [dict(row) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        """Count rows in a table."""
        with self._connect() as conn:
            return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
