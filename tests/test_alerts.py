"""Tests for alert channels and the alert dispatcher."""

import asyncio
import json
import tempfile
from pathlib import Path

import httpx
import pytest

from healguard.core.alerts import AlertDispatcher
from healguard.core.audit import AuditLogger
from healguard.core.persistence import AuditPersistence
from healguard.core.versions import VersionManifest
from healguard.db import Database
from healguard.errors import ChannelDeliveryFailed
from healguard.integrations.channels import (
    BroadcastChannel,
    ChannelAdapter,
    DashboardChannel,
    DirectMessageChannel,
    build_channel,
)
from healguard.models import (
    AlertNotification,
    AlertsConfig,
    ChannelConfig,
    ChannelResult,
    DetectedIssue,
    HealingAction,
    IssueSignature,
    Severity,
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


def mock_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def make_notification(channels, **kwargs):
    return AlertNotification(alert_id="alert_test", title="Auth failures", body="details", channels=channels, **kwargs)


class TestChannels:
    """Tests for channel adapters."""

    def test_build_channel(self, temp_db):
        assert isinstance(build_channel("email", ChannelConfig(kind="direct")), DirectMessageChannel)
        assert isinstance(build_channel("chat", ChannelConfig(kind="broadcast")), BroadcastChannel)
        assert isinstance(build_channel("feed", ChannelConfig(kind="dashboard"), temp_db), DashboardChannel)

    def test_build_channel_rejects_unknown_kind(self):
        with pytest.raises(ValueError):
            build_channel("pager", ChannelConfig(kind="carrier_pigeon"))

    def test_dashboard_needs_db(self):
        with pytest.raises(ValueError):
            build_channel("feed", ChannelConfig(kind="dashboard"))

    @pytest.mark.parametrize(
        "url,key",
        [
            ("https://hooks.slack.com/services/x", "text"),
            ("https://discord.com/api/webhooks/x", "content"),
            ("https://chat.example.com/hook", "message"),
        ],
    )
    def test_broadcast_payload_format(self, url, key):
        channel = BroadcastChannel("chat", ChannelConfig(kind="broadcast", url=url))
        assert key in channel.build_payload("hello")

    @pytest.mark.asyncio
    async def test_direct_message_sends(self):
        seen = {}

        def handler(request):
            seen.update(json.loads(request.content))
            return httpx.Response(200, json={"message_id": "m-1"})

        channel = DirectMessageChannel(
            "email", ChannelConfig(kind="direct", url="https://relay.example.com/send"), client=mock_client(handler)
        )
        notification = make_notification(["email"])
        result = await channel.send(["ops@example.com"], channel.format(notification), "urgent")

        assert result.success is True
        assert result.message_id == "m-1"
        assert seen["recipients"] == ["ops@example.com"]
        assert seen["subject"] == "Auth failures"

    @pytest.mark.asyncio
    async def test_direct_message_without_recipients(self):
        channel = DirectMessageChannel("email", ChannelConfig(kind="direct", url="https://relay.example.com"))
        with pytest.raises(ChannelDeliveryFailed, match="No recipients"):
            await channel.send([], {"subject": "x", "body": "y"}, "normal")

    @pytest.mark.asyncio
    async def test_http_error_raises_delivery_failed(self):
        channel = BroadcastChannel(
            "chat",
            ChannelConfig(kind="broadcast", url="https://chat.example.com/hook"),
            client=mock_client(lambda request: httpx.Response(503)),
        )
        with pytest.raises(ChannelDeliveryFailed, match="HTTP 503"):
            await channel.send([], "text", "normal")

    @pytest.mark.asyncio
    async def test_dashboard_writes_feed(self, temp_db):
        channel = DashboardChannel("dashboard", ChannelConfig(kind="dashboard"), temp_db)
        notification = make_notification(["dashboard"])
        result = await channel.send([], channel.format(notification), "high")

        assert result.success is True
        feed = temp_db.get_dashboard_feed()
        assert feed[0]["title"] == "Auth failures"
        assert feed[0]["alert_id"] == "alert_test"
        assert result.message_id == str(feed[0]["id"])


class TestAlertDispatcher:
    """Tests for AlertDispatcher."""

    @pytest.mark.asyncio
    async def test_one_healthy_channel_is_enough(self, temp_db):
        """A misconfigured channel does not fail the whole notification."""
        dispatcher = AlertDispatcher(
            {"email": ChannelConfig(kind="direct"), "dashboard": ChannelConfig(kind="dashboard")},
            db=temp_db,
        )
        result = await dispatcher.notify(
            make_notification(["email", "dashboard"], recipients=["ops@example.com"])
        )

        assert result.success is True
        assert result.results["email"].success is False
        assert result.results["email"].error == "Not configured"
        assert result.results["dashboard"].success is True

    @pytest.mark.asyncio
    async def test_unknown_and_disabled_channels(self):
        dispatcher = AlertDispatcher({"chat": ChannelConfig(kind="broadcast", enabled=False)})
        result = await dispatcher.notify(make_notification(["chat", "pager"]))

        assert result.success is False
        assert result.results["chat"].error == "Channel disabled"
        assert result.results["pager"].error == "Not configured"

    @pytest.mark.asyncio
    async def test_outcome_written_back_to_alert(self, temp_db):
        audit = AuditLogger(VersionManifest(), persistence=AuditPersistence(temp_db))
        outcome = audit.log_blocked_action(
            DetectedIssue(signature=IssueSignature(category="security"), severity=Severity.CRITICAL),
            HealingAction(strategy="security_lockdown"),
            "requires approval",
        )
        dispatcher = AlertDispatcher(AlertsConfig().channels, db=temp_db)

        delivered = await dispatcher.dispatch_pending()

        assert delivered == 1
        stored = temp_db.get_security_alert(outcome.alert.id)
        assert stored["notification"]["success"] is True
        assert stored["notification"]["results"]["email"]["error"] == "Not configured"
        assert temp_db.get_pending_alerts(max_attempts=5) == []

    @pytest.mark.asyncio
    async def test_outbox_retries_failed_delivery(self, temp_db):
        calls = {"count": 0}

        def flaky(request):
            calls["count"] += 1
            return httpx.Response(500 if calls["count"] == 1 else 200)

        channels = {"chat": ChannelConfig(kind="broadcast", url="https://chat.example.com/hook")}
        alerts = AlertsConfig(channels=channels, primary="chat", secondary="chat", dashboard="chat")
        audit = AuditLogger(VersionManifest(), persistence=AuditPersistence(temp_db, alerts=alerts))
        audit.log_blocked_action(
            DetectedIssue(signature=IssueSignature(category="api_error")), HealingAction(strategy="auto_patch"), "x"
        )
        adapter = BroadcastChannel("chat", channels["chat"], client=mock_client(flaky))
        dispatcher = AlertDispatcher(channels, db=temp_db, adapters={"chat": adapter})

        assert await dispatcher.dispatch_pending() == 0
        row = temp_db.query("SELECT status, attempts, last_error FROM alert_queue")[0]
        assert row["status"] == "failed"
        assert row["attempts"] == 1
        assert "HTTP 500" in row["last_error"]

        assert await dispatcher.dispatch_pending() == 1
        assert await dispatcher.dispatch_pending() == 0
        assert calls["count"] == 2

    @pytest.mark.asyncio
    async def test_outbox_gives_up_after_max_attempts(self, temp_db):
        channels = {"chat": ChannelConfig(kind="broadcast")}
        alerts = AlertsConfig(channels=channels, primary="chat", secondary="chat", dashboard="chat")
        audit = AuditLogger(VersionManifest(), persistence=AuditPersistence(temp_db, alerts=alerts))
        audit.log_blocked_action(
            DetectedIssue(signature=IssueSignature(category="api_error")), HealingAction(strategy="auto_patch"), "x"
        )
        dispatcher = AlertDispatcher(channels, db=temp_db, max_delivery_attempts=2)

        for _ in range(3):
            await dispatcher.dispatch_pending()

        row = temp_db.query("SELECT attempts FROM alert_queue")[0]
        assert row["attempts"] == 2

    @pytest.mark.asyncio
    async def test_no_db_is_a_noop(self):
        assert await AlertDispatcher({}).dispatch_pending() == 0

    @pytest.mark.asyncio
    async def test_concurrent_drains_send_once(self, temp_db):
        """Overlapping drains each claim rows, so a queued alert goes out once."""
        sends = []

        class SlowChannel(ChannelAdapter):
            kind = "broadcast"

            async def send(self, recipients, content, priority):
                sends.append(content)
                await asyncio.sleep(0.05)
                return ChannelResult(channel=self.name, success=True)

        channels = {"chat": ChannelConfig(kind="broadcast")}
        alerts = AlertsConfig(channels=channels, primary="chat", secondary="chat", dashboard="chat")
        audit = AuditLogger(VersionManifest(), persistence=AuditPersistence(temp_db, alerts=alerts))
        audit.log_blocked_action(
            DetectedIssue(signature=IssueSignature(category="api_error")), HealingAction(strategy="auto_patch"), "x"
        )
        dispatcher = AlertDispatcher(channels, db=temp_db, adapters={"chat": SlowChannel("chat", channels["chat"])})

        counts = await asyncio.gather(dispatcher.dispatch_pending(), dispatcher.dispatch_pending())

        assert sorted(counts) == [0, 1]
        assert len(sends) == 1
        row = temp_db.query("SELECT status, attempts FROM alert_queue")[0]
        assert row["status"] == "delivered"
        assert row["attempts"] == 1

    def test_stale_claim_is_reclaimed(self, temp_db):
        audit = AuditLogger(VersionManifest(), persistence=AuditPersistence(temp_db))
        audit.log_blocked_action(
            DetectedIssue(signature=IssueSignature(category="api_error")), HealingAction(strategy="auto_patch"), "x"
        )

        assert len(temp_db.claim_pending_alerts(max_attempts=5)) == 1
        assert temp_db.claim_pending_alerts(max_attempts=5) == []
        assert len(temp_db.claim_pending_alerts(max_attempts=5, lease_seconds=-1)) == 1
