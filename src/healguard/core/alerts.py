"""Alert dispatcher.

Fans a notification out to its channels concurrently, records a result per
channel and writes the aggregate outcome back onto the alert. Alerts are
queued durably by the persistence layer and drained from that outbox.
"""

from __future__ import annotations

import asyncio
import sqlite3
from typing import TYPE_CHECKING

from loguru import logger

from healguard.errors import ChannelDeliveryFailed
from healguard.integrations.channels import ChannelAdapter, build_channel
from healguard.models import AlertNotification, ChannelConfig, ChannelResult, NotificationResult

if TYPE_CHECKING:
    from healguard.db import Database


class AlertDispatcher:
    """Delivers alert notifications across independent channels."""

    def __init__(
        self,
        channels: dict[str, ChannelConfig],
        db: "Database | None" = None,
        adapters: dict[str, ChannelAdapter] | None = None,
        max_delivery_attempts: int = 5,
    ):
        self.channels = channels
        self.db = db
        self.max_delivery_attempts = max_delivery_attempts
        self._adapters: dict[str, ChannelAdapter] = dict(adapters or {})

    def _get_adapter(self, name: str, config: ChannelConfig) -> ChannelAdapter:
        adapter = self._adapters.get(name)
        if adapter is None:
            adapter = build_channel(name, config, self.db)
            self._adapters[name] = adapter
        return adapter

    async def _deliver(self, name: str, notification: AlertNotification) -> ChannelResult:
        config = self.channels.get(name)
        if config is None:
            return ChannelResult(channel=name, success=False, error="Not configured")
        if not config.enabled:
            return ChannelResult(channel=name, success=False, error="Channel disabled")

        try:
            adapter = self._get_adapter(name, config)
            content = adapter.format(notification)
            recipients = notification.recipients or config.recipients
            result = await adapter.send(recipients, content, notification.priority)
        except ChannelDeliveryFailed as e:
            logger.warning(f"Failed to send alert {notification.alert_id} via {name}: {e.reason}")
            return ChannelResult(channel=name, success=False, error=e.reason)
        except ValueError as e:
            logger.warning(f"Channel {name} is misconfigured: {e}")
            return ChannelResult(channel=name, success=False, error=str(e))

        logger.info(f"Alert {notification.alert_id} sent via {name}")
        return result

    async def notify(self, notification: AlertNotification) -> NotificationResult:
        """Send a notification to every requested channel."""
        names = list(dict.fromkeys(notification.channels))
        outcomes = await asyncio.gather(
            *(self._deliver(name, notification) for name in names),
            return_exceptions=True,
        )

        results: dict[str, ChannelResult] = {}
        for name, outcome in zip(names, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(f"Channel {name} raised while sending {notification.alert_id}: {outcome}")
                results[name] = ChannelResult(channel=name, success=False, error=str(outcome))
            else:
                results[name] = outcome

        result = NotificationResult(
            alert_id=notification.alert_id,
            success=any(r.success for r in results.values()),
            results=results,
        )

        if not result.success:
            logger.warning(f"Alert {notification.alert_id} was not delivered on any channel")

        self._record_outcome(result)
        return result

    def _record_outcome(self, result: NotificationResult) -> None:
        """Write the delivery outcome back onto the originating alert."""
        if self.db is None:
            return
        try:
            if not self.db.update_alert_notification(result.alert_id, result.model_dump(mode="json")):
                logger.debug(f"No security alert row for {result.alert_id}, outcome not recorded")
        except sqlite3.Error as e:
            logger.warning(f"Failed to record notification outcome for {result.alert_id}: {e}")

    async def dispatch_pending(self, limit: int = 50) -> int:
        """Drain the alert outbox.

        Rows are claimed before sending, so overlapping drains deliver each
        queued alert once.

        Returns:
            Number of queue entries delivered
        """
        if self.db is None:
            return 0

        try:
            pending = self.db.claim_pending_alerts(self.max_delivery_attempts, limit)
        except sqlite3.Error as e:
            logger.warning(f"Failed to claim alert queue entries: {e}")
            return 0

        delivered = 0
        for row in pending:
            notification = AlertNotification(
                alert_id=row["alert_id"] or f"queue_{row['id']}",
                title=row["title"],
                body=row["body"] or "",
                priority=row["priority"] or "normal",
                channels=row["channels"],
            )
            result = await self.notify(notification)

            try:
                if result.success:
                    self.db.mark_alert_delivered(row["id"])
                    delivered += 1
                else:
                    errors = "; ".join(
                        f"{name}: {r.error}" for name, r in result.results.items() if not r.success
                    )
                    self.db.mark_alert_failed(row["id"], errors or "no channels")
            except sqlite3.Error as e:
                logger.warning(f"Failed to update alert queue entry {row['id']}: {e}")

        if pending:
            logger.debug(f"Alert outbox: {delivered}/{len(pending)} delivered")
        return delivered

    async def close(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()
