"""Notification channel adapters.

Each adapter formats an AlertNotification for its transport and sends it.
Transport problems are raised as ChannelDeliveryFailed; the dispatcher
turns them into per-channel results.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

import httpx
from loguru import logger

from healguard.errors import ChannelDeliveryFailed
from healguard.models import AlertNotification, ChannelConfig, ChannelResult

if TYPE_CHECKING:
    from healguard.db import Database

PRIORITY_EMOJI = {
    "urgent": "🚨",
    "high": "⚠️",
    "normal": "ℹ️",
    "low": "📝",
}


class ChannelAdapter(ABC):
    """Transport for one notification channel."""

    kind: str = "generic"

    def __init__(self, name: str, config: ChannelConfig):
        self.name = name
        self.config = config

    def format(self, notification: AlertNotification) -> Any:
        """Format a notification for this channel. Plain text by default."""
        emoji = PRIORITY_EMOJI.get(notification.priority, "ℹ️")
        parts = [f"{emoji} **HealGuard: {notification.title}**"]
        if notification.body:
            parts.extend(["", notification.body])
        return "\n".join(parts)

    @abstractmethod
    async def send(self, recipients: list[str], content: Any, priority: str) -> ChannelResult:
        """Deliver formatted content.

        Raises:
            ChannelDeliveryFailed: if the transport rejected the message.
        """

    async def close(self) -> None:
        pass


class _HTTPChannel(ChannelAdapter):
    """Shared httpx plumbing for HTTP-backed channels."""

    def __init__(self, name: str, config: ChannelConfig, client: httpx.AsyncClient | None = None):
        super().__init__(name, config)
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {}
            if self.config.token:
                headers["Authorization"] = f"Bearer {self.config.token}"
            self._client = httpx.AsyncClient(headers=headers, timeout=self.config.timeout_seconds)
        return self._client

    async def _post(self, payload: dict) -> httpx.Response:
        if not self.config.url:
            raise ChannelDeliveryFailed(self.name, "Not configured")
        try:
            response = await self._get_client().post(self.config.url, json=payload)
            response.raise_for_status()
            return response
        except httpx.TimeoutException as e:
            raise ChannelDeliveryFailed(self.name, f"timed out: {e}") from e
        except httpx.HTTPStatusError as e:
            raise ChannelDeliveryFailed(self.name, f"HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise ChannelDeliveryFailed(self.name, str(e)) from e

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


class DirectMessageChannel(_HTTPChannel):
    """Email/SMS style delivery through an HTTP relay."""

    kind = "direct"

    def format(self, notification: AlertNotification) -> dict:
        return {
            "subject": notification.title,
            "body": notification.body or notification.title,
        }

    async def send(self, recipients: list[str], content: Any, priority: str) -> ChannelResult:
        if not recipients:
            raise ChannelDeliveryFailed(self.name, "No recipients")

        response = await self._post({**content, "recipients": recipients, "priority": priority})

        message_id = None
        try:
            data = response.json()
            message_id = data.get("message_id") or data.get("id")
        except (json.JSONDecodeError, ValueError, AttributeError):
            pass

        return ChannelResult(channel=self.name, success=True, message_id=message_id)


class BroadcastChannel(_HTTPChannel):
    """Chat webhook delivery.

    Supports various webhook formats:
    - Slack: {"text": "message"}
    - Discord: {"content": "message"}
    - Generic: {"message": "message", "channel": "channel"}
    """

    kind = "broadcast"

    def build_payload(self, text: str) -> dict:
        url = self.config.url or ""
        if "slack.com" in url:
            return {"text": text}
        if "discord.com" in url:
            return {"content": text}
        return {"message": text, "channel": self.name}

    async def send(self, recipients: list[str], content: Any, priority: str) -> ChannelResult:
        await self._post(self.build_payload(str(content)))
        return ChannelResult(channel=self.name, success=True)


class DashboardChannel(ChannelAdapter):
    """Pushes alerts onto the dashboard feed table."""

    kind = "dashboard"

    def __init__(self, name: str, config: ChannelConfig, db: "Database"):
        super().__init__(name, config)
        self.db = db

    def format(self, notification: AlertNotification) -> dict:
        return {
            "alert_id": notification.alert_id,
            "title": notification.title,
            "body": notification.body,
        }

    async def send(self, recipients: list[str], content: Any, priority: str) -> ChannelResult:
        try:
            item_id = self.db.add_dashboard_item(
                title=content["title"],
                body=content.get("body", ""),
                priority=priority,
                alert_id=content.get("alert_id"),
            )
        except Exception as e:
            raise ChannelDeliveryFailed(self.name, str(e)) from e

        logger.debug(f"Dashboard item {item_id} added for alert {content.get('alert_id')}")
        return ChannelResult(channel=self.name, success=True, message_id=str(item_id))


def build_channel(name: str, config: ChannelConfig, db: "Database | None" = None) -> ChannelAdapter:
    """Create the adapter for a configured channel."""
    if config.kind == "direct":
        return DirectMessageChannel(name, config)
    if config.kind == "broadcast":
        return BroadcastChannel(name, config)
    if config.kind == "dashboard":
        if db is None:
            raise ValueError(f"Dashboard channel '{name}' needs a database")
        return DashboardChannel(name, config, db)
    raise ValueError(f"Unknown channel kind for '{name}': {config.kind}")
