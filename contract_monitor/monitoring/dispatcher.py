"""
Notification dispatcher.

Routes notifications to the sink registered for their channel.
Supports Discord webhooks and a log-only sink for dry runs.

A channel without a sink is a no-op with a warning, so a deployment can
configure only some channels. One sink failing never stops the others.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Iterable, Mapping, Optional, Protocol
import structlog

import httpx

from contract_monitor.errors import DispatchError
from contract_monitor.monitoring.alerter import AlertDedupGate
from contract_monitor.monitoring.notification import Channel, Notification

logger = structlog.get_logger(__name__)


# Discord rejects embed descriptions above this length
DISCORD_DESCRIPTION_LIMIT = 4096


class Sink(Protocol):
    """Delivery transport for one channel."""

    async def send(self, notification: Notification) -> None:
        ...


class LogSink:
    """Sink that only logs. Used for dry runs."""

    def __init__(self, name: str = "log"):
        self.name = name
        self.sent: list[Notification] = []

    async def send(self, notification: Notification) -> None:
        self.sent.append(notification)
        logger.info(
            "notification_logged",
            sink=self.name,
            channel=notification.channel.value,
            title=notification.title,
            table=notification.table,
        )


class DiscordWebhookSink:
    """
    Discord webhook transport.

    Enforces a minimum spacing between posts to the same webhook to stay
    under Discord's rate limits.
    """

    def __init__(
        self,
        webhook_url: str,
        client: Optional[httpx.AsyncClient] = None,
        min_interval_seconds: float = 1.0,
        username: str = "Contract Monitor",
        timeout_seconds: float = 10.0,
    ):
        """
        Initialize Discord sink.

        Args:
            webhook_url: Discord webhook URL
            client: Shared HTTP client (one is created if omitted)
            min_interval_seconds: Minimum spacing between posts
            username: Display name of the webhook bot
            timeout_seconds: Request timeout
        """
        self.webhook_url = webhook_url
        self.client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self.min_interval = min_interval_seconds
        self.username = username
        self._last_sent: Optional[float] = None

    async def send(self, notification: Notification) -> None:
        await self._respect_rate_limit()

        try:
            response = await self.client.post(self.webhook_url, json=self.build_payload(notification))
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise DispatchError(f"discord webhook failed: {e}", channel=notification.channel.value) from e
        finally:
            # Failed attempts count against the spacing too
            self._last_sent = time.monotonic()

        logger.debug("discord_notification_sent", title=notification.title)

    def build_payload(self, notification: Notification) -> dict:
        """Build the webhook JSON body."""
        description = notification.table
        if len(description) > DISCORD_DESCRIPTION_LIMIT:
            description = description[: DISCORD_DESCRIPTION_LIMIT - 4] + "\n```"

        embed = {
            "title": notification.title,
            "description": description,
            "color": notification.color,
            "timestamp": notification.timestamp.isoformat(),
        }
        if notification.footer:
            embed["footer"] = {"text": notification.footer}

        return {"username": self.username, "embeds": [embed]}

    async def _respect_rate_limit(self) -> None:
        if self._last_sent is None:
            return
        wait = self.min_interval - (time.monotonic() - self._last_sent)
        if wait > 0:
            await asyncio.sleep(wait)

    async def aclose(self) -> None:
        await self.client.aclose()


class NotificationDispatcher:
    """
    Dispatches notifications through the dedup gate to channel sinks.

    Lookup order: the channel's own sink, then the DEFAULT sink when
    fallback is enabled, else a warning (logged once per channel).
    """

    def __init__(
        self,
        gate: Optional[AlertDedupGate] = None,
        sinks: Optional[Mapping[Channel, Sink]] = None,
        fallback_to_default: bool = True,
    ):
        """
        Initialize dispatcher.

        Args:
            gate: Dedup gate (a default 5 minute gate if omitted)
            sinks: Channel -> sink
            fallback_to_default: Route unmapped channels to the DEFAULT sink
        """
        self.gate = gate or AlertDedupGate()
        self.sinks: dict[Channel, Sink] = dict(sinks or {})
        self.fallback_to_default = fallback_to_default

        self._warned_channels: set[Channel] = set()
        self.sent_count = 0
        self.failed_count = 0

        logger.info(
            "notification_dispatcher_initialized",
            channels=[c.value for c in self.sinks],
            fallback_to_default=fallback_to_default,
        )

    def register(self, channel: Channel, sink: Sink) -> None:
        self.sinks[channel] = sink
        self._warned_channels.discard(channel)

    def resolve(self, channel: Channel) -> Optional[Sink]:
        """Sink that would receive notifications for a channel."""
        sink = self.sinks.get(channel)
        if sink is None and self.fallback_to_default:
            sink = self.sinks.get(Channel.DEFAULT)
        return sink

    async def dispatch(
        self,
        notification: Notification,
        now: Optional[datetime] = None,
        force: bool = False,
    ) -> bool:
        """
        Dispatch one notification.

        Args:
            notification: Notification to send
            now: Current time (drives the dedup bucket)
            force: Bypass deduplication (system alerts)

        Returns:
            True if a sink accepted the notification
        """
        now = now or datetime.now(timezone.utc)
        channel = notification.channel

        sink = self.resolve(channel)
        if sink is None:
            if channel not in self._warned_channels:
                self._warned_channels.add(channel)
                logger.warning("channel_not_configured", channel=channel.value)
            return False

        if not force and not self.gate.should_send(
            notification.title, notification.table, channel.value, now
        ):
            return False

        try:
            await sink.send(notification)
        except Exception as e:
            self.failed_count += 1
            # Let the next cycle retry
            if not force:
                self.gate.release(notification.title, notification.table, channel.value, now)
            logger.error(
                "notification_dispatch_failed",
                channel=channel.value,
                title=notification.title,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

        self.sent_count += 1
        logger.info("notification_dispatched", channel=channel.value, title=notification.title)
        return True

    async def dispatch_all(
        self,
        notifications: Iterable[Notification],
        now: Optional[datetime] = None,
        spacing_seconds: float = 0.0,
    ) -> list[bool]:
        """
        Dispatch several notifications in order.

        Each one is isolated: a failure is logged and the rest still go out.
        """
        results = []
        for i, notification in enumerate(notifications):
            if i and spacing_seconds > 0:
                await asyncio.sleep(spacing_seconds)
            results.append(await self.dispatch(notification, now=now))
        return results

    async def aclose(self) -> None:
        """Close sinks that hold connections."""
        closed = set()
        for sink in self.sinks.values():
            if id(sink) in closed:
                continue
            closed.add(id(sink))
            close = getattr(sink, "aclose", None)
            if close is not None:
                await close()
