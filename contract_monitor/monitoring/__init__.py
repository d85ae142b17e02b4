"""
Notification module.

Handles:
- Alert deduplication (fingerprint per cooldown bucket)
- Table formatting
- Channel routing to webhook sinks
"""

from contract_monitor.monitoring.alerter import AlertDedupGate
from contract_monitor.monitoring.dispatcher import (
    DiscordWebhookSink,
    LogSink,
    NotificationDispatcher,
    Sink,
)
from contract_monitor.monitoring.formatter import NotificationFormatter
from contract_monitor.monitoring.notification import Channel, Notification

__all__ = [
    "AlertDedupGate",
    "Channel",
    "DiscordWebhookSink",
    "LogSink",
    "Notification",
    "NotificationDispatcher",
    "NotificationFormatter",
    "Sink",
]
