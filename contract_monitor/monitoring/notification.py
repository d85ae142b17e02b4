"""
Notification payload and channel set.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class Channel(Enum):
    """Notification channels. Each may map to its own sink."""
    FUNDING_RATE = "funding_rate"
    POSITION = "position"
    PRICE_ALERT = "price_alert"
    SWING_STRATEGY = "swing_strategy"
    DEFAULT = "default"


class Color:
    """Embed colors."""
    POSITION = 0x9B59B6
    PRICE = 0x1F8B4C
    FUNDING = 0x3498DB
    WARNING = 0xFF9900
    CRITICAL = 0xFF0000
    STARTUP = 0x00FF00


@dataclass
class Notification:
    """
    A rendered report ready for dispatch.

    table is the fixed-width body; it doubles as the description part of
    the dedup fingerprint.
    """
    channel: Channel
    title: str
    table: str
    color: int = Color.FUNDING
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    footer: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel.value,
            "title": self.title,
            "table": self.table,
            "timestamp": self.timestamp.isoformat(),
        }
