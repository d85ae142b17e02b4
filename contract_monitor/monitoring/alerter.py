"""
Alert deduplication gate.

Prevents channel spam by fingerprinting each notification and
suppressing repeats inside the same cooldown bucket.
"""

from collections import OrderedDict
from datetime import datetime, timezone
from typing import Optional
import hashlib
import json
import math
import structlog

logger = structlog.get_logger(__name__)


class AlertDedupGate:
    """
    Fingerprint-based deduplication with fixed-width time buckets.

    fingerprint = md5(title, description, channel, floor(now / cooldown))

    Two identical notifications in the same bucket produce one delivery;
    the same notification in the next bucket goes out again.

    The cache is bounded. When it grows past capacity the oldest half is
    evicted in one batch. This is not strict LRU.
    """

    def __init__(
        self,
        cooldown_seconds: float = 300,  # 5 minutes
        capacity: int = 100,
    ):
        """
        Initialize dedup gate.

        Args:
            cooldown_seconds: Width of a dedup bucket
            capacity: Maximum fingerprints kept before batch eviction
        """
        if cooldown_seconds <= 0:
            raise ValueError("cooldown_seconds must be positive")
        if capacity < 1:
            raise ValueError("capacity must be at least 1")

        self.cooldown_seconds = cooldown_seconds
        self.capacity = capacity

        # Insertion ordered: fingerprint -> time first seen
        self._seen: "OrderedDict[str, datetime]" = OrderedDict()

        logger.info(
            "alert_dedup_gate_initialized",
            cooldown_seconds=cooldown_seconds,
            capacity=capacity,
        )

    def __len__(self) -> int:
        return len(self._seen)

    def bucket(self, now: datetime) -> int:
        """Time bucket index of a moment."""
        return math.floor(now.timestamp() / self.cooldown_seconds)

    def fingerprint(
        self,
        title: str,
        description: str,
        channel: str,
        now: Optional[datetime] = None,
    ) -> str:
        """Derive the dedup key of a notification."""
        now = now or datetime.now(timezone.utc)
        content = json.dumps(
            {
                "title": title,
                "description": description,
                "channel": channel,
                "bucket": self.bucket(now),
            },
            sort_keys=True,
            ensure_ascii=False,
        )
        return hashlib.md5(content.encode("utf-8")).hexdigest()

    def should_send(
        self,
        title: str,
        description: str,
        channel: str,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Check and record a notification.

        Returns:
            False if the fingerprint was already seen, else True (and the
            fingerprint is recorded)
        """
        now = now or datetime.now(timezone.utc)
        key = self.fingerprint(title, description, channel, now)

        if key in self._seen:
            logger.debug("alert_deduplicated", title=title[:50], channel=channel)
            return False

        self._seen[key] = now
        self._evict_if_full()
        return True

    def release(
        self,
        title: str,
        description: str,
        channel: str,
        now: Optional[datetime] = None,
    ) -> None:
        """Forget a fingerprint so the notification may be retried."""
        key = self.fingerprint(title, description, channel, now)
        self._seen.pop(key, None)

    def _evict_if_full(self) -> None:
        """Drop the oldest half of the cache once it exceeds capacity."""
        if len(self._seen) <= self.capacity:
            return

        evict = max(1, self.capacity // 2)
        for _ in range(evict):
            self._seen.popitem(last=False)

        logger.debug("dedup_cache_evicted", evicted=evict, remaining=len(self._seen))
