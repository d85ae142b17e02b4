"""
Rolling snapshot store.

Keeps "current" plus one lagged snapshot per window (5m/15m/1h/4h/1d).
Each window has its own roll timer, so a slow polling loop never rolls a
window early and windows never wait on each other.

Roll timer per window:
    PENDING -> DUE (interval elapsed) -> roll -> PENDING

Windows always roll directly from "current". They never chain from the
next-shorter window's snapshot.
"""

from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Iterable, Mapping, Optional
import structlog

from contract_monitor.data.models import Metric, MetricSample
from contract_monitor.errors import DataAbsentError

logger = structlog.get_logger(__name__)


CURRENT = "current"

DEFAULT_WINDOW_INTERVALS: dict[str, float] = {
    "5m": 5 * 60,
    "15m": 15 * 60,
    "1h": 60 * 60,
    "4h": 4 * 60 * 60,
    "1d": 24 * 60 * 60,
}


class RollState(Enum):
    """Roll timer state of a single window."""
    PENDING = "pending"
    DUE = "due"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SnapshotStore:
    """
    Snapshots of one metric across all configured windows.

    The store is exclusively owned by the monitor. Consumers read copies;
    only update() and maybe_roll() mutate it.
    """

    def __init__(
        self,
        metric: Metric,
        window_intervals: Optional[Mapping[str, float]] = None,
    ):
        """
        Initialize snapshot store.

        Args:
            metric: Metric held by this store
            window_intervals: Window name -> roll interval in seconds
        """
        intervals = dict(window_intervals or DEFAULT_WINDOW_INTERVALS)
        if CURRENT in intervals:
            raise ValueError(f"{CURRENT!r} is reserved and cannot be a window name")
        for window, seconds in intervals.items():
            if seconds <= 0:
                raise ValueError(f"interval for window {window!r} must be positive")

        self.metric = metric
        self.intervals = intervals

        self._current: dict[str, MetricSample] = {}
        self._snapshots: dict[str, dict[str, MetricSample]] = {w: {} for w in intervals}
        self._last_roll: dict[str, Optional[datetime]] = {w: None for w in intervals}

        logger.debug(
            "snapshot_store_initialized",
            metric=metric.value,
            windows=list(intervals),
        )

    @property
    def windows(self) -> list[str]:
        """Window names ordered from shortest to longest interval."""
        return sorted(self.intervals, key=lambda w: (self.intervals[w], w))

    # =========================================================================
    # Mutation
    # =========================================================================

    def update(self, instrument: str, sample: MetricSample) -> None:
        """
        Overwrite the current value of one instrument.

        Last writer wins. Other instruments are never touched, so out of
        order completions within a batch are harmless.
        """
        self._current[instrument] = sample

    def maybe_roll(self, window: str, now: Optional[datetime] = None) -> bool:
        """
        Roll "current" into the window's snapshot if its interval elapsed.

        A window that never rolled is due as soon as "current" holds data,
        which captures the startup baseline.

        Returns:
            True if the window rolled, False if this was a no-op
        """
        now = now or utc_now()

        if self.state(window, now) != RollState.DUE:
            return False

        self._snapshots[window] = dict(self._current)
        self._last_roll[window] = now

        logger.debug(
            "snapshot_rolled",
            metric=self.metric.value,
            window=window,
            instruments=len(self._current),
        )
        return True

    def maybe_roll_all(self, now: Optional[datetime] = None) -> list[str]:
        """Give every window a chance to roll. Returns the rolled windows."""
        now = now or utc_now()
        return [w for w in self.windows if self.maybe_roll(w, now)]

    # =========================================================================
    # Queries
    # =========================================================================

    def state(self, window: str, now: Optional[datetime] = None) -> RollState:
        """Current roll timer state of a window."""
        interval = self._interval(window)
        last = self._last_roll[window]

        if last is None:
            return RollState.DUE if self._current else RollState.PENDING

        now = now or utc_now()
        elapsed = (now - last).total_seconds()
        return RollState.DUE if elapsed >= interval else RollState.PENDING

    def is_warm(self, window: str) -> bool:
        """True once the window has rolled at least once."""
        self._interval(window)
        return self._last_roll[window] is not None

    def last_roll_time(self, window: str) -> Optional[datetime]:
        self._interval(window)
        return self._last_roll[window]

    def current(self) -> Mapping[str, MetricSample]:
        """Read-only view of the current values."""
        return MappingProxyType(dict(self._current))

    def snapshot(self, window: str) -> Mapping[str, MetricSample]:
        """
        Read-only view of a lagged snapshot.

        Raises:
            DataAbsentError: If the window is still warming up
        """
        if not self.is_warm(window):
            raise DataAbsentError(window)
        return MappingProxyType(dict(self._snapshots[window]))

    def auxiliary_values(self) -> dict[str, float]:
        """Auxiliary value of every current sample that has one."""
        return {
            instrument: sample.auxiliary_value
            for instrument, sample in self._current.items()
            if sample.auxiliary_value is not None
        }

    def status(self) -> dict:
        return {
            "metric": self.metric.value,
            "instruments": len(self._current),
            "windows": {
                w: {
                    "warm": self._last_roll[w] is not None,
                    "instruments": len(self._snapshots[w]),
                    "last_roll": self._last_roll[w].isoformat() if self._last_roll[w] else None,
                }
                for w in self.windows
            },
        }

    def _interval(self, window: str) -> float:
        try:
            return self.intervals[window]
        except KeyError:
            raise KeyError(f"unknown window {window!r}") from None


class SnapshotBook:
    """
    One SnapshotStore per sampled metric, sharing a window set.

    Constructed once at startup and passed to every consumer.
    """

    def __init__(
        self,
        metrics: Iterable[Metric],
        window_intervals: Optional[Mapping[str, float]] = None,
    ):
        self._stores: dict[Metric, SnapshotStore] = {
            metric: SnapshotStore(metric, window_intervals) for metric in metrics
        }

        logger.info(
            "snapshot_book_initialized",
            metrics=[m.value for m in self._stores],
            windows=list(window_intervals or DEFAULT_WINDOW_INTERVALS),
        )

    @property
    def metrics(self) -> list[Metric]:
        return list(self._stores)

    def store(self, metric: Metric) -> SnapshotStore:
        try:
            return self._stores[metric]
        except KeyError:
            raise KeyError(f"metric {metric.value!r} is not sampled") from None

    def update(self, metric: Metric, instrument: str, sample: MetricSample) -> None:
        self.store(metric).update(instrument, sample)

    def maybe_roll_all(self, now: Optional[datetime] = None) -> dict[Metric, list[str]]:
        now = now or utc_now()
        rolled = {metric: store.maybe_roll_all(now) for metric, store in self._stores.items()}

        if any(rolled.values()):
            logger.info(
                "snapshots_rolled",
                rolled={m.value: w for m, w in rolled.items() if w},
            )
        return rolled

    def status(self) -> dict:
        return {metric.value: store.status() for metric, store in self._stores.items()}
