"""
Change calculation between "current" and a lagged window.

Pure and deterministic: no I/O, output ordered by instrument id.
"""

from dataclasses import dataclass
from typing import Optional
import structlog

from contract_monitor.data.models import ChangeRecord
from contract_monitor.engine.snapshot_store import SnapshotStore
from contract_monitor.errors import DataAbsentError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class MaterialityThresholds:
    """
    Minimum change for a record to be eligible for ranking.

    A record is material if |percent| > percent OR (absolute is set and
    |absolute delta| > absolute).
    """
    percent: float = 1.0
    absolute: Optional[float] = None

    def is_material(self, absolute_delta: float, percent_delta: float) -> bool:
        if abs(percent_delta) > self.percent:
            return True
        if self.absolute is not None and abs(absolute_delta) > self.absolute:
            return True
        return False


class ChangeCalculator:
    """Computes absolute and percent deltas for one window at a time."""

    def __init__(self, thresholds: Optional[MaterialityThresholds] = None):
        self.thresholds = thresholds or MaterialityThresholds()

    def compute(self, store: SnapshotStore, window: str) -> list[ChangeRecord]:
        """
        Compute change records for a window.

        Only instruments present in both "current" and the window's
        snapshot are considered. Records with a non-positive previous
        value or an immaterial change are dropped.

        Args:
            store: Snapshot store of the metric
            window: Window name (e.g. "15m")

        Returns:
            Change records ordered by instrument id; empty while warming up
        """
        try:
            previous_snapshot = store.snapshot(window)
        except DataAbsentError:
            logger.debug("window_warming_up", metric=store.metric.value, window=window)
            return []

        current_snapshot = store.current()
        records = []
        dropped_guard = 0

        for instrument in sorted(current_snapshot.keys() & previous_snapshot.keys()):
            current = current_snapshot[instrument]
            previous = previous_snapshot[instrument]

            # Divide-by-zero guard
            if previous.value <= 0:
                dropped_guard += 1
                continue

            absolute_delta = current.value - previous.value
            percent_delta = absolute_delta / previous.value * 100

            if not self.thresholds.is_material(absolute_delta, percent_delta):
                continue

            records.append(ChangeRecord(
                instrument=instrument,
                window=window,
                current_value=current.value,
                previous_value=previous.value,
                absolute_delta=absolute_delta,
                percent_delta=percent_delta,
                timestamp=current.timestamp,
            ))

        logger.debug(
            "changes_computed",
            metric=store.metric.value,
            window=window,
            records=len(records),
            dropped_non_positive=dropped_guard,
        )
        return records

    def compute_all(self, store: SnapshotStore, windows: list[str]) -> dict[str, list[ChangeRecord]]:
        return {window: self.compute(store, window) for window in windows}
