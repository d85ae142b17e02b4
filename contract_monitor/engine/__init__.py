"""
Change detection engine.

- SnapshotStore / SnapshotBook: rolling per-window snapshots
- ChangeCalculator: deltas against a window with materiality guards
- RankingEngine: top-K per side, multi-window merge, level rankings
"""

from contract_monitor.engine.snapshot_store import (
    CURRENT,
    DEFAULT_WINDOW_INTERVALS,
    RollState,
    SnapshotBook,
    SnapshotStore,
)
from contract_monitor.engine.change_calculator import ChangeCalculator, MaterialityThresholds
from contract_monitor.engine.ranking import RankingEngine

__all__ = [
    "CURRENT",
    "DEFAULT_WINDOW_INTERVALS",
    "RollState",
    "SnapshotBook",
    "SnapshotStore",
    "ChangeCalculator",
    "MaterialityThresholds",
    "RankingEngine",
]
