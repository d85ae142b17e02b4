"""
Core data types shared by the sampler, snapshot store, ranking engine
and notification pipeline.

Samples are recreated every poll cycle; change records and rankings are
recomputed every report cycle and never outlive it.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class Metric(Enum):
    """Metrics sampled per instrument."""
    OPEN_INTEREST = "open_interest"
    PRICE = "price"
    FUNDING_RATE = "funding_rate"


class Side(Enum):
    """Side of a ranking."""
    POSITIVE = "positive"
    NEGATIVE = "negative"


@dataclass(frozen=True)
class MetricSample:
    """
    A single observed value for one instrument.

    auxiliary_value carries a secondary figure the reports display next
    to the instrument (24h quote volume for price samples).
    """
    instrument: str
    metric: Metric
    value: float
    timestamp: datetime
    auxiliary_value: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "instrument": self.instrument,
            "metric": self.metric.value,
            "value": self.value,
            "auxiliary_value": self.auxiliary_value,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class ChangeRecord:
    """Change of one instrument between "current" and a lagged window."""
    instrument: str
    window: str
    current_value: float
    previous_value: float
    absolute_delta: float
    percent_delta: float
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "instrument": self.instrument,
            "window": self.window,
            "current_value": self.current_value,
            "previous_value": self.previous_value,
            "absolute_delta": self.absolute_delta,
            "percent_delta": self.percent_delta,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class RankingResult:
    """Top-K movers of a single window, split by sign."""
    window: str
    metric: Metric
    positive: list[ChangeRecord] = field(default_factory=list)
    negative: list[ChangeRecord] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.positive and not self.negative

    def side(self, side: Side) -> list[ChangeRecord]:
        return self.positive if side == Side.POSITIVE else self.negative


@dataclass
class LevelRanking:
    """Top-K instruments by current level (used for funding rates)."""
    metric: Metric
    positive: list[MetricSample] = field(default_factory=list)
    negative: list[MetricSample] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.positive and not self.negative


@dataclass
class CombinedRow:
    """One instrument across several windows."""
    instrument: str
    current_value: float
    auxiliary_value: Optional[float]
    deltas: dict[str, Optional[float]] = field(default_factory=dict)


@dataclass
class CombinedRanking:
    """
    Multi-window ranking for one side.

    Rows are ordered by the primary (shortest) window's percent delta;
    the other windows are auxiliary columns.
    """
    metric: Metric
    side: Side
    windows: list[str]
    primary_window: str
    rows: list[CombinedRow] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.rows

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric": self.metric.value,
            "side": self.side.value,
            "windows": list(self.windows),
            "primary_window": self.primary_window,
            "rows": [
                {
                    "instrument": row.instrument,
                    "current_value": row.current_value,
                    "auxiliary_value": row.auxiliary_value,
                    "deltas": dict(row.deltas),
                }
                for row in self.rows
            ],
        }


@dataclass
class SampleReport:
    """Outcome of one sampling pass for one metric."""
    metric: Metric
    requested: int = 0
    succeeded: int = 0
    failed: list[str] = field(default_factory=list)

    @property
    def source_unreachable(self) -> bool:
        """True when nothing at all could be fetched."""
        return self.requested > 0 and self.succeeded == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric": self.metric.value,
            "requested": self.requested,
            "succeeded": self.succeeded,
            "failed": len(self.failed),
        }
