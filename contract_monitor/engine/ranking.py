"""
Ranking engine.

Splits change records by sign, sorts, truncates to top-K and merges
several windows into one combined report.

Ties are broken by instrument id so rankings are reproducible.
"""

from typing import Iterable, Mapping, Optional
import structlog

from contract_monitor.data.models import (
    ChangeRecord,
    CombinedRanking,
    CombinedRow,
    LevelRanking,
    Metric,
    MetricSample,
    RankingResult,
    Side,
)

logger = structlog.get_logger(__name__)


def _positive_key(record: ChangeRecord) -> tuple:
    return (-record.percent_delta, record.instrument)


def _negative_key(record: ChangeRecord) -> tuple:
    return (record.percent_delta, record.instrument)


class RankingEngine:
    """
    Ranks change records and funding-style levels.

    Default sizes follow the reports: 15 rows for single-window and
    level rankings, 8 for combined multi-window tables.
    """

    def __init__(
        self,
        ranking_size: int = 15,
        combined_size: int = 8,
        per_window_size: int = 10,
    ):
        """
        Initialize ranking engine.

        Args:
            ranking_size: Default K for single-window and level rankings
            combined_size: Default K for combined multi-window rankings
            per_window_size: Rows each window contributes to a combined ranking
        """
        if min(ranking_size, combined_size, per_window_size) < 0:
            raise ValueError("ranking sizes must be non-negative")

        self.ranking_size = ranking_size
        self.combined_size = combined_size
        self.per_window_size = per_window_size

    def rank(
        self,
        records: Iterable[ChangeRecord],
        k: Optional[int] = None,
        window: Optional[str] = None,
        metric: Metric = Metric.OPEN_INTEREST,
    ) -> RankingResult:
        """
        Rank change records of a single window.

        Positive side is sorted descending by percent delta, negative side
        ascending (most negative first). Zero deltas land on neither side.

        Args:
            records: Change records (normally one window's compute output)
            k: Maximum rows per side
            window: Window name for the result (taken from records if omitted)
            metric: Metric the records belong to

        Returns:
            RankingResult with both sides capped at k
        """
        k = self.ranking_size if k is None else k
        records = list(records)

        positive = sorted((r for r in records if r.absolute_delta > 0), key=_positive_key)
        negative = sorted((r for r in records if r.absolute_delta < 0), key=_negative_key)

        if window is None:
            window = records[0].window if records else ""

        return RankingResult(
            window=window,
            metric=metric,
            positive=positive[:k],
            negative=negative[:k],
        )

    def combine(
        self,
        per_window_records: Mapping[str, list[ChangeRecord]],
        side: Side,
        window_order: list[str],
        k: Optional[int] = None,
        per_window_k: Optional[int] = None,
        metric: Metric = Metric.OPEN_INTEREST,
        auxiliary: Optional[Mapping[str, float]] = None,
    ) -> CombinedRanking:
        """
        Merge several windows into one ranking for one side.

        Every window contributes its top per_window_k rows for the side.
        Rows are keyed by instrument and show the instrument's delta in
        every window (None when the window has no record for it). The
        first window in window_order is primary and drives the sort;
        a missing primary delta sorts as 0.

        Args:
            per_window_records: Window -> that window's change records
            side: Which side to build
            window_order: Windows to show, shortest interval first
            k: Maximum rows in the result
            per_window_k: Rows each window contributes
            metric: Metric of the records
            auxiliary: Instrument -> auxiliary column value (e.g. 24h quote volume)

        Returns:
            CombinedRanking
        """
        k = self.combined_size if k is None else k
        per_window_k = self.per_window_size if per_window_k is None else per_window_k
        windows = [w for w in window_order if w in per_window_records]
        auxiliary = auxiliary or {}

        if not windows:
            return CombinedRanking(metric=metric, side=side, windows=[], primary_window="")

        primary = windows[0]

        lookup: dict[str, dict[str, ChangeRecord]] = {
            window: {r.instrument: r for r in per_window_records[window]}
            for window in windows
        }

        members: dict[str, float] = {}
        for window in windows:
            ranked = self.rank(per_window_records[window], k=per_window_k, window=window, metric=metric)
            for record in ranked.side(side):
                members.setdefault(record.instrument, record.current_value)

        rows = []
        for instrument, current_value in members.items():
            deltas = {
                window: (lookup[window][instrument].percent_delta if instrument in lookup[window] else None)
                for window in windows
            }
            rows.append(CombinedRow(
                instrument=instrument,
                current_value=current_value,
                auxiliary_value=auxiliary.get(instrument),
                deltas=deltas,
            ))

        def sort_key(row: CombinedRow) -> tuple:
            primary_delta = row.deltas.get(primary) or 0.0
            if side == Side.POSITIVE:
                return (-primary_delta, row.instrument)
            return (primary_delta, row.instrument)

        rows.sort(key=sort_key)

        logger.debug(
            "combined_ranking_built",
            metric=metric.value,
            side=side.value,
            windows=windows,
            candidates=len(rows),
        )

        return CombinedRanking(
            metric=metric,
            side=side,
            windows=windows,
            primary_window=primary,
            rows=rows[:k],
        )

    def rank_levels(
        self,
        samples: Iterable[MetricSample],
        k: Optional[int] = None,
        metric: Metric = Metric.FUNDING_RATE,
    ) -> LevelRanking:
        """
        Rank instruments by their current value.

        Positive values descending, negative values ascending, zero dropped.
        """
        k = self.ranking_size if k is None else k
        samples = list(samples)

        positive = sorted(
            (s for s in samples if s.value > 0),
            key=lambda s: (-s.value, s.instrument),
        )
        negative = sorted(
            (s for s in samples if s.value < 0),
            key=lambda s: (s.value, s.instrument),
        )

        return LevelRanking(metric=metric, positive=positive[:k], negative=negative[:k])
