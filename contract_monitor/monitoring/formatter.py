"""
Report formatting.

Renders rankings as fixed-width tables inside Markdown code blocks so
columns stay aligned in chat clients.

Column order is fixed: rank, instrument, auxiliary metric, then one delta
column per window (shortest first).
"""

from datetime import datetime, timezone
from typing import Mapping, Optional

import pytz

from contract_monitor.data.models import (
    CombinedRanking,
    LevelRanking,
    Metric,
    RankingResult,
    Side,
)
from contract_monitor.monitoring.notification import Channel, Color, Notification


METRIC_LABELS = {
    Metric.OPEN_INTEREST: "Open Interest",
    Metric.PRICE: "Price",
    Metric.FUNDING_RATE: "Funding Rate",
}

RANK_WIDTH = 4
SYMBOL_WIDTH = 14
NUMBER_WIDTH = 10
PERCENT_WIDTH = 9
RATE_WIDTH = 10

# Auxiliary column: 24h quote volume from the ticker
AUX_LABEL = "Vol 24h"


def format_number(value: Optional[float]) -> str:
    """Compact number with B/M/K suffix."""
    if value is None:
        return "-"
    magnitude = abs(value)
    if magnitude >= 1e9:
        return f"{value / 1e9:.2f}B"
    if magnitude >= 1e6:
        return f"{value / 1e6:.2f}M"
    if magnitude >= 1e3:
        return f"{value / 1e3:.2f}K"
    return f"{value:.2f}"


def format_percent(value: Optional[float]) -> str:
    """Signed percent with two decimals, "-" when missing."""
    if value is None:
        return "-"
    if value == 0:
        return "0.00%"
    return f"{value:+.2f}%"


def format_rate(value: float) -> str:
    """Funding rate (a fraction) as a percent with four decimals."""
    return f"{value * 100:.4f}%"


def _code_block(lines: list[str]) -> str:
    return "```\n" + "\n".join(lines) + "\n```"


def _separator(widths: list[int]) -> str:
    return "-+-".join("-" * w for w in widths)


class NotificationFormatter:
    """Builds tables and wraps them in notifications."""

    def __init__(self, display_timezone: str = "Asia/Shanghai"):
        """
        Initialize formatter.

        Args:
            display_timezone: Timezone used for report footers
        """
        self.tz = pytz.timezone(display_timezone)

    # =========================================================================
    # Tables
    # =========================================================================

    def format_combined(self, ranking: CombinedRanking) -> str:
        """Multi-window table for one side of a metric."""
        headers = ["Rank", "Symbol", AUX_LABEL] + [w for w in ranking.windows]
        widths = [RANK_WIDTH, SYMBOL_WIDTH, NUMBER_WIDTH] + [PERCENT_WIDTH] * len(ranking.windows)

        lines = [
            " | ".join(self._cell(h, w, i) for i, (h, w) in enumerate(zip(headers, widths))),
            _separator(widths),
        ]

        for position, row in enumerate(ranking.rows, start=1):
            cells = [
                str(position).rjust(RANK_WIDTH),
                row.instrument.ljust(SYMBOL_WIDTH),
                format_number(row.auxiliary_value).rjust(NUMBER_WIDTH),
            ]
            cells += [format_percent(row.deltas.get(w)).rjust(PERCENT_WIDTH) for w in ranking.windows]
            lines.append(" | ".join(cells))

        return _code_block(lines)

    def format_ranking(
        self,
        result: RankingResult,
        auxiliary: Optional[Mapping[str, float]] = None,
    ) -> str:
        """Single-window table with the positive side followed by the negative side."""
        auxiliary = auxiliary or {}
        headers = ["Rank", "Symbol", AUX_LABEL, "Current", "Change", result.window]
        widths = [RANK_WIDTH, SYMBOL_WIDTH, NUMBER_WIDTH, NUMBER_WIDTH, NUMBER_WIDTH, PERCENT_WIDTH]
        header = " | ".join(self._cell(h, w, i) for i, (h, w) in enumerate(zip(headers, widths)))

        lines = []
        for side in (Side.POSITIVE, Side.NEGATIVE):
            records = result.side(side)
            if not records:
                continue
            if lines:
                lines.append("")
            lines += [f"[{side.value}]", header, _separator(widths)]
            for position, record in enumerate(records, start=1):
                lines.append(" | ".join([
                    str(position).rjust(RANK_WIDTH),
                    record.instrument.ljust(SYMBOL_WIDTH),
                    format_number(auxiliary.get(record.instrument)).rjust(NUMBER_WIDTH),
                    format_number(record.current_value).rjust(NUMBER_WIDTH),
                    format_number(record.absolute_delta).rjust(NUMBER_WIDTH),
                    format_percent(record.percent_delta).rjust(PERCENT_WIDTH),
                ]))

        return _code_block(lines)

    def format_levels(self, ranking: LevelRanking) -> str:
        """Side-by-side table: positive levels || negative levels."""
        half_widths = [RANK_WIDTH, SYMBOL_WIDTH, RATE_WIDTH]
        half_header = " | ".join(
            self._cell(h, w, i) for i, (h, w) in enumerate(zip(["Rank", "Symbol", "Rate"], half_widths))
        )
        blank = " | ".join(" " * w for w in half_widths)

        lines = [
            "Positive (longs pay)".ljust(len(half_header)) + " || Negative (shorts pay)",
            f"{half_header} || {half_header}",
            f"{_separator(half_widths)} || {_separator(half_widths)}",
        ]

        for i in range(max(len(ranking.positive), len(ranking.negative))):
            halves = []
            for side in (ranking.positive, ranking.negative):
                if i < len(side):
                    sample = side[i]
                    halves.append(" | ".join([
                        str(i + 1).rjust(RANK_WIDTH),
                        sample.instrument.ljust(SYMBOL_WIDTH),
                        format_rate(sample.value).rjust(RATE_WIDTH),
                    ]))
                else:
                    halves.append(blank)
            lines.append(" || ".join(halves).rstrip())

        return _code_block(lines)

    # =========================================================================
    # Notifications
    # =========================================================================

    def combined_notification(
        self,
        ranking: CombinedRanking,
        channel: Channel,
        now: Optional[datetime] = None,
    ) -> Notification:
        label = METRIC_LABELS[ranking.metric]
        direction = "Gainers" if ranking.side == Side.POSITIVE else "Losers"
        title = f"{label} {direction} TOP{len(ranking.rows)} ({' / '.join(ranking.windows)})"
        return self._notification(
            channel=channel,
            title=title,
            table=self.format_combined(ranking),
            color=Color.POSITION if ranking.metric == Metric.OPEN_INTEREST else Color.PRICE,
            now=now,
        )

    def ranking_notification(
        self,
        result: RankingResult,
        channel: Channel,
        auxiliary: Optional[Mapping[str, float]] = None,
        now: Optional[datetime] = None,
    ) -> Notification:
        title = f"{METRIC_LABELS[result.metric]} Movers ({result.window})"
        return self._notification(
            channel=channel,
            title=title,
            table=self.format_ranking(result, auxiliary),
            color=Color.POSITION if result.metric == Metric.OPEN_INTEREST else Color.PRICE,
            now=now,
        )

    def levels_notification(
        self,
        ranking: LevelRanking,
        channel: Channel,
        title: Optional[str] = None,
        color: int = Color.FUNDING,
        now: Optional[datetime] = None,
    ) -> Notification:
        size = max(len(ranking.positive), len(ranking.negative))
        return self._notification(
            channel=channel,
            title=title or f"{METRIC_LABELS[ranking.metric]} Ranking TOP{size}",
            table=self.format_levels(ranking),
            color=color,
            now=now,
        )

    def system_notification(self, message: str, now: Optional[datetime] = None) -> Notification:
        return self._notification(
            channel=Channel.DEFAULT,
            title="Contract Monitor",
            table=message,
            color=Color.STARTUP,
            now=now,
        )

    def local_time(self, now: Optional[datetime] = None) -> str:
        now = now or datetime.now(timezone.utc)
        return now.astimezone(self.tz).strftime("%Y-%m-%d %H:%M:%S %Z")

    def _notification(
        self,
        channel: Channel,
        title: str,
        table: str,
        color: int,
        now: Optional[datetime],
    ) -> Notification:
        now = now or datetime.now(timezone.utc)
        return Notification(
            channel=channel,
            title=title,
            table=table,
            color=color,
            timestamp=now,
            footer=f"Contract Monitor | {self.local_time(now)}",
        )

    @staticmethod
    def _cell(text: str, width: int, index: int) -> str:
        # Rank and value columns are right aligned, symbol left aligned
        return text.ljust(width) if index == 1 else text.rjust(width)
