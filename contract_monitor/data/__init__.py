"""
Data layer.

- models: samples, change records and rankings
- bitget_client: exchange REST collaborator
- sampler: batched concurrent sampling into the snapshot book
"""

from contract_monitor.data.models import (
    ChangeRecord,
    CombinedRanking,
    CombinedRow,
    LevelRanking,
    Metric,
    MetricSample,
    RankingResult,
    SampleReport,
    Side,
)

__all__ = [
    "ChangeRecord",
    "CombinedRanking",
    "CombinedRow",
    "LevelRanking",
    "Metric",
    "MetricSample",
    "RankingResult",
    "SampleReport",
    "Side",
]
