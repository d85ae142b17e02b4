"""
Metric sampler.

Pulls current values for every instrument from a MetricSource in fixed
size batches and writes each completion straight into the snapshot book.

One instrument failing or timing out only skips that instrument for the
cycle. Batch chunking plus a fixed inter-batch delay is the only
backpressure, so cycle duration grows linearly with instrument count.
"""

import asyncio
from typing import Iterable, Optional
import structlog

from contract_monitor.data.bitget_client import MetricSource
from contract_monitor.data.models import Metric, SampleReport
from contract_monitor.engine.snapshot_store import SnapshotBook
from contract_monitor.errors import TransientFetchError

logger = structlog.get_logger(__name__)


class MetricSampler:
    """Batched concurrent sampling into a SnapshotBook."""

    def __init__(
        self,
        source: MetricSource,
        book: SnapshotBook,
        batch_size: int = 10,
        batch_delay_seconds: float = 1.0,
        fetch_timeout_seconds: float = 10.0,
    ):
        """
        Initialize sampler.

        Args:
            source: Exchange collaborator
            book: Snapshot book receiving the samples
            batch_size: Concurrent fetches per batch
            batch_delay_seconds: Pause between batches (exchange rate limit)
            fetch_timeout_seconds: Upper bound on a single fetch
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        self.source = source
        self.book = book
        self.batch_size = batch_size
        self.batch_delay = batch_delay_seconds
        self.fetch_timeout = fetch_timeout_seconds

    async def sample(self, metric: Metric, instruments: Iterable[str]) -> SampleReport:
        """
        Sample one metric for every instrument.

        Returns:
            SampleReport with success and failure counts
        """
        instruments = list(instruments)
        report = SampleReport(metric=metric, requested=len(instruments))

        for start in range(0, len(instruments), self.batch_size):
            if start and self.batch_delay > 0:
                await asyncio.sleep(self.batch_delay)

            batch = instruments[start:start + self.batch_size]
            results = await asyncio.gather(*(self._fetch_one(metric, i) for i in batch))

            for instrument, ok in zip(batch, results):
                if ok:
                    report.succeeded += 1
                else:
                    report.failed.append(instrument)

        log = logger.warning if report.failed else logger.debug
        log(
            "metric_sampled",
            metric=metric.value,
            requested=report.requested,
            succeeded=report.succeeded,
            failed=len(report.failed),
        )
        return report

    async def sample_all(
        self,
        instruments: Iterable[str],
        metrics: Optional[Iterable[Metric]] = None,
    ) -> dict[Metric, SampleReport]:
        """Sample several metrics one after another."""
        instruments = list(instruments)
        metrics = list(metrics) if metrics is not None else self.book.metrics

        reports = {}
        for metric in metrics:
            reports[metric] = await self.sample(metric, instruments)

        if reports and all(r.source_unreachable for r in reports.values()):
            logger.error(
                "sampling_source_unreachable",
                metrics=[m.value for m in reports],
                instruments=len(instruments),
            )

        return reports

    async def _fetch_one(self, metric: Metric, instrument: str) -> bool:
        try:
            sample = await asyncio.wait_for(
                self.source.fetch(metric, instrument),
                timeout=self.fetch_timeout,
            )
        except asyncio.TimeoutError:
            logger.debug("fetch_timed_out", metric=metric.value, instrument=instrument)
            return False
        except TransientFetchError as e:
            logger.debug("fetch_failed", metric=metric.value, instrument=instrument, error=str(e))
            return False
        except Exception as e:
            logger.warning(
                "fetch_failed",
                metric=metric.value,
                instrument=instrument,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

        self.book.update(metric, instrument, sample)
        return True
