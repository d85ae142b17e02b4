"""
Contract monitor application.

Coordinates:
- Instrument universe refresh
- Sampling into the snapshot book, then window rolls
- Change detection and ranking reports
- Funding settlement reminders
- Write-behind audit copy and the health API

Sampling, reporting and reminders run as independent periodic asyncio
tasks on one event loop. All snapshot, ranking and dedup state is only
touched from that loop.
"""

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional
import structlog

from contract_monitor.config import MonitorConfig, ReportConfig
from contract_monitor.data.bitget_client import MetricSource
from contract_monitor.data.models import Metric, SampleReport, Side
from contract_monitor.data.sampler import MetricSampler
from contract_monitor.engine.change_calculator import ChangeCalculator
from contract_monitor.engine.ranking import RankingEngine
from contract_monitor.engine.snapshot_store import SnapshotBook, utc_now
from contract_monitor.errors import TransientFetchError
from contract_monitor.monitoring.dispatcher import NotificationDispatcher
from contract_monitor.monitoring.formatter import NotificationFormatter
from contract_monitor.monitoring.notification import Channel, Color, Notification

logger = structlog.get_logger(__name__)


# How often the reminder task checks the clock
REMINDER_CHECK_SECONDS = 20.0
INSTRUMENT_REFRESH_SECONDS = 3600.0


class ContractMonitor:
    """
    Main monitor application.

    Owns the snapshot book and every engine component. Collaborators
    (exchange source, dispatcher, audit store) are injected.
    """

    def __init__(
        self,
        config: MonitorConfig,
        source: MetricSource,
        dispatcher: NotificationDispatcher,
        audit_store: Optional[Any] = None,
        formatter: Optional[NotificationFormatter] = None,
    ):
        """
        Initialize the monitor.

        Args:
            config: Loaded configuration
            source: Exchange collaborator
            dispatcher: Notification dispatcher with sinks registered
            audit_store: Optional write-behind store (RedisAuditStore)
            formatter: Report formatter (built from config if omitted)
        """
        self.config = config
        self.source = source
        self.dispatcher = dispatcher
        self.audit_store = audit_store

        self.book = SnapshotBook(config.metrics, config.window_intervals)
        self.sampler = MetricSampler(
            source,
            self.book,
            batch_size=config.batch_size,
            batch_delay_seconds=config.batch_delay_seconds,
            fetch_timeout_seconds=config.fetch_timeout_seconds,
        )
        self.calculator = ChangeCalculator(config.materiality)
        self.ranking = RankingEngine(
            ranking_size=config.ranking_size,
            combined_size=config.combined_size,
            per_window_size=config.per_window_size,
        )
        self.formatter = formatter or NotificationFormatter(config.display_timezone)

        # State
        self.instruments: list[str] = []
        self.running = False
        self.started_at: Optional[datetime] = None
        self.last_sample_time: Optional[datetime] = None
        self.last_report_time: Optional[datetime] = None
        self.last_sample_reports: dict[Metric, SampleReport] = {}
        self.consecutive_unreachable = 0
        self.cycles = {"sampling": 0, "report": 0, "reminder": 0}

        self._last_reminder_slot: Optional[datetime] = None
        self._stop = asyncio.Event()
        self._health_server = None

        logger.info(
            "contract_monitor_initialized",
            metrics=[m.value for m in config.metrics],
            windows=config.windows,
            reports=[r.name for r in config.reports],
            dry_run=config.dry_run,
        )

    # =========================================================================
    # Cycles
    # =========================================================================

    async def refresh_instruments(self) -> list[str]:
        """
        Reload the instrument universe.

        The previous list is kept when the refresh fails or comes back empty.
        """
        try:
            instruments = await self.source.list_instruments()
        except TransientFetchError as e:
            logger.warning("instrument_refresh_failed", error=str(e), keeping=len(self.instruments))
            return self.instruments

        if not instruments:
            logger.warning("instrument_refresh_empty", keeping=len(self.instruments))
            return self.instruments

        cap = self.config.exchange.max_instruments
        if cap is not None:
            instruments = instruments[:cap]

        self.instruments = list(instruments)
        logger.info("instruments_refreshed", count=len(self.instruments))
        return self.instruments

    async def run_sampling_cycle(self, now: Optional[datetime] = None) -> dict[Metric, SampleReport]:
        """
        Sample every metric, then give each window a chance to roll.

        Args:
            now: Roll time (defaults to the time sampling finished)

        Returns:
            Metric -> SampleReport
        """
        if not self.instruments:
            await self.refresh_instruments()

        reports = await self.sampler.sample_all(self.instruments, self.config.metrics)
        now = now or utc_now()

        self.book.maybe_roll_all(now)

        self.last_sample_reports = reports
        self.last_sample_time = now
        self.cycles["sampling"] += 1

        self._audit_samples()
        return reports

    def build_reports(self, now: Optional[datetime] = None) -> list[Notification]:
        """
        Build notifications for every configured report.

        Empty rankings (warm-up, nothing material) produce nothing.
        """
        now = now or utc_now()
        notifications = []

        for report in self.config.reports:
            try:
                built = self._build_report(report, now)
            except Exception as e:
                logger.error("report_build_failed", report=report.name, error=str(e), exc_info=True)
                continue
            notifications.extend(built)

        logger.debug("reports_built", count=len(notifications))
        return notifications

    async def run_report_cycle(self, now: Optional[datetime] = None) -> list[bool]:
        """Build and dispatch all reports. Returns one flag per notification."""
        now = now or utc_now()
        notifications = self.build_reports(now)

        results = await self.dispatcher.dispatch_all(
            notifications,
            now=now,
            spacing_seconds=self.config.dispatch_spacing_seconds,
        )

        self.last_report_time = now
        self.cycles["report"] += 1

        logger.info(
            "report_cycle_complete",
            built=len(notifications),
            dispatched=sum(results),
        )
        return results

    async def run_funding_reminder(self, now: Optional[datetime] = None) -> bool:
        """
        Send the funding-rate ranking ahead of settlement.

        Fires once per configured minute of each hour (display timezone).

        Returns:
            True if a reminder was dispatched
        """
        if Metric.FUNDING_RATE not in self.config.metrics:
            return False

        now = now or utc_now()
        local = now.astimezone(self.formatter.tz)
        if local.minute not in self.config.funding_reminder_minutes:
            return False

        slot = local.replace(second=0, microsecond=0)
        if slot == self._last_reminder_slot:
            return False
        self._last_reminder_slot = slot

        samples = self.book.store(Metric.FUNDING_RATE).current().values()
        ranking = self.ranking.rank_levels(samples, k=self.config.funding_reminder_size)
        if ranking.is_empty:
            logger.info("funding_reminder_skipped_no_data")
            return False

        minutes_left = 60 - local.minute
        notification = self.formatter.levels_notification(
            ranking,
            Channel.FUNDING_RATE,
            title=f"Funding Settlement Reminder - {minutes_left} min to settlement",
            color=Color.WARNING if minutes_left > 5 else Color.CRITICAL,
            now=now,
        )

        self.cycles["reminder"] += 1
        return await self.dispatcher.dispatch(notification, now=now)

    # =========================================================================
    # Scheduling
    # =========================================================================

    async def run(self) -> None:
        """
        Run until stop() is called.

        Sampling starts immediately; the first report waits one report
        interval so the windows have a baseline.
        """
        self.running = True
        self.started_at = utc_now()
        self._stop.clear()

        await self.refresh_instruments()
        await self.dispatcher.dispatch(
            self.formatter.system_notification(
                f"Monitor started: {len(self.instruments)} contracts, "
                f"windows {', '.join(self.config.windows)}"
            ),
            force=True,
        )

        tasks = [
            asyncio.create_task(self._sampling_loop(), name="sampling"),
            asyncio.create_task(
                self._periodic("report_cycle", self.config.report_interval_seconds, self.run_report_cycle,
                               initial_delay=self.config.report_interval_seconds),
                name="report_cycle",
            ),
            asyncio.create_task(
                self._periodic("instrument_refresh", INSTRUMENT_REFRESH_SECONDS, self.refresh_instruments,
                               initial_delay=INSTRUMENT_REFRESH_SECONDS),
                name="instrument_refresh",
            ),
        ]
        if self.config.funding_reminder_minutes:
            tasks.append(asyncio.create_task(
                self._periodic("funding_reminder", REMINDER_CHECK_SECONDS, self.run_funding_reminder),
                name="funding_reminder",
            ))

        health_task = self._start_health_server()

        logger.info("contract_monitor_started", instruments=len(self.instruments), tasks=len(tasks))

        try:
            await self._stop.wait()
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

            if health_task is not None:
                self._health_server.should_exit = True
                await asyncio.gather(health_task, return_exceptions=True)

            self.running = False
            logger.info("contract_monitor_stopped")

    def stop(self) -> None:
        self._stop.set()

    async def _sampling_loop(self) -> None:
        """Sampling with exponential backoff while the source is unreachable."""
        interval = self.config.sample_interval_seconds

        while not self._stop.is_set():
            delay = interval
            try:
                reports = await self.run_sampling_cycle()
                if self._source_unreachable(reports):
                    self.consecutive_unreachable += 1
                    delay = self.backoff_delay(self.consecutive_unreachable)
                    logger.error(
                        "sampling_backoff",
                        consecutive_failures=self.consecutive_unreachable,
                        delay_seconds=delay,
                    )
                else:
                    self.consecutive_unreachable = 0
            except Exception as e:
                logger.error("sampling_cycle_error", error=str(e), exc_info=True)

            if await self._sleep(delay):
                break

    def backoff_delay(self, failures: int) -> float:
        """Delay after the given number of consecutive unreachable cycles."""
        interval = self.config.sample_interval_seconds
        if failures <= 0:
            return interval
        ceiling = max(interval, self.config.max_backoff_seconds)
        return min(interval * 2 ** failures, ceiling)

    async def _periodic(
        self,
        name: str,
        interval: float,
        fn: Callable[[], Awaitable[Any]],
        initial_delay: float = 0.0,
    ) -> None:
        """Run fn every interval seconds. One failed run never stops the loop."""
        if initial_delay and await self._sleep(initial_delay):
            return

        while not self._stop.is_set():
            try:
                await fn()
            except Exception as e:
                logger.error("periodic_task_error", task=name, error=str(e), exc_info=True)

            if await self._sleep(interval):
                return

    async def _sleep(self, seconds: float) -> bool:
        """Sleep unless stopped first. Returns True if stopped."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    def _start_health_server(self) -> Optional[asyncio.Task]:
        health = self.config.health
        if not health.enabled:
            return None

        from api.health import HealthServer, create_health_app

        self._health_server = HealthServer(create_health_app(self), host=health.host, port=health.port)
        return asyncio.create_task(self._health_server.run_until_cancelled(), name="health_server")

    # =========================================================================
    # Reports
    # =========================================================================

    def _build_report(self, report: ReportConfig, now: datetime) -> list[Notification]:
        store = self.book.store(report.metric)

        if report.kind == "levels":
            ranking = self.ranking.rank_levels(
                store.current().values(), k=report.ranking_size, metric=report.metric
            )
            if ranking.is_empty:
                return []
            self._audit_ranking(report.name, {
                "metric": report.metric.value,
                "positive": [s.to_dict() for s in ranking.positive],
                "negative": [s.to_dict() for s in ranking.negative],
            })
            return [self.formatter.levels_notification(ranking, report.channel, now=now)]

        windows = [w for w in store.windows if w in report.windows]
        per_window = self.calculator.compute_all(store, windows)
        auxiliary = self._quote_volumes()

        if len(windows) == 1:
            window = windows[0]
            result = self.ranking.rank(
                per_window[window], k=report.ranking_size, window=window, metric=report.metric
            )
            if result.is_empty:
                return []
            self._audit_ranking(report.name, {
                "metric": report.metric.value,
                "window": window,
                "positive": [r.to_dict() for r in result.positive],
                "negative": [r.to_dict() for r in result.negative],
            })
            return [self.formatter.ranking_notification(result, report.channel, auxiliary, now=now)]

        notifications = []
        for side in (Side.POSITIVE, Side.NEGATIVE):
            combined = self.ranking.combine(
                per_window,
                side,
                windows,
                k=report.ranking_size,
                per_window_k=report.per_window_size,
                metric=report.metric,
                auxiliary=auxiliary,
            )
            if combined.is_empty:
                continue
            self._audit_ranking(f"{report.name}:{side.value}", combined.to_dict())
            notifications.append(self.formatter.combined_notification(combined, report.channel, now=now))
        return notifications

    def _quote_volumes(self) -> dict[str, float]:
        """24h quote volume per instrument, shown in the auxiliary column."""
        if Metric.PRICE not in self.config.metrics:
            return {}
        return self.book.store(Metric.PRICE).auxiliary_values()

    @staticmethod
    def _source_unreachable(reports: dict[Metric, SampleReport]) -> bool:
        if not reports or all(r.requested == 0 for r in reports.values()):
            return True
        return all(r.source_unreachable for r in reports.values())

    # =========================================================================
    # Audit (write-behind)
    # =========================================================================

    def _audit_samples(self) -> None:
        if self.audit_store is None:
            return
        try:
            for metric in self.book.metrics:
                self.audit_store.record_samples(metric, self.book.store(metric).current().values())
            self.audit_store.send_heartbeat()
        except Exception as e:
            logger.error("audit_write_failed", kind="samples", error=str(e))

    def _audit_ranking(self, name: str, payload: dict) -> None:
        if self.audit_store is None:
            return
        try:
            self.audit_store.record_ranking(name, payload)
        except Exception as e:
            logger.error("audit_write_failed", kind="ranking", report=name, error=str(e))

    # =========================================================================
    # Status
    # =========================================================================

    def get_status(self) -> dict:
        """Status snapshot used by the health API."""
        now = utc_now()
        return {
            "running": self.running,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "uptime_seconds": (now - self.started_at).total_seconds() if self.started_at else 0.0,
            "instruments": len(self.instruments),
            "last_sample_time": self.last_sample_time.isoformat() if self.last_sample_time else None,
            "last_report_time": self.last_report_time.isoformat() if self.last_report_time else None,
            "last_sample_reports": {m.value: r.to_dict() for m, r in self.last_sample_reports.items()},
            "consecutive_unreachable": self.consecutive_unreachable,
            "cycles": dict(self.cycles),
            "snapshots": self.book.status(),
            "dispatch": {
                "sent": self.dispatcher.sent_count,
                "failed": self.dispatcher.failed_count,
                "dedup_cache_size": len(self.dispatcher.gate),
            },
            "dry_run": self.config.dry_run,
        }

    async def aclose(self) -> None:
        """Release HTTP clients and the audit connection."""
        await self.dispatcher.aclose()

        close = getattr(self.source, "aclose", None)
        if close is not None:
            await close()

        if self.audit_store is not None:
            try:
                self.audit_store.close()
            except Exception as e:
                logger.error("audit_close_failed", error=str(e))


def create_monitor(config: MonitorConfig, dry_run: Optional[bool] = None) -> ContractMonitor:
    """
    Wire a ContractMonitor from configuration.

    Dry runs log every notification instead of posting it. Redis is only
    connected when enabled; a connection failure disables the audit copy.

    Args:
        config: Loaded configuration
        dry_run: Overrides config.dry_run when given
    """
    from contract_monitor.data.bitget_client import BitgetClient
    from contract_monitor.monitoring.alerter import AlertDedupGate
    from contract_monitor.monitoring.dispatcher import DiscordWebhookSink, LogSink

    dry_run = config.dry_run if dry_run is None else dry_run

    source = BitgetClient(
        base_url=config.exchange.base_url,
        product_type=config.exchange.product_type,
        timeout_seconds=config.exchange.timeout_seconds,
    )

    dispatcher = NotificationDispatcher(
        gate=AlertDedupGate(config.cooldown_seconds, config.dedup_cache_capacity),
        fallback_to_default=config.fallback_to_default,
    )
    if dry_run:
        dispatcher.register(Channel.DEFAULT, LogSink("dry_run"))
    else:
        # Channels sharing a webhook URL share one sink (and its rate limit)
        sinks_by_url: dict[str, DiscordWebhookSink] = {}
        for channel, url in config.webhooks.items():
            if url not in sinks_by_url:
                sinks_by_url[url] = DiscordWebhookSink(
                    url, min_interval_seconds=config.webhook_min_interval_seconds
                )
            dispatcher.register(channel, sinks_by_url[url])

        if not config.webhooks:
            logger.warning("no_webhooks_configured")

    audit_store = None
    if config.redis.enabled:
        from contract_monitor.storage.redis_state import RedisAuditStore
        import redis

        try:
            audit_store = RedisAuditStore(
                host=config.redis.host,
                port=config.redis.port,
                db=config.redis.db,
                password=config.redis.password,
                sample_ttl_seconds=config.redis.sample_ttl_seconds,
                ranking_history=config.redis.ranking_history,
            )
        except redis.RedisError as e:
            logger.error("audit_store_disabled", error=str(e))

    return ContractMonitor(config, source, dispatcher, audit_store=audit_store)
