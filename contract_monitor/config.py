"""
Monitor configuration.

Loaded from config/settings.yaml. ${VAR} references are expanded from
the environment (the entry script loads .env first). A missing file
falls back to the built-in defaults.

All durations are in seconds.
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional
import structlog
import yaml

from contract_monitor.data.models import Metric
from contract_monitor.engine.change_calculator import MaterialityThresholds
from contract_monitor.engine.snapshot_store import CURRENT, DEFAULT_WINDOW_INTERVALS
from contract_monitor.errors import ConfigurationError
from contract_monitor.monitoring.notification import Channel

logger = structlog.get_logger(__name__)


ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")

REPORT_KINDS = ("changes", "levels")


@dataclass(frozen=True)
class ExchangeConfig:
    base_url: str = "https://api.bitget.com"
    product_type: str = "USDT-FUTURES"
    timeout_seconds: float = 10.0
    # Cap on the instrument universe (None = every listed contract)
    max_instruments: Optional[int] = None


@dataclass(frozen=True)
class ReportConfig:
    """
    One periodic report.

    kind "changes" ranks deltas: one window gives a single-window table,
    several windows give combined tables (one per side). kind "levels"
    ranks current values and ignores windows.
    """
    name: str
    metric: Metric
    channel: Channel
    kind: str = "changes"
    windows: tuple[str, ...] = ()
    ranking_size: Optional[int] = None
    per_window_size: Optional[int] = None


@dataclass(frozen=True)
class RedisConfig:
    enabled: bool = False
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    sample_ttl_seconds: int = 3600
    ranking_history: int = 50


@dataclass(frozen=True)
class HealthConfig:
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 3000


DEFAULT_REPORTS = (
    ReportConfig(
        name="open_interest_changes",
        metric=Metric.OPEN_INTEREST,
        channel=Channel.POSITION,
        windows=("15m", "1h", "4h", "1d"),
    ),
    ReportConfig(
        name="price_changes",
        metric=Metric.PRICE,
        channel=Channel.PRICE_ALERT,
        windows=("15m", "1h", "4h", "1d"),
    ),
    ReportConfig(
        name="funding_rate_levels",
        metric=Metric.FUNDING_RATE,
        channel=Channel.FUNDING_RATE,
        kind="levels",
    ),
)


@dataclass(frozen=True)
class MonitorConfig:
    """
    Complete monitor configuration. Frozen once loaded.
    """

    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    metrics: tuple[Metric, ...] = (Metric.OPEN_INTEREST, Metric.PRICE, Metric.FUNDING_RATE)
    window_intervals: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_WINDOW_INTERVALS))

    # ==========================================================================
    # SAMPLING
    # ==========================================================================

    sample_interval_seconds: float = 120.0
    batch_size: int = 10
    batch_delay_seconds: float = 1.0
    fetch_timeout_seconds: float = 10.0
    # Ceiling of the exponential backoff while the exchange is unreachable
    max_backoff_seconds: float = 900.0

    # ==========================================================================
    # RANKING
    # ==========================================================================

    materiality: MaterialityThresholds = field(default_factory=MaterialityThresholds)
    ranking_size: int = 15
    combined_size: int = 8
    per_window_size: int = 10

    # ==========================================================================
    # REPORTING
    # ==========================================================================

    report_interval_seconds: float = 300.0
    # Pause between notifications of one report cycle
    dispatch_spacing_seconds: float = 1.5
    reports: tuple[ReportConfig, ...] = DEFAULT_REPORTS
    funding_reminder_minutes: tuple[int, ...] = (50, 55)
    funding_reminder_size: int = 10
    display_timezone: str = "Asia/Shanghai"

    # ==========================================================================
    # DISPATCH
    # ==========================================================================

    cooldown_seconds: float = 300.0
    dedup_cache_capacity: int = 100
    webhooks: dict[Channel, str] = field(default_factory=dict)
    fallback_to_default: bool = True
    webhook_min_interval_seconds: float = 1.0
    dry_run: bool = False

    redis: RedisConfig = field(default_factory=RedisConfig)
    health: HealthConfig = field(default_factory=HealthConfig)

    def __post_init__(self):
        self.validate()

    @property
    def windows(self) -> list[str]:
        """Window names ordered by interval."""
        return sorted(self.window_intervals, key=lambda w: (self.window_intervals[w], w))

    def validate(self) -> None:
        """
        Check structural consistency.

        Raises:
            ConfigurationError: On the first problem found
        """
        if not self.metrics:
            raise ConfigurationError("at least one metric must be sampled")

        if not self.window_intervals:
            raise ConfigurationError("at least one window must be configured")
        for window, seconds in self.window_intervals.items():
            if window == CURRENT:
                raise ConfigurationError(f"{CURRENT!r} is reserved and cannot be a window name")
            if seconds <= 0:
                raise ConfigurationError(f"window {window!r} interval must be positive, got {seconds}")

        for name in ("sample_interval_seconds", "report_interval_seconds", "fetch_timeout_seconds", "cooldown_seconds"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        if self.batch_size < 1:
            raise ConfigurationError("batch_size must be at least 1")
        if self.dedup_cache_capacity < 1:
            raise ConfigurationError("dedup_cache_capacity must be at least 1")
        if min(self.ranking_size, self.combined_size, self.per_window_size, self.funding_reminder_size) < 0:
            raise ConfigurationError("ranking sizes must be non-negative")

        for minute in self.funding_reminder_minutes:
            if not 0 <= minute <= 59:
                raise ConfigurationError(f"funding reminder minute {minute} is outside 0-59")

        names = set()
        for report in self.reports:
            if report.name in names:
                raise ConfigurationError(f"duplicate report name {report.name!r}")
            names.add(report.name)

            if report.kind not in REPORT_KINDS:
                raise ConfigurationError(f"report {report.name!r} has unknown kind {report.kind!r}")
            if report.metric not in self.metrics:
                raise ConfigurationError(
                    f"report {report.name!r} uses metric {report.metric.value!r} which is not sampled"
                )
            if report.kind == "changes" and not report.windows:
                raise ConfigurationError(f"report {report.name!r} needs at least one window")
            for window in report.windows:
                if window not in self.window_intervals:
                    raise ConfigurationError(f"report {report.name!r} uses unknown window {window!r}")

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "MonitorConfig":
        """
        Build a config from the YAML structure.

        Raises:
            ConfigurationError: For unknown names or invalid values
        """
        raw = _expand_env_vars(raw or {})

        exchange = raw.get("exchange", {}) or {}
        sampling = raw.get("sampling", {}) or {}
        ranking = raw.get("ranking", {}) or {}
        reporting = raw.get("reporting", {}) or {}
        dedup = raw.get("dedup", {}) or {}
        dispatch = raw.get("dispatch", {}) or {}
        materiality = raw.get("materiality", {}) or {}
        redis_raw = raw.get("redis", {}) or {}
        health_raw = raw.get("health", {}) or {}

        try:
            windows = raw.get("windows")
            window_intervals = (
                {str(k): float(v) for k, v in windows.items()} if windows else dict(DEFAULT_WINDOW_INTERVALS)
            )

            metrics = tuple(
                _parse_metric(m) for m in sampling.get("metrics", [m.value for m in cls.metrics])
            )

            reports_raw = raw.get("reports")
            reports = (
                tuple(_parse_report(r) for r in reports_raw) if reports_raw is not None else DEFAULT_REPORTS
            )

            absolute = materiality.get("absolute")

            return cls(
                exchange=ExchangeConfig(
                    base_url=exchange.get("base_url", ExchangeConfig.base_url),
                    product_type=exchange.get("product_type", ExchangeConfig.product_type),
                    timeout_seconds=float(exchange.get("timeout_seconds", ExchangeConfig.timeout_seconds)),
                    max_instruments=_optional_int(exchange.get("max_instruments")),
                ),
                metrics=metrics,
                window_intervals=window_intervals,
                sample_interval_seconds=float(sampling.get("interval_seconds", cls.sample_interval_seconds)),
                batch_size=int(sampling.get("batch_size", cls.batch_size)),
                batch_delay_seconds=float(sampling.get("batch_delay_seconds", cls.batch_delay_seconds)),
                fetch_timeout_seconds=float(sampling.get("fetch_timeout_seconds", cls.fetch_timeout_seconds)),
                max_backoff_seconds=float(sampling.get("max_backoff_seconds", cls.max_backoff_seconds)),
                materiality=MaterialityThresholds(
                    percent=float(materiality.get("percent", MaterialityThresholds.percent)),
                    absolute=float(absolute) if absolute is not None else None,
                ),
                ranking_size=int(ranking.get("size", cls.ranking_size)),
                combined_size=int(ranking.get("combined_size", cls.combined_size)),
                per_window_size=int(ranking.get("per_window_size", cls.per_window_size)),
                report_interval_seconds=float(reporting.get("interval_seconds", cls.report_interval_seconds)),
                dispatch_spacing_seconds=float(reporting.get("spacing_seconds", cls.dispatch_spacing_seconds)),
                reports=reports,
                funding_reminder_minutes=tuple(
                    int(m) for m in reporting.get("funding_reminder_minutes", cls.funding_reminder_minutes)
                ),
                funding_reminder_size=int(reporting.get("funding_reminder_size", cls.funding_reminder_size)),
                display_timezone=reporting.get("display_timezone", cls.display_timezone),
                cooldown_seconds=float(dedup.get("cooldown_seconds", cls.cooldown_seconds)),
                dedup_cache_capacity=int(dedup.get("cache_capacity", cls.dedup_cache_capacity)),
                webhooks=_parse_webhooks(raw.get("webhooks", {}) or {}),
                fallback_to_default=bool(dispatch.get("fallback_to_default", cls.fallback_to_default)),
                webhook_min_interval_seconds=float(
                    dispatch.get("min_interval_seconds", cls.webhook_min_interval_seconds)
                ),
                dry_run=bool(raw.get("dry_run", cls.dry_run)),
                redis=RedisConfig(
                    enabled=bool(redis_raw.get("enabled", RedisConfig.enabled)),
                    host=_unset_to_none(redis_raw.get("host")) or RedisConfig.host,
                    port=int(redis_raw.get("port", RedisConfig.port)),
                    db=int(redis_raw.get("db", RedisConfig.db)),
                    password=_unset_to_none(redis_raw.get("password")),
                    sample_ttl_seconds=int(redis_raw.get("sample_ttl_seconds", RedisConfig.sample_ttl_seconds)),
                    ranking_history=int(redis_raw.get("ranking_history", RedisConfig.ranking_history)),
                ),
                health=HealthConfig(
                    enabled=bool(health_raw.get("enabled", HealthConfig.enabled)),
                    host=health_raw.get("host", HealthConfig.host),
                    port=int(health_raw.get("port", HealthConfig.port)),
                ),
            )
        except (TypeError, ValueError, AttributeError) as e:
            raise ConfigurationError(f"invalid configuration value: {e}") from e


def load_config(path: str = "config/settings.yaml") -> MonitorConfig:
    """
    Load configuration from a YAML file.

    Raises:
        ConfigurationError: If the file is not valid YAML or fails validation
    """
    config_path = Path(path)

    if not config_path.exists():
        logger.warning("config_not_found_using_defaults", path=path)
        return MonitorConfig()

    with open(config_path) as f:
        try:
            raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"cannot parse {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigurationError(f"{path} must contain a mapping at the top level")

    config = MonitorConfig.from_dict(raw)
    logger.info(
        "config_loaded",
        path=path,
        metrics=[m.value for m in config.metrics],
        windows=config.windows,
        reports=[r.name for r in config.reports],
        webhooks=[c.value for c in config.webhooks],
    )
    return config


# =============================================================================
# Parsing helpers
# =============================================================================


def _expand_env_vars(value: Any) -> Any:
    """Expand ${VAR} references in every string of a nested structure."""
    if isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env_vars(v) for v in value]
    if isinstance(value, str) and "${" in value:
        def replace_env(match):
            return os.environ.get(match.group(1), match.group(0))
        return ENV_PATTERN.sub(replace_env, value)
    return value


def _unset_to_none(value: Any) -> Optional[str]:
    """Empty strings and unexpanded ${VAR} references count as unset."""
    if value is None:
        return None
    value = str(value).strip()
    if not value or ENV_PATTERN.search(value):
        return None
    return value


def _optional_int(value: Any) -> Optional[int]:
    return int(value) if value is not None else None


def _parse_metric(value: Any) -> Metric:
    try:
        return Metric(value)
    except ValueError:
        raise ConfigurationError(
            f"unknown metric {value!r} (expected one of {[m.value for m in Metric]})"
        ) from None


def _parse_channel(value: Any) -> Channel:
    try:
        return Channel(value)
    except ValueError:
        raise ConfigurationError(
            f"unknown channel {value!r} (expected one of {[c.value for c in Channel]})"
        ) from None


def _parse_report(raw: dict[str, Any]) -> ReportConfig:
    if not isinstance(raw, dict) or "name" not in raw:
        raise ConfigurationError(f"report entry must be a mapping with a name, got {raw!r}")

    ranking_size = raw.get("ranking_size")
    per_window_size = raw.get("per_window_size")

    return ReportConfig(
        name=str(raw["name"]),
        metric=_parse_metric(raw.get("metric")),
        channel=_parse_channel(raw.get("channel", Channel.DEFAULT.value)),
        kind=raw.get("kind", "changes"),
        windows=tuple(str(w) for w in raw.get("windows", ()) or ()),
        ranking_size=int(ranking_size) if ranking_size is not None else None,
        per_window_size=int(per_window_size) if per_window_size is not None else None,
    )


def _parse_webhooks(raw: dict[str, Any]) -> dict[Channel, str]:
    """Channel -> URL. Channels whose URL is empty or unset are skipped."""
    webhooks = {}
    for name, url in raw.items():
        channel = _parse_channel(name)
        url = _unset_to_none(url)
        if url:
            webhooks[channel] = url
    return webhooks
