"""
Tests for configuration loading and validation.
"""

import textwrap

import pytest

from contract_monitor.config import MonitorConfig, ReportConfig, load_config
from contract_monitor.data.models import Metric
from contract_monitor.errors import ConfigurationError
from contract_monitor.monitoring.notification import Channel


def write_config(tmp_path, body: str):
    path = tmp_path / "settings.yaml"
    path.write_text(textwrap.dedent(body))
    return str(path)


class TestMonitorConfig:
    """Tests for MonitorConfig defaults and validation."""

    def test_defaults(self):
        config = MonitorConfig()

        assert config.windows == ["5m", "15m", "1h", "4h", "1d"]
        assert config.ranking_size == 15
        assert config.combined_size == 8
        assert config.cooldown_seconds == 300
        assert config.dedup_cache_capacity == 100
        assert config.materiality.percent == 1.0
        assert config.funding_reminder_minutes == (50, 55)
        assert [r.name for r in config.reports] == [
            "open_interest_changes", "price_changes", "funding_rate_levels",
        ]

    def test_frozen(self):
        with pytest.raises(AttributeError):
            MonitorConfig().ranking_size = 3

    def test_reserved_window_name(self):
        with pytest.raises(ConfigurationError):
            MonitorConfig(window_intervals={"current": 60}, reports=())

    def test_non_positive_interval(self):
        with pytest.raises(ConfigurationError):
            MonitorConfig(window_intervals={"15m": 0}, reports=())

    def test_report_with_unknown_window(self):
        report = ReportConfig("r", Metric.PRICE, Channel.PRICE_ALERT, windows=("2h",))
        with pytest.raises(ConfigurationError):
            MonitorConfig(reports=(report,))

    def test_report_metric_must_be_sampled(self):
        report = ReportConfig("r", Metric.FUNDING_RATE, Channel.FUNDING_RATE, kind="levels")
        with pytest.raises(ConfigurationError):
            MonitorConfig(metrics=(Metric.PRICE,), reports=(report,))

    def test_invalid_reminder_minute(self):
        with pytest.raises(ConfigurationError):
            MonitorConfig(funding_reminder_minutes=(60,))


class TestLoadConfig:
    """Tests for load_config."""

    def test_missing_file_uses_defaults(self, tmp_path):
        config = load_config(str(tmp_path / "absent.yaml"))
        assert config == MonitorConfig()

    def test_yaml_values(self, tmp_path):
        path = write_config(tmp_path, """
            sampling:
              metrics: [open_interest, price]
              interval_seconds: 60
              batch_size: 20
            windows:
              15m: 900
              1h: 3600
            materiality:
              percent: 2.5
              absolute: 1000000
            ranking:
              size: 10
            dedup:
              cooldown_seconds: 600
              cache_capacity: 50
            reports:
              - name: oi
                metric: open_interest
                channel: position
                windows: [15m, 1h]
                ranking_size: 5
            webhooks:
              default: https://discord.test/default
              position: ""
        """)

        config = load_config(path)

        assert config.metrics == (Metric.OPEN_INTEREST, Metric.PRICE)
        assert config.sample_interval_seconds == 60
        assert config.batch_size == 20
        assert config.window_intervals == {"15m": 900.0, "1h": 3600.0}
        assert config.materiality.percent == 2.5
        assert config.materiality.absolute == 1_000_000
        assert config.ranking_size == 10
        assert config.cooldown_seconds == 600
        assert config.dedup_cache_capacity == 50
        assert config.reports == (
            ReportConfig("oi", Metric.OPEN_INTEREST, Channel.POSITION, windows=("15m", "1h"), ranking_size=5),
        )
        # Empty URLs are skipped
        assert config.webhooks == {Channel.DEFAULT: "https://discord.test/default"}

    def test_env_expansion(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEST_POSITION_WEBHOOK", "https://discord.test/position")
        monkeypatch.delenv("TEST_UNSET_WEBHOOK", raising=False)
        path = write_config(tmp_path, """
            webhooks:
              position: ${TEST_POSITION_WEBHOOK}
              price_alert: ${TEST_UNSET_WEBHOOK}
        """)

        config = load_config(path)

        assert config.webhooks == {Channel.POSITION: "https://discord.test/position"}

    def test_unknown_metric(self, tmp_path):
        path = write_config(tmp_path, """
            sampling:
              metrics: [open_interest, volume]
        """)
        with pytest.raises(ConfigurationError):
            load_config(path)

    def test_unknown_channel(self, tmp_path):
        path = write_config(tmp_path, """
            webhooks:
              telegram: https://example.test
        """)
        with pytest.raises(ConfigurationError):
            load_config(path)

    def test_invalid_yaml(self, tmp_path):
        path = write_config(tmp_path, "windows: [unclosed\n")
        with pytest.raises(ConfigurationError):
            load_config(path)

    def test_non_numeric_value(self, tmp_path):
        path = write_config(tmp_path, """
            sampling:
              batch_size: lots
        """)
        with pytest.raises(ConfigurationError):
            load_config(path)

    def test_shipped_settings_file_loads(self):
        from pathlib import Path

        path = Path(__file__).parent.parent.parent / "config" / "settings.yaml"
        config = load_config(str(path))

        assert config.health.port == 3000
        assert config.redis.enabled is False
        assert config.redis.host
