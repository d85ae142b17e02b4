"""
Pytest configuration and fixtures.

Shared fixtures for all tests.
"""

import asyncio
from datetime import datetime, timezone
from typing import Optional

import pytest

from contract_monitor.data.models import Metric, MetricSample
from contract_monitor.errors import DispatchError, TransientFetchError


T0 = datetime(2024, 1, 1, 0, 0, tzinfo=timezone.utc)


class FakeSource:
    """
    In-memory MetricSource.

    values: (metric, instrument) -> value. Instruments listed in failing
    raise TransientFetchError; instruments in slow never complete.
    """

    def __init__(self, instruments=None, values=None, auxiliary=None):
        self.instruments = list(instruments or [])
        self.values: dict[tuple[Metric, str], float] = dict(values or {})
        self.auxiliary: dict[tuple[Metric, str], float] = dict(auxiliary or {})
        self.failing: set[str] = set()
        self.slow: set[str] = set()
        self.unreachable = False
        self.fetch_calls: list[tuple[Metric, str]] = []

    def set(self, metric: Metric, instrument: str, value: float, aux: Optional[float] = None) -> None:
        self.values[(metric, instrument)] = value
        if aux is not None:
            self.auxiliary[(metric, instrument)] = aux
        if instrument not in self.instruments:
            self.instruments.append(instrument)

    async def list_instruments(self) -> list[str]:
        if self.unreachable:
            raise TransientFetchError("exchange unreachable")
        return sorted(self.instruments)

    async def fetch(self, metric: Metric, instrument: str) -> MetricSample:
        self.fetch_calls.append((metric, instrument))
        if self.unreachable or instrument in self.failing:
            raise TransientFetchError("fetch failed", instrument=instrument, metric=metric.value)
        if instrument in self.slow:
            await asyncio.sleep(3600)
        if (metric, instrument) not in self.values:
            raise TransientFetchError("no value", instrument=instrument, metric=metric.value)
        return MetricSample(
            instrument=instrument,
            metric=metric,
            value=self.values[(metric, instrument)],
            auxiliary_value=self.auxiliary.get((metric, instrument)),
            timestamp=T0,
        )


class RecordingSink:
    """Sink that records notifications, optionally failing."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []
        self.closed = False

    async def send(self, notification) -> None:
        if self.fail:
            raise DispatchError("sink down", channel=notification.channel.value)
        self.sent.append(notification)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def t0():
    """Fixed UTC reference time."""
    return T0


@pytest.fixture
def make_sample():
    """Factory for MetricSample."""
    def _make(instrument, value, metric=Metric.OPEN_INTEREST, timestamp=T0, aux=None):
        return MetricSample(
            instrument=instrument,
            metric=metric,
            value=value,
            timestamp=timestamp,
            auxiliary_value=aux,
        )
    return _make


@pytest.fixture
def fake_source():
    return FakeSource()


@pytest.fixture
def recording_sink():
    return RecordingSink()


@pytest.fixture
def make_sink():
    """Factory for RecordingSink (pass fail=True for a broken transport)."""
    return RecordingSink
