"""
Tests for batched sampling and per-instrument fault isolation.
"""

import httpx
import pytest

from contract_monitor.data.bitget_client import BitgetClient
from contract_monitor.data.models import Metric
from contract_monitor.data.sampler import MetricSampler
from contract_monitor.engine.snapshot_store import SnapshotBook


@pytest.fixture
def book():
    return SnapshotBook([Metric.OPEN_INTEREST, Metric.PRICE], {"15m": 900})


def fast_sampler(source, book, **kwargs) -> MetricSampler:
    kwargs.setdefault("batch_delay_seconds", 0)
    kwargs.setdefault("fetch_timeout_seconds", 1.0)
    return MetricSampler(source, book, **kwargs)


class TestMetricSampler:
    """Tests for MetricSampler."""

    @pytest.mark.asyncio
    async def test_samples_written_to_book(self, fake_source, book):
        fake_source.set(Metric.OPEN_INTEREST, "BTCUSDT", 100)
        fake_source.set(Metric.OPEN_INTEREST, "ETHUSDT", 50)

        report = await fast_sampler(fake_source, book).sample(Metric.OPEN_INTEREST, ["BTCUSDT", "ETHUSDT"])

        assert report.requested == 2
        assert report.succeeded == 2
        assert report.failed == []
        current = book.store(Metric.OPEN_INTEREST).current()
        assert current["BTCUSDT"].value == 100
        assert current["ETHUSDT"].value == 50

    @pytest.mark.asyncio
    async def test_failed_instrument_skipped_others_unaffected(self, fake_source, book):
        for symbol, value in (("XUSDT", 1), ("YUSDT", 2), ("ZUSDT", 3)):
            fake_source.set(Metric.OPEN_INTEREST, symbol, value)
        fake_source.failing.add("XUSDT")

        report = await fast_sampler(fake_source, book).sample(
            Metric.OPEN_INTEREST, ["XUSDT", "YUSDT", "ZUSDT"]
        )

        assert report.failed == ["XUSDT"]
        assert report.succeeded == 2
        current = book.store(Metric.OPEN_INTEREST).current()
        assert "XUSDT" not in current
        assert current["YUSDT"].value == 2
        assert current["ZUSDT"].value == 3

    @pytest.mark.asyncio
    async def test_failure_keeps_previous_value(self, fake_source, book):
        fake_source.set(Metric.OPEN_INTEREST, "XUSDT", 10)
        sampler = fast_sampler(fake_source, book)
        await sampler.sample(Metric.OPEN_INTEREST, ["XUSDT"])

        fake_source.set(Metric.OPEN_INTEREST, "XUSDT", 20)
        fake_source.failing.add("XUSDT")
        await sampler.sample(Metric.OPEN_INTEREST, ["XUSDT"])

        assert book.store(Metric.OPEN_INTEREST).current()["XUSDT"].value == 10

    @pytest.mark.asyncio
    async def test_timeout_is_skipped(self, fake_source, book):
        fake_source.set(Metric.PRICE, "SLOWUSDT", 1)
        fake_source.set(Metric.PRICE, "FASTUSDT", 2)
        fake_source.slow.add("SLOWUSDT")

        report = await fast_sampler(fake_source, book, fetch_timeout_seconds=0.05).sample(
            Metric.PRICE, ["SLOWUSDT", "FASTUSDT"]
        )

        assert report.failed == ["SLOWUSDT"]
        assert "FASTUSDT" in book.store(Metric.PRICE).current()

    @pytest.mark.asyncio
    async def test_batches_cover_all_instruments(self, fake_source, book):
        symbols = [f"S{i:02d}USDT" for i in range(23)]
        for i, symbol in enumerate(symbols):
            fake_source.set(Metric.OPEN_INTEREST, symbol, i + 1)

        report = await fast_sampler(fake_source, book, batch_size=10).sample(Metric.OPEN_INTEREST, symbols)

        assert report.succeeded == 23
        assert [call[1] for call in fake_source.fetch_calls] == symbols

    @pytest.mark.asyncio
    async def test_sample_all_reports_per_metric(self, fake_source, book):
        fake_source.set(Metric.OPEN_INTEREST, "BTCUSDT", 100)
        fake_source.set(Metric.PRICE, "BTCUSDT", 42000, aux=1e10)

        reports = await fast_sampler(fake_source, book).sample_all(["BTCUSDT"])

        assert set(reports) == {Metric.OPEN_INTEREST, Metric.PRICE}
        assert all(r.succeeded == 1 for r in reports.values())
        assert book.store(Metric.PRICE).auxiliary_values() == {"BTCUSDT": 1e10}

    @pytest.mark.asyncio
    async def test_unreachable_source(self, fake_source, book):
        fake_source.set(Metric.OPEN_INTEREST, "BTCUSDT", 100)
        fake_source.unreachable = True

        reports = await fast_sampler(fake_source, book).sample_all(["BTCUSDT"])

        assert all(r.source_unreachable for r in reports.values())

    @pytest.mark.asyncio
    async def test_unexpected_error_skips_only_that_instrument(self, fake_source, book):
        for symbol, value in (("XUSDT", 1), ("YUSDT", 2), ("ZUSDT", 3)):
            fake_source.set(Metric.OPEN_INTEREST, symbol, value)
            fake_source.set(Metric.PRICE, symbol, value * 10)

        original_fetch = fake_source.fetch

        async def fetch(metric, instrument):
            if instrument == "XUSDT":
                raise RuntimeError("connector bug")
            return await original_fetch(metric, instrument)

        fake_source.fetch = fetch

        reports = await fast_sampler(fake_source, book, batch_size=1).sample_all(["XUSDT", "YUSDT", "ZUSDT"])

        for metric in (Metric.OPEN_INTEREST, Metric.PRICE):
            assert reports[metric].failed == ["XUSDT"]
            assert sorted(book.store(metric).current()) == ["YUSDT", "ZUSDT"]

    @pytest.mark.asyncio
    async def test_garbage_ticker_payload_skips_only_that_instrument(self, book):
        def handler(request):
            symbol = request.url.params["symbol"]
            if symbol == "BADUSDT":
                return httpx.Response(200, json={"code": "00000", "data": ["garbage"]})
            return httpx.Response(200, json={
                "code": "00000",
                "data": [{"symbol": symbol, "lastPr": "1.5", "quoteVolume": "100", "ts": "1704067200000"}],
            })

        http = httpx.AsyncClient(base_url="https://api.bitget.test", transport=httpx.MockTransport(handler))
        client = BitgetClient(base_url="https://api.bitget.test", client=http)

        report = await fast_sampler(client, book, batch_size=1).sample(
            Metric.PRICE, ["AUSDT", "BADUSDT", "CUSDT"]
        )

        assert report.failed == ["BADUSDT"]
        assert sorted(book.store(Metric.PRICE).current()) == ["AUSDT", "CUSDT"]

    def test_invalid_batch_size(self, fake_source, book):
        with pytest.raises(ValueError):
            MetricSampler(fake_source, book, batch_size=0)
