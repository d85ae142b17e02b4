"""
Tests for the Bitget market data client.

HTTP is faked with httpx.MockTransport; no network access.
"""

from datetime import datetime, timezone

import httpx
import pytest

from contract_monitor.data.bitget_client import BitgetClient
from contract_monitor.data.models import Metric
from contract_monitor.errors import TransientFetchError


TS = "1704067200000"  # 2024-01-01T00:00:00Z


def ok(data):
    return httpx.Response(200, json={"code": "00000", "msg": "success", "requestTime": 1, "data": data})


def make_client(handler) -> BitgetClient:
    http = httpx.AsyncClient(base_url="https://api.bitget.test", transport=httpx.MockTransport(handler))
    return BitgetClient(base_url="https://api.bitget.test", client=http)


class TestBitgetClient:
    """Tests for BitgetClient."""

    @pytest.mark.asyncio
    async def test_list_instruments_filters_status(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["params"] = dict(request.url.params)
            return ok([
                {"symbol": "ETHUSDT", "symbolStatus": "normal"},
                {"symbol": "BTCUSDT", "symbolStatus": "normal"},
                {"symbol": "OLDUSDT", "symbolStatus": "off"},
            ])

        client = make_client(handler)
        symbols = await client.list_instruments()

        assert symbols == ["BTCUSDT", "ETHUSDT"]
        assert seen["path"] == "/api/v2/mix/market/contracts"
        assert seen["params"] == {"productType": "USDT-FUTURES"}

    @pytest.mark.asyncio
    async def test_open_interest(self):
        def handler(request):
            assert request.url.path == "/api/v2/mix/market/open-interest"
            assert request.url.params["symbol"] == "BTCUSDT"
            return ok({"openInterestList": [{"symbol": "BTCUSDT", "size": "34278.06"}], "ts": TS})

        sample = await make_client(handler).fetch(Metric.OPEN_INTEREST, "BTCUSDT")

        assert sample.instrument == "BTCUSDT"
        assert sample.metric == Metric.OPEN_INTEREST
        assert sample.value == pytest.approx(34278.06)
        assert sample.auxiliary_value is None
        assert sample.timestamp == datetime(2024, 1, 1, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_funding_rate(self):
        def handler(request):
            assert request.url.path == "/api/v2/mix/market/current-fund-rate"
            return ok([{"symbol": "BTCUSDT", "fundingRate": "0.000068"}])

        sample = await make_client(handler).fetch(Metric.FUNDING_RATE, "BTCUSDT")

        assert sample.metric == Metric.FUNDING_RATE
        assert sample.value == pytest.approx(0.000068)

    @pytest.mark.asyncio
    async def test_ticker_carries_quote_volume(self):
        def handler(request):
            assert request.url.path == "/api/v2/mix/market/ticker"
            return ok([{
                "symbol": "BTCUSDT",
                "lastPr": "42000.5",
                "quoteVolume": "1234567890.12",
                "baseVolume": "29000",
                "ts": TS,
            }])

        sample = await make_client(handler).fetch(Metric.PRICE, "BTCUSDT")

        assert sample.value == pytest.approx(42000.5)
        assert sample.auxiliary_value == pytest.approx(1234567890.12)

    @pytest.mark.asyncio
    async def test_error_code_raises(self):
        def handler(request):
            return httpx.Response(200, json={"code": "40034", "msg": "Parameter does not exist", "data": None})

        with pytest.raises(TransientFetchError) as exc:
            await make_client(handler).fetch(Metric.PRICE, "NOPEUSDT")

        assert exc.value.instrument == "NOPEUSDT"
        assert exc.value.metric == "price"
        assert "Parameter does not exist" in str(exc.value)

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        with pytest.raises(TransientFetchError):
            await make_client(lambda r: httpx.Response(503)).fetch(Metric.PRICE, "BTCUSDT")

    @pytest.mark.asyncio
    async def test_timeout_raises(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(TransientFetchError):
            await make_client(handler).fetch(Metric.OPEN_INTEREST, "BTCUSDT")

    @pytest.mark.asyncio
    async def test_invalid_json_raises(self):
        with pytest.raises(TransientFetchError):
            await make_client(lambda r: httpx.Response(200, text="<html>")).fetch(Metric.PRICE, "BTCUSDT")

    @pytest.mark.asyncio
    async def test_malformed_payload_raises(self):
        with pytest.raises(TransientFetchError):
            await make_client(lambda r: ok([{"symbol": "BTCUSDT"}])).fetch(Metric.PRICE, "BTCUSDT")

        with pytest.raises(TransientFetchError):
            await make_client(lambda r: ok({"openInterestList": []})).fetch(Metric.OPEN_INTEREST, "BTCUSDT")

        with pytest.raises(TransientFetchError):
            await make_client(lambda r: ok([])).fetch(Metric.FUNDING_RATE, "BTCUSDT")

    @pytest.mark.asyncio
    async def test_contract_list_failure_raises(self):
        with pytest.raises(TransientFetchError):
            await make_client(lambda r: httpx.Response(500)).list_instruments()

    @pytest.mark.asyncio
    async def test_non_object_entries_raise(self):
        with pytest.raises(TransientFetchError):
            await make_client(lambda r: ok(["garbage"])).fetch(Metric.PRICE, "BTCUSDT")

        with pytest.raises(TransientFetchError):
            await make_client(lambda r: ok(["garbage"])).fetch(Metric.FUNDING_RATE, "BTCUSDT")
