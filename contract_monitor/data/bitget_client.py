"""
Bitget USDT-M futures market data client.

Uses the public v2 mix-market REST endpoints only, so no request signing
is needed:
- /api/v2/mix/market/contracts
- /api/v2/mix/market/open-interest
- /api/v2/mix/market/current-fund-rate
- /api/v2/mix/market/ticker

Every failure for a single instrument surfaces as TransientFetchError so
the sampler can skip that instrument for the cycle.
"""

from datetime import datetime, timezone
from typing import Any, Optional, Protocol
import structlog

import httpx

from contract_monitor.data.models import Metric, MetricSample
from contract_monitor.errors import TransientFetchError

logger = structlog.get_logger(__name__)


SUCCESS_CODE = "00000"


class MetricSource(Protocol):
    """Pull-based source of metric samples."""

    async def list_instruments(self) -> list[str]:
        ...

    async def fetch(self, metric: Metric, instrument: str) -> MetricSample:
        ...


def _parse_timestamp(raw: Any) -> datetime:
    """Bitget timestamps are epoch milliseconds as strings."""
    try:
        return datetime.fromtimestamp(int(raw) / 1000, tz=timezone.utc)
    except (TypeError, ValueError):
        return datetime.now(timezone.utc)


def _first(data: Any) -> dict:
    """Endpoints return either a single object or a one-element list."""
    if isinstance(data, list):
        if not data:
            raise ValueError("empty data list")
        return data[0]
    if isinstance(data, dict):
        return data
    raise ValueError(f"unexpected data type {type(data).__name__}")


class BitgetClient:
    """
    Async Bitget market data client.

    Implements MetricSource for open interest, price and funding rate.
    """

    def __init__(
        self,
        base_url: str = "https://api.bitget.com",
        product_type: str = "USDT-FUTURES",
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize Bitget client.

        Args:
            base_url: REST base URL
            product_type: Bitget product type (USDT-FUTURES for USDT perpetuals)
            timeout_seconds: Per-request timeout
            client: Preconfigured HTTP client (tests inject a mock transport)
        """
        self.base_url = base_url.rstrip("/")
        self.product_type = product_type
        self.client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout_seconds)

        logger.info(
            "bitget_client_initialized",
            base_url=self.base_url,
            product_type=product_type,
        )

    async def list_instruments(self) -> list[str]:
        """
        List tradable perpetual contracts.

        Raises:
            TransientFetchError: If the contract list cannot be loaded
        """
        data = await self._get(
            "/api/v2/mix/market/contracts",
            {"productType": self.product_type},
        )
        if not isinstance(data, list):
            raise TransientFetchError("contract list is not a list")

        symbols = sorted(
            item["symbol"]
            for item in data
            if item.get("symbol") and item.get("symbolStatus", "normal") == "normal"
        )
        logger.info("contracts_loaded", count=len(symbols))
        return symbols

    async def fetch(self, metric: Metric, instrument: str) -> MetricSample:
        """Fetch one metric for one instrument."""
        if metric == Metric.OPEN_INTEREST:
            return await self.get_open_interest(instrument)
        if metric == Metric.PRICE:
            return await self.get_ticker(instrument)
        if metric == Metric.FUNDING_RATE:
            return await self.get_funding_rate(instrument)
        raise ValueError(f"unsupported metric {metric!r}")

    async def get_open_interest(self, symbol: str) -> MetricSample:
        """Open interest in contract size (base asset units)."""
        data = await self._get(
            "/api/v2/mix/market/open-interest",
            {"symbol": symbol, "productType": self.product_type},
            instrument=symbol,
            metric=Metric.OPEN_INTEREST,
        )
        try:
            entries = data.get("openInterestList") or []
            entry = next(e for e in entries if e.get("symbol", symbol) == symbol)
            return MetricSample(
                instrument=symbol,
                metric=Metric.OPEN_INTEREST,
                value=float(entry["size"]),
                timestamp=_parse_timestamp(data.get("ts")),
            )
        except (AttributeError, KeyError, StopIteration, TypeError, ValueError) as e:
            raise TransientFetchError(
                f"malformed open interest payload: {e!r}",
                instrument=symbol,
                metric=Metric.OPEN_INTEREST.value,
            ) from e

    async def get_funding_rate(self, symbol: str) -> MetricSample:
        """Current funding rate as a fraction (0.0001 = 0.01%)."""
        data = await self._get(
            "/api/v2/mix/market/current-fund-rate",
            {"symbol": symbol, "productType": self.product_type},
            instrument=symbol,
            metric=Metric.FUNDING_RATE,
        )
        try:
            item = _first(data)
            return MetricSample(
                instrument=symbol,
                metric=Metric.FUNDING_RATE,
                value=float(item["fundingRate"]),
                timestamp=_parse_timestamp(item.get("ts")),
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise TransientFetchError(
                f"malformed funding rate payload: {e!r}",
                instrument=symbol,
                metric=Metric.FUNDING_RATE.value,
            ) from e

    async def get_ticker(self, symbol: str) -> MetricSample:
        """Last price, with 24h quote volume as the auxiliary value."""
        data = await self._get(
            "/api/v2/mix/market/ticker",
            {"symbol": symbol, "productType": self.product_type},
            instrument=symbol,
            metric=Metric.PRICE,
        )
        try:
            ticker = _first(data)
            quote_volume = ticker.get("quoteVolume")
            return MetricSample(
                instrument=symbol,
                metric=Metric.PRICE,
                value=float(ticker["lastPr"]),
                auxiliary_value=float(quote_volume) if quote_volume not in (None, "") else None,
                timestamp=_parse_timestamp(ticker.get("ts")),
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise TransientFetchError(
                f"malformed ticker payload: {e!r}",
                instrument=symbol,
                metric=Metric.PRICE.value,
            ) from e

    async def _get(
        self,
        path: str,
        params: dict[str, str],
        instrument: Optional[str] = None,
        metric: Optional[Metric] = None,
    ) -> Any:
        """GET an endpoint and unwrap Bitget's {code, msg, data} envelope."""
        metric_name = metric.value if metric else None

        try:
            response = await self.client.get(path, params=params)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            raise TransientFetchError(
                f"{path} request failed: {e!r}",
                instrument=instrument,
                metric=metric_name,
            ) from e
        except ValueError as e:
            raise TransientFetchError(
                f"{path} returned invalid JSON",
                instrument=instrument,
                metric=metric_name,
            ) from e

        if not isinstance(body, dict) or body.get("code") != SUCCESS_CODE or body.get("data") is None:
            message = body.get("msg") if isinstance(body, dict) else None
            raise TransientFetchError(
                f"{path} returned error: {message or 'no data'}",
                instrument=instrument,
                metric=metric_name,
            )

        return body["data"]

    async def aclose(self) -> None:
        await self.client.aclose()
