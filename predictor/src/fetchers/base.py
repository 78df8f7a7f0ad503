"""Base fetcher interface and shared HTTP client management.

All exchange fetchers inherit from BaseFetcher and implement three REST reads:

- ``fetch_trades(instrument)``: recent public trade prints
- ``fetch_candles(instrument, minutes)``: recent 1-minute candles, oldest first
- ``fetch_trades_between(instrument, start_ms, end_ms)``: historical trades in
  a closed time window, paged until the window is covered

A shared httpx.AsyncClient is used across all fetchers to avoid connection
overhead. Transport and parse failures raise FetcherError so callers can
apply their retry policy.

.. code-block:: python

    @register_fetcher
    class MyFetcher(BaseFetcher):
        name = "myexchange"

        async def fetch_trades(self, instrument: str) -> list[TradePrint]:
            response = await self._get(f"https://api.example.com/trades/{instrument}")
            return [TradePrint(t["id"], t["ts"], float(t["px"])) for t in response.json()]

        async def fetch_candles(self, instrument: str, minutes: int) -> list[Candle]:
            ...
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import ClassVar

import httpx

logger = logging.getLogger(__name__)


class FetcherError(Exception):
    """Base exception for fetcher errors."""

    pass


class FetcherHTTPError(FetcherError):
    """Raised when HTTP request fails.

    :ivar status_code: HTTP status code from the failed request.
    """

    def __init__(self, status_code: int, message: str):
        """Initialize the HTTP error.

        :param status_code: HTTP status code.
        :param message: Error message from response.
        """
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}: {message}")


@dataclass(frozen=True)
class TradePrint:
    """One public trade as reported by an exchange.

    :ivar trade_id: Exchange trade id (string, unique per instrument).
    :ivar timestamp_ms: Trade time in milliseconds.
    :ivar price: Trade price.
    """

    trade_id: str
    timestamp_ms: int
    price: float


@dataclass(frozen=True)
class Candle:
    """A 1-minute candle reduced to what backfill needs.

    :ivar start_ms: Candle open time in milliseconds.
    :ivar close: Close price.
    """

    start_ms: int
    close: float


class BaseFetcher(ABC):
    """Abstract base class for exchange REST fetchers.

    Subclasses must implement:
        - name: Class variable identifying the exchange (e.g., "binance", "okx")
        - fetch_trades(): Recent trade prints for an instrument
        - fetch_candles(): Recent 1-minute candles for an instrument
        - fetch_trades_between(): Historical trades in a time window

    :cvar name: Unique identifier for this fetcher.
    :cvar DEFAULT_TIMEOUT: Default HTTP request timeout in seconds.
    :cvar TRADE_LIMIT: Number of trades requested per poll.
    :cvar PAGE_PAUSE: Seconds between consecutive history pages.
    :ivar timeout: Request timeout in seconds.
    """

    # Class-level shared HTTP client
    _shared_client: ClassVar[httpx.AsyncClient | None] = None

    # Fetcher identification
    name: ClassVar[str] = ""

    # Default timeout for HTTP requests (seconds)
    DEFAULT_TIMEOUT = 10.0

    TRADE_LIMIT = 100

    PAGE_PAUSE = 0.2

    def __init__(self, timeout: float | None = None):
        """Initialize the fetcher.

        :param timeout: Request timeout in seconds (default: 10).
        """
        self.timeout = timeout or self.DEFAULT_TIMEOUT

    @classmethod
    def get_shared_client(cls) -> httpx.AsyncClient:
        """Get or create the shared HTTP client.

        The client is shared across all fetcher instances to reuse connections.

        :returns: Shared httpx.AsyncClient instance.
        """
        if BaseFetcher._shared_client is None or BaseFetcher._shared_client.is_closed:
            BaseFetcher._shared_client = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0, connect=10.0),
                limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
                headers={"accept": "application/json"},
                follow_redirects=True,
            )
        return BaseFetcher._shared_client

    @classmethod
    def set_shared_client(cls, client: httpx.AsyncClient) -> None:
        """Replace the shared client (e.g. one with a mock transport)."""
        BaseFetcher._shared_client = client

    @classmethod
    async def close_shared_client(cls) -> None:
        """Close the shared HTTP client."""
        client = BaseFetcher._shared_client
        if client is not None and not client.is_closed:
            await client.aclose()
        BaseFetcher._shared_client = None

    @abstractmethod
    async def fetch_trades(self, instrument: str) -> list[TradePrint]:
        """Fetch recent public trades.

        :param instrument: Exchange instrument id (e.g., "BTCUSDC", "BTC-USDC").
        :returns: Trades, oldest first.
        :raises FetcherError: On network, HTTP or parse errors.
        """
        pass

    @abstractmethod
    async def fetch_candles(self, instrument: str, minutes: int) -> list[Candle]:
        """Fetch recent 1-minute candles.

        :param instrument: Exchange instrument id.
        :param minutes: Number of candles wanted (capped by the exchange).
        :returns: Candles, oldest first.
        :raises FetcherError: On network, HTTP or parse errors.
        """
        pass

    @abstractmethod
    async def fetch_trades_between(
        self, instrument: str, start_ms: int, end_ms: int
    ) -> list[TradePrint]:
        """Fetch historical trades with ``start_ms <= timestamp <= end_ms``.

        Implementations page through the exchange's history endpoint and stop
        once the window is covered or a page guard is hit.

        :param instrument: Exchange instrument id.
        :param start_ms: Window start in milliseconds.
        :param end_ms: Window end in milliseconds (inclusive).
        :returns: Trades, oldest first.
        :raises FetcherError: On network, HTTP or parse errors.
        """
        pass

    async def _page_pause(self) -> None:
        if self.PAGE_PAUSE > 0:
            await asyncio.sleep(self.PAGE_PAUSE)

    async def _get(
        self,
        url: str,
        *,
        params: dict | None = None,
        headers: dict | None = None,
    ) -> httpx.Response:
        """Make an HTTP GET request using the shared client.

        :param url: Request URL.
        :param params: Optional query parameters.
        :param headers: Optional request headers.
        :returns: httpx.Response object.
        :raises FetcherHTTPError: On non-2xx response.
        :raises FetcherError: On network/timeout errors.
        """
        client = self.get_shared_client()
        try:
            response = await client.get(
                url,
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
            if not response.is_success:
                logger.debug(
                    "HTTP GET %s failed with status %s: %s",
                    url,
                    response.status_code,
                    response.text[:200],
                )
                raise FetcherHTTPError(response.status_code, response.text[:200])
            return response
        except httpx.TimeoutException as e:
            raise FetcherError(f"Request timeout: {e}") from e
        except httpx.RequestError as e:
            raise FetcherError(f"Request failed: {e}") from e

    async def _get_json(self, url: str, *, params: dict | None = None):
        """GET and parse a JSON body.

        :raises FetcherError: If the body is not valid JSON.
        """
        response = await self._get(url, params=params)
        try:
            return response.json()
        except ValueError as e:
            raise FetcherError(f"[{self.name}] Invalid JSON from {url}: {e}") from e


# Registry of available fetchers (populated by subclass imports)
FETCHER_REGISTRY: dict[str, type[BaseFetcher]] = {}


def register_fetcher(cls: type[BaseFetcher]) -> type[BaseFetcher]:
    """Decorator to register a fetcher class in the global registry.

    :param cls: Fetcher class to register.
    :returns: The registered class (unchanged).
    :raises ValueError: If fetcher has no name defined.
    """
    if not cls.name:
        raise ValueError(f"Fetcher {cls.__name__} must define a 'name' class variable")
    FETCHER_REGISTRY[cls.name] = cls
    return cls


def get_fetcher(name: str, timeout: float | None = None) -> BaseFetcher:
    """Get a fetcher instance by name.

    :param name: Fetcher name (e.g., "binance", "okx").
    :param timeout: Optional request timeout in seconds.
    :returns: Fetcher instance.
    :raises ValueError: If fetcher name is unknown.
    """
    if name not in FETCHER_REGISTRY:
        available = ", ".join(sorted(FETCHER_REGISTRY.keys()))
        raise ValueError(f"Unknown fetcher '{name}'. Available: {available}")
    return FETCHER_REGISTRY[name](timeout=timeout)


def get_available_fetchers() -> list[str]:
    """Get list of available fetcher names.

    :returns: Sorted list of registered fetcher names.
    """
    return sorted(FETCHER_REGISTRY.keys())
