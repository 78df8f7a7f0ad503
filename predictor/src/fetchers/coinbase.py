"""Coinbase Exchange fetcher.

Endpoints:
    https://api.exchange.coinbase.com/products/BTC-USDC/trades
    https://api.exchange.coinbase.com/products/BTC-USDC/candles?granularity=60
    https://api.exchange.coinbase.com/products/BTC-USDC/trades?after=<trade_id>
Rate Limit: High (no key required)
Instrument format: "BTC-USDC"
"""

import logging
from datetime import datetime

from .base import BaseFetcher, Candle, FetcherError, TradePrint, register_fetcher

logger = logging.getLogger(__name__)


def _iso_to_ms(value: str) -> int:
    """Parse Coinbase's ISO-8601 UTC timestamp (``...Z``) to milliseconds."""
    return round(datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp() * 1000)


@register_fetcher
class CoinbaseFetcher(BaseFetcher):
    """Fetcher for Coinbase Exchange API.

    No API key required for public trade and candle endpoints.
    """

    name = "coinbase"
    BASE_URL = "https://api.exchange.coinbase.com"

    MAX_CANDLES = 300
    HISTORY_LIMIT = 1000
    MAX_HISTORY_PAGES = 200

    async def fetch_trades(self, instrument: str) -> list[TradePrint]:
        """Fetch recent trades; items carry ``trade_id``, ``price`` and ISO ``time``."""
        data = await self._get_json(
            f"{self.BASE_URL}/products/{instrument}/trades",
            params={"limit": self.TRADE_LIMIT},
        )
        try:
            trades = [
                TradePrint(str(t["trade_id"]), _iso_to_ms(t["time"]), float(t["price"]))
                for t in data
            ]
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            raise FetcherError(
                f"[coinbase] Failed to parse trades for {instrument}: {e}"
            ) from e
        return sorted(trades, key=lambda t: t.timestamp_ms)

    async def fetch_candles(self, instrument: str, minutes: int) -> list[Candle]:
        """Fetch 1-minute candles.

        Rows are ``[time, low, high, open, close, volume]`` with ``time`` in
        seconds, newest first. The endpoint always returns up to 300 rows, so
        the most recent ``minutes`` are kept.
        """
        data = await self._get_json(
            f"{self.BASE_URL}/products/{instrument}/candles",
            params={"granularity": 60},
        )
        if not isinstance(data, list):
            raise FetcherError(f"[coinbase] Unexpected candles response for {instrument}")

        candles = []
        for row in data:
            try:
                candles.append(Candle(int(row[0]) * 1000, float(row[4])))
            except (IndexError, ValueError, TypeError):
                logger.debug(f"[coinbase] Skipping malformed candle for {instrument}: {row}")
        candles.sort(key=lambda c: c.start_ms)
        limit = min(self.MAX_CANDLES, max(1, minutes))
        return candles[-limit:]

    async def fetch_trades_between(
        self, instrument: str, start_ms: int, end_ms: int
    ) -> list[TradePrint]:
        """Page backwards from the newest trade until ``start_ms`` is reached.

        Pages are newest first; ``after=<trade_id>`` returns trades older than
        that id. Gives up after ``MAX_HISTORY_PAGES`` pages.
        """
        trades: list[TradePrint] = []
        cursor: int | None = None
        for _ in range(self.MAX_HISTORY_PAGES):
            params: dict = {"limit": self.HISTORY_LIMIT}
            if cursor is not None:
                params["after"] = cursor
            data = await self._get_json(
                f"{self.BASE_URL}/products/{instrument}/trades", params=params
            )
            if not isinstance(data, list):
                raise FetcherError(f"[coinbase] Unexpected trades response for {instrument}")
            if not data:
                break
            try:
                page = [
                    TradePrint(str(t["trade_id"]), _iso_to_ms(t["time"]), float(t["price"]))
                    for t in data
                ]
                oldest_id = min(int(t["trade_id"]) for t in data)
            except (KeyError, ValueError, TypeError, AttributeError) as e:
                raise FetcherError(
                    f"[coinbase] Failed to parse trades for {instrument}: {e}"
                ) from e
            trades.extend(t for t in page if start_ms <= t.timestamp_ms <= end_ms)

            if min(t.timestamp_ms for t in page) < start_ms:
                break
            cursor = oldest_id
            await self._page_pause()
        else:
            logger.warning(
                f"[coinbase] History for {instrument} truncated after "
                f"{self.MAX_HISTORY_PAGES} pages"
            )

        return sorted(trades, key=lambda t: t.timestamp_ms)
