"""Binance spot fetcher.

Endpoints:
    https://api.binance.com/api/v3/trades?symbol=BTCUSDC
    https://api.binance.com/api/v3/klines?symbol=BTCUSDC&interval=1m
    https://api.binance.com/api/v3/aggTrades?symbol=BTCUSDC&startTime=...&endTime=...
Rate Limit: High (no key required for public endpoints)
Instrument format: "BTCUSDC"
"""

import logging

from .base import BaseFetcher, Candle, FetcherError, TradePrint, register_fetcher

logger = logging.getLogger(__name__)


@register_fetcher
class BinanceFetcher(BaseFetcher):
    """Fetcher for Binance public market data."""

    name = "binance"
    BASE_URL = "https://api.binance.com/api/v3"

    # Binance caps klines and aggTrades at 1000 per request
    MAX_CANDLES = 1000
    MAX_AGG_TRADES = 1000
    HISTORY_CHUNK_MS = 60_000

    async def fetch_trades(self, instrument: str) -> list[TradePrint]:
        """Fetch recent trades from Binance.

        Response items look like ``{"id": 28457, "price": "4.00", "time": 1499865549590}``.
        """
        data = await self._get_json(
            f"{self.BASE_URL}/trades",
            params={"symbol": instrument, "limit": self.TRADE_LIMIT},
        )
        try:
            trades = [
                TradePrint(str(t["id"]), int(t["time"]), float(t["price"])) for t in data
            ]
        except (KeyError, ValueError, TypeError) as e:
            raise FetcherError(f"[binance] Failed to parse trades for {instrument}: {e}") from e
        return sorted(trades, key=lambda t: t.timestamp_ms)

    async def fetch_candles(self, instrument: str, minutes: int) -> list[Candle]:
        """Fetch 1-minute klines; rows are ``[openTime, open, high, low, close, ...]``."""
        limit = min(self.MAX_CANDLES, max(1, minutes))
        data = await self._get_json(
            f"{self.BASE_URL}/klines",
            params={"symbol": instrument, "interval": "1m", "limit": limit},
        )
        if not isinstance(data, list):
            raise FetcherError(f"[binance] Unexpected klines response for {instrument}")

        candles = []
        for row in data:
            try:
                candles.append(Candle(int(row[0]), float(row[4])))
            except (IndexError, ValueError, TypeError):
                logger.debug(f"[binance] Skipping malformed kline for {instrument}: {row}")
        return sorted(candles, key=lambda c: c.start_ms)

    async def fetch_trades_between(
        self, instrument: str, start_ms: int, end_ms: int
    ) -> list[TradePrint]:
        """Fetch aggregate trades in ``HISTORY_CHUNK_MS`` slices.

        Items look like ``{"a": 26129, "p": "0.01633102", "T": 1498793709153}``.
        A full page continues from its last trade time inside the same slice.
        """
        trades: list[TradePrint] = []
        cursor = start_ms
        while cursor <= end_ms:
            chunk_end = min(end_ms, cursor + self.HISTORY_CHUNK_MS - 1)
            data = await self._get_json(
                f"{self.BASE_URL}/aggTrades",
                params={
                    "symbol": instrument,
                    "startTime": cursor,
                    "endTime": chunk_end,
                    "limit": self.MAX_AGG_TRADES,
                },
            )
            if not isinstance(data, list):
                raise FetcherError(f"[binance] Unexpected aggTrades response for {instrument}")
            try:
                page = [TradePrint(str(t["a"]), int(t["T"]), float(t["p"])) for t in data]
            except (KeyError, ValueError, TypeError) as e:
                raise FetcherError(
                    f"[binance] Failed to parse aggTrades for {instrument}: {e}"
                ) from e
            trades.extend(page)

            if len(page) >= self.MAX_AGG_TRADES:
                cursor = max(t.timestamp_ms for t in page) + 1
            else:
                cursor = chunk_end + 1
            if cursor <= end_ms:
                await self._page_pause()

        logger.debug(f"[binance] {len(trades)} historical trades for {instrument}")
        return sorted(trades, key=lambda t: t.timestamp_ms)
