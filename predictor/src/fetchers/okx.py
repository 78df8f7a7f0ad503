"""OKX fetcher.

Endpoints:
    https://www.okx.com/api/v5/market/trades?instId=BTC-USDC
    https://www.okx.com/api/v5/market/candles?instId=BTC-USDC&bar=1m
    https://www.okx.com/api/v5/market/history-trades?instId=BTC-USDC&type=2&after=<ts>
Rate Limit: Medium (20 requests / 2s per endpoint, no key required)
Instrument format: "BTC-USDC"
"""

import logging

from .base import BaseFetcher, Candle, FetcherError, TradePrint, register_fetcher

logger = logging.getLogger(__name__)


@register_fetcher
class OKXFetcher(BaseFetcher):
    """Fetcher for OKX public market data.

    OKX wraps payloads as ``{"code": "0", "msg": "", "data": [...]}``; a
    non-zero code is an error even on HTTP 200.
    """

    name = "okx"
    BASE_URL = "https://www.okx.com/api/v5/market"

    MAX_CANDLES = 300
    MAX_HISTORY_PAGES = 50

    async def _data(self, path: str, params: dict, instrument: str) -> list:
        body = await self._get_json(f"{self.BASE_URL}/{path}", params=params)
        if not isinstance(body, dict) or str(body.get("code")) != "0":
            msg = body.get("msg") if isinstance(body, dict) else body
            raise FetcherError(f"[okx] {path} error for {instrument}: {msg}")
        data = body.get("data")
        if not isinstance(data, list):
            raise FetcherError(f"[okx] {path} returned no data for {instrument}")
        return data

    async def fetch_trades(self, instrument: str) -> list[TradePrint]:
        """Fetch recent trades; items carry ``tradeId``, ``px`` and ``ts`` strings."""
        data = await self._data(
            "trades", {"instId": instrument, "limit": self.TRADE_LIMIT}, instrument
        )
        try:
            trades = [
                TradePrint(str(t["tradeId"]), int(t["ts"]), float(t["px"])) for t in data
            ]
        except (KeyError, ValueError, TypeError) as e:
            raise FetcherError(f"[okx] Failed to parse trades for {instrument}: {e}") from e
        return sorted(trades, key=lambda t: t.timestamp_ms)

    async def fetch_candles(self, instrument: str, minutes: int) -> list[Candle]:
        """Fetch 1-minute candles; rows are ``[ts, o, h, l, c, ...]``, newest first."""
        limit = min(self.MAX_CANDLES, max(1, minutes))
        data = await self._data(
            "candles", {"instId": instrument, "bar": "1m", "limit": limit}, instrument
        )
        candles = []
        for row in data:
            try:
                candles.append(Candle(int(row[0]), float(row[4])))
            except (IndexError, ValueError, TypeError):
                logger.debug(f"[okx] Skipping malformed candle for {instrument}: {row}")
        return sorted(candles, key=lambda c: c.start_ms)

    async def fetch_trades_between(
        self, instrument: str, start_ms: int, end_ms: int
    ) -> list[TradePrint]:
        """Page backwards through history trades, newest first.

        With ``type=2`` the ``after`` cursor is a timestamp and each page
        holds trades strictly older than it. Paging stops once a page reaches
        past ``start_ms``, or after ``MAX_HISTORY_PAGES`` pages.
        """
        trades: list[TradePrint] = []
        after = end_ms + 1
        for _ in range(self.MAX_HISTORY_PAGES):
            data = await self._data(
                "history-trades",
                {
                    "instId": instrument,
                    "type": "2",
                    "after": str(after),
                    "limit": self.TRADE_LIMIT,
                },
                instrument,
            )
            if not data:
                break
            try:
                page = [
                    TradePrint(str(t["tradeId"]), int(t["ts"]), float(t["px"])) for t in data
                ]
            except (KeyError, ValueError, TypeError) as e:
                raise FetcherError(
                    f"[okx] Failed to parse history trades for {instrument}: {e}"
                ) from e
            trades.extend(t for t in page if start_ms <= t.timestamp_ms <= end_ms)

            oldest = min(t.timestamp_ms for t in page)
            if oldest < start_ms or oldest >= after:
                break
            after = oldest
            await self._page_pause()
        else:
            logger.warning(
                f"[okx] History for {instrument} truncated after "
                f"{self.MAX_HISTORY_PAGES} pages"
            )

        return sorted(trades, key=lambda t: t.timestamp_ms)
