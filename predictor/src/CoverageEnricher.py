"""CoverageEnricher: Historical trades for calibration instants without bins.

Live polling only covers the time the service has been running, and candle
backfill gives one tick per second at best. Before a calibration sweep, the
lagged event instants that have no nearby bins are handed here:

    1. Instants are widened to ``[t - before, t + after]`` and overlapping
       windows merged
    2. Each configured source of the symbol is asked for its trade history
       in the window, under the retry policy
    3. Trades falling in buckets where that source already has stored
       trades are dropped, the rest are inserted
    4. Every bucket of the window is rebuilt

A source that keeps failing is logged and skipped; the others still load.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence

from .Aggregator import Aggregator
from .PredictorConfig import CalibrationSettings, PredictorConfig
from .Records import Trade, bucket_of
from .TickStore import TickStore
from .fetchers import BaseFetcher, FetcherError, TradePrint, get_fetcher

logger = logging.getLogger(__name__)


class CoverageEnricher:
    """Fills bin gaps from exchange trade history.

    :ivar instruments: Canonical symbol to {source: instrument}.
    :ivar fetchers: Source name to fetcher.
    :ivar loop: Event loop that owns the shared HTTP client; blocking callers
        on other threads submit work to it. Set by the runtime.
    """

    def __init__(
        self,
        store: TickStore,
        aggregator: Aggregator,
        config: PredictorConfig,
        fetchers: dict[str, BaseFetcher] | None = None,
        settings: CalibrationSettings | None = None,
    ) -> None:
        self.store = store
        self.aggregator = aggregator
        self.retry = config.retry
        self.settings = settings or config.calibration
        self.instruments = {p.symbol: dict(p.instruments) for p in config.pairs}
        self.fetchers = fetchers or {
            name: get_fetcher(name, timeout=config.ingest.fetch_timeout)
            for name in config.exchanges
        }
        self.loop: asyncio.AbstractEventLoop | None = None

    def windows(self, instants_ms: Iterable[int]) -> list[tuple[int, int]]:
        """Fetch windows around each instant, merged where they overlap."""
        before = self.settings.enrich_before_seconds * 1000
        after = self.settings.enrich_after_seconds * 1000
        merged: list[tuple[int, int]] = []
        for t in sorted(set(instants_ms)):
            start, end = t - before, t + after
            if merged and start <= merged[-1][1]:
                merged[-1] = (merged[-1][0], max(merged[-1][1], end))
            else:
                merged.append((start, end))
        return merged

    def _new_trades(
        self, source: str, symbol: str, prints: list[TradePrint], start_ms: int, end_ms: int
    ) -> list[Trade]:
        """Prints in the window whose bucket holds no stored trade from ``source``."""
        held = {
            bucket_of(t.timestamp_ms)
            for t in self.store.trades_between(symbol, start_ms, end_ms + 1, source=source)
        }
        return [
            Trade(source, symbol, p.timestamp_ms, p.price)
            for p in prints
            if start_ms <= p.timestamp_ms <= end_ms
            and p.price > 0
            and bucket_of(p.timestamp_ms) not in held
        ]

    async def enrich_symbol(self, symbol: str, instants_ms: Iterable[int]) -> int:
        """Fetch, store and bin history around ``instants_ms`` for one symbol.

        :returns: Number of trades inserted.
        """
        instruments = self.instruments.get(symbol)
        if not instruments:
            logger.debug(f"[{symbol}] No instruments configured, enrichment skipped")
            return 0

        inserted = 0
        for start, end in self.windows(instants_ms):
            written = 0
            for source, instrument in instruments.items():
                fetcher = self.fetchers.get(source)
                if fetcher is None:
                    continue
                try:
                    prints = await self.retry.call_async(
                        lambda f=fetcher, i=instrument, a=start, b=end: (
                            f.fetch_trades_between(i, a, b)
                        ),
                        what=f"[{source}] history {instrument}",
                    )
                except FetcherError as e:
                    logger.warning(f"[{source}] Enrichment of {symbol} skipped: {e}")
                    continue

                trades = await asyncio.to_thread(
                    self._new_trades, source, symbol, prints, start, end
                )
                if trades:
                    await asyncio.to_thread(self.store.insert_trades, trades)
                    written += len(trades)

            if written:
                await asyncio.to_thread(self.aggregator.rebuild_range, symbol, start, end + 1)
            inserted += written
        logger.info(f"[{symbol}] Enrichment inserted {inserted} historical trade(s)")
        return inserted

    async def enrich(self, symbols: Sequence[str], instants_ms: Sequence[int]) -> int:
        """Enrich every symbol around the same instants.

        :returns: Total trades inserted.
        """
        total = 0
        for symbol in symbols:
            total += await self.enrich_symbol(symbol, instants_ms)
        return total

    async def _enrich_and_close(self, symbols: Sequence[str], instants_ms: Sequence[int]) -> int:
        try:
            return await self.enrich(symbols, instants_ms)
        finally:
            await BaseFetcher.close_shared_client()

    def fill(self, symbols: Sequence[str], instants_ms: Sequence[int]) -> int:
        """Blocking entry point for calibration.

        Runs on ``loop`` when one is set and running; must then be called
        from a thread other than the loop's own. Otherwise the work runs on a
        private loop whose HTTP client is closed afterwards.

        :returns: Total trades inserted.
        """
        if self.loop is not None and self.loop.is_running():
            future = asyncio.run_coroutine_threadsafe(
                self.enrich(symbols, instants_ms), self.loop
            )
            return future.result()
        return asyncio.run(self._enrich_and_close(symbols, instants_ms))
