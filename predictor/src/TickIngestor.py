"""TickIngestor: Exchange polling, buffered writes and cold-start backfill.

Architecture:
    - One poll per (exchange, symbol) feed every ``poll_interval_ms``
    - Prints are de-duplicated by exchange trade id and enqueued into a
      BufferedTickWriter
    - The writer flushes every ``flush_interval_ms`` with one multi-row insert,
      falling back to row-by-row inserts when the batch is rejected
    - Buckets touched by a flush are rebuilt by the Aggregator
    - A symbol with no stored trades is backfilled from 1-minute candles,
      each expanded into 60 per-second ticks
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable, Iterable

from sqlalchemy.exc import SQLAlchemyError

from .Aggregator import Aggregator
from .PredictorConfig import PredictorConfig
from .Records import Trade, bucket_of
from .TickStore import TickStore
from .fetchers import BaseFetcher, Candle, FetcherError, TradePrint, get_fetcher

logger = logging.getLogger(__name__)

# Pause between sources during backfill (seconds)
BACKFILL_SOURCE_PAUSE = 0.2


def expand_candles(source: str, symbol: str, candles: Iterable[Candle]) -> list[Trade]:
    """Expand each 1-minute candle into 60 per-second ticks at its close price.

    :param source: Exchange name.
    :param symbol: Canonical symbol.
    :param candles: Candles, any order.
    :returns: Synthetic trades, oldest first.
    """
    trades = []
    for candle in sorted(candles, key=lambda c: c.start_ms):
        base = candle.start_ms - candle.start_ms % 1000
        trades.extend(
            Trade(source, symbol, base + second * 1000, candle.close)
            for second in range(60)
        )
    return trades


class BufferedTickWriter:
    """Owns the pending-trade buffer and its periodic flush.

    ``flush`` may be called from the timer, from shutdown, or by hand, and
    producers may enqueue from any thread. The buffer swap and the in-flight
    flag are guarded by one lock; a flush that arrives while another is
    running returns immediately.

    :ivar store: Destination store.
    :ivar flush_interval: Seconds between timer-driven flushes.
    :ivar on_flushed: Called with the (symbol, bucket) keys of written rows.
    """

    def __init__(
        self,
        store: TickStore,
        flush_interval_ms: int = 500,
        on_flushed: Callable[[set[tuple[str, int]]], object] | None = None,
    ) -> None:
        self.store = store
        self.flush_interval = flush_interval_ms / 1000
        self.on_flushed = on_flushed
        self._buffer: list[Trade] = []
        self._flushing = False
        self._lock = threading.Lock()
        # Set while no flush is in flight
        self._idle = threading.Event()
        self._idle.set()
        self._task: asyncio.Task | None = None
        self.dropped = 0

    def enqueue(self, trade: Trade) -> None:
        with self._lock:
            self._buffer.append(trade)

    def enqueue_many(self, trades: Iterable[Trade]) -> None:
        batch = list(trades)
        with self._lock:
            self._buffer.extend(batch)

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._buffer)

    def flush(self) -> int:
        """Write all buffered trades.

        :returns: Number of rows written (0 if another flush is running).
        """
        with self._lock:
            if self._flushing or not self._buffer:
                return 0
            self._flushing = True
            self._idle.clear()
            batch, self._buffer = self._buffer, []
        try:
            written = self._write(batch)
            if written and self.on_flushed is not None:
                keys = {(t.symbol, bucket_of(t.timestamp_ms)) for t in written}
                try:
                    self.on_flushed(keys)
                except SQLAlchemyError as e:
                    logger.warning(f"Bucket rebuild after flush failed: {e}")
            return len(written)
        finally:
            with self._lock:
                self._flushing = False
                self._idle.set()

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no flush is in flight.

        :returns: False if ``timeout`` elapsed first.
        """
        return self._idle.wait(timeout)

    def _drain(self) -> int:
        self.wait_idle()
        return self.flush()

    def _write(self, batch: list[Trade]) -> list[Trade]:
        try:
            self.store.insert_trades(batch)
            return batch
        except SQLAlchemyError as e:
            logger.warning(
                f"Batch insert of {len(batch)} trades failed, retrying row by row: {e}"
            )

        written = []
        for trade in batch:
            try:
                self.store.insert_trade(trade)
                written.append(trade)
            except SQLAlchemyError as e:
                self.dropped += 1
                logger.warning(
                    f"[{trade.source}] Dropped trade {trade.symbol}@{trade.timestamp_ms}: {e}"
                )
        return written

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval)
            await asyncio.to_thread(self.flush)

    def start(self) -> None:
        """Start the background flush task on the running loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Cancel the flush task and write what is left.

        Cancelling does not interrupt a flush already running in a worker
        thread, so the final drain waits for it first.
        """
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await asyncio.to_thread(self._drain)


class TickIngestor:
    """Feeds exchange trades into the store.

    :ivar config: Resolved configuration.
    :ivar writer: Buffered writer shared by all feeds.
    :ivar feeds: (source, symbol, instrument) triples being polled.
    """

    def __init__(
        self,
        store: TickStore,
        aggregator: Aggregator,
        config: PredictorConfig,
        fetchers: dict[str, BaseFetcher] | None = None,
        writer: BufferedTickWriter | None = None,
    ) -> None:
        self.store = store
        self.aggregator = aggregator
        self.config = config
        self.retry = config.retry
        self.fetchers = fetchers or {
            name: get_fetcher(name, timeout=config.ingest.fetch_timeout)
            for name in config.exchanges
        }
        self.writer = writer or BufferedTickWriter(
            store,
            flush_interval_ms=config.ingest.flush_interval_ms,
            on_flushed=aggregator.rebuild_buckets,
        )
        self.feeds: list[tuple[str, str, str]] = [
            (source, pair.symbol, instrument)
            for pair in config.pairs
            for source, instrument in pair.instruments.items()
            if source in self.fetchers
        ]
        self._seen: dict[tuple[str, str], set[str]] = {}
        # Set once cold-start backfill has finished.
        self.backfilled = asyncio.Event()

    def _new_prints(
        self, source: str, instrument: str, prints: list[TradePrint]
    ) -> list[TradePrint]:
        """Prints not returned by the previous poll of the same feed."""
        key = (source, instrument)
        seen = self._seen.get(key, set())
        fresh = [p for p in prints if p.trade_id not in seen]
        self._seen[key] = {p.trade_id for p in prints}
        return fresh

    async def poll_once(self, source: str, symbol: str, instrument: str) -> int:
        """Poll one feed and enqueue its new trades.

        :returns: Number of trades enqueued.
        """
        fetcher = self.fetchers[source]
        try:
            prints = await self.retry.call_async(
                lambda: fetcher.fetch_trades(instrument),
                what=f"[{source}] trades {instrument}",
            )
        except FetcherError as e:
            logger.warning(f"[{source}] Skipping {symbol} this round: {e}")
            return 0

        fresh = self._new_prints(source, instrument, prints)
        self.writer.enqueue_many(
            Trade(source, symbol, p.timestamp_ms, p.price) for p in fresh if p.price > 0
        )
        logger.debug(f"[{source}] {symbol}: {len(fresh)} new trade(s)")
        return len(fresh)

    async def poll_all(self) -> int:
        """Poll every feed concurrently.

        :returns: Total trades enqueued.
        """
        results = await asyncio.gather(
            *(self.poll_once(*feed) for feed in self.feeds), return_exceptions=True
        )
        total = 0
        for (source, symbol, _), result in zip(self.feeds, results, strict=True):
            if isinstance(result, BaseException):
                logger.warning(f"[{source}] Poll of {symbol} raised {result!r}")
            else:
                total += result
        return total

    async def backfill_if_needed(self) -> dict[str, int]:
        """Backfill symbols that have no stored trades.

        Symbols with any existing trade are skipped entirely. A source whose
        candle fetch fails after retries is skipped; the others still load.

        :returns: Synthetic trades inserted per symbol.
        """
        minutes = self.config.ingest.backfill_minutes
        inserted: dict[str, int] = {}
        for pair in self.config.pairs:
            symbol = pair.symbol
            if await asyncio.to_thread(self.store.has_trades, symbol):
                logger.debug(f"[{symbol}] History present, backfill skipped")
                continue

            logger.info(f"[{symbol}] Backfilling ~{minutes}m of 1m candles")
            count = 0
            first_ms: int | None = None
            last_ms: int | None = None
            for source, instrument in pair.instruments.items():
                fetcher = self.fetchers.get(source)
                if fetcher is None:
                    continue
                try:
                    candles = await self.retry.call_async(
                        lambda f=fetcher, i=instrument: f.fetch_candles(i, minutes),
                        what=f"[{source}] candles {instrument}",
                    )
                except FetcherError as e:
                    logger.warning(f"[{source}] Backfill of {symbol} skipped: {e}")
                    continue

                trades = expand_candles(source, symbol, candles)
                if trades:
                    await asyncio.to_thread(self.store.insert_trades, trades)
                    count += len(trades)
                    lo, hi = trades[0].timestamp_ms, trades[-1].timestamp_ms
                    first_ms = lo if first_ms is None else min(first_ms, lo)
                    last_ms = hi if last_ms is None else max(last_ms, hi)
                await asyncio.sleep(BACKFILL_SOURCE_PAUSE)

            if first_ms is not None and last_ms is not None:
                await asyncio.to_thread(
                    self.aggregator.rebuild_range, symbol, first_ms, last_ms + 1
                )
            inserted[symbol] = count
            logger.info(f"[{symbol}] Backfill complete: {count} ticks")
        return inserted

    async def run(self) -> None:
        """Backfill if needed, then poll forever."""
        interval = self.config.ingest.poll_interval_ms / 1000
        try:
            await self.backfill_if_needed()
        finally:
            self.backfilled.set()
        self.writer.start()
        logger.info(
            f"Polling {len(self.feeds)} feed(s) every {interval:.1f}s: "
            f"{sorted({f[0] for f in self.feeds})}"
        )
        try:
            while True:
                started = time.monotonic()
                await self.poll_all()
                await asyncio.sleep(max(0.0, interval - (time.monotonic() - started)))
        finally:
            await self.writer.stop()
            await BaseFetcher.close_shared_client()
