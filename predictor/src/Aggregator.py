"""Aggregator: 100ms price bins and point-in-time price queries.

Storage path (``rebuild``):
    1. Per source, take the median of trade prices in the 100ms bucket
    2. Across sources, drop ``floor(n * trim_ratio)`` prices from each end
    3. Median of the remainder is the bucket's aggregate price

Query path:
    - ``price_at``: latest aggregate bin at or before t (optionally bounded age),
      else the earliest bin within a small forward slack after t
    - ``weighted_at``: per-source prices near t combined with caller weights,
      renormalized over the sources that actually have data
    - ``current``: live price from raw trades in the trailing window

Medians of even-length lists use the lower-middle element throughout.

.. code-block:: python

    >>> agg = Aggregator(store, AggregatorSettings())
    >>> agg.rebuild("BTCUSDC", 1_700_000_000_000)
    AggregateBin(symbol='BTCUSDC', bucket_ms=1700000000000, price=101.0)
    >>> agg.price_at("BTCUSDC", 1_700_000_000_050)
    101.0
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field

from .PredictorConfig import AggregatorSettings
from .PriceMath import median, trimmed_median
from .Records import BUCKET_MS, AggregateBin, SourceBin, Trade, bucket_of
from .TickStore import TickStore

logger = logging.getLogger(__name__)


@dataclass
class WeightedPrice:
    """Result of a weighted point-in-time query.

    :ivar value: Weighted average over sources with data.
    :ivar per_source: Price used for each contributing source.
    :ivar used_weight: Sum of the weights of contributing sources.
    """

    value: float
    per_source: dict[str, float] = field(default_factory=dict)
    used_weight: float = 0.0


@dataclass
class AggregatedPrice:
    """Live aggregated price.

    :ivar price: Trimmed median of per-source medians.
    :ivar count: Number of contributing sources.
    :ivar sources: Per-source median prices.
    """

    price: float
    count: int
    sources: dict[str, float] = field(default_factory=dict)


class Aggregator:
    """Computes and queries binned prices for canonical symbols.

    :ivar store: Backing tick store.
    :ivar settings: Window, trimming and slack parameters.
    """

    def __init__(self, store: TickStore, settings: AggregatorSettings | None = None) -> None:
        self.store = store
        self.settings = settings or AggregatorSettings()

    # ------------------------------------------------------------------
    # Storage path
    # ------------------------------------------------------------------

    def _combine(self, per_source: dict[str, float]) -> float | None:
        return trimmed_median(per_source.values(), self.settings.trim_ratio)

    def rebuild(self, symbol: str, ts_ms: int) -> AggregateBin | None:
        """Recompute the source bins and aggregate bin of one bucket.

        :param symbol: Canonical symbol.
        :param ts_ms: Any timestamp inside the bucket.
        :returns: The stored aggregate bin, or None if the bucket has no trades.
        """
        bucket = bucket_of(ts_ms)
        bins = self.rebuild_range(symbol, bucket, bucket + BUCKET_MS)
        return bins[0] if bins else None

    def rebuild_range(self, symbol: str, start_ms: int, end_ms: int) -> list[AggregateBin]:
        """Recompute every bucket in ``[start_ms, end_ms)`` from stored trades.

        Existing bins for the same keys are overwritten, so repeated calls are
        idempotent.

        :returns: Aggregate bins written, oldest first.
        """
        start = bucket_of(start_ms)
        trades = self.store.trades_between(symbol, start, end_ms)
        if not trades:
            return []

        by_bucket: dict[int, dict[str, list[float]]] = defaultdict(lambda: defaultdict(list))
        for t in trades:
            by_bucket[bucket_of(t.timestamp_ms)][t.source].append(t.price)

        source_bins: list[SourceBin] = []
        agg_bins: list[AggregateBin] = []
        for bucket in sorted(by_bucket):
            per_source = {
                source: median(prices) for source, prices in by_bucket[bucket].items()
            }
            source_bins.extend(
                SourceBin(symbol, source, bucket, price)
                for source, price in sorted(per_source.items())
            )
            combined = self._combine(per_source)
            if combined is not None:
                agg_bins.append(AggregateBin(symbol, bucket, combined))

        self.store.upsert_source_bins(source_bins)
        self.store.upsert_aggregate_bins(agg_bins)
        logger.debug(
            f"[{symbol}] Rebuilt {len(agg_bins)} bucket(s) in [{start}, {end_ms})"
        )
        return agg_bins

    def rebuild_buckets(self, keys: Iterable[tuple[str, int]]) -> int:
        """Rebuild a set of (symbol, bucket) keys, e.g. those touched by a flush.

        :returns: Number of aggregate bins written.
        """
        by_symbol: dict[str, set[int]] = defaultdict(set)
        for symbol, ts in keys:
            by_symbol[symbol].add(bucket_of(ts))

        written = 0
        for symbol, buckets in by_symbol.items():
            for bucket in sorted(buckets):
                if self.rebuild(symbol, bucket) is not None:
                    written += 1
        return written

    # ------------------------------------------------------------------
    # Query path
    # ------------------------------------------------------------------

    def price_at(self, symbol: str, t_ms: int) -> float | None:
        """Best known aggregate price as of ``t_ms``.

        :param symbol: Canonical symbol.
        :param t_ms: Query instant in milliseconds.
        :returns: Price, or None if there is no bin at or before t (within
            ``max_staleness_ms`` when set) and none within ``forward_slack_ms``
            after it.
        """
        s = self.settings
        oldest = None if s.max_staleness_ms is None else t_ms - s.max_staleness_ms
        before = self.store.aggregate_before(symbol, t_ms, oldest)
        if before is not None:
            return before.price
        after = self.store.aggregate_after(symbol, t_ms, t_ms + s.forward_slack_ms)
        return after.price if after is not None else None

    def source_price_at(
        self, symbol: str, source: str, t_ms: int, window_ms: int | None = None
    ) -> float | None:
        """One source's binned price near ``t_ms``, preferring bins at or before it."""
        window = self.settings.weighted_window_ms if window_ms is None else window_ms
        before = self.store.source_bin_before(symbol, source, t_ms, t_ms - window)
        if before is not None:
            return before.price
        after = self.store.source_bin_after(symbol, source, t_ms, t_ms + window)
        return after.price if after is not None else None

    def weighted_at(
        self, symbol: str, t_ms: int, weights: dict[str, float]
    ) -> WeightedPrice | None:
        """Weighted price over the sources that have data near ``t_ms``.

        Sources without data and sources with non-positive weight are left out
        of both the numerator and the denominator.

        :param symbol: Canonical symbol.
        :param t_ms: Query instant in milliseconds.
        :param weights: Source name to weight.
        :returns: WeightedPrice, or None if no weighted source has data.
        """
        per_source: dict[str, float] = {}
        numerator = 0.0
        used_weight = 0.0
        for source, weight in weights.items():
            if weight <= 0:
                continue
            price = self.source_price_at(symbol, source, t_ms)
            if price is None:
                continue
            per_source[source] = price
            numerator += price * weight
            used_weight += weight

        if used_weight <= 0:
            return None
        return WeightedPrice(
            value=numerator / used_weight, per_source=per_source, used_weight=used_weight
        )

    def current(self, symbol: str, now_ms: int) -> AggregatedPrice | None:
        """Live price from raw trades in the trailing ``window_ms``.

        :returns: AggregatedPrice, or None if fewer than ``min_sources``
            sources traded in the window.
        """
        trades: list[Trade] = self.store.trades_between(
            symbol, now_ms - self.settings.window_ms, now_ms + 1
        )
        by_source: dict[str, list[float]] = defaultdict(list)
        for t in trades:
            by_source[t.source].append(t.price)

        per_source = {source: median(prices) for source, prices in by_source.items()}
        if len(per_source) < self.settings.min_sources:
            logger.debug(
                f"[{symbol}] Only {len(per_source)} source(s) in the last "
                f"{self.settings.window_ms}ms"
            )
            return None
        price = self._combine(per_source)
        if price is None:
            return None
        return AggregatedPrice(price=price, count=len(per_source), sources=per_source)
