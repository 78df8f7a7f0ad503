"""PredictionService: Read-only queries over prices, predictions and accuracy.

Live decisioning:
    - ``aggregated_price``: current cross-source price for a symbol
    - ``predicted_at``: adapter answer at ``t - lag`` for an oracle
    - ``prediction``: current answer vs the on-chain round, with the
      transmit decision and its two independent reasons

Monitoring:
    - ``fit_summary``: realized error distribution of recorded samples
    - ``coverage``: how often sample instants have price bins, per lag
    - ``metrics``/``backtest_overview``: configuration and activity dumps

Nothing here writes to the store.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from .Aggregator import AggregatedPrice, Aggregator, WeightedPrice
from .ChainReader import ChainReader, ChainReaderError
from .OracleAdapters import (
    Adapter,
    OracleAdapterRegistry,
    SingleFeedAdapter,
    compute,
    gather_prices,
    required_symbols,
)
from .PredictorConfig import PredictorConfig
from .PriceMath import bps_change, median, percentile
from .Records import OracleConfig
from .TickStore import TickStore

logger = logging.getLogger(__name__)

# Bounds of the fit summary window
FIT_SUMMARY_MIN = 10
FIT_SUMMARY_MAX = 2000


class OracleNotConfigured(LookupError):
    """Raised when an oracle has no stored configuration."""

    pass


@dataclass
class TransmitDecision:
    """Whether the oracle is expected to publish now, and why.

    :ivar deviation_bps: Signed deviation of the current answer from the
        last on-chain answer.
    :ivar age_seconds: Seconds since the last on-chain update.
    :ivar reasons: ``offset`` (deviation threshold) and ``heartbeat``.
    """

    should_transmit: bool
    deviation_bps: int
    age_seconds: int
    reasons: dict[str, bool] = field(default_factory=dict)


def decide_transmit(
    current_answer: float,
    last_answer: float | None,
    updated_at: int | None,
    now_s: int,
    deviation_threshold_bps: int,
    heartbeat_seconds: int,
) -> TransmitDecision:
    """Apply the oracle's deviation and heartbeat triggers.

    Both thresholds are inclusive. An unknown last answer counts as zero
    deviation; an unknown update time counts as an expired heartbeat.
    """
    if last_answer:
        deviation = bps_change(current_answer, last_answer)
    else:
        deviation = 0
    age = now_s - updated_at if updated_at else heartbeat_seconds + 1
    by_offset = abs(deviation) >= deviation_threshold_bps
    by_heartbeat = age >= heartbeat_seconds
    return TransmitDecision(
        should_transmit=by_offset or by_heartbeat,
        deviation_bps=deviation,
        age_seconds=age,
        reasons={"offset": by_offset, "heartbeat": by_heartbeat},
    )


@dataclass
class PredictionAt:
    """Adapter answer at a historical instant.

    :ivar at_ms: Instant actually queried (``ts_ms - lag_ms``).
    :ivar prices: Aggregated price per required symbol.
    """

    chain_id: int
    oracle: str
    ts_ms: int
    lag_ms: int
    at_ms: int
    required: list[str]
    prices: dict[str, float | None]
    answer: float | None
    fixed_point_price: int | None


@dataclass
class Prediction:
    """Live prediction for an oracle."""

    chain_id: int
    oracle: str
    symbol: str
    verified: bool
    answer: float | None
    fixed_point_price: int | None
    onchain_answer: float | None
    updated_at: int | None
    decision: TransmitDecision | None


class PredictionService:
    """Query surface combining the aggregator, adapters and stored calibration.

    :ivar reader: Chain access for live on-chain rounds (optional).
    :ivar clock: Wall clock in seconds.
    """

    def __init__(
        self,
        store: TickStore,
        aggregator: Aggregator,
        registry: OracleAdapterRegistry,
        config: PredictorConfig,
        reader: ChainReader | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.aggregator = aggregator
        self.registry = registry
        self.config = config
        self.reader = reader
        self.clock = clock

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def oracle_config(self, chain_id: int, oracle_addr: str) -> OracleConfig:
        cfg = self.store.get_oracle_config(chain_id, oracle_addr)
        if cfg is None:
            raise OracleNotConfigured(f"config not found for {chain_id}:{oracle_addr}")
        return cfg

    def aggregated_price(self, symbol: str) -> AggregatedPrice | None:
        return self.aggregator.current(symbol, self._now_ms())

    def predicted_at(
        self, chain_id: int, oracle_addr: str, ts_ms: int, lag_ms: int | None = None
    ) -> PredictionAt:
        """Predicted answer for an oracle at ``ts_ms - lag_ms``.

        :param lag_ms: Lag override; the calibrated lag by default.
        :raises OracleNotConfigured: If the oracle is unknown.
        """
        cfg = self.oracle_config(chain_id, oracle_addr)
        lag = cfg.lag_seconds * 1000 if lag_ms is None else lag_ms
        at = ts_ms - lag
        adapter = self.registry.resolve(chain_id, oracle_addr)
        prices = gather_prices(self.aggregator, adapter, at)
        result = compute(adapter, prices, cfg.decimals, cfg.scale_factor)
        return PredictionAt(
            chain_id=chain_id,
            oracle=cfg.oracle_addr,
            ts_ms=ts_ms,
            lag_ms=lag,
            at_ms=at,
            required=required_symbols(adapter),
            prices=prices,
            answer=result.answer,
            fixed_point_price=result.fixed_point_price,
        )

    def prediction(
        self, chain_id: int, oracle_addr: str, symbol: str | None = None
    ) -> Prediction:
        """Current predicted answer compared with the latest on-chain round.

        :param symbol: Price the oracle off this symbol instead of its adapter.
        :raises OracleNotConfigured: If the oracle is unknown.
        :raises ChainReaderError: If no RPC is configured for the chain.
        """
        cfg = self.oracle_config(chain_id, oracle_addr)
        if self.reader is None or not self.reader.has_chain(chain_id):
            raise ChainReaderError(f"RPC for chain {chain_id} not set in config")

        if symbol:
            adapter: Adapter = SingleFeedAdapter(symbol.upper())
        else:
            adapter = self.registry.resolve(chain_id, oracle_addr)
        symbols = required_symbols(adapter)
        now_ms = self._now_ms()
        prices: dict[str, float | None] = {}
        for symbol in symbols:
            current = self.aggregator.current(symbol, now_ms)
            prices[symbol] = current.price if current is not None else None
        result = compute(adapter, prices, cfg.decimals, cfg.scale_factor)

        onchain: float | None = None
        updated_at: int | None = None
        try:
            round_data = self.reader.latest_round_data(chain_id, cfg.oracle_addr)
            onchain = round_data.answer / 10**cfg.decimals
            updated_at = round_data.updated_at
        except ChainReaderError as e:
            logger.warning(f"[{chain_id}:{cfg.oracle_addr}] latestRoundData unavailable: {e}")

        decision = None
        if result.answer is not None:
            decision = decide_transmit(
                result.answer,
                onchain,
                updated_at,
                now_ms // 1000,
                cfg.deviation_bps,
                cfg.heartbeat_seconds,
            )
        return Prediction(
            chain_id=chain_id,
            oracle=cfg.oracle_addr,
            symbol=symbols[0],
            verified=self.registry.is_verified(chain_id, oracle_addr),
            answer=result.answer,
            fixed_point_price=result.fixed_point_price,
            onchain_answer=onchain,
            updated_at=updated_at,
            decision=decision,
        )

    def weighted_price_at(
        self,
        symbol: str,
        ts_ms: int,
        lag_ms: int = 0,
        sources: Sequence[str] | None = None,
        weights: dict[str, float] | None = None,
    ) -> WeightedPrice | None:
        """Ad-hoc weighted price with caller-supplied sources and weights.

        Without explicit weights, the configured default weights are used,
        restricted to ``sources`` when given.
        """
        if weights:
            chosen = dict(weights)
            if sources:
                chosen = {s: w for s, w in chosen.items() if s in sources}
        else:
            defaults = self.config.default_weights()
            names = list(sources) if sources else list(defaults)
            chosen = {s: defaults.get(s, 1.0 / len(names)) for s in names}
        return self.aggregator.weighted_at(symbol, ts_ms - lag_ms, chosen)

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    def fit_summary(self, chain_id: int, oracle_addr: str, limit: int = 500) -> dict:
        """Realized error of the most recent samples.

        :returns: ``samples``, ``p50AbsBps``, ``p90AbsBps`` and the signed
            ``biasMedianBps`` (None when there are no samples).
        """
        limit = max(FIT_SUMMARY_MIN, min(FIT_SUMMARY_MAX, limit))
        signed = [
            bps_change(s.answer, s.cex_price)
            for s in self.store.recent_samples(chain_id, oracle_addr, limit)
            if s.answer > 0 and s.cex_price > 0
        ]
        absolute = [abs(e) for e in signed]
        return {
            "samples": len(signed),
            "p50AbsBps": median(absolute),
            "p90AbsBps": percentile(absolute, 0.9),
            "biasMedianBps": median(signed),
        }

    def coverage(
        self,
        chain_id: int,
        oracle_addr: str,
        lags_ms: Sequence[int] = (0, 500, 1000, 1500, 2000, 2500, 3000),
        window_ms: int = 300,
        limit: int = 60,
    ) -> list[dict]:
        """Per lag, how many recent sample instants have bins within ``±window_ms``.

        A hit needs a bin for every symbol the oracle's adapter reads.
        """
        adapter = self.registry.resolve(chain_id, oracle_addr)
        symbols = required_symbols(adapter)
        samples = self.store.recent_samples(chain_id, oracle_addr, limit)
        rows = []
        for lag in lags_ms:
            agg_hits = 0
            src_hits = 0
            for s in samples:
                t = s.event_ts * 1000 - lag
                lo, hi = t - window_ms, t + window_ms
                if all(self.store.has_aggregate_between(sym, lo, hi) for sym in symbols):
                    agg_hits += 1
                if all(self.store.has_source_bin_between(sym, lo, hi) for sym in symbols):
                    src_hits += 1
            rows.append(
                {"lagMs": lag, "samples": len(samples), "aggHits": agg_hits, "srcHits": src_hits}
            )
        return rows

    def oracles(self) -> list[dict]:
        return [
            {
                "chainId": c.chain_id,
                "oracle": c.oracle_addr,
                "heartbeatSeconds": c.heartbeat_seconds,
                "deviationBps": c.deviation_bps,
                "decimals": c.decimals,
                "scaleFactor": str(c.scale_factor),
                "lagSeconds": c.lag_seconds,
                "verified": self.registry.is_verified(c.chain_id, c.oracle_addr),
            }
            for c in self.store.list_oracle_configs()
        ]

    def weights(self, chain_id: int, oracle_addr: str) -> list[dict]:
        return [
            {"source": source, "weight": weight}
            for source, weight in self.store.get_weights(chain_id, oracle_addr).items()
        ]

    def metrics(self, window_seconds: int = 60) -> dict:
        """Current prices, recent trade counts and oracle configs."""
        now_ms = self._now_ms()
        symbols = []
        for symbol in self.config.symbols:
            current = self.aggregator.current(symbol, now_ms)
            symbols.append(
                {
                    "symbol": symbol,
                    "aggregatedPrice": current.price if current else None,
                    "sources": current.sources if current else {},
                    "count": current.count if current else 0,
                }
            )
        return {
            "symbols": symbols,
            "exchanges": self.store.recent_tick_counts(now_ms - window_seconds * 1000),
            "oracles": self.oracles(),
        }

    def backtest_overview(self) -> list[dict]:
        counts = self.store.sample_counts()
        return [
            {"chainId": chain_id, "oracle": addr, "samples": n}
            for (chain_id, addr), n in sorted(counts.items(), key=lambda kv: -kv[1])
        ]
