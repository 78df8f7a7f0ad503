"""CalibrationEngine: Fit observation lag and source weights per oracle.

Algorithm (grid search):
    1. Candidate lags: 0 to ``max_lag_ms`` in ``lag_step_ms`` steps
    2. For each lag, predict every historical answer at ``event_time - lag``;
       samples without price coverage are skipped
    3. A candidate needs ``max(min_samples, floor(n * min_sample_ratio))``
       usable samples, otherwise it is discarded
    4. Error per sample: ``round((onchain / predicted - 1) * 10000)`` bps;
       candidates are scored by the 50th and 90th percentile of |error|
    5. Lowest p90 wins, ties broken by lowest p50
    6. The winning lag (whole seconds) and uniform weights over the
       configured sources are written back in one transaction

With an enricher attached, events whose ``event_time - lag_guess`` has no
nearby bins are first filled from exchange trade history. The guess is the
stored lag, or 1500ms for an oracle that was never fitted.

A failed fit leaves the stored configuration untouched. Oracles are fitted
one at a time, and a fit for an oracle already being fitted is refused.

.. code-block:: python

    >>> engine = CalibrationEngine(store, aggregator, registry, settings, ["binance", "okx"])
    >>> best = engine.fit_oracle(8453, "0xabc...")
    >>> best.lag_ms, best.p90_err_bps
    (1200, 4)
"""

from __future__ import annotations

import asyncio
import logging
import math
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from .Aggregator import Aggregator
from .ChainReader import ChainReader, ChainReaderError
from .CoverageEnricher import CoverageEnricher
from .OracleAdapters import (
    Adapter,
    OracleAdapterRegistry,
    predicted_answer,
    required_symbols,
)
from .PredictorConfig import CalibrationSettings
from .PriceMath import bps_change, percentile, round_half_up
from .Records import CalibrationCandidate, OracleConfig
from .TickStore import TickStore

logger = logging.getLogger(__name__)

# Lag assumed for the coverage check before an oracle has been fitted
DEFAULT_LAG_GUESS_MS = 1500


class CalibrationInfeasible(Exception):
    """Raised when no lag candidate has enough usable samples."""

    pass


@dataclass(frozen=True)
class GroundTruth:
    """A published on-chain answer.

    :ivar timestamp_ms: Event time in milliseconds.
    :ivar answer: Answer in quote units.
    """

    timestamp_ms: int
    answer: float


def uniform_weights(sources: Sequence[str]) -> dict[str, float]:
    """Equal weight ``1/N`` for each source."""
    if not sources:
        return {}
    return {s: 1.0 / len(sources) for s in sources}


def weight_grid(sources: Sequence[str], step: float = 0.1) -> list[dict[str, float]]:
    """All weight vectors on a ``step`` lattice that sum to 1.

    Vectors with every weight zero are excluded.

    .. code-block:: python

        >>> weight_grid(["a", "b"], step=0.5)
        [{'a': 0.0, 'b': 1.0}, {'a': 0.5, 'b': 0.5}, {'a': 1.0, 'b': 0.0}]
    """
    if not sources:
        return []
    units = round(1 / step)
    grids: list[dict[str, float]] = []

    def recurse(i: int, remain: int, current: list[int]) -> None:
        if i == len(sources) - 1:
            grids.append(
                {s: round(u * step, 10) for s, u in zip(sources, current + [remain])}
            )
            return
        for u in range(remain + 1):
            recurse(i + 1, remain - u, current + [u])

    recurse(0, units, [])
    return grids


def select_best(candidates: Sequence[CalibrationCandidate]) -> CalibrationCandidate | None:
    """Lowest p90 error, then lowest p50; earlier candidates win exact ties."""
    if not candidates:
        return None
    return min(candidates, key=lambda c: (c.p90_err_bps, c.p50_err_bps))


class CalibrationEngine:
    """Fits lag and weights for the configured oracles.

    :ivar settings: Grid, sample floor and pacing parameters.
    :ivar sources: Exchanges receiving uniform weights after a fit.
    :ivar reader: Chain access for recent transmissions; stored samples are
        used when absent.
    :ivar enricher: Fills bin gaps from exchange history before a sweep.
    """

    def __init__(
        self,
        store: TickStore,
        aggregator: Aggregator,
        registry: OracleAdapterRegistry,
        settings: CalibrationSettings | None = None,
        sources: Sequence[str] = (),
        reader: ChainReader | None = None,
        sleep: Callable[[float], object] = time.sleep,
        enricher: CoverageEnricher | None = None,
    ) -> None:
        self.store = store
        self.aggregator = aggregator
        self.registry = registry
        self.settings = settings or CalibrationSettings()
        self.sources = list(sources)
        self.reader = reader
        self.enricher = enricher
        self._sleep = sleep
        self._in_progress: set[tuple[int, str]] = set()
        self._lock = threading.Lock()

    def lag_candidates(self) -> list[int]:
        s = self.settings
        return list(range(0, s.max_lag_ms + 1, s.lag_step_ms))

    def min_usable(self, sample_count: int) -> int:
        s = self.settings
        return max(s.min_samples, math.floor(sample_count * s.min_sample_ratio))

    def evaluate(
        self,
        samples: Sequence[GroundTruth],
        lag_ms: int,
        adapter: Adapter,
        weights: dict[str, float] | None = None,
    ) -> CalibrationCandidate | None:
        """Score one (lag, weights) point.

        :param samples: Historical answers.
        :param lag_ms: Candidate lag.
        :param adapter: Adapter of the oracle being fitted.
        :param weights: Source weights, or None for the stored aggregate series.
        :returns: Candidate, or None if too few samples had coverage.
        """
        errors: list[int] = []
        for sample in samples:
            predicted = predicted_answer(
                self.aggregator, adapter, sample.timestamp_ms - lag_ms, weights
            )
            if predicted is None:
                continue
            errors.append(abs(bps_change(sample.answer, predicted)))

        if len(errors) < self.min_usable(len(samples)):
            return None
        return CalibrationCandidate(
            lag_ms=lag_ms,
            weights=dict(weights or {}),
            p50_err_bps=percentile(errors, 0.5),
            p90_err_bps=percentile(errors, 0.9),
            used_sample_count=len(errors),
        )

    def sweep(
        self,
        samples: Sequence[GroundTruth],
        adapter: Adapter,
        lags: Sequence[int] | None = None,
        weight_vectors: Sequence[dict[str, float] | None] | None = None,
    ) -> list[CalibrationCandidate]:
        """Evaluate every (weights, lag) combination; infeasible points are dropped.

        :param weight_vectors: Weight vectors to try; ``[None]`` (aggregate
            series only) by default.
        """
        lags = self.lag_candidates() if lags is None else lags
        vectors = [None] if weight_vectors is None else weight_vectors
        candidates = []
        for weights in vectors:
            for lag in lags:
                candidate = self.evaluate(samples, lag, adapter, weights)
                if candidate is not None:
                    candidates.append(candidate)
        return candidates

    def coverage_gaps(
        self, samples: Sequence[GroundTruth], symbols: Sequence[str], lag_ms: int
    ) -> list[int]:
        """Lagged event instants missing an aggregate or source bin nearby.

        :param lag_ms: Lag used to place each event on the price series.
        :returns: Instants ``event - lag`` with no bin of some symbol within
            ``coverage_window_ms``, oldest first.
        """
        w = self.settings.coverage_window_ms
        gaps = []
        for sample in samples:
            t = sample.timestamp_ms - lag_ms
            for symbol in symbols:
                if not (
                    self.store.has_aggregate_between(symbol, t - w, t + w)
                    and self.store.has_source_bin_between(symbol, t - w, t + w)
                ):
                    gaps.append(t)
                    break
        return gaps

    def enrich_gaps(
        self, cfg: OracleConfig, samples: Sequence[GroundTruth], adapter: Adapter
    ) -> int:
        """Fill uncovered instants at the current lag guess from exchange history.

        :returns: Number of historical trades inserted.
        """
        if self.enricher is None or not self.settings.enrich:
            return 0
        lag_guess = cfg.lag_seconds * 1000 if cfg.lag_seconds > 0 else DEFAULT_LAG_GUESS_MS
        symbols = required_symbols(adapter)
        gaps = self.coverage_gaps(samples, symbols, lag_guess)
        if not gaps:
            return 0
        logger.info(
            f"[{cfg.chain_id}:{cfg.oracle_addr}] {len(gaps)}/{len(samples)} events "
            f"lack coverage at lag {lag_guess}ms, enriching"
        )
        try:
            return self.enricher.fill(symbols, gaps)
        except SQLAlchemyError as e:
            logger.warning(f"[{cfg.chain_id}:{cfg.oracle_addr}] Enrichment failed: {e}")
            return 0

    def load_samples(self, chain_id: int, oracle_addr: str, decimals: int) -> list[GroundTruth]:
        """Most recent on-chain answers, oldest first.

        Reads transmissions from the chain when an RPC is configured and falls
        back to recorded OracleSamples otherwise.
        """
        s = self.settings
        if self.reader is not None and self.reader.has_chain(chain_id):
            try:
                transmissions = self.reader.recent_transmissions(
                    chain_id, oracle_addr, s.lookback_blocks, s.max_samples
                )
                return [
                    GroundTruth(t.timestamp * 1000, t.answer / 10**decimals)
                    for t in transmissions
                    if t.timestamp is not None
                ]
            except ChainReaderError as e:
                logger.warning(
                    f"[{chain_id}:{oracle_addr}] Chain read failed, using stored samples: {e}"
                )

        stored = self.store.recent_samples(chain_id, oracle_addr, s.max_samples)
        return [
            GroundTruth(x.event_ts * 1000, x.answer)
            for x in reversed(stored)
            if x.event_ts is not None and x.answer > 0
        ]

    def fit_oracle(self, chain_id: int, oracle_addr: str) -> CalibrationCandidate | None:
        """Fit and persist one oracle.

        :returns: The winning candidate, or None if a fit for this oracle is
            already running.
        :raises CalibrationInfeasible: If the oracle is unknown or no candidate
            has enough samples. Stored configuration is left as it was.
        :raises ChainReaderError: If a chain read fails with no fallback.
        """
        key = (chain_id, oracle_addr.lower())
        with self._lock:
            if key in self._in_progress:
                logger.info(f"[{chain_id}:{oracle_addr}] Fit already running, skipped")
                return None
            self._in_progress.add(key)
        try:
            return self._fit(chain_id, key[1])
        finally:
            with self._lock:
                self._in_progress.discard(key)

    def _fit(self, chain_id: int, oracle_addr: str) -> CalibrationCandidate:
        cfg = self.store.get_oracle_config(chain_id, oracle_addr)
        if cfg is None:
            raise CalibrationInfeasible(f"No config for {chain_id}:{oracle_addr}")

        samples = self.load_samples(chain_id, oracle_addr, cfg.decimals)
        if len(samples) < self.settings.min_samples:
            raise CalibrationInfeasible(
                f"Only {len(samples)} samples for {chain_id}:{oracle_addr}, "
                f"need {self.settings.min_samples}"
            )

        adapter = self.registry.resolve(chain_id, oracle_addr)
        self.enrich_gaps(cfg, samples, adapter)
        best = select_best(self.sweep(samples, adapter))
        if best is None:
            raise CalibrationInfeasible(
                f"No lag candidate had {self.min_usable(len(samples))} usable samples "
                f"for {chain_id}:{oracle_addr}"
            )

        lag_seconds = round_half_up(best.lag_ms / 1000)
        weights = uniform_weights(self.sources)
        self.store.save_calibration(chain_id, oracle_addr, lag_seconds, weights)
        logger.info(
            f"Fit for {oracle_addr} on {chain_id}: lagMs={best.lag_ms}, "
            f"p50={best.p50_err_bps}bps, p90={best.p90_err_bps}bps, "
            f"used={best.used_sample_count}/{len(samples)}"
        )
        return best

    def run_all(
        self, oracles: Sequence[tuple[int, str]] | None = None
    ) -> dict[tuple[int, str], CalibrationCandidate | None]:
        """Fit oracles sequentially with a pause between them.

        Failures are logged and skipped; other oracles still run.

        :param oracles: (chain_id, address) pairs; all stored configs by default.
        :returns: Winner per oracle (None when skipped).
        """
        if oracles is None:
            oracles = [(c.chain_id, c.oracle_addr) for c in self.store.list_oracle_configs()]

        results: dict[tuple[int, str], CalibrationCandidate | None] = {}
        for i, (chain_id, addr) in enumerate(oracles):
            if i > 0:
                self._sleep(self.settings.oracle_pause_seconds)
            try:
                results[(chain_id, addr.lower())] = self.fit_oracle(chain_id, addr)
            except (CalibrationInfeasible, ChainReaderError) as e:
                logger.warning(f"Calibration skipped for {chain_id}:{addr}: {e}")
                results[(chain_id, addr.lower())] = None
            except (SQLAlchemyError, ValueError) as e:
                logger.error(f"Calibration failed for {chain_id}:{addr}: {e!r}")
                results[(chain_id, addr.lower())] = None
        return results


class CalibrationScheduler:
    """Re-runs calibration when enough new samples have accumulated.

    A pass runs at most once per ``interval_seconds``, and only for oracles
    with at least ``min_new_samples`` samples recorded since their last pass.
    """

    def __init__(
        self,
        engine: CalibrationEngine,
        store: TickStore,
        settings: CalibrationSettings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.engine = engine
        self.store = store
        self.settings = settings or engine.settings
        self.clock = clock
        self._last_run: float | None = None
        self._baseline: dict[tuple[int, str], int] = {}

    def prime(self) -> None:
        """Record current sample counts as already calibrated (after a startup fit)."""
        self._baseline = self.store.sample_counts()
        self._last_run = self.clock()

    def due_oracles(self) -> list[tuple[int, str]]:
        counts = self.store.sample_counts()
        return [
            key
            for key, n in sorted(counts.items())
            if n - self._baseline.get(key, 0) >= self.settings.min_new_samples
        ]

    def tick(self) -> list[tuple[int, str]]:
        """Run a pass if due.

        :returns: Oracles that were (re)fitted in this tick.
        """
        now = self.clock()
        if self._last_run is not None and now - self._last_run < self.settings.interval_seconds:
            return []
        due = self.due_oracles()
        self._last_run = now
        if not due:
            logger.debug("Calibration not due: too few new samples")
            return []

        counts = self.store.sample_counts()
        results = self.engine.run_all(due)
        for key in due:
            if results.get(key) is not None:
                self._baseline[key] = counts.get(key, 0)
        return [key for key in due if results.get(key) is not None]

    async def run(self, poll_seconds: float = 60.0) -> None:
        """Tick forever; a failing tick is logged and the loop carries on."""
        while True:
            try:
                await asyncio.to_thread(self.tick)
            except Exception as e:
                logger.error(f"Calibration tick failed: {e!r}")
            await asyncio.sleep(poll_seconds)
