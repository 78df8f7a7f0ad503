"""Records: Plain value types shared by the store, aggregator and calibration.

These are the in-memory shapes of the persisted rows. The ORM classes in
TickStore are converted to and from these so callers never hold a live
session object.

.. code-block:: python

    >>> trade = Trade("binance", "BTCUSDC", 1_700_000_000_050, 65000.0)
    >>> bucket_of(trade.timestamp_ms)
    1700000000000
"""

from __future__ import annotations

from dataclasses import dataclass, field

# Width of a price bin in milliseconds.
BUCKET_MS = 100


def bucket_of(ts_ms: int) -> int:
    """Floor a millisecond timestamp to its 100ms bucket.

    :param ts_ms: Timestamp in milliseconds.
    :returns: Start of the bucket containing ``ts_ms``.
    """
    return ts_ms - (ts_ms % BUCKET_MS)


@dataclass(frozen=True)
class Trade:
    """A single exchange trade print mapped to a canonical symbol.

    :ivar source: Exchange name (lowercase).
    :ivar symbol: Canonical pair name (e.g. "BTCUSDC").
    :ivar timestamp_ms: Trade time in milliseconds.
    :ivar price: Trade price in quote-currency units.
    """

    source: str
    symbol: str
    timestamp_ms: int
    price: float


@dataclass(frozen=True)
class SourceBin:
    """Median of one source's trades in one 100ms bucket."""

    symbol: str
    source: str
    bucket_ms: int
    price: float


@dataclass(frozen=True)
class AggregateBin:
    """Cross-source trimmed median for one 100ms bucket."""

    symbol: str
    bucket_ms: int
    price: float


@dataclass
class OracleConfig:
    """Prediction parameters for one on-chain oracle.

    ``heartbeat_seconds`` and ``deviation_bps`` mirror the oracle's on-chain
    trigger thresholds. ``lag_seconds`` is written by calibration.

    :ivar chain_id: EVM chain id.
    :ivar oracle_addr: Oracle contract address (stored lowercase).
    :ivar heartbeat_seconds: Max seconds between oracle updates.
    :ivar deviation_bps: Relative change that triggers an early update.
    :ivar decimals: Decimals of the oracle's fixed-point answer.
    :ivar scale_factor: Multiplier that lifts the answer to the 1e36 base.
    :ivar lag_seconds: Calibrated observation lag.
    """

    chain_id: int
    oracle_addr: str
    heartbeat_seconds: int
    deviation_bps: int
    decimals: int
    scale_factor: int
    lag_seconds: int = 0

    def __post_init__(self) -> None:
        self.oracle_addr = self.oracle_addr.lower()
        if self.decimals < 0:
            raise ValueError("decimals must be >= 0")
        if self.scale_factor <= 0:
            raise ValueError("scale_factor must be positive")
        if self.heartbeat_seconds <= 0:
            raise ValueError("heartbeat_seconds must be positive")


@dataclass(frozen=True)
class CexWeight:
    """Trust weight of one exchange for one oracle."""

    chain_id: int
    oracle_addr: str
    source: str
    weight: float


@dataclass
class OracleSample:
    """An on-chain transmission paired with the CEX price seen near it.

    :ivar answer: Published answer in quote units (already divided by decimals).
    :ivar cex_price: Predicted CEX price at the observation instant.
    :ivar event_ts: Block timestamp of the transmission in seconds.
    :ivar error_bps: ``round((answer / cex_price - 1) * 10000)``.
    """

    chain_id: int
    oracle_addr: str
    block_number: int
    tx_hash: str
    answer: float
    cex_price: float
    event_ts: int | None
    error_bps: int


@dataclass
class CalibrationCandidate:
    """One (lag, weights) point of the calibration sweep.

    :ivar lag_ms: Candidate observation lag.
    :ivar weights: Source weights, or empty for the stored aggregate series.
    :ivar p50_err_bps: Median absolute error.
    :ivar p90_err_bps: 90th percentile absolute error.
    :ivar used_sample_count: Samples that had price coverage.
    """

    lag_ms: int
    weights: dict[str, float] = field(default_factory=dict)
    p50_err_bps: int = 0
    p90_err_bps: int = 0
    used_sample_count: int = 0
