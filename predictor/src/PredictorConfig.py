"""PredictorConfig: Fully-resolved, validated configuration.

The JSON config file is parsed once into nested dataclasses. Downstream code
receives these objects and never looks up raw keys. Environment variables
override deployment-specific values:

    DATABASE_URL, SERVICE_PORT, RPC_URL_<chainId>

.. code-block:: python

    >>> cfg = PredictorConfig.from_dict({
    ...     "pairs": [{"symbol": "BTCUSDC", "instruments": {"binance": "BTCUSDC"}}],
    ... })
    >>> cfg.aggregator.trim_ratio
    0.2
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from web3 import Web3

from .RetryPolicy import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_EXCHANGES = ["binance", "okx", "coinbase"]
ADAPTER_TYPES = ("single", "ratio")


class ConfigError(ValueError):
    """Raised when the configuration file is missing or invalid."""

    pass


@dataclass(frozen=True)
class PairConfig:
    """A canonical symbol and its per-exchange instrument ids.

    :ivar symbol: Canonical name (e.g. "BTCUSDC").
    :ivar instruments: Exchange name to exchange symbol (e.g. okx -> "BTC-USDC").
    """

    symbol: str
    instruments: dict[str, str]


@dataclass(frozen=True)
class AggregatorSettings:
    window_ms: int = 3000
    trim_ratio: float = 0.2
    min_sources: int = 2
    forward_slack_ms: int = 300
    max_staleness_ms: int | None = None
    weighted_window_ms: int = 2000
    weights: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class IngestSettings:
    flush_interval_ms: int = 500
    poll_interval_ms: int = 1000
    backfill_minutes: int = 90
    fetch_timeout: float = 10.0


@dataclass(frozen=True)
class CalibrationSettings:
    """Knobs of the lag/weight fitting job.

    :ivar max_lag_ms: Largest candidate lag.
    :ivar lag_step_ms: Spacing of lag candidates.
    :ivar max_samples: Most recent transmissions used per fit.
    :ivar min_samples: Absolute floor of usable samples per candidate.
    :ivar min_sample_ratio: Fractional floor of usable samples per candidate.
    :ivar lookback_blocks: Blocks scanned for transmissions.
    :ivar log_chunk_blocks: Block range per log query.
    :ivar oracle_pause_seconds: Pause between oracles.
    :ivar interval_seconds: Minimum time between scheduled runs.
    :ivar min_new_samples: New samples required to trigger a scheduled run.
    :ivar enrich: Fetch historical trades around events that lack bins.
    :ivar coverage_window_ms: Distance within which a bin counts as coverage.
    :ivar enrich_before_seconds: History fetched before each uncovered event.
    :ivar enrich_after_seconds: History fetched after each uncovered event.
    """

    max_lag_ms: int = 3000
    lag_step_ms: int = 100
    max_samples: int = 60
    min_samples: int = 10
    min_sample_ratio: float = 0.4
    lookback_blocks: int = 10_000
    log_chunk_blocks: int = 2_000
    oracle_pause_seconds: float = 0.2
    interval_seconds: int = 900
    min_new_samples: int = 3
    enrich: bool = True
    coverage_window_ms: int = 300
    enrich_before_seconds: int = 120
    enrich_after_seconds: int = 10


@dataclass(frozen=True)
class OracleEntry:
    """Static description of one oracle to predict.

    :ivar adapter: "single" or "ratio".
    :ivar quote_symbol: Denominator symbol for ratio adapters.
    """

    chain_id: int
    address: str
    symbol: str
    decimals: int
    scale_factor: int
    heartbeat_seconds: int
    deviation_bps: int
    adapter: str = "single"
    quote_symbol: str | None = None


@dataclass(frozen=True)
class ServiceSettings:
    host: str = "0.0.0.0"
    port: int = 48080


@dataclass(frozen=True)
class PredictorConfig:
    """Top-level configuration."""

    database_url: str = "sqlite:///predictor.db"
    exchanges: list[str] = field(default_factory=lambda: list(DEFAULT_EXCHANGES))
    pairs: list[PairConfig] = field(default_factory=list)
    oracles: list[OracleEntry] = field(default_factory=list)
    rpc: dict[int, str] = field(default_factory=dict)
    aggregator: AggregatorSettings = field(default_factory=AggregatorSettings)
    ingest: IngestSettings = field(default_factory=IngestSettings)
    calibration: CalibrationSettings = field(default_factory=CalibrationSettings)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    service: ServiceSettings = field(default_factory=ServiceSettings)

    @property
    def symbols(self) -> list[str]:
        """Canonical symbols of all configured pairs."""
        return [p.symbol for p in self.pairs]

    def default_weights(self) -> dict[str, float]:
        """Configured weights, or uniform weights over enabled exchanges."""
        if self.aggregator.weights:
            return dict(self.aggregator.weights)
        return {s: 1.0 / len(self.exchanges) for s in self.exchanges}

    @classmethod
    def from_dict(
        cls, raw: dict[str, Any], env: dict[str, str] | None = None
    ) -> PredictorConfig:
        """Build and validate a config from parsed JSON.

        :param raw: Parsed JSON object.
        :param env: Environment mapping for overrides (default: os.environ).
        :returns: Validated configuration.
        :raises ConfigError: If any option is invalid.
        """
        env = dict(os.environ) if env is None else env
        try:
            exchanges = [e.lower() for e in raw.get("exchanges", DEFAULT_EXCHANGES)]
            pairs = [
                PairConfig(
                    symbol=str(p["symbol"]).upper(),
                    instruments={
                        k.lower(): str(v) for k, v in p.get("instruments", {}).items()
                    },
                )
                for p in raw.get("pairs", [])
            ]
            oracles = [_parse_oracle(o) for o in raw.get("oracles", [])]
            rpc = {int(k): str(v) for k, v in raw.get("rpc", {}).items()}
            agg_raw = dict(raw.get("aggregator", {}))
            agg_raw["weights"] = {
                k.lower(): float(v) for k, v in agg_raw.get("weights", {}).items()
            }
            aggregator = AggregatorSettings(**agg_raw)
            ingest = IngestSettings(**raw.get("ingest", {}))
            calibration = CalibrationSettings(**raw.get("calibration", {}))
            retry_raw = raw.get("retry", {})
            retry = RetryPolicy(
                max_attempts=int(retry_raw.get("max_attempts", 3)),
                delays=tuple(float(d) for d in retry_raw.get("delays", (0.2, 0.5, 1.0))),
            )
            service = ServiceSettings(**raw.get("service", {}))
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

        # Environment overrides
        database_url = env.get("DATABASE_URL") or raw.get(
            "database_url", cls.database_url
        )
        for key, value in env.items():
            if key.startswith("RPC_URL_") and value:
                try:
                    rpc[int(key[len("RPC_URL_"):])] = value
                except ValueError:
                    logger.warning(f"Ignoring {key}: chain id is not an integer")
        if env.get("SERVICE_PORT"):
            service = ServiceSettings(host=service.host, port=int(env["SERVICE_PORT"]))

        cfg = cls(
            database_url=database_url,
            exchanges=exchanges,
            pairs=pairs,
            oracles=oracles,
            rpc=rpc,
            aggregator=aggregator,
            ingest=ingest,
            calibration=calibration,
            retry=retry,
            service=service,
        )
        cfg.validate()
        return cfg

    @classmethod
    def load(cls, path: str | Path) -> PredictorConfig:
        """Read and validate a JSON config file.

        :raises ConfigError: If the file is missing, unreadable or invalid.
        """
        try:
            with open(path, "r") as file:
                raw = json.load(file)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Cannot read config {path}: {e}") from e
        return cls.from_dict(raw)

    def validate(self) -> None:
        """Check cross-field invariants.

        :raises ConfigError: On the first violation found.
        """
        if not self.exchanges:
            raise ConfigError("exchanges must not be empty")
        if not 0 <= self.aggregator.trim_ratio < 0.5:
            raise ConfigError("aggregator.trim_ratio must be in [0, 0.5)")
        if self.aggregator.min_sources < 1:
            raise ConfigError("aggregator.min_sources must be at least 1")
        if any(w < 0 for w in self.aggregator.weights.values()):
            raise ConfigError("aggregator.weights must be non-negative")
        if self.ingest.flush_interval_ms <= 0 or self.ingest.poll_interval_ms <= 0:
            raise ConfigError("ingest intervals must be positive")
        if self.calibration.lag_step_ms <= 0 or self.calibration.max_lag_ms < 0:
            raise ConfigError("calibration lag grid is empty")
        for pair in self.pairs:
            unknown = [s for s in pair.instruments if s not in self.exchanges]
            if unknown:
                raise ConfigError(
                    f"pair {pair.symbol}: instruments for disabled exchanges {unknown}"
                )
        for o in self.oracles:
            if not Web3.is_address(o.address):
                raise ConfigError(f"oracle {o.address}: not a 20-byte hex address")
            if o.decimals < 0:
                raise ConfigError(f"oracle {o.address}: decimals must be >= 0")
            if o.scale_factor <= 0:
                raise ConfigError(f"oracle {o.address}: scale_factor must be positive")
            if o.heartbeat_seconds <= 0:
                raise ConfigError(
                    f"oracle {o.address}: heartbeat_seconds must be positive"
                )
            if o.deviation_bps < 0:
                raise ConfigError(f"oracle {o.address}: deviation_bps must be >= 0")
            if o.adapter not in ADAPTER_TYPES:
                raise ConfigError(
                    f"oracle {o.address}: unknown adapter '{o.adapter}'. "
                    f"Available: {', '.join(ADAPTER_TYPES)}"
                )
            if o.adapter == "ratio" and not o.quote_symbol:
                raise ConfigError(f"oracle {o.address}: ratio adapter needs quote_symbol")


def _parse_oracle(o: dict[str, Any]) -> OracleEntry:
    """Parse one oracle entry; scale_factor may be given as a string."""
    quote = o.get("quote_symbol")
    return OracleEntry(
        chain_id=int(o["chain_id"]),
        address=str(o["address"]).lower(),
        symbol=str(o.get("symbol", "BTCUSDC")).upper(),
        decimals=int(o.get("decimals", 8)),
        scale_factor=int(str(o.get("scale_factor", "1"))),
        heartbeat_seconds=int(o["heartbeat_seconds"]),
        deviation_bps=int(o["deviation_bps"]),
        adapter=str(o.get("adapter", "single")).lower(),
        quote_symbol=str(quote).upper() if quote else None,
    )
