"""Shared fixtures: in-memory store, aggregator and trade helpers."""

import pytest

from predictor.src.Aggregator import Aggregator
from predictor.src.PredictorConfig import AggregatorSettings
from predictor.src.Records import OracleConfig, Trade
from predictor.src.TickStore import TickStore

# A bucket-aligned base timestamp used across tests
T0 = 1_700_000_000_000

ORACLE = "0x64c911996d3c6ac71f9b455b1e8e7266bcbd848f"
CHAIN_ID = 8453


@pytest.fixture
def store() -> TickStore:
    s = TickStore("sqlite://")
    s.create_tables()
    yield s
    s.close()


@pytest.fixture
def aggregator(store: TickStore) -> Aggregator:
    return Aggregator(store, AggregatorSettings())


@pytest.fixture
def oracle_config(store: TickStore) -> OracleConfig:
    cfg = OracleConfig(
        chain_id=CHAIN_ID,
        oracle_addr=ORACLE,
        heartbeat_seconds=86400,
        deviation_bps=10,
        decimals=8,
        scale_factor=10**28,
    )
    store.upsert_oracle_config(cfg)
    return cfg


def add_bins(
    store: TickStore,
    aggregator: Aggregator,
    symbol: str,
    prices: dict[str, float],
    ts_ms: int,
) -> None:
    """Store one trade per source at ``ts_ms`` and rebuild that bucket."""
    store.insert_trades([Trade(src, symbol, ts_ms, p) for src, p in prices.items()])
    aggregator.rebuild(symbol, ts_ms)
