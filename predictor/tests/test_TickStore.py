"""Unit tests for TickStore against in-memory SQLite."""

from conftest import CHAIN_ID, ORACLE, T0

from predictor.src.Records import (
    AggregateBin,
    OracleConfig,
    OracleSample,
    SourceBin,
    Trade,
)
from predictor.src.TickStore import TickStore


def _sample(block: int, tx: str, event_ts: int | None = 1_700_000_000) -> OracleSample:
    return OracleSample(
        chain_id=CHAIN_ID,
        oracle_addr=ORACLE,
        block_number=block,
        tx_hash=tx,
        answer=65000.0,
        cex_price=64990.0,
        event_ts=event_ts,
        error_bps=2,
    )


class TestTrades:
    """Test raw trade storage."""

    def test_insert_and_range(self, store: TickStore) -> None:
        store.insert_trades(
            [
                Trade("binance", "BTCUSDC", T0 + 50, 100.0),
                Trade("okx", "BTCUSDC", T0 + 150, 101.0),
                Trade("okx", "ETHUSDC", T0 + 150, 3000.0),
            ]
        )
        trades = store.trades_between("BTCUSDC", T0, T0 + 1000)
        assert [t.price for t in trades] == [100.0, 101.0]
        assert store.has_trades("BTCUSDC")
        assert not store.has_trades("SOLUSDC")

    def test_end_is_exclusive(self, store: TickStore) -> None:
        store.insert_trade(Trade("binance", "BTCUSDC", T0 + 100, 100.0))
        assert store.trades_between("BTCUSDC", T0, T0 + 100) == []
        assert len(store.trades_between("BTCUSDC", T0, T0 + 101)) == 1

    def test_filter_by_source(self, store: TickStore) -> None:
        store.insert_trades(
            [
                Trade("binance", "BTCUSDC", T0, 100.0),
                Trade("okx", "BTCUSDC", T0, 101.0),
            ]
        )
        trades = store.trades_between("BTCUSDC", T0, T0 + 1, source="okx")
        assert [t.source for t in trades] == ["okx"]

    def test_recent_tick_counts(self, store: TickStore) -> None:
        store.insert_trades(
            [
                Trade("binance", "BTCUSDC", T0 + 1, 100.0),
                Trade("binance", "BTCUSDC", T0 + 2, 100.0),
                Trade("okx", "BTCUSDC", T0 + 3, 100.0),
                Trade("okx", "BTCUSDC", T0 - 10, 100.0),
            ]
        )
        counts = store.recent_tick_counts(T0)
        assert counts == [
            {"symbol": "BTCUSDC", "source": "binance", "n": 2},
            {"symbol": "BTCUSDC", "source": "okx", "n": 1},
        ]


class TestBins:
    """Test bin upserts and bounded lookups."""

    def test_upsert_overwrites(self, store: TickStore) -> None:
        store.upsert_aggregate_bins([AggregateBin("BTCUSDC", T0, 100.0)])
        store.upsert_aggregate_bins([AggregateBin("BTCUSDC", T0, 105.0)])
        assert store.aggregate_before("BTCUSDC", T0).price == 105.0

    def test_aggregate_before_respects_floor(self, store: TickStore) -> None:
        store.upsert_aggregate_bins([AggregateBin("BTCUSDC", T0, 100.0)])
        assert store.aggregate_before("BTCUSDC", T0 + 500, T0) is not None
        assert store.aggregate_before("BTCUSDC", T0 + 500, T0 + 1) is None

    def test_aggregate_after_respects_ceiling(self, store: TickStore) -> None:
        store.upsert_aggregate_bins([AggregateBin("BTCUSDC", T0 + 300, 100.0)])
        assert store.aggregate_after("BTCUSDC", T0, T0 + 300).price == 100.0
        assert store.aggregate_after("BTCUSDC", T0, T0 + 200) is None

    def test_source_bins(self, store: TickStore) -> None:
        store.upsert_source_bins(
            [
                SourceBin("BTCUSDC", "okx", T0, 101.0),
                SourceBin("BTCUSDC", "binance", T0, 100.0),
            ]
        )
        assert [b.source for b in store.source_bins_at("BTCUSDC", T0)] == [
            "binance",
            "okx",
        ]
        assert store.source_bin_before("BTCUSDC", "okx", T0 + 100, T0).price == 101.0
        assert store.source_bin_after("BTCUSDC", "okx", T0 - 100, T0).price == 101.0
        assert store.has_source_bin_between("BTCUSDC", T0, T0)
        assert not store.has_aggregate_between("BTCUSDC", T0, T0)


class TestOracleConfig:
    """Test oracle configuration rows."""

    def test_address_is_lowercased(self, store: TickStore) -> None:
        store.upsert_oracle_config(
            OracleConfig(CHAIN_ID, ORACLE.upper().replace("0X", "0x"), 3600, 50, 8, 10**28)
        )
        cfg = store.get_oracle_config(CHAIN_ID, ORACLE)
        assert cfg is not None
        assert cfg.oracle_addr == ORACLE

    def test_large_scale_factor_round_trips(
        self, store: TickStore, oracle_config: OracleConfig
    ) -> None:
        cfg = store.get_oracle_config(CHAIN_ID, ORACLE)
        assert cfg.scale_factor == 10**28
        assert isinstance(cfg.scale_factor, int)

    def test_seed_keeps_existing(
        self, store: TickStore, oracle_config: OracleConfig
    ) -> None:
        """Seeding never overwrites a stored configuration."""
        store.save_calibration(CHAIN_ID, ORACLE, 2, {"binance": 1.0})
        changed = OracleConfig(CHAIN_ID, ORACLE, 60, 99, 6, 10**30)
        assert store.seed_oracle_configs([changed]) == 0
        cfg = store.get_oracle_config(CHAIN_ID, ORACLE)
        assert cfg.deviation_bps == 10
        assert cfg.lag_seconds == 2

    def test_seed_inserts_missing(self, store: TickStore) -> None:
        inserted = store.seed_oracle_configs(
            [OracleConfig(1, "0xAbC", 3600, 50, 8, 10**28)]
        )
        assert inserted == 1
        assert [c.oracle_addr for c in store.list_oracle_configs()] == ["0xabc"]


class TestCalibrationPersistence:
    """Test the combined lag and weight write."""

    def test_save_replaces_weights(
        self, store: TickStore, oracle_config: OracleConfig
    ) -> None:
        store.save_calibration(CHAIN_ID, ORACLE, 1, {"binance": 0.5, "okx": 0.5})
        assert store.save_calibration(CHAIN_ID, ORACLE, 2, {"coinbase": 1.0})
        assert store.get_weights(CHAIN_ID, ORACLE) == {"coinbase": 1.0}
        assert store.get_oracle_config(CHAIN_ID, ORACLE).lag_seconds == 2

    def test_save_without_config_writes_nothing(self, store: TickStore) -> None:
        assert not store.save_calibration(CHAIN_ID, ORACLE, 1, {"binance": 1.0})
        assert store.get_weights(CHAIN_ID, ORACLE) == {}


class TestSamples:
    """Test oracle sample storage."""

    def test_duplicate_tx_is_ignored(self, store: TickStore) -> None:
        assert store.add_sample(_sample(100, "0xaa"))
        assert not store.add_sample(_sample(100, "0xAA"))
        assert store.sample_counts() == {(CHAIN_ID, ORACLE): 1}

    def test_recent_samples_newest_first(self, store: TickStore) -> None:
        store.add_sample(_sample(100, "0x01", event_ts=10))
        store.add_sample(_sample(101, "0x02", event_ts=30))
        store.add_sample(_sample(102, "0x03", event_ts=20))
        store.add_sample(_sample(103, "0x04", event_ts=None))
        recent = store.recent_samples(CHAIN_ID, ORACLE, limit=2)
        assert [s.event_ts for s in recent] == [30, 20]
        assert store.latest_sample_block(CHAIN_ID, ORACLE) == 103

    def test_latest_block_empty(self, store: TickStore) -> None:
        assert store.latest_sample_block(CHAIN_ID, ORACLE) is None
