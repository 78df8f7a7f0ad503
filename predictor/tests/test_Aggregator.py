"""Unit tests for Aggregator bins and point-in-time queries."""

import pytest
from conftest import T0, add_bins

from predictor.src.Aggregator import Aggregator
from predictor.src.PredictorConfig import AggregatorSettings
from predictor.src.Records import Trade
from predictor.src.TickStore import TickStore


class TestRebuild:
    """Test the storage path from trades to bins."""

    def test_cross_exchange_median(self, store: TickStore, aggregator: Aggregator) -> None:
        """Three exchanges at 100, 101, 102 give a 101 aggregate."""
        add_bins(
            store,
            aggregator,
            "BTCUSDC",
            {"binance": 100.0, "okx": 101.0, "coinbase": 102.0},
            T0 + 10,
        )
        assert aggregator.price_at("BTCUSDC", T0 + 50) == 101.0
        bins = store.source_bins_at("BTCUSDC", T0)
        assert {b.source: b.price for b in bins} == {
            "binance": 100.0,
            "coinbase": 102.0,
            "okx": 101.0,
        }

    def test_per_source_lower_median(self, store: TickStore, aggregator: Aggregator) -> None:
        """Two prints of one source in a bucket use the lower-middle."""
        store.insert_trades(
            [
                Trade("binance", "BTCUSDC", T0 + 10, 100.0),
                Trade("binance", "BTCUSDC", T0 + 20, 104.0),
            ]
        )
        agg = aggregator.rebuild("BTCUSDC", T0)
        assert agg is not None
        assert agg.price == 100.0

    def test_outlier_is_trimmed(self, store: TickStore, aggregator: Aggregator) -> None:
        add_bins(
            store,
            aggregator,
            "BTCUSDC",
            {"a": 100.0, "b": 101.0, "c": 500.0, "d": 99.0, "e": 100.5},
            T0,
        )
        assert aggregator.price_at("BTCUSDC", T0) == 100.5

    def test_rebuild_is_idempotent(self, store: TickStore, aggregator: Aggregator) -> None:
        add_bins(store, aggregator, "BTCUSDC", {"binance": 100.0}, T0)
        aggregator.rebuild("BTCUSDC", T0)
        store.insert_trade(Trade("okx", "BTCUSDC", T0 + 5, 98.0))
        aggregator.rebuild("BTCUSDC", T0)
        assert aggregator.price_at("BTCUSDC", T0) == 98.0

    def test_empty_bucket(self, aggregator: Aggregator) -> None:
        assert aggregator.rebuild("BTCUSDC", T0) is None

    def test_rebuild_buckets(self, store: TickStore, aggregator: Aggregator) -> None:
        store.insert_trades(
            [
                Trade("binance", "BTCUSDC", T0 + 10, 100.0),
                Trade("binance", "BTCUSDC", T0 + 210, 102.0),
            ]
        )
        written = aggregator.rebuild_buckets(
            [("BTCUSDC", T0 + 10), ("BTCUSDC", T0 + 50), ("BTCUSDC", T0 + 210)]
        )
        assert written == 2


class TestPriceAt:
    """Test the backward lookup and forward slack."""

    def test_prefers_latest_bin_before(self, store: TickStore, aggregator: Aggregator) -> None:
        add_bins(store, aggregator, "BTCUSDC", {"binance": 100.0}, T0)
        add_bins(store, aggregator, "BTCUSDC", {"binance": 101.0}, T0 + 500)
        add_bins(store, aggregator, "BTCUSDC", {"binance": 102.0}, T0 + 1100)
        assert aggregator.price_at("BTCUSDC", T0 + 1000) == 101.0

    def test_forward_slack(self, store: TickStore, aggregator: Aggregator) -> None:
        """With nothing before t, a bin up to 300ms after t is used."""
        add_bins(store, aggregator, "BTCUSDC", {"binance": 100.0}, T0 + 300)
        assert aggregator.price_at("BTCUSDC", T0) == 100.0
        assert aggregator.price_at("BTCUSDC", T0 - 100) is None

    def test_old_bin_used_by_default(self, store: TickStore, aggregator: Aggregator) -> None:
        """On a quiet market the last known bin still answers, however old."""
        add_bins(store, aggregator, "BTCUSDC", {"binance": 100.0}, T0)
        assert aggregator.price_at("BTCUSDC", T0 + 1900) == 100.0
        assert aggregator.price_at("BTCUSDC", T0 + 2500) == 100.0
        assert aggregator.price_at("BTCUSDC", T0 + 3_600_000) == 100.0

    def test_max_staleness_bounds_lookback(self, store: TickStore) -> None:
        bounded = Aggregator(store, AggregatorSettings(max_staleness_ms=2000))
        add_bins(store, bounded, "BTCUSDC", {"binance": 100.0}, T0)
        assert bounded.price_at("BTCUSDC", T0 + 2000) == 100.0
        assert bounded.price_at("BTCUSDC", T0 + 2100) is None


class TestWeightedAt:
    """Test weighted per-source queries."""

    def test_renormalizes_over_sources_with_data(
        self, store: TickStore, aggregator: Aggregator
    ) -> None:
        """A missing source drops out of numerator and denominator."""
        add_bins(store, aggregator, "BTCUSDC", {"binance": 100.0, "okx": 102.0}, T0)
        result = aggregator.weighted_at(
            "BTCUSDC", T0 + 100, {"binance": 0.25, "okx": 0.25, "coinbase": 0.5}
        )
        assert result is not None
        assert result.value == pytest.approx(101.0)
        assert result.used_weight == pytest.approx(0.5)
        assert set(result.per_source) == {"binance", "okx"}

    def test_zero_weight_excluded(self, store: TickStore, aggregator: Aggregator) -> None:
        add_bins(store, aggregator, "BTCUSDC", {"binance": 100.0, "okx": 200.0}, T0)
        result = aggregator.weighted_at("BTCUSDC", T0, {"binance": 1.0, "okx": 0.0})
        assert result.value == pytest.approx(100.0)

    def test_no_data(self, aggregator: Aggregator) -> None:
        assert aggregator.weighted_at("BTCUSDC", T0, {"binance": 1.0}) is None

    def test_window_bounds(self, store: TickStore, aggregator: Aggregator) -> None:
        add_bins(store, aggregator, "BTCUSDC", {"binance": 100.0}, T0)
        assert aggregator.weighted_at("BTCUSDC", T0 - 2000, {"binance": 1.0}) is not None
        assert aggregator.weighted_at("BTCUSDC", T0 + 2100, {"binance": 1.0}) is None


class TestCurrent:
    """Test the live trailing-window price."""

    def test_requires_min_sources(self, store: TickStore) -> None:
        aggregator = Aggregator(store, AggregatorSettings(min_sources=2))
        store.insert_trade(Trade("binance", "BTCUSDC", T0 - 100, 100.0))
        assert aggregator.current("BTCUSDC", T0) is None

        store.insert_trade(Trade("okx", "BTCUSDC", T0 - 50, 102.0))
        live = aggregator.current("BTCUSDC", T0)
        assert live is not None
        assert live.count == 2
        assert live.price == 100.0
        assert live.sources == {"binance": 100.0, "okx": 102.0}

    def test_window_excludes_old_trades(self, store: TickStore) -> None:
        aggregator = Aggregator(store, AggregatorSettings(min_sources=1, window_ms=3000))
        store.insert_trade(Trade("binance", "BTCUSDC", T0 - 3001, 100.0))
        assert aggregator.current("BTCUSDC", T0) is None
