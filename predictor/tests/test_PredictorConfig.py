"""Unit tests for PredictorConfig."""

import json

import pytest

from predictor.src.PredictorConfig import ConfigError, PredictorConfig

ORACLE = {
    "chain_id": 8453,
    "address": "0x64C911996D3c6aC71f9b455B1E8E7266BcbD848F",
    "symbol": "btcusdc",
    "decimals": 8,
    "scale_factor": "10000000000000000000000000000",
    "heartbeat_seconds": 86400,
    "deviation_bps": 10,
}


def base_config(**overrides) -> dict:
    raw = {
        "exchanges": ["binance", "okx", "coinbase"],
        "pairs": [
            {
                "symbol": "BTCUSDC",
                "instruments": {"binance": "BTCUSDC", "okx": "BTC-USDC", "coinbase": "BTC-USDC"},
            }
        ],
        "oracles": [dict(ORACLE)],
        "rpc": {"8453": "https://base.example"},
    }
    raw.update(overrides)
    return raw


class TestFromDict:
    """Test parsing and defaults."""

    def test_defaults(self) -> None:
        cfg = PredictorConfig.from_dict({}, env={})
        assert cfg.exchanges == ["binance", "okx", "coinbase"]
        assert cfg.aggregator.trim_ratio == 0.2
        assert cfg.aggregator.forward_slack_ms == 300
        assert cfg.aggregator.max_staleness_ms is None
        assert cfg.calibration.max_lag_ms == 3000
        assert cfg.calibration.enrich
        assert cfg.calibration.coverage_window_ms == 300
        assert cfg.ingest.backfill_minutes == 90
        assert cfg.service.port == 48080

    def test_oracle_entry(self) -> None:
        cfg = PredictorConfig.from_dict(base_config(), env={})
        [oracle] = cfg.oracles
        assert oracle.address == ORACLE["address"].lower()
        assert oracle.symbol == "BTCUSDC"
        assert oracle.scale_factor == 10**28
        assert cfg.rpc == {8453: "https://base.example"}
        assert cfg.symbols == ["BTCUSDC"]

    def test_uniform_default_weights(self) -> None:
        cfg = PredictorConfig.from_dict(base_config(), env={})
        assert cfg.default_weights() == pytest.approx(
            {"binance": 1 / 3, "okx": 1 / 3, "coinbase": 1 / 3}
        )

    def test_configured_weights(self) -> None:
        cfg = PredictorConfig.from_dict(
            base_config(aggregator={"weights": {"Binance": 0.7, "okx": 0.3}}), env={}
        )
        assert cfg.default_weights() == {"binance": 0.7, "okx": 0.3}

    def test_retry_policy(self) -> None:
        cfg = PredictorConfig.from_dict(
            base_config(retry={"max_attempts": 5, "delays": [1, 2]}), env={}
        )
        assert cfg.retry.max_attempts == 5
        assert list(cfg.retry.schedule()) == [1.0, 2.0, 2.0, 2.0]


class TestEnvironment:
    """Test environment overrides."""

    def test_overrides(self) -> None:
        cfg = PredictorConfig.from_dict(
            base_config(),
            env={
                "DATABASE_URL": "postgresql://u:p@db/predictor",
                "RPC_URL_1": "https://eth.example",
                "RPC_URL_8453": "https://base2.example",
                "SERVICE_PORT": "9000",
            },
        )
        assert cfg.database_url == "postgresql://u:p@db/predictor"
        assert cfg.rpc == {8453: "https://base2.example", 1: "https://eth.example"}
        assert cfg.service.port == 9000

    def test_bad_chain_id_ignored(self) -> None:
        cfg = PredictorConfig.from_dict({}, env={"RPC_URL_mainnet": "https://x"})
        assert cfg.rpc == {}


class TestValidation:
    """Test rejected configurations."""

    @pytest.mark.parametrize(
        "overrides",
        [
            {"exchanges": []},
            {"aggregator": {"trim_ratio": 0.5}},
            {"aggregator": {"min_sources": 0}},
            {"aggregator": {"weights": {"binance": -1}}},
            {"aggregator": {"unknown_key": 1}},
            {"calibration": {"lag_step_ms": 0}},
            {"pairs": [{"symbol": "BTCUSDC", "instruments": {"kraken": "XBTUSDC"}}]},
            {"oracles": [dict(ORACLE, scale_factor="0")]},
            {"oracles": [dict(ORACLE, adapter="inverse")]},
            {"oracles": [dict(ORACLE, adapter="ratio")]},
            {"oracles": [{"chain_id": 1}]},
            {"oracles": [dict(ORACLE, address="0x1")]},
            {"oracles": [dict(ORACLE, address="not-an-address")]},
        ],
    )
    def test_invalid(self, overrides: dict) -> None:
        with pytest.raises(ConfigError):
            PredictorConfig.from_dict(base_config(**overrides), env={})


class TestLoad:
    """Test reading config files."""

    def test_load(self, tmp_path, monkeypatch) -> None:
        monkeypatch.delenv("DATABASE_URL", raising=False)
        path = tmp_path / "config.json"
        path.write_text(json.dumps(base_config(database_url="sqlite:///x.db")))
        assert PredictorConfig.load(path).database_url == "sqlite:///x.db"

    def test_missing_file(self, tmp_path) -> None:
        with pytest.raises(ConfigError):
            PredictorConfig.load(tmp_path / "nope.json")

    def test_invalid_json(self, tmp_path) -> None:
        path = tmp_path / "config.json"
        path.write_text("{not json")
        with pytest.raises(ConfigError):
            PredictorConfig.load(path)
