"""Unit tests for the HTTP query surface."""

import pytest
from conftest import CHAIN_ID, ORACLE, T0, add_bins
from fakes import FakeChainReader
from fastapi.testclient import TestClient

from predictor.src.Aggregator import Aggregator
from predictor.src.ApiServer import create_app, parse_weights, resolve_instant
from predictor.src.ChainReader import RoundData
from predictor.src.OracleAdapters import OracleAdapterRegistry, SingleFeedAdapter
from predictor.src.PredictionService import PredictionService
from predictor.src.PredictorConfig import PredictorConfig
from predictor.src.Records import OracleConfig, Trade
from predictor.src.TickStore import TickStore

BASE = f"/oracles/{CHAIN_ID}/{ORACLE}"


@pytest.fixture
def client(store: TickStore, aggregator: Aggregator) -> TestClient:
    config = PredictorConfig.from_dict(
        {"pairs": [{"symbol": "BTCUSDC", "instruments": {"binance": "BTCUSDC"}}]},
        env={},
    )
    reader = FakeChainReader(
        {CHAIN_ID},
        round_data=RoundData(round_id=1, answer=6500000000000, updated_at=T0 // 1000 - 10),
    )
    registry = OracleAdapterRegistry({(CHAIN_ID, ORACLE): SingleFeedAdapter("BTCUSDC")})
    service = PredictionService(
        store, aggregator, registry, config, reader=reader, clock=lambda: T0 / 1000
    )
    return TestClient(create_app(service))


class TestHelpers:
    """Test query parameter parsing."""

    def test_parse_weights(self) -> None:
        assert parse_weights("Binance:0.5, okx:0.5") == {"binance": 0.5, "okx": 0.5}
        assert parse_weights(None) is None

    @pytest.mark.parametrize("raw", ["binance", "binance:abc", "okx:-1", ":1"])
    def test_parse_weights_invalid(self, raw: str) -> None:
        with pytest.raises(ValueError):
            parse_weights(raw)

    def test_resolve_instant(self) -> None:
        assert resolve_instant(1.5, None, None, None) == (1500, None)
        assert resolve_instant(1.5, 2000, 1.0, None) == (2000, 1000)
        assert resolve_instant(None, 2000, 1.0, 250) == (2000, 250)
        with pytest.raises(ValueError):
            resolve_instant(None, None, None, None)


class TestPriceEndpoints:
    """Test symbol price endpoints."""

    def test_health(self, client: TestClient) -> None:
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_price(self, client: TestClient, store: TickStore) -> None:
        store.insert_trades(
            [
                Trade("binance", "BTCUSDC", T0 - 100, 100.0),
                Trade("okx", "BTCUSDC", T0 - 200, 101.0),
            ]
        )
        body = client.get("/price/btcusdc").json()
        assert body["symbol"] == "BTCUSDC"
        assert body["aggregatedPrice"] == 100.0
        assert body["count"] == 2

    def test_price_unavailable(self, client: TestClient) -> None:
        response = client.get("/price/BTCUSDC")
        assert response.status_code == 503
        assert response.json()["error"] == "no price"

    def test_price_at(self, client: TestClient, store: TickStore, aggregator: Aggregator) -> None:
        add_bins(store, aggregator, "BTCUSDC", {"binance": 100.0, "okx": 110.0}, T0)
        response = client.get(
            "/priceAt/BTCUSDC",
            params={"tsMs": T0 + 1000, "lagMs": 1000, "weights": "binance:1,okx:1"},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["atMs"] == T0
        assert body["weighted"] == pytest.approx(105.0)

    def test_price_at_requires_timestamp(self, client: TestClient) -> None:
        response = client.get("/priceAt/BTCUSDC")
        assert response.status_code == 400
        assert "required" in response.json()["error"]

    def test_bad_weights(self, client: TestClient) -> None:
        response = client.get("/priceAt/BTCUSDC", params={"ts": 1, "weights": "x"})
        assert response.status_code == 400

    def test_invalid_param_type(self, client: TestClient) -> None:
        response = client.get("/priceAt/BTCUSDC", params={"tsMs": "soon"})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid request"


class TestOracleEndpoints:
    """Test per-oracle endpoints."""

    def test_prediction(
        self, client: TestClient, store: TickStore, oracle_config: OracleConfig
    ) -> None:
        store.insert_trades(
            [
                Trade("binance", "BTCUSDC", T0 - 100, 65065.0),
                Trade("okx", "BTCUSDC", T0 - 100, 65070.0),
            ]
        )
        response = client.get(f"{BASE}/prediction")
        assert response.status_code == 200
        body = response.json()
        assert body["predictedPrice1e36"] == str(10**28 * 6506500000000)
        assert body["deltaBps"] == 10
        assert body["shouldTransmit"] is True
        assert body["reasons"] == {"offset": True, "heartbeat": False}

    def test_prediction_unknown_oracle(self, client: TestClient) -> None:
        response = client.get(f"/oracles/{CHAIN_ID}/0xdead/prediction")
        assert response.status_code == 404
        assert response.json() == {"error": "config not found"}

    def test_prediction_chain_without_rpc(
        self, client: TestClient, store: TickStore
    ) -> None:
        store.upsert_oracle_config(OracleConfig(1, ORACLE, 3600, 50, 8, 10**28))
        response = client.get(f"/oracles/1/{ORACLE}/prediction")
        assert response.status_code == 400

    def test_prediction_without_price(
        self, client: TestClient, oracle_config: OracleConfig
    ) -> None:
        assert client.get(f"{BASE}/prediction").status_code == 503

    def test_prediction_at(
        self,
        client: TestClient,
        store: TickStore,
        aggregator: Aggregator,
        oracle_config: OracleConfig,
    ) -> None:
        add_bins(store, aggregator, "BTCUSDC", {"binance": 65000.0}, T0)
        response = client.get(f"{BASE}/predictionAt", params={"ts": T0 / 1000, "lag": 0})
        assert response.status_code == 200
        body = response.json()
        assert body["price1e36"] == str(10**28 * 6500000000000)
        assert body["required"] == ["BTCUSDC"]

    def test_prediction_at_no_price(
        self, client: TestClient, oracle_config: OracleConfig
    ) -> None:
        response = client.get(f"{BASE}/predictionAt", params={"tsMs": T0})
        assert response.status_code == 503
        assert "BTCUSDC" in response.json()["error"]

    def test_prediction_at_unknown_oracle(self, client: TestClient) -> None:
        response = client.get(f"/oracles/{CHAIN_ID}/0xdead/predictionAt", params={"tsMs": T0})
        assert response.status_code == 404

    def test_listing_and_weights(
        self, client: TestClient, store: TickStore, oracle_config: OracleConfig
    ) -> None:
        store.save_calibration(CHAIN_ID, ORACLE, 1, {"binance": 0.5, "okx": 0.5})
        [row] = client.get("/oracles").json()
        assert row["lagSeconds"] == 1
        assert client.get(f"{BASE}/weights").json() == [
            {"source": "binance", "weight": 0.5},
            {"source": "okx", "weight": 0.5},
        ]

    def test_monitoring(self, client: TestClient, oracle_config: OracleConfig) -> None:
        assert client.get(f"{BASE}/fitSummary").json()["samples"] == 0
        rows = client.get(f"{BASE}/coverage").json()
        assert [r["lagMs"] for r in rows] == [0, 500, 1000, 1500, 2000, 2500, 3000]
        assert client.get("/metrics").json()["symbols"][0]["symbol"] == "BTCUSDC"
        assert client.get("/metrics/backtest").json() == {"oracles": []}
