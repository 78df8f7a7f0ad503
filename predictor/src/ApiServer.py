"""ApiServer: Read-only JSON query surface.

Every error leaves as ``{"error": ...}`` with a status code:
400 malformed request or missing RPC, 404 unknown oracle, 503 no price
at the requested instant, 500 anything unexpected.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .ChainReader import ChainReaderError
from .PredictionService import OracleNotConfigured, PredictionService

logger = logging.getLogger(__name__)


def error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


def parse_weights(raw: str | None) -> dict[str, float] | None:
    """Parse ``"binance:0.5,okx:0.5"``.

    :raises ValueError: On a malformed or negative entry.
    """
    if not raw:
        return None
    weights: dict[str, float] = {}
    for item in raw.split(","):
        if not item.strip():
            continue
        name, sep, value = item.partition(":")
        if not sep or not name.strip():
            raise ValueError(f"bad weight entry '{item}', expected source:weight")
        weight = float(value)
        if weight < 0:
            raise ValueError(f"negative weight for {name}")
        weights[name.strip().lower()] = weight
    return weights


def parse_sources(raw: str | None) -> list[str] | None:
    if not raw:
        return None
    sources = [s.strip().lower() for s in raw.split(",") if s.strip()]
    return sources or None


def resolve_instant(
    ts: float | None, ts_ms: int | None, lag: float | None, lag_ms: int | None
) -> tuple[int, int | None]:
    """Timestamp and lag in milliseconds from second- or millisecond-based params.

    :returns: (ts_ms, lag_ms); lag is None when not given.
    :raises ValueError: If no timestamp is given.
    """
    if ts_ms is not None:
        at = int(ts_ms)
    elif ts is not None:
        at = int(ts * 1000)
    else:
        raise ValueError("ts (seconds) or tsMs (milliseconds) required")
    if lag_ms is not None:
        return at, int(lag_ms)
    if lag is not None:
        return at, int(lag * 1000)
    return at, None


def create_app(service: PredictionService) -> FastAPI:
    app = FastAPI(title="Oracle Predictor", version="0.1.0")
    app.state.service = service
    app.state.start_time = datetime.now(timezone.utc)

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError):
        return error(400, "invalid request", detail=[str(e.get("msg")) for e in exc.errors()])

    @app.exception_handler(Exception)
    async def unexpected_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.url.path}")
        return error(500, str(exc))

    @app.get("/health")
    def health():
        uptime = (datetime.now(timezone.utc) - app.state.start_time).total_seconds()
        return {"status": "ok", "uptime_seconds": round(uptime)}

    @app.get("/price/{symbol}")
    def price(symbol: str):
        symbol = symbol.upper()
        current = service.aggregated_price(symbol)
        if current is None:
            return error(503, "no price", symbol=symbol)
        return {
            "symbol": symbol,
            "aggregatedPrice": current.price,
            "sources": current.sources,
            "count": current.count,
        }

    @app.get("/priceAt/{symbol}")
    def price_at(
        symbol: str,
        ts: float | None = None,
        tsMs: int | None = None,
        lag: float | None = None,
        lagMs: int | None = None,
        sources: str | None = None,
        weights: str | None = None,
    ):
        try:
            at, lag_ms = resolve_instant(ts, tsMs, lag, lagMs)
            parsed_weights = parse_weights(weights)
        except ValueError as e:
            return error(400, str(e))
        symbol = symbol.upper()
        lag_ms = lag_ms or 0
        result = service.weighted_price_at(
            symbol, at, lag_ms, parse_sources(sources), parsed_weights
        )
        if result is None:
            return error(503, "no price", symbol=symbol, atMs=at - lag_ms)
        return {
            "symbol": symbol,
            "tsMs": at,
            "lagMs": lag_ms,
            "atMs": at - lag_ms,
            "perSource": result.per_source,
            "usedWeight": result.used_weight,
            "weighted": result.value,
        }

    @app.get("/oracles")
    def oracles():
        return service.oracles()

    @app.get("/oracles/{chain_id}/{addr}/weights")
    def oracle_weights(chain_id: int, addr: str):
        return service.weights(chain_id, addr)

    @app.get("/oracles/{chain_id}/{addr}/fitSummary")
    def fit_summary(chain_id: int, addr: str, limit: int = 500):
        return service.fit_summary(chain_id, addr, limit)

    @app.get("/oracles/{chain_id}/{addr}/coverage")
    def coverage(chain_id: int, addr: str, window: int = 300, limit: int = 60):
        return service.coverage(chain_id, addr, window_ms=window, limit=limit)

    @app.get("/oracles/{chain_id}/{addr}/prediction")
    def prediction(chain_id: int, addr: str, symbol: str | None = None):
        try:
            p = service.prediction(chain_id, addr, symbol)
        except OracleNotConfigured:
            return error(404, "config not found")
        except ChainReaderError as e:
            return error(400, str(e))
        if p.answer is None or p.decision is None:
            return error(503, "no price", symbol=p.symbol)
        return {
            "symbol": p.symbol,
            "chainId": p.chain_id,
            "oracle": p.oracle,
            "verified": p.verified,
            "predictedAnswer": p.answer,
            "predictedPrice1e36": str(p.fixed_point_price),
            "onchainAnswer": p.onchain_answer,
            "updatedAt": p.updated_at,
            "deltaBps": p.decision.deviation_bps,
            "ageSeconds": p.decision.age_seconds,
            "shouldTransmit": p.decision.should_transmit,
            "reasons": p.decision.reasons,
        }

    @app.get("/oracles/{chain_id}/{addr}/predictionAt")
    def prediction_at(
        chain_id: int,
        addr: str,
        ts: float | None = None,
        tsMs: int | None = None,
        lag: float | None = None,
        lagMs: int | None = None,
    ):
        try:
            at, lag_ms = resolve_instant(ts, tsMs, lag, lagMs)
        except ValueError as e:
            return error(400, str(e))
        try:
            p = service.predicted_at(chain_id, addr, at, lag_ms)
        except OracleNotConfigured:
            return error(404, "config not found")
        if p.answer is None:
            missing = [s for s, v in p.prices.items() if v is None]
            return error(503, f"no price for {', '.join(missing) or p.required}", atMs=p.at_ms)
        return {
            "chainId": p.chain_id,
            "oracle": p.oracle,
            "tsMs": p.ts_ms,
            "lagMs": p.lag_ms,
            "atMs": p.at_ms,
            "required": p.required,
            "prices": p.prices,
            "answer": p.answer,
            "price1e36": str(p.fixed_point_price),
        }

    @app.get("/metrics")
    def metrics():
        return service.metrics()

    @app.get("/metrics/backtest")
    def metrics_backtest():
        return {"oracles": service.backtest_overview()}

    return app
