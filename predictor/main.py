#!/usr/bin/env python3
"""OCR Oracle Predictor.

Ingests centralized-exchange trades into 100ms price bins, calibrates the
observation lag of on-chain OCR oracles and serves predictions of their
next answer over HTTP.

Configuration is a JSON file (see config.example.json); DATABASE_URL,
RPC_URL_<chainId> and SERVICE_PORT override it from the environment.
"""

import argparse
import asyncio
import json
import logging
import os
import sys

from .src.PredictorConfig import ConfigError, PredictorConfig
from .src.PredictorRuntime import PredictorRuntime
from .src.ReportDecoder import decode_any
from .src.ChainReader import ChainReader, ChainReaderError
from .src.fetchers import BaseFetcher, get_available_fetchers

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def log_banner(config: PredictorConfig, command: str) -> None:
    logger.info("=" * 60)
    logger.info(f"OCR Oracle Predictor - {command}")
    logger.info("=" * 60)
    logger.info(f"Database:          {config.database_url.split('@')[-1]}")
    logger.info(f"Exchanges:         {', '.join(config.exchanges)}")
    logger.info(f"Symbols:           {', '.join(config.symbols) or '-'}")
    logger.info(f"Oracles:           {len(config.oracles)}")
    logger.info(f"RPC chains:        {', '.join(str(c) for c in sorted(config.rpc)) or '-'}")
    logger.info(f"Flush / Poll:      {config.ingest.flush_interval_ms}ms / "
                f"{config.ingest.poll_interval_ms}ms")
    logger.info("=" * 60)


def cmd_serve(config: PredictorConfig, args: argparse.Namespace) -> int:
    runtime = PredictorRuntime(config)
    asyncio.run(runtime.serve())
    return 0


def cmd_calibrate(config: PredictorConfig, args: argparse.Namespace) -> int:
    runtime = PredictorRuntime(config)
    runtime.seed_oracles()
    oracles = None
    if args.oracle:
        oracles = [(args.chain_id, args.oracle)]
    results = runtime.calibration.run_all(oracles)
    fitted = {f"{c}:{a}": (r.lag_ms if r else None) for (c, a), r in results.items()}
    print(json.dumps({"lagMs": fitted}, indent=2))
    return 0 if any(r is not None for r in results.values()) else 1


async def _backfill(runtime: PredictorRuntime) -> dict[str, int]:
    try:
        return await runtime.ingestor().backfill_if_needed()
    finally:
        await BaseFetcher.close_shared_client()


def cmd_backfill(config: PredictorConfig, args: argparse.Namespace) -> int:
    runtime = PredictorRuntime(config)
    inserted = asyncio.run(_backfill(runtime))
    print(json.dumps({"inserted": inserted}, indent=2))
    return 0


def cmd_decode(config: PredictorConfig, args: argparse.Namespace) -> int:
    data = args.data
    if data.startswith("0x") and len(data) == 66 and args.chain_id is not None:
        # Looks like a transaction hash: fetch its calldata
        reader = ChainReader(config.rpc, retry=config.retry)
        try:
            data = reader.transaction_input(args.chain_id, data)
        except ChainReaderError as e:
            logger.error(f"Cannot fetch transaction: {e}")
            return 1

    result = decode_any(data)
    if result is None:
        print(json.dumps({"error": "not a recognized transmit call"}))
        return 1
    variant, answer = result
    out = {"variant": variant.value, "answer": str(answer)}
    if args.decimals is not None:
        out["price"] = answer / 10**args.decimals
    print(json.dumps(out, indent=2))
    return 0


def main() -> None:
    """Main entry point for the OCR Oracle Predictor CLI."""
    parser = argparse.ArgumentParser(
        description="OCR Oracle Predictor: CEX-driven oracle answer prediction",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Available exchanges:
  {', '.join(get_available_fetchers())}

Examples:
  # Ingest, calibrate and serve the HTTP API
  oracle-predictor --config config.json serve

  # One calibration pass for a single oracle
  oracle-predictor calibrate --chain-id 8453 --oracle 0xabc...

  # Decode a transmit transaction by hash
  oracle-predictor decode 0x<txhash> --chain-id 8453 --decimals 8

Environment variables:
  PREDICTOR_CONFIG, DATABASE_URL, SERVICE_PORT, RPC_URL_<chainId>
""",
    )
    parser.add_argument(
        "--config",
        type=str,
        help="Path to the JSON config file (default: config.json)",
        default=os.environ.get("PREDICTOR_CONFIG") or "config.json",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("serve", help="Run ingestion, calibration and the HTTP API")

    p_cal = sub.add_parser("calibrate", help="Run one calibration pass and exit")
    p_cal.add_argument("--chain-id", dest="chain_id", type=int)
    p_cal.add_argument("--oracle", type=str, help="Only fit this oracle address")

    sub.add_parser("backfill", help="Backfill symbols with no stored trades and exit")

    p_dec = sub.add_parser("decode", help="Decode a transmit call's answer")
    p_dec.add_argument("data", help="Calldata hex, or a transaction hash with --chain-id")
    p_dec.add_argument("--chain-id", dest="chain_id", type=int)
    p_dec.add_argument("--decimals", type=int, help="Also print the answer in quote units")

    args = parser.parse_args()

    # Configure logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.command == "calibrate" and args.oracle and args.chain_id is None:
        parser.error("--oracle requires --chain-id")

    if args.command == "decode" and not os.path.exists(args.config):
        config = PredictorConfig.from_dict({})
    else:
        try:
            config = PredictorConfig.load(args.config)
        except ConfigError as e:
            parser.error(str(e))

    commands = {
        "serve": cmd_serve,
        "calibrate": cmd_calibrate,
        "backfill": cmd_backfill,
        "decode": cmd_decode,
    }

    if args.command != "decode":
        log_banner(config, args.command)

    try:
        sys.exit(commands[args.command](config, args))
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
