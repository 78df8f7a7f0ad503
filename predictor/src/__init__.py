"""
OCR Oracle Predictor - Price Prediction and Calibration Engine

This module provides the components that predict an OCR oracle's next answer:
- TickStore: Persistence for trades, 100ms bins and oracle state
- TickIngestor: Exchange polling, buffered writes and cold-start backfill
- Aggregator: Per-source and cross-source 100ms price bins and queries
- ReportDecoder: Answer recovery from raw transmit calldata
- OracleAdapters: Aggregated prices to oracle-shaped answers
- CalibrationEngine: Lag/weight fitting against on-chain answers
- CoverageEnricher: Historical trades for calibration instants without bins
- PredictionService: Read-only prediction and monitoring queries
- fetchers: Exchange REST clients
"""

from .Aggregator import AggregatedPrice, Aggregator, WeightedPrice
from .CalibrationEngine import (
    CalibrationEngine,
    CalibrationInfeasible,
    CalibrationScheduler,
    select_best,
)
from .ChainReader import ChainReader, ChainReaderError
from .CoverageEnricher import CoverageEnricher
from .OracleAdapters import OracleAdapterRegistry, RatioFeedAdapter, SingleFeedAdapter
from .PredictionService import PredictionService, TransmitDecision, decide_transmit
from .PredictorConfig import ConfigError, PredictorConfig
from .ReportDecoder import OcrVariant, decode, detect_variant
from .RetryPolicy import RetryPolicy
from .TickIngestor import BufferedTickWriter, TickIngestor
from .TickStore import TickStore

__all__ = [
    "AggregatedPrice",
    "Aggregator",
    "BufferedTickWriter",
    "CalibrationEngine",
    "CalibrationInfeasible",
    "CalibrationScheduler",
    "ChainReader",
    "ChainReaderError",
    "ConfigError",
    "CoverageEnricher",
    "OcrVariant",
    "OracleAdapterRegistry",
    "PredictionService",
    "PredictorConfig",
    "RatioFeedAdapter",
    "RetryPolicy",
    "SingleFeedAdapter",
    "TickIngestor",
    "TickStore",
    "TransmitDecision",
    "WeightedPrice",
    "decide_transmit",
    "decode",
    "detect_variant",
    "select_best",
]
