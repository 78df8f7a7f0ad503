"""
Exchange trade and candle fetchers.

This module provides a unified interface for reading public trades and
1-minute candles from centralized exchanges.

Usage:
    from predictor.src.fetchers import get_fetcher, get_available_fetchers

    # Get list of available fetchers
    available = get_available_fetchers()
    # ['binance', 'coinbase', 'okx']

    # Create a fetcher instance
    fetcher = get_fetcher("okx")
    trades = await fetcher.fetch_trades("BTC-USDC")
"""

# Import base classes and utilities
from .base import (
    FETCHER_REGISTRY,
    BaseFetcher,
    Candle,
    FetcherError,
    FetcherHTTPError,
    TradePrint,
    get_available_fetchers,
    get_fetcher,
    register_fetcher,
)

# Import all fetcher implementations to trigger registration
from .binance import BinanceFetcher
from .coinbase import CoinbaseFetcher
from .okx import OKXFetcher

__all__ = [
    # Base classes
    "BaseFetcher",
    "Candle",
    "FetcherError",
    "FetcherHTTPError",
    "TradePrint",
    # Registry functions
    "register_fetcher",
    "get_fetcher",
    "get_available_fetchers",
    "FETCHER_REGISTRY",
    # Fetcher implementations
    "BinanceFetcher",
    "CoinbaseFetcher",
    "OKXFetcher",
]
