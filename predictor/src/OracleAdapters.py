"""OracleAdapters: Turn aggregated CEX prices into an oracle-shaped answer.

An adapter names the aggregated symbols an oracle needs and how to combine
them. Adapters are plain dataclasses; :func:`compute` dispatches on the kind.

- ``SingleFeedAdapter(symbol)``: answer is the symbol's price
- ``RatioFeedAdapter(base_symbol, quote_symbol)``: answer is base / quote

The fixed-point price lifts the answer onto the 1e36 base shared by all
oracles: ``scale_factor * round(answer * 10 ** decimals)``.

.. code-block:: python

    >>> result = compute(SingleFeedAdapter("BTCUSDC"), {"BTCUSDC": 65000.5}, 8, 10**28)
    >>> result.fixed_point_price
    65000500000000000000000000000000000000000
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .PredictorConfig import OracleEntry
from .PriceMath import round_half_up

if TYPE_CHECKING:
    from .Aggregator import Aggregator

logger = logging.getLogger(__name__)

DEFAULT_SYMBOL = "BTCUSDC"


@dataclass(frozen=True)
class SingleFeedAdapter:
    symbol: str


@dataclass(frozen=True)
class RatioFeedAdapter:
    """Derived pair priced as ``base / quote`` (e.g. ETHBTC from ETHUSDC and BTCUSDC)."""

    base_symbol: str
    quote_symbol: str


Adapter = SingleFeedAdapter | RatioFeedAdapter


@dataclass
class AdapterResult:
    """Output of :func:`compute`.

    :ivar answer: Predicted answer in quote units, or None if a price is missing.
    :ivar fixed_point_price: Answer on the 1e36 base, or None.
    """

    answer: float | None = None
    fixed_point_price: int | None = None


def required_symbols(adapter: Adapter) -> list[str]:
    """Aggregated symbols the adapter reads."""
    match adapter:
        case SingleFeedAdapter(symbol=symbol):
            return [symbol]
        case RatioFeedAdapter(base_symbol=base, quote_symbol=quote):
            return [base, quote]
    raise TypeError(f"Unknown adapter {adapter!r}")


def _answer(adapter: Adapter, prices: dict[str, float | None]) -> float | None:
    match adapter:
        case SingleFeedAdapter(symbol=symbol):
            return prices.get(symbol)
        case RatioFeedAdapter(base_symbol=base, quote_symbol=quote):
            base_price = prices.get(base)
            quote_price = prices.get(quote)
            if base_price is None or not quote_price:
                return None
            return base_price / quote_price
    raise TypeError(f"Unknown adapter {adapter!r}")


def compute(
    adapter: Adapter,
    prices: dict[str, float | None],
    decimals: int,
    scale_factor: int,
) -> AdapterResult:
    """Compute the oracle-shaped answer from aggregated prices.

    :param adapter: Adapter variant.
    :param prices: Aggregated price per symbol (None when unavailable).
    :param decimals: Decimals of the oracle's answer.
    :param scale_factor: Multiplier onto the 1e36 base.
    :returns: AdapterResult; both fields are None if any input is missing.
    """
    answer = _answer(adapter, prices)
    if answer is None or answer <= 0:
        return AdapterResult()
    scaled = round_half_up(answer * 10**decimals)
    return AdapterResult(answer=answer, fixed_point_price=scale_factor * scaled)


def gather_prices(
    aggregator: Aggregator,
    adapter: Adapter,
    t_ms: int,
    weights: dict[str, float] | None = None,
) -> dict[str, float | None]:
    """Aggregated price of each required symbol at ``t_ms``.

    With weights, each symbol uses the weighted per-source price; without,
    the stored aggregate series.
    """
    prices: dict[str, float | None] = {}
    for symbol in required_symbols(adapter):
        if weights:
            weighted = aggregator.weighted_at(symbol, t_ms, weights)
            prices[symbol] = weighted.value if weighted is not None else None
        else:
            prices[symbol] = aggregator.price_at(symbol, t_ms)
    return prices


def predicted_answer(
    aggregator: Aggregator,
    adapter: Adapter,
    t_ms: int,
    weights: dict[str, float] | None = None,
) -> float | None:
    """Adapter answer in quote units at ``t_ms``, or None without coverage."""
    answer = _answer(adapter, gather_prices(aggregator, adapter, t_ms, weights))
    return answer if answer is not None and answer > 0 else None


def adapter_from_entry(entry: OracleEntry) -> Adapter:
    """Build the adapter described by a config entry."""
    if entry.adapter == "ratio" and entry.quote_symbol:
        return RatioFeedAdapter(entry.symbol, entry.quote_symbol)
    return SingleFeedAdapter(entry.symbol)


class OracleAdapterRegistry:
    """Static (chain_id, oracle address) to adapter lookup.

    Unknown oracles fall back to a single-feed adapter on ``DEFAULT_SYMBOL``;
    such lookups are reported as unverified.
    """

    def __init__(
        self,
        adapters: dict[tuple[int, str], Adapter] | None = None,
        default_symbol: str = DEFAULT_SYMBOL,
    ) -> None:
        self._adapters = {
            (chain_id, addr.lower()): adapter
            for (chain_id, addr), adapter in (adapters or {}).items()
        }
        self.default = SingleFeedAdapter(default_symbol)

    @classmethod
    def from_config(cls, oracles: list[OracleEntry]) -> OracleAdapterRegistry:
        return cls({(o.chain_id, o.address): adapter_from_entry(o) for o in oracles})

    def register(self, chain_id: int, oracle_addr: str, adapter: Adapter) -> None:
        self._adapters[(chain_id, oracle_addr.lower())] = adapter

    def is_verified(self, chain_id: int, oracle_addr: str) -> bool:
        """True if the oracle has an explicit entry."""
        return (chain_id, oracle_addr.lower()) in self._adapters

    def resolve(self, chain_id: int, oracle_addr: str) -> Adapter:
        """Adapter for an oracle, or the default single-feed adapter."""
        adapter = self._adapters.get((chain_id, oracle_addr.lower()))
        if adapter is None:
            logger.debug(
                f"No adapter for {chain_id}:{oracle_addr}, using unverified "
                f"default {self.default.symbol}"
            )
            return self.default
        return adapter

    def entries(self) -> dict[tuple[int, str], Adapter]:
        return dict(self._adapters)
