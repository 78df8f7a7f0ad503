"""PriceMath: Deterministic median, percentile and basis-point helpers.

The median of an even-length list is the lower-middle element, which is
what an OCR aggregator itself publishes. Every component uses these helpers
so the stored series, the decoder and calibration agree bit for bit.

.. code-block:: python

    >>> median([1, 2, 3, 4])
    2
    >>> trimmed_median([100.0, 101.0, 500.0, 99.0, 100.5], trim_ratio=0.2)
    100.5
    >>> bps_change(100.1, 100.0)
    10
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from typing import TypeVar

T = TypeVar("T", int, float)


def median(values: Iterable[T]) -> T | None:
    """Return the middle element, lower-middle for even counts.

    :param values: Numbers to reduce.
    :returns: Median, or None for an empty input.
    """
    ordered = sorted(values)
    n = len(ordered)
    if n == 0:
        return None
    idx = n // 2 if n % 2 == 1 else n // 2 - 1
    return ordered[idx]


def percentile(values: Iterable[T], q: float) -> T | None:
    """Nearest-rank-below percentile: element ``floor((n - 1) * q)``.

    :param values: Numbers to reduce.
    :param q: Quantile in [0, 1].
    :returns: Percentile value, or None for an empty input.
    """
    ordered = sorted(values)
    if not ordered:
        return None
    idx = min(len(ordered) - 1, max(0, math.floor((len(ordered) - 1) * q)))
    return ordered[idx]


def trimmed_median(values: Iterable[float], trim_ratio: float = 0.2) -> float | None:
    """Drop ``floor(n * trim_ratio)`` values from each end, then take the median.

    :param values: Per-source prices.
    :param trim_ratio: Fraction trimmed from each end.
    :returns: Trimmed median, or None for an empty input.
    """
    ordered = sorted(values)
    if not ordered:
        return None
    trim = math.floor(len(ordered) * trim_ratio)
    kept = ordered[trim : len(ordered) - trim] or ordered
    return median(kept)


def round_half_up(x: float) -> int:
    """Round to the nearest integer with halves going up."""
    return math.floor(x + 0.5)


def bps_change(new: float, reference: float) -> int:
    """Relative change of ``new`` against ``reference`` in whole basis points.

    :raises ZeroDivisionError: If reference is zero.
    """
    return round_half_up((new / reference - 1) * 10_000)
