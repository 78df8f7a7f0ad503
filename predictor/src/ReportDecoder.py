"""ReportDecoder: Recover an oracle answer from raw ``transmit`` calldata.

Two shapes of the OCR ``transmit`` call are recognized:

- ``ocr2``: ``transmit(bytes report, bytes32[] rawRs, bytes32[] rawSs, bytes32 rawVs)``
- ``acoa``: ``transmit(bytes32[3] reportContext, bytes report, bytes32[] rawRs,
  bytes32[] rawSs, bytes rawVs)``

Both carry an ABI-encoded ``report`` whose third word is the byte offset of
an ``int192[]`` observations array. The recovered answer is the lower-middle
median of the observations, which is what the aggregator publishes.

Every function here is pure and returns None on malformed input.

.. code-block:: python

    >>> variant = detect_variant(call_data)
    >>> decode(variant, call_data)
    6500012345678
"""

from __future__ import annotations

import logging
from enum import Enum

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from .PriceMath import median

logger = logging.getLogger(__name__)

WORD = 32
MIN_REPORT_LENGTH = 3 * WORD
SIGN_BIT = 1 << 255
WORD_MODULUS = 1 << 256


class OcrVariant(str, Enum):
    """Known ``transmit`` call layouts."""

    OCR2 = "ocr2"
    ACOA = "acoa"


# Argument types per variant, and the index of the report argument.
_LAYOUTS: dict[OcrVariant, tuple[list[str], int]] = {
    OcrVariant.OCR2: (["bytes", "bytes32[]", "bytes32[]", "bytes32"], 0),
    OcrVariant.ACOA: (["bytes32[3]", "bytes", "bytes32[]", "bytes32[]", "bytes"], 1),
}


def _selector(types: list[str]) -> bytes:
    return bytes(Web3.keccak(text=f"transmit({','.join(types)})")[:4])


SELECTORS: dict[OcrVariant, bytes] = {
    variant: _selector(types) for variant, (types, _) in _LAYOUTS.items()
}


def _to_bytes(call_data: bytes | str) -> bytes | None:
    if isinstance(call_data, bytes):
        return call_data
    text = call_data[2:] if call_data.startswith(("0x", "0X")) else call_data
    try:
        return bytes.fromhex(text)
    except ValueError:
        return None


def _decode_args(variant: OcrVariant, data: bytes) -> tuple | None:
    types, _ = _LAYOUTS[variant]
    if len(data) < 4 or data[:4] != SELECTORS[variant]:
        return None
    try:
        return tuple(abi_decode(types, data[4:]))
    except (DecodingError, ValueError, OverflowError) as e:
        logger.debug(f"[decoder] {variant.value} layout rejected: {e}")
        return None


def detect_variant(call_data: bytes | str) -> OcrVariant | None:
    """Find the first known ``transmit`` layout the calldata unpacks under.

    :param call_data: Raw calldata (bytes or 0x-prefixed hex).
    :returns: Matching variant, or None.
    """
    data = _to_bytes(call_data)
    if data is None:
        return None
    for variant in OcrVariant:
        if _decode_args(variant, data) is not None:
            return variant
    return None


def extract_report(variant: OcrVariant, call_data: bytes | str) -> bytes | None:
    """Return the ``report`` argument of a transmit call, or None."""
    data = _to_bytes(call_data)
    if data is None:
        return None
    args = _decode_args(variant, data)
    if args is None:
        return None
    _, report_index = _LAYOUTS[variant]
    return bytes(args[report_index])


def _word(report: bytes, offset: int) -> int:
    return int.from_bytes(report[offset : offset + WORD], "big")


def decode_observations(report: bytes) -> list[int] | None:
    """Parse the signed observations array out of an encoded report.

    :param report: ABI-encoded report bytes.
    :returns: Observations as signed integers, or None if the layout is invalid.
    """
    if len(report) < MIN_REPORT_LENGTH:
        return None
    offset = _word(report, 2 * WORD)
    if offset + WORD > len(report):
        return None
    length = _word(report, offset)
    start = offset + WORD
    if start + length * WORD > len(report):
        return None

    observations = []
    for i in range(length):
        value = _word(report, start + i * WORD)
        # Sign-extended int192 occupying a full word.
        if value >= SIGN_BIT:
            value -= WORD_MODULUS
        observations.append(value)
    return observations


def decode_report(report: bytes) -> int | None:
    """Median observation of an encoded report, or None."""
    observations = decode_observations(report)
    if not observations:
        return None
    return median(observations)


def decode(variant: OcrVariant, call_data: bytes | str) -> int | None:
    """Recover the answer published by a transmit call.

    :param variant: Call layout (see :func:`detect_variant`).
    :param call_data: Raw calldata (bytes or 0x-prefixed hex).
    :returns: Answer in the oracle's fixed-point units, or None.
    """
    report = extract_report(variant, call_data)
    if report is None:
        return None
    return decode_report(report)


def decode_any(call_data: bytes | str) -> tuple[OcrVariant, int] | None:
    """Detect the layout and decode in one step."""
    variant = detect_variant(call_data)
    if variant is None:
        return None
    answer = decode(variant, call_data)
    if answer is None:
        return None
    return variant, answer
