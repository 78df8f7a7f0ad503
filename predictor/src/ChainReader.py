"""ChainReader: Read-only Web3 access to OCR aggregator contracts.

One Web3 HTTP client per chain id. Log scans are split into fixed-size block
ranges and every RPC call goes through the shared RetryPolicy; a call that
still fails raises ChainReaderError.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from web3 import Web3

from .RetryPolicy import RetryPolicy

logger = logging.getLogger(__name__)

OCR_AGGREGATOR_ABI = [
    {
        "type": "event",
        "name": "NewTransmission",
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "aggregatorRoundId", "type": "uint32"},
            {"indexed": False, "name": "answer", "type": "int192"},
            {"indexed": False, "name": "transmitter", "type": "address"},
            {"indexed": False, "name": "observations", "type": "int192[]"},
            {"indexed": False, "name": "observers", "type": "bytes"},
            {"indexed": False, "name": "rawReportContext", "type": "bytes32"},
        ],
    },
    {
        "type": "function",
        "name": "latestRoundData",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [
            {"name": "roundId", "type": "uint80"},
            {"name": "answer", "type": "int256"},
            {"name": "startedAt", "type": "uint256"},
            {"name": "updatedAt", "type": "uint256"},
            {"name": "answeredInRound", "type": "uint80"},
        ],
    },
    {
        "type": "function",
        "name": "decimals",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint8"}],
    },
]


class ChainReaderError(Exception):
    """Raised when a chain is not configured or an RPC call keeps failing."""

    pass


@dataclass
class Transmission:
    """One ``NewTransmission`` event.

    :ivar answer: Raw answer in the oracle's fixed-point units.
    :ivar timestamp: Block timestamp in seconds, if fetched.
    """

    block_number: int
    tx_hash: str
    round_id: int
    answer: int
    timestamp: int | None = None


@dataclass
class RoundData:
    """Subset of ``latestRoundData()``."""

    round_id: int
    answer: int
    updated_at: int


class ChainReader:
    """Per-chain Web3 clients for oracle reads.

    :ivar rpc_urls: Chain id to HTTP RPC URL.
    :ivar retry: Retry policy applied to every RPC call.
    :ivar chunk_blocks: Block range per ``eth_getLogs`` request.
    """

    def __init__(
        self,
        rpc_urls: dict[int, str],
        retry: RetryPolicy | None = None,
        chunk_blocks: int = 2_000,
        timeout: float = 10.0,
    ) -> None:
        self.rpc_urls = dict(rpc_urls)
        self.retry = retry or RetryPolicy()
        self.chunk_blocks = chunk_blocks
        self.timeout = timeout
        self._clients: dict[int, Web3] = {}
        self._block_ts: dict[tuple[int, int], int] = {}

    def has_chain(self, chain_id: int) -> bool:
        return chain_id in self.rpc_urls

    def w3(self, chain_id: int) -> Web3:
        """Web3 client for a chain, created on first use.

        :raises ChainReaderError: If no RPC URL is configured for the chain.
        """
        client = self._clients.get(chain_id)
        if client is not None:
            return client
        url = self.rpc_urls.get(chain_id)
        if not url:
            raise ChainReaderError(f"No RPC configured for chain {chain_id}")
        client = Web3(Web3.HTTPProvider(url, request_kwargs={"timeout": self.timeout}))
        self._clients[chain_id] = client
        return client

    def _contract(self, chain_id: int, oracle_addr: str):
        """Aggregator contract handle.

        :raises ChainReaderError: If the chain is unknown or the address is malformed.
        """
        w3 = self.w3(chain_id)
        try:
            address = Web3.to_checksum_address(oracle_addr)
        except (ValueError, TypeError) as e:
            raise ChainReaderError(f"Invalid oracle address {oracle_addr!r}: {e}") from e
        return w3.eth.contract(address=address, abi=OCR_AGGREGATOR_ABI)

    def _call(self, what: str, fn):
        try:
            return self.retry.call(fn, what=what)
        except ChainReaderError:
            raise
        except Exception as e:
            raise ChainReaderError(f"{what} failed: {e}") from e

    def block_number(self, chain_id: int) -> int:
        w3 = self.w3(chain_id)
        return int(self._call(f"[chain {chain_id}] block_number", lambda: w3.eth.block_number))

    def block_timestamp(self, chain_id: int, block_number: int) -> int:
        """Block timestamp in seconds (cached per block)."""
        key = (chain_id, block_number)
        if key not in self._block_ts:
            w3 = self.w3(chain_id)
            block = self._call(
                f"[chain {chain_id}] get_block {block_number}",
                lambda: w3.eth.get_block(block_number),
            )
            self._block_ts[key] = int(block["timestamp"])
        return self._block_ts[key]

    def fetch_transmissions(
        self, chain_id: int, oracle_addr: str, from_block: int, to_block: int
    ) -> list[Transmission]:
        """Scan ``NewTransmission`` logs in fixed-size block chunks.

        :returns: Transmissions in block order, without timestamps.
        :raises ChainReaderError: If a chunk keeps failing.
        """
        event = self._contract(chain_id, oracle_addr).events.NewTransmission
        out: list[Transmission] = []
        start = max(0, from_block)
        while start <= to_block:
            end = min(to_block, start + self.chunk_blocks - 1)
            logs = self._call(
                f"[chain {chain_id}] logs {oracle_addr} {start}-{end}",
                lambda s=start, e=end: event.get_logs(from_block=s, to_block=e),
            )
            for log in logs:
                out.append(
                    Transmission(
                        block_number=int(log["blockNumber"]),
                        tx_hash=Web3.to_hex(log["transactionHash"]),
                        round_id=int(log["args"]["aggregatorRoundId"]),
                        answer=int(log["args"]["answer"]),
                    )
                )
            start = end + 1
        out.sort(key=lambda t: (t.block_number, t.round_id))
        return out

    def recent_transmissions(
        self, chain_id: int, oracle_addr: str, lookback_blocks: int, limit: int
    ) -> list[Transmission]:
        """The last ``limit`` transmissions within ``lookback_blocks`` of head.

        Block timestamps are filled in for the returned events only.
        """
        head = self.block_number(chain_id)
        logs = self.fetch_transmissions(
            chain_id, oracle_addr, max(0, head - lookback_blocks), head
        )
        selected = logs[-limit:] if limit > 0 else []
        for t in selected:
            t.timestamp = self.block_timestamp(chain_id, t.block_number)
        return selected

    def latest_round_data(self, chain_id: int, oracle_addr: str) -> RoundData:
        fn = self._contract(chain_id, oracle_addr).functions.latestRoundData()
        round_id, answer, _, updated_at, _ = self._call(
            f"[chain {chain_id}] latestRoundData {oracle_addr}", fn.call
        )
        return RoundData(round_id=int(round_id), answer=int(answer), updated_at=int(updated_at))

    def transaction_input(self, chain_id: int, tx_hash: str) -> bytes:
        """Raw calldata of a transaction (feeds the ReportDecoder)."""
        w3 = self.w3(chain_id)
        tx = self._call(
            f"[chain {chain_id}] get_transaction {tx_hash}",
            lambda: w3.eth.get_transaction(tx_hash),
        )
        return bytes(tx["input"])
