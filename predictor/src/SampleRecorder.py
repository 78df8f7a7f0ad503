"""SampleRecorder: Pair new on-chain transmissions with the CEX price.

For each new ``NewTransmission`` event the predicted answer at the event's
block time is computed (with the oracle's stored weights, or the plain
aggregate series when it has none) and an OracleSample row is appended with
``error_bps = round((onchain / predicted - 1) * 10000)``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from sqlalchemy.exc import SQLAlchemyError

from .Aggregator import Aggregator
from .ChainReader import ChainReader, ChainReaderError
from .OracleAdapters import OracleAdapterRegistry, predicted_answer
from .PriceMath import bps_change
from .Records import OracleSample
from .TickStore import TickStore

logger = logging.getLogger(__name__)

# Blocks scanned on the first pass for an oracle with no samples.
INITIAL_LOOKBACK_BLOCKS = 1_000


class SampleRecorder:
    """Appends OracleSamples for new transmissions.

    :ivar reader: Chain access.
    :ivar interval_seconds: Pause between watch passes.
    """

    def __init__(
        self,
        store: TickStore,
        aggregator: Aggregator,
        registry: OracleAdapterRegistry,
        reader: ChainReader,
        interval_seconds: float = 30.0,
    ) -> None:
        self.store = store
        self.aggregator = aggregator
        self.registry = registry
        self.reader = reader
        self.interval_seconds = interval_seconds
        self._next_block: dict[tuple[int, str], int] = {}

    def _from_block(self, chain_id: int, oracle_addr: str, head: int) -> int:
        key = (chain_id, oracle_addr)
        if key in self._next_block:
            return self._next_block[key]
        last = self.store.latest_sample_block(chain_id, oracle_addr)
        if last is not None:
            return last + 1
        return max(0, head - INITIAL_LOOKBACK_BLOCKS)

    def record(self, chain_id: int, oracle_addr: str) -> int:
        """Scan new transmissions of one oracle and store their samples.

        :returns: Number of samples inserted.
        :raises ChainReaderError: If the chain cannot be read.
        """
        addr = oracle_addr.lower()
        cfg = self.store.get_oracle_config(chain_id, addr)
        if cfg is None:
            logger.debug(f"[{chain_id}:{addr}] No config, not recording")
            return 0

        head = self.reader.block_number(chain_id)
        start = self._from_block(chain_id, addr, head)
        if start > head:
            return 0

        adapter = self.registry.resolve(chain_id, addr)
        weights = self.store.get_weights(chain_id, addr)
        inserted = 0
        for t in self.reader.fetch_transmissions(chain_id, addr, start, head):
            ts = self.reader.block_timestamp(chain_id, t.block_number)
            onchain = t.answer / 10**cfg.decimals
            predicted = predicted_answer(self.aggregator, adapter, ts * 1000, weights or None)
            if predicted is None:
                logger.debug(f"[{chain_id}:{addr}] No CEX coverage at {ts}, tx {t.tx_hash}")
                continue
            sample = OracleSample(
                chain_id=chain_id,
                oracle_addr=addr,
                block_number=t.block_number,
                tx_hash=t.tx_hash,
                answer=onchain,
                cex_price=predicted,
                event_ts=ts,
                error_bps=bps_change(onchain, predicted),
            )
            if self.store.add_sample(sample):
                inserted += 1
        self._next_block[(chain_id, addr)] = head + 1
        if inserted:
            logger.info(f"[{chain_id}:{addr}] Recorded {inserted} sample(s)")
        return inserted

    def record_all(self, oracles: Sequence[tuple[int, str]] | None = None) -> int:
        """Record every oracle with a configured RPC; failures are logged and skipped."""
        if oracles is None:
            oracles = [(c.chain_id, c.oracle_addr) for c in self.store.list_oracle_configs()]
        total = 0
        for chain_id, addr in oracles:
            if not self.reader.has_chain(chain_id):
                continue
            try:
                total += self.record(chain_id, addr)
            except ChainReaderError as e:
                logger.warning(f"[{chain_id}:{addr}] Sample recording skipped: {e}")
            except (SQLAlchemyError, ValueError) as e:
                logger.error(f"[{chain_id}:{addr}] Sample recording failed: {e!r}")
        return total

    async def run(self) -> None:
        logger.info(f"Oracle watcher started, scanning every {self.interval_seconds:.0f}s")
        while True:
            try:
                await asyncio.to_thread(self.record_all)
            except Exception as e:
                logger.error(f"Sample recording pass failed: {e!r}")
            await asyncio.sleep(self.interval_seconds)
