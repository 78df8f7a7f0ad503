"""In-memory stand-ins for chain access."""

from predictor.src.ChainReader import ChainReaderError, RoundData, Transmission


class FakeChainReader:
    """Serves canned transmissions and rounds for configured chains."""

    def __init__(
        self,
        chains: set[int],
        transmissions: list[Transmission] | None = None,
        block_times: dict[int, int] | None = None,
        round_data: RoundData | None = None,
        head: int = 1_000,
    ) -> None:
        self.chains = chains
        self.transmissions = transmissions or []
        self.block_times = block_times or {}
        self.round_data = round_data
        self.head = head
        self.fail = False
        # Addresses whose log scan fails with an unwrapped library error
        self.broken: set[str] = set()

    def has_chain(self, chain_id: int) -> bool:
        return chain_id in self.chains

    def _check(self) -> None:
        if self.fail:
            raise ChainReaderError("rpc down")

    def block_number(self, chain_id: int) -> int:
        self._check()
        return self.head

    def block_timestamp(self, chain_id: int, block_number: int) -> int:
        self._check()
        return self.block_times[block_number]

    def fetch_transmissions(self, chain_id, oracle_addr, from_block, to_block):
        self._check()
        if oracle_addr.lower() in self.broken:
            raise ValueError(f"Unknown format {oracle_addr!r}")
        return [t for t in self.transmissions if from_block <= t.block_number <= to_block]

    def recent_transmissions(self, chain_id, oracle_addr, lookback_blocks, limit):
        selected = self.fetch_transmissions(
            chain_id, oracle_addr, self.head - lookback_blocks, self.head
        )[-limit:]
        for t in selected:
            t.timestamp = self.block_times.get(t.block_number)
        return selected

    def latest_round_data(self, chain_id: int, oracle_addr: str) -> RoundData:
        self._check()
        if self.round_data is None:
            raise ChainReaderError("no round")
        return self.round_data
