"""Unit tests for ChainReader input handling (no RPC traffic)."""

import pytest
from conftest import CHAIN_ID, ORACLE

from predictor.src.ChainReader import ChainReader, ChainReaderError
from predictor.src.RetryPolicy import RetryPolicy


@pytest.fixture
def reader() -> ChainReader:
    # Unroutable endpoint; every test here must fail before a request is made
    return ChainReader(
        {CHAIN_ID: "http://127.0.0.1:9"}, retry=RetryPolicy(max_attempts=1, delays=())
    )


class TestAddressValidation:
    """Test that malformed addresses surface as ChainReaderError."""

    @pytest.mark.parametrize("address", ["0x1", "not-an-address", ORACLE + "00"])
    def test_fetch_transmissions(self, reader: ChainReader, address: str) -> None:
        with pytest.raises(ChainReaderError, match="Invalid oracle address"):
            reader.fetch_transmissions(CHAIN_ID, address, 0, 10)

    def test_latest_round_data(self, reader: ChainReader) -> None:
        with pytest.raises(ChainReaderError, match="Invalid oracle address"):
            reader.latest_round_data(CHAIN_ID, "0x1")

    def test_lowercase_address_accepted(self, reader: ChainReader) -> None:
        contract = reader._contract(CHAIN_ID, ORACLE)
        assert contract.address.lower() == ORACLE


class TestChains:
    """Test per-chain client lookup."""

    def test_unknown_chain(self, reader: ChainReader) -> None:
        assert not reader.has_chain(1)
        with pytest.raises(ChainReaderError, match="No RPC configured"):
            reader.w3(1)

    def test_client_cached(self, reader: ChainReader) -> None:
        assert reader.w3(CHAIN_ID) is reader.w3(CHAIN_ID)
