"""Shared pytest fixtures for all tests."""

import pytest
import pytest_asyncio

from chunkdrop.config import Config
from chunkdrop.storage.database import TransferLedger
from chunkdrop.transfer.channel import LoopbackChannel


@pytest.fixture
def config(tmp_path):
    """
    Config with a temporary data directory and small, fast settings.

    Args:
        tmp_path: pytest tmp_path fixture

    Returns:
        Config instance
    """
    return Config(
        data_dir=tmp_path / 'data',
        chunk_size=1024,
        retry_backoff=0.001,
    )


@pytest_asyncio.fixture
async def ledger(tmp_path):
    """Connected transfer ledger in a temporary directory."""
    ledger = TransferLedger(tmp_path / 'ledger.db')
    await ledger.connect()
    yield ledger
    await ledger.close()


@pytest.fixture
def channel_pair():
    """Two connected in-memory channel ends."""
    return LoopbackChannel.pair()


@pytest.fixture
def sample_bytes():
    """Deterministic, non-repeating-ish test payload of 100,000 bytes."""
    return bytes((i * 31 + i // 7) % 256 for i in range(100_000))


@pytest.fixture
def sample_file(tmp_path, sample_bytes):
    """
    Create a sample file for testing file transfers.

    Returns:
        Path to sample binary file
    """
    file_path = tmp_path / 'sample.bin'
    file_path.write_bytes(sample_bytes)
    return file_path
