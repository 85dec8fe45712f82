"""Shared fixtures for the cardvault test-suite."""
from datetime import datetime, timezone

import pytest

from cardvault.vault.blobstore import MemoryBlobClient
from cardvault.vault.codec import RecordCategory, VaultRecord
from cardvault.vault.config import VaultConfig
from cardvault.vault.storage import VaultStorage

PASSPHRASE = "correct-horse-battery"
WRONG_PASSPHRASE = "wrong-horse"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_record(record_id: str = "card-1", **kwargs) -> VaultRecord:
    values = {
        "id": record_id,
        "category": RecordCategory.CREDIT,
        "label": "Test Visa",
        "number": "4111111111111111",
        "last4": "1111",
        "created_at": datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc),
        "updated_at": datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc),
    }
    values.update(kwargs)
    return VaultRecord(**values)


@pytest.fixture
def passphrase():
    """The passphrase used to seal test objects."""
    return PASSPHRASE


@pytest.fixture
def clock():
    """A fake monotonic clock starting at t=1000."""
    return FakeClock()


@pytest.fixture
def record():
    """A sample credit card record."""
    return make_record()


@pytest.fixture
def client():
    """An empty in-memory blob store."""
    return MemoryBlobClient()


@pytest.fixture
def config():
    """Default vault configuration."""
    return VaultConfig()


@pytest.fixture
def storage(client, config):
    """Vault storage over the in-memory blob store."""
    return VaultStorage(client, config)
