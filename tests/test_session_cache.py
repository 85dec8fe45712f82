"""
Tests for the session cache.

Tests cover:
- EMPTY/LEASED transitions
- Lease expiry and wiping
- Ownership transfer of SecretBytes on store
- Sliding renewal
"""
import pytest

from cardvault.vault.config import VaultConfig
from cardvault.vault.crypto import SecretBytes
from cardvault.vault.session import SessionCache, SessionState


@pytest.fixture
def cache(clock):
    """A five-minute fixed lease on the fake clock."""
    return SessionCache(ttl=300, clock=clock)


class TestSessionLease:
    """Tests for store/retrieve/clear."""

    def test_starts_empty(self, cache):
        """Test that a new cache holds nothing."""
        assert cache.state is SessionState.EMPTY
        assert cache.retrieve() is None
        assert cache.remaining() == 0.0

    def test_store_then_retrieve(self, cache, passphrase):
        """Test that a stored passphrase is returned while leased."""
        cache.store(passphrase)
        assert cache.is_leased
        secret = cache.retrieve()
        assert bytes(secret.expose()) == passphrase.encode()

    def test_retrieve_returns_clone(self, cache, passphrase):
        """Test that wiping a retrieved secret leaves the cache intact."""
        cache.store(passphrase)
        cache.retrieve().wipe()
        assert bytes(cache.retrieve().expose()) == passphrase.encode()

    def test_store_moves_secret(self, cache):
        """Test that storing SecretBytes takes ownership."""
        secret = SecretBytes(b"moved")
        cache.store(secret)
        assert secret.wiped
        assert bytes(cache.retrieve().expose()) == b"moved"

    def test_expiry(self, cache, clock, passphrase):
        """Test that the lease ends after ttl seconds."""
        cache.store(passphrase)
        clock.advance(299)
        assert cache.retrieve() is not None
        clock.advance(1)
        assert cache.state is SessionState.EMPTY
        assert cache.retrieve() is None

    def test_expired_secret_is_wiped(self, cache, clock):
        """Test that an expired passphrase buffer is zeroed."""
        cache.store(SecretBytes(b"secret"))
        buf = cache._secret.expose()
        clock.advance(301)
        assert cache.retrieve() is None
        assert buf == bytearray(6)

    def test_clear(self, cache, passphrase):
        """Test that clear() empties a leased cache."""
        cache.store(passphrase)
        cache.clear()
        assert cache.state is SessionState.EMPTY
        assert cache.retrieve() is None

    def test_clear_when_empty(self, cache):
        """Test that clear() is a no-op on an empty cache."""
        cache.clear()
        assert cache.state is SessionState.EMPTY

    def test_store_replaces_and_renews(self, cache, clock):
        """Test that a new store replaces the secret and restarts the lease."""
        cache.store("first")
        clock.advance(200)
        cache.store("second")
        clock.advance(200)
        assert bytes(cache.retrieve().expose()) == b"second"

    def test_fixed_lease_not_extended(self, cache, clock, passphrase):
        """Test that retrieval does not extend a fixed lease."""
        cache.store(passphrase)
        clock.advance(200)
        cache.retrieve()
        clock.advance(150)
        assert cache.retrieve() is None

    def test_remaining(self, cache, clock, passphrase):
        """Test the remaining lease time."""
        cache.store(passphrase)
        clock.advance(100)
        assert cache.remaining() == pytest.approx(200)

    def test_invalid_ttl(self):
        """Test that ttl must be positive."""
        with pytest.raises(ValueError):
            SessionCache(ttl=0)

    def test_repr_is_redacted(self, cache, passphrase):
        """Test that repr never shows the passphrase."""
        cache.store(passphrase)
        assert passphrase not in repr(cache)


class TestSlidingLease:
    """Tests for the optional sliding renewal."""

    def test_retrieve_extends(self, clock, passphrase):
        """Test that each retrieval renews a sliding lease."""
        cache = SessionCache(ttl=300, clock=clock, sliding=True)
        cache.store(passphrase)
        for _ in range(3):
            clock.advance(200)
            assert cache.retrieve() is not None
        clock.advance(301)
        assert cache.retrieve() is None

    def test_extend(self, cache, clock, passphrase):
        """Test explicit renewal."""
        assert cache.extend() is False
        cache.store(passphrase)
        clock.advance(250)
        assert cache.extend() is True
        clock.advance(250)
        assert cache.is_leased

    def test_from_config(self, clock):
        """Test building the cache from VaultConfig."""
        cache = SessionCache.from_config(
            VaultConfig(session_ttl=60, session_sliding=True), clock=clock,
        )
        assert cache.ttl == 60
        cache.store("x")
        clock.advance(59)
        assert cache.retrieve() is not None
        clock.advance(59)
        assert cache.is_leased
