"""
Vault Session Cache — Bounded in-memory passphrase lease.

Two states:
- ``EMPTY``: no passphrase held.
- ``LEASED``: passphrase held until ``expiry``.

``store()`` moves the passphrase into the cache; ``retrieve()`` hands out an
explicit clone while the lease is valid and wipes it once expired;
``clear()`` wipes it from any state (sign-out). Nothing is ever written to
durable storage.
"""
import time
import logging
from enum import Enum
from typing import Callable, Optional

from .config import DEFAULT_SESSION_TTL, VaultConfig
from .crypto import Passphrase, SecretBytes

logger = logging.getLogger("cardvault.vault")


class SessionState(str, Enum):
    EMPTY = "empty"
    LEASED = "leased"


class SessionCache:
    """Holds the user's passphrase for a bounded lease.

    Args:
        ttl: Lease length in seconds.
        clock: Monotonic time source, injectable for tests.
        sliding: Renew the lease on every successful ``retrieve()``.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_SESSION_TTL,
        clock: Callable[[], float] = time.monotonic,
        sliding: bool = False,
    ) -> None:
        if ttl <= 0:
            raise ValueError("Session ttl must be positive")
        self._ttl = ttl
        self._clock = clock
        self._sliding = sliding
        self._secret: Optional[SecretBytes] = None
        self._expiry: Optional[float] = None

    @classmethod
    def from_config(cls, config: VaultConfig, **kwargs) -> "SessionCache":
        return cls(ttl=config.session_ttl, sliding=config.session_sliding, **kwargs)

    def __repr__(self) -> str:
        return f"<SessionCache state={self.state.value} ttl={self._ttl}>"

    @property
    def ttl(self) -> float:
        return self._ttl

    @property
    def state(self) -> SessionState:
        """Current state; an elapsed lease reads as EMPTY (wiped on next access)."""
        if self._secret is None or not self._is_current():
            return SessionState.EMPTY
        return SessionState.LEASED

    @property
    def is_leased(self) -> bool:
        return self.state is SessionState.LEASED

    def _is_current(self) -> bool:
        return self._expiry is not None and self._clock() < self._expiry

    def store(self, passphrase: Passphrase) -> None:
        """Take ownership of ``passphrase`` and start a fresh lease.

        A ``SecretBytes`` argument is moved (left empty); ``str``/``bytes``
        are copied into a new secret buffer.
        """
        if isinstance(passphrase, SecretBytes):
            secret = passphrase.take()
        else:
            secret = SecretBytes(passphrase)
        self._drop()
        self._secret = secret
        self._expiry = self._clock() + self._ttl
        logger.debug("Vault session leased for %ss", self._ttl)

    def retrieve(self) -> Optional[SecretBytes]:
        """Return a clone of the passphrase, or None if empty or expired."""
        if self._secret is None:
            return None
        if not self._is_current():
            logger.debug("Vault session lease expired")
            self._drop()
            return None
        if self._sliding:
            self.extend()
        return self._secret.clone()

    def extend(self) -> bool:
        """Renew a valid lease for another ttl. Returns False when empty."""
        if self._secret is None or not self._is_current():
            return False
        self._expiry = self._clock() + self._ttl
        return True

    def remaining(self) -> float:
        """Seconds left on the lease (0 when empty)."""
        if self._secret is None or self._expiry is None:
            return 0.0
        return max(0.0, self._expiry - self._clock())

    def clear(self) -> None:
        """Force EMPTY from any state."""
        if self._secret is not None:
            logger.debug("Vault session cleared")
        self._drop()

    def _drop(self) -> None:
        if self._secret is not None:
            self._secret.wipe()
        self._secret = None
        self._expiry = None
