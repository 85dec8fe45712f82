"""
CardVault exceptions.

The hierarchy lets callers tell apart the three recovery paths:
re-prompt for the passphrase (``DecryptionError``), retry or re-authenticate
(``RemoteUnavailableError``), and treat a missing object as benign or stale
(``NotFoundError``). ``KeyDerivationError`` is fatal.
"""
from typing import Optional


class VaultError(Exception):
    """Base class for every error raised by cardvault."""


class KeyDerivationError(VaultError):
    """The cryptography provider is unavailable or misconfigured."""


class DecryptionError(VaultError):
    """Wrong passphrase, corrupted ciphertext or tampering.

    Authentication failures are indistinguishable from each other; never
    retry with the same passphrase.
    """


class EnvelopeFormatError(DecryptionError):
    """The persisted envelope is structurally invalid (missing field, bad base64)."""


class RecordFormatError(DecryptionError):
    """The payload authenticated but does not decode to the expected shape."""


class RemoteUnavailableError(VaultError):
    """The object store could not complete the request.

    Args:
        message: Human readable description.
        status: HTTP status code, if any.
        retryable: True for transient failures (network, 429, 5xx).
        reason: One of ``network``, ``auth``, ``permission``, ``quota``, ``server``.
    """

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        retryable: bool = False,
        reason: str = "server",
    ) -> None:
        super().__init__(message)
        self.status = status
        self.retryable = retryable
        self.reason = reason

    def __repr__(self) -> str:
        return (
            f"<RemoteUnavailableError reason={self.reason} "
            f"status={self.status} retryable={self.retryable}>"
        )


class NotFoundError(VaultError):
    """An expected object (file or folder) is missing from the store."""

    def __init__(self, message: str, object_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.object_id = object_id
