"""
Vault Crypto Core — Key derivation, envelope encryption and secret handling.

Implements the passphrase envelope used for every object in the vault:
- Stage 1: PBKDF2-HMAC-SHA256(passphrase, salt, iterations) → intermediate secret
- Stage 2: HKDF-SHA256(intermediate, info=label) → AES-256 key
- AES-GCM(key, iv) → ciphertext + 128-bit tag, stored as separate fields

Wire format (JSON, base64 values)::

    {"iv": "...", "salt": "...", "ciphertext": "...", "authTag": "..."}

Security Note:
    Never log passphrases, keys, plaintext or ciphertext values.
    IVs are random 96-bit; a fresh salt is generated unless pinned, so the
    derived key is almost always single-use.
"""
import os
import re
import hmac
import base64
import secrets
import logging
import binascii
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional, Union

import orjson
from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..exceptions import DecryptionError, EnvelopeFormatError, KeyDerivationError
from .config import (
    DEFAULT_HKDF_INFO,
    DEFAULT_PBKDF2_ITERATIONS,
    MIN_PBKDF2_ITERATIONS,
    VaultConfig,
)

logger = logging.getLogger("cardvault.vault")

NONCE_SIZE = 12  # 96-bit IV
SALT_SIZE = 32  # 256-bit salt
MIN_SALT_SIZE = 16
TAG_SIZE = 16  # 128-bit GCM tag
KEY_LENGTH = 32  # AES-256

_ENVELOPE_FIELDS = ("iv", "salt", "ciphertext", "authTag")


# ---------------------------------------------------------------------------
# Secret buffers
# ---------------------------------------------------------------------------

class SecretBytes:
    """Owned secret buffer (passphrases, derived keys).

    The buffer has exactly one owner. Ownership moves with :meth:`take`; the
    only copy is the explicit :meth:`clone`. ``copy``, ``deepcopy`` and
    pickling are refused. The backing ``bytearray`` is zeroed by :meth:`wipe`,
    on context-manager exit and (best effort) when the object is collected.
    """

    __slots__ = ("_buf",)

    def __init__(self, value: Union[str, bytes, bytearray, memoryview] = b"") -> None:
        if isinstance(value, str):
            value = value.encode("utf-8")
        self._buf: Optional[bytearray] = bytearray(value)

    @property
    def wiped(self) -> bool:
        return self._buf is None

    def expose(self) -> bytearray:
        """Borrow the backing buffer. Do not keep the reference."""
        if self._buf is None:
            raise ValueError("Secret has been wiped or moved")
        return self._buf

    def take(self) -> "SecretBytes":
        """Move the secret into a new owner, leaving this one empty."""
        moved = SecretBytes.__new__(SecretBytes)
        moved._buf = self.expose()
        self._buf = None
        return moved

    def clone(self) -> "SecretBytes":
        """Explicit copy; the caller owns (and should wipe) the result."""
        return SecretBytes(self.expose())

    def wipe(self) -> None:
        buf = getattr(self, "_buf", None)
        if buf is not None:
            for i in range(len(buf)):
                buf[i] = 0
            self._buf = None

    def __enter__(self) -> "SecretBytes":
        return self

    def __exit__(self, *exc) -> None:
        self.wipe()

    def __del__(self) -> None:
        self.wipe()

    def __len__(self) -> int:
        return 0 if self._buf is None else len(self._buf)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SecretBytes):
            return NotImplemented
        if self._buf is None or other._buf is None:
            return self._buf is other._buf
        return hmac.compare_digest(self._buf, other._buf)

    __hash__ = None  # type: ignore[assignment]

    def __copy__(self):
        raise TypeError("SecretBytes cannot be copied implicitly, use clone()")

    def __deepcopy__(self, memo):
        raise TypeError("SecretBytes cannot be copied implicitly, use clone()")

    def __reduce_ex__(self, protocol):
        raise TypeError("SecretBytes cannot be pickled")

    def __repr__(self) -> str:
        if self._buf is None:
            return "<SecretBytes [wiped]>"
        return f"<SecretBytes [redacted] len={len(self._buf)}>"


Passphrase = Union[str, bytes, SecretBytes]


@contextmanager
def borrow_secret(passphrase: Passphrase) -> Iterator[SecretBytes]:
    """Yield a SecretBytes view of ``passphrase``.

    A ``SecretBytes`` is borrowed as-is and left to its owner; ``str`` and
    ``bytes`` inputs are copied into a temporary buffer wiped on exit.
    """
    if isinstance(passphrase, SecretBytes):
        yield passphrase
        return
    if not isinstance(passphrase, (str, bytes, bytearray)):
        raise TypeError(
            f"Passphrase must be str, bytes or SecretBytes, got {type(passphrase).__name__}"
        )
    with SecretBytes(passphrase) as secret:
        yield secret


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------

def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(name: str, value: Any) -> bytes:
    if not isinstance(value, str):
        raise EnvelopeFormatError(f"Envelope field '{name}' must be a base64 string")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as err:
        raise EnvelopeFormatError(f"Envelope field '{name}' is not valid base64") from err


@dataclass(frozen=True)
class Envelope:
    """The unit of ciphertext at rest."""

    iv: bytes
    salt: bytes
    ciphertext: bytes
    auth_tag: bytes = field(repr=False)

    def to_dict(self) -> dict[str, str]:
        """Convert to the JSON wire shape (base64 values)."""
        return {
            "iv": _b64encode(self.iv),
            "salt": _b64encode(self.salt),
            "ciphertext": _b64encode(self.ciphertext),
            "authTag": _b64encode(self.auth_tag),
        }

    def to_json(self) -> bytes:
        return orjson.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Any) -> "Envelope":
        """Reconstruct from the wire shape.

        Raises:
            EnvelopeFormatError: If a field is missing, not base64, or the
                iv/tag/salt have the wrong size.
        """
        if not isinstance(data, dict):
            raise EnvelopeFormatError(
                f"Envelope must be a JSON object, got {type(data).__name__}"
            )
        missing = [name for name in _ENVELOPE_FIELDS if name not in data]
        if missing:
            raise EnvelopeFormatError(f"Envelope is missing field(s): {missing}")
        iv = _b64decode("iv", data["iv"])
        salt = _b64decode("salt", data["salt"])
        ciphertext = _b64decode("ciphertext", data["ciphertext"])
        auth_tag = _b64decode("authTag", data["authTag"])
        if len(iv) != NONCE_SIZE:
            raise EnvelopeFormatError(f"Envelope iv must be {NONCE_SIZE} bytes, got {len(iv)}")
        if len(auth_tag) != TAG_SIZE:
            raise EnvelopeFormatError(
                f"Envelope authTag must be {TAG_SIZE} bytes, got {len(auth_tag)}"
            )
        if len(salt) < MIN_SALT_SIZE:
            raise EnvelopeFormatError(f"Envelope salt too short: {len(salt)} bytes")
        return cls(iv=iv, salt=salt, ciphertext=ciphertext, auth_tag=auth_tag)

    @classmethod
    def from_json(cls, data: Union[bytes, str]) -> "Envelope":
        try:
            parsed = orjson.loads(data)
        except orjson.JSONDecodeError as err:
            raise EnvelopeFormatError("Envelope body is not valid JSON") from err
        return cls.from_dict(parsed)


def is_valid_envelope(data: Any) -> bool:
    """True if ``data`` has the four string fields of the wire format."""
    return isinstance(data, dict) and all(
        isinstance(data.get(name), str) for name in _ENVELOPE_FIELDS
    )


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def derive_key(
    passphrase: Passphrase,
    salt: bytes,
    iterations: int = DEFAULT_PBKDF2_ITERATIONS,
    info: str = DEFAULT_HKDF_INFO,
) -> SecretBytes:
    """Derive a 32-byte AES key with PBKDF2-SHA256 followed by HKDF-SHA256.

    Args:
        passphrase: User passphrase.
        salt: Random salt stored alongside the ciphertext.
        iterations: PBKDF2 iteration count (floor 100,000).
        info: HKDF domain-separation label.

    Returns:
        Derived key; the caller owns it and should wipe it after use.

    Raises:
        KeyDerivationError: Iterations below the floor or provider failure.
    """
    if iterations < MIN_PBKDF2_ITERATIONS:
        raise KeyDerivationError(
            f"PBKDF2 iterations must be at least {MIN_PBKDF2_ITERATIONS}, got {iterations}"
        )
    with borrow_secret(passphrase) as secret:
        try:
            pbkdf2 = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=KEY_LENGTH,
                salt=bytes(salt),
                iterations=iterations,
            )
            with SecretBytes(pbkdf2.derive(secret.expose())) as intermediate:
                hkdf = HKDF(
                    algorithm=hashes.SHA256(),
                    length=KEY_LENGTH,
                    salt=bytes(KEY_LENGTH),  # zero salt, the PBKDF2 salt already randomizes
                    info=info.encode("utf-8"),
                )
                return SecretBytes(hkdf.derive(intermediate.expose()))
        except (UnsupportedAlgorithm, ValueError) as err:
            raise KeyDerivationError(f"Key derivation failed: {err}") from err


# ---------------------------------------------------------------------------
# Envelope encryption
# ---------------------------------------------------------------------------

class EnvelopeCipher:
    """Passphrase envelope encryption with fixed KDF parameters.

    Encrypt and decrypt must agree on ``iterations`` and ``info``; both are
    part of the vault's configuration, not of the envelope.
    """

    def __init__(
        self,
        iterations: int = DEFAULT_PBKDF2_ITERATIONS,
        info: str = DEFAULT_HKDF_INFO,
    ) -> None:
        if iterations < MIN_PBKDF2_ITERATIONS:
            raise KeyDerivationError(
                f"PBKDF2 iterations must be at least {MIN_PBKDF2_ITERATIONS}, got {iterations}"
            )
        self.iterations = iterations
        self.info = info

    @classmethod
    def from_config(cls, config: VaultConfig) -> "EnvelopeCipher":
        return cls(iterations=config.pbkdf2_iterations, info=config.hkdf_info)

    def __repr__(self) -> str:
        return f"<EnvelopeCipher iterations={self.iterations} info={self.info!r}>"

    def derive_key(self, passphrase: Passphrase, salt: bytes) -> SecretBytes:
        return derive_key(passphrase, salt, self.iterations, self.info)

    def encrypt(
        self,
        plaintext: Union[bytes, str],
        passphrase: Passphrase,
        salt: Optional[bytes] = None,
    ) -> Envelope:
        """Encrypt plaintext into a fresh Envelope.

        A new IV is generated on every call; a new salt unless ``salt`` pins one.

        Args:
            plaintext: Payload (str is UTF-8 encoded).
            passphrase: User passphrase.
            salt: Optional pinned salt (at least 16 bytes).

        Returns:
            Envelope with the tag split from the ciphertext.
        """
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")
        if salt is None:
            salt = os.urandom(SALT_SIZE)
        elif len(salt) < MIN_SALT_SIZE:
            raise ValueError(f"Pinned salt must be at least {MIN_SALT_SIZE} bytes")
        iv = os.urandom(NONCE_SIZE)
        with self.derive_key(passphrase, salt) as key:
            sealed = AESGCM(key.expose()).encrypt(iv, plaintext, None)
        return Envelope(
            iv=iv,
            salt=bytes(salt),
            ciphertext=sealed[:-TAG_SIZE],
            auth_tag=sealed[-TAG_SIZE:],
        )

    def decrypt(self, envelope: Envelope, passphrase: Passphrase) -> bytes:
        """Authenticate and decrypt an Envelope.

        Raises:
            DecryptionError: Wrong passphrase, corrupted or tampered data.
        """
        with self.derive_key(passphrase, envelope.salt) as key:
            try:
                return AESGCM(key.expose()).decrypt(
                    envelope.iv, envelope.ciphertext + envelope.auth_tag, None,
                )
            except InvalidTag as err:
                raise DecryptionError(
                    "Envelope authentication failed: wrong passphrase or corrupted data"
                ) from err


default_cipher = EnvelopeCipher()


def encrypt(
    plaintext: Union[bytes, str],
    passphrase: Passphrase,
    salt: Optional[bytes] = None,
) -> Envelope:
    """Encrypt with the default cipher parameters."""
    return default_cipher.encrypt(plaintext, passphrase, salt)


def decrypt(envelope: Envelope, passphrase: Passphrase) -> bytes:
    """Decrypt with the default cipher parameters."""
    return default_cipher.decrypt(envelope, passphrase)


def check_crypto_provider() -> None:
    """Verify that AES-GCM, PBKDF2 and HKDF are usable.

    Raises:
        KeyDerivationError: If the cryptography backend lacks a primitive.
    """
    try:
        probe = AESGCM(AESGCM.generate_key(bit_length=256))
        probe.decrypt(b"\x00" * NONCE_SIZE, probe.encrypt(b"\x00" * NONCE_SIZE, b"probe", None), None)
        PBKDF2HMAC(
            algorithm=hashes.SHA256(), length=KEY_LENGTH, salt=b"\x00" * SALT_SIZE, iterations=1,
        ).derive(b"probe")
        HKDF(algorithm=hashes.SHA256(), length=KEY_LENGTH, salt=None, info=b"probe").derive(b"probe")
    except (UnsupportedAlgorithm, InvalidTag, ValueError) as err:
        raise KeyDerivationError(f"Cryptography provider unavailable: {err}") from err


# ---------------------------------------------------------------------------
# Passphrase helpers
# ---------------------------------------------------------------------------

@dataclass
class PassphraseStrength:
    score: int
    is_valid: bool
    feedback: list[str]


_REPEATED = re.compile(r"(.)\1{2,}")


def assess_passphrase(passphrase: str) -> PassphraseStrength:
    """Score a passphrase from 0 to 100.

    Advisory only: encryption never depends on the score. ``is_valid`` means
    a score of at least 40.
    """
    feedback: list[str] = []
    score = 0
    length = len(passphrase)

    if length >= 12:
        score += 25
    elif length >= 8:
        score += 15
        feedback.append("Consider using a longer passphrase (12+ characters)")
    else:
        feedback.append("Passphrase should be at least 8 characters long")

    if re.search(r"[a-z]", passphrase):
        score += 15
    if re.search(r"[A-Z]", passphrase):
        score += 15
    if re.search(r"[0-9]", passphrase):
        score += 15
    if re.search(r"[^a-zA-Z0-9]", passphrase):
        score += 20
    if length >= 20:
        score += 10

    if re.fullmatch(r"[a-zA-Z]+", passphrase):
        score -= 10
        feedback.append("Add numbers or special characters for better security")
    if re.fullmatch(r"[0-9]+", passphrase):
        score -= 20
        feedback.append("Use a mix of letters, numbers, and special characters")
    if _REPEATED.search(passphrase):
        score -= 10
        feedback.append("Avoid repeating characters")

    score = max(0, min(100, score))
    if score >= 80:
        feedback.insert(0, "Strong passphrase")
    elif score >= 60:
        feedback.insert(0, "Good passphrase, but could be stronger")
    elif score >= 40:
        feedback.insert(0, "Moderate passphrase strength")
    else:
        feedback.insert(0, "Weak passphrase - consider improving")
    return PassphraseStrength(score=score, is_valid=score >= 40, feedback=feedback)


_WORDS = (
    "apple", "brave", "chair", "dance", "eagle", "flame", "grape", "house",
    "light", "magic", "night", "ocean", "peace", "queen", "river", "stone",
    "trust", "unity", "voice", "water", "youth", "zebra", "cloud", "dream",
    "field", "giant", "happy", "image", "joker", "king", "lemon", "mouse",
    "noise", "olive", "piano", "quick", "radio", "smile", "tiger", "under",
    "violet", "world", "extra", "young", "zero", "beach", "candy", "drive",
)


def generate_passphrase(word_count: int = 6, separator: str = "-") -> str:
    """Generate a random word passphrase using the OS CSPRNG."""
    if word_count < 1:
        raise ValueError("word_count must be positive")
    return separator.join(secrets.choice(_WORDS) for _ in range(word_count))
