"""
Tests for the envelope cipher.

Tests cover:
- Two-stage key derivation (PBKDF2 → HKDF)
- Envelope encrypt/decrypt and wire shape
- Authentication failures (wrong passphrase, tampering)
- Envelope structural validation
- SecretBytes ownership rules
- Passphrase strength and generation helpers
"""
import copy
import pickle
import base64

import orjson
import pytest

from cardvault.exceptions import DecryptionError, EnvelopeFormatError, KeyDerivationError
from cardvault.vault.crypto import (
    NONCE_SIZE,
    SALT_SIZE,
    TAG_SIZE,
    Envelope,
    EnvelopeCipher,
    SecretBytes,
    assess_passphrase,
    borrow_secret,
    check_crypto_provider,
    decrypt,
    derive_key,
    encrypt,
    generate_passphrase,
    is_valid_envelope,
)

SALT = bytes(range(32))


# --- Test Fixtures ---

@pytest.fixture
def envelope(passphrase):
    """An envelope sealing a short message."""
    return encrypt(b"hello vault", passphrase)


# --- Test Key Derivation ---

class TestKeyDerivation:
    """Tests for derive_key."""

    def test_key_is_32_bytes(self, passphrase):
        """Test that the derived key is an AES-256 key."""
        with derive_key(passphrase, SALT) as key:
            assert len(key) == 32

    def test_deterministic(self, passphrase):
        """Test that the same inputs derive the same key."""
        with derive_key(passphrase, SALT) as a, derive_key(passphrase, SALT) as b:
            assert a == b

    def test_salt_changes_key(self, passphrase):
        """Test that a different salt derives a different key."""
        with derive_key(passphrase, SALT) as a, derive_key(passphrase, bytes(32)) as b:
            assert a != b

    def test_label_changes_key(self, passphrase):
        """Test that the HKDF label separates key domains."""
        with derive_key(passphrase, SALT, info="CardVault-v1") as a, \
                derive_key(passphrase, SALT, info="CardVault-v2") as b:
            assert a != b

    def test_str_and_bytes_passphrase_agree(self, passphrase):
        """Test that str passphrases are UTF-8 encoded."""
        with derive_key(passphrase, SALT) as a, derive_key(passphrase.encode(), SALT) as b:
            assert a == b

    def test_iterations_below_floor_rejected(self, passphrase):
        """Test that fewer than 100,000 iterations is refused."""
        with pytest.raises(KeyDerivationError):
            derive_key(passphrase, SALT, iterations=1000)

    def test_cipher_rejects_low_iterations(self):
        """Test that EnvelopeCipher enforces the iteration floor."""
        with pytest.raises(KeyDerivationError):
            EnvelopeCipher(iterations=99_999)

    def test_provider_available(self):
        """Test that the cryptography backend passes the self-test."""
        check_crypto_provider()


# --- Test Encryption ---

class TestEnvelopeEncryption:
    """Tests for encrypt/decrypt."""

    def test_round_trip(self, envelope, passphrase):
        """Test that decrypt returns the original plaintext."""
        assert decrypt(envelope, passphrase) == b"hello vault"

    def test_str_plaintext_is_utf8(self, passphrase):
        """Test that str plaintext is encoded as UTF-8."""
        env = encrypt("café", passphrase)
        assert decrypt(env, passphrase) == "café".encode("utf-8")

    def test_empty_plaintext(self, passphrase):
        """Test that an empty payload round-trips."""
        env = encrypt(b"", passphrase)
        assert env.ciphertext == b""
        assert decrypt(env, passphrase) == b""

    def test_field_sizes(self, envelope):
        """Test iv, salt and tag sizes."""
        assert len(envelope.iv) == NONCE_SIZE
        assert len(envelope.salt) == SALT_SIZE
        assert len(envelope.auth_tag) == TAG_SIZE
        assert len(envelope.ciphertext) == len(b"hello vault")

    def test_fresh_iv_and_salt(self, passphrase):
        """Test that each encryption uses a new iv and salt."""
        a = encrypt(b"same", passphrase)
        b = encrypt(b"same", passphrase)
        assert a.iv != b.iv
        assert a.salt != b.salt
        assert a.ciphertext != b.ciphertext

    def test_pinned_salt(self, passphrase):
        """Test that a pinned salt is used, iv stays fresh."""
        a = encrypt(b"same", passphrase, salt=SALT)
        b = encrypt(b"same", passphrase, salt=SALT)
        assert a.salt == b.salt == SALT
        assert a.iv != b.iv

    def test_short_pinned_salt_rejected(self, passphrase):
        """Test that a pinned salt below 16 bytes is refused."""
        with pytest.raises(ValueError):
            encrypt(b"x", passphrase, salt=b"short")

    def test_wrong_passphrase(self, envelope):
        """Test that a wrong passphrase fails authentication."""
        with pytest.raises(DecryptionError):
            decrypt(envelope, "wrong-horse")

    def test_tampered_ciphertext(self, envelope, passphrase):
        """Test that flipping a ciphertext bit fails authentication."""
        flipped = bytes([envelope.ciphertext[0] ^ 0x01]) + envelope.ciphertext[1:]
        tampered = Envelope(envelope.iv, envelope.salt, flipped, envelope.auth_tag)
        with pytest.raises(DecryptionError):
            decrypt(tampered, passphrase)

    def test_tampered_tag(self, envelope, passphrase):
        """Test that a modified tag fails authentication."""
        tag = bytes([envelope.auth_tag[0] ^ 0x80]) + envelope.auth_tag[1:]
        tampered = Envelope(envelope.iv, envelope.salt, envelope.ciphertext, tag)
        with pytest.raises(DecryptionError):
            decrypt(tampered, passphrase)

    def test_mismatched_label(self, passphrase):
        """Test that ciphers with different labels cannot read each other."""
        env = EnvelopeCipher(info="CardVault-v2").encrypt(b"data", passphrase)
        with pytest.raises(DecryptionError):
            EnvelopeCipher().decrypt(env, passphrase)

    def test_secret_passphrase_not_consumed(self, passphrase):
        """Test that encrypting with a SecretBytes borrows it."""
        secret = SecretBytes(passphrase)
        env = encrypt(b"data", secret)
        assert not secret.wiped
        assert decrypt(env, secret) == b"data"


# --- Test Envelope Format ---

class TestEnvelopeFormat:
    """Tests for the envelope wire shape."""

    def test_wire_keys(self, envelope):
        """Test the four JSON field names."""
        data = envelope.to_dict()
        assert set(data) == {"iv", "salt", "ciphertext", "authTag"}
        assert all(isinstance(v, str) for v in data.values())
        assert base64.b64decode(data["authTag"]) == envelope.auth_tag

    def test_json_round_trip(self, envelope, passphrase):
        """Test that to_json/from_json preserve the envelope."""
        restored = Envelope.from_json(envelope.to_json())
        assert restored == envelope
        assert decrypt(restored, passphrase) == b"hello vault"

    def test_missing_field(self, envelope):
        """Test that a missing field is a format error."""
        data = envelope.to_dict()
        del data["authTag"]
        with pytest.raises(EnvelopeFormatError):
            Envelope.from_dict(data)

    def test_invalid_base64(self, envelope):
        """Test that non-base64 data is a format error."""
        data = envelope.to_dict()
        data["iv"] = "not base64!!"
        with pytest.raises(EnvelopeFormatError):
            Envelope.from_dict(data)

    def test_wrong_iv_length(self, envelope):
        """Test that an iv of the wrong size is refused."""
        data = envelope.to_dict()
        data["iv"] = base64.b64encode(b"\x00" * 8).decode()
        with pytest.raises(EnvelopeFormatError):
            Envelope.from_dict(data)

    def test_not_json(self):
        """Test that a non-JSON body is a format error."""
        with pytest.raises(EnvelopeFormatError):
            Envelope.from_json(b"\x00\x01garbage")

    def test_format_error_is_decryption_error(self):
        """Test that callers catching DecryptionError see format errors."""
        with pytest.raises(DecryptionError):
            Envelope.from_json(orjson.dumps([1, 2, 3]))

    def test_is_valid_envelope(self, envelope):
        """Test the structural predicate."""
        assert is_valid_envelope(envelope.to_dict()) is True
        assert is_valid_envelope({"iv": "a", "salt": "b"}) is False
        assert is_valid_envelope("text") is False

    def test_tag_not_in_repr(self, envelope):
        """Test that the dataclass repr omits the tag."""
        assert "auth_tag" not in repr(envelope)


# --- Test SecretBytes ---

class TestSecretBytes:
    """Tests for the owned secret buffer."""

    def test_take_moves_ownership(self):
        """Test that take() empties the source."""
        source = SecretBytes("secret")
        moved = source.take()
        assert source.wiped
        assert bytes(moved.expose()) == b"secret"
        with pytest.raises(ValueError):
            source.expose()

    def test_clone_is_independent(self):
        """Test that wiping a clone leaves the original intact."""
        original = SecretBytes(b"secret")
        clone = original.clone()
        clone.wipe()
        assert bytes(original.expose()) == b"secret"

    def test_wipe_zeroes_buffer(self):
        """Test that wipe() zeroes the backing bytearray."""
        secret = SecretBytes(b"secret")
        buf = secret.expose()
        secret.wipe()
        assert buf == bytearray(6)
        assert len(secret) == 0

    def test_context_manager_wipes(self):
        """Test that leaving the with-block wipes the secret."""
        with SecretBytes(b"secret") as secret:
            pass
        assert secret.wiped

    def test_implicit_copies_refused(self):
        """Test that copy, deepcopy and pickle are refused."""
        secret = SecretBytes(b"secret")
        with pytest.raises(TypeError):
            copy.copy(secret)
        with pytest.raises(TypeError):
            copy.deepcopy(secret)
        with pytest.raises(TypeError):
            pickle.dumps(secret)

    def test_repr_is_redacted(self):
        """Test that repr never shows the value."""
        assert "hunter2" not in repr(SecretBytes("hunter2"))

    def test_unhashable(self):
        """Test that secrets cannot be dict keys."""
        with pytest.raises(TypeError):
            hash(SecretBytes(b"x"))

    def test_borrow_temporary_is_wiped(self):
        """Test that borrowing a str creates a wiped-on-exit buffer."""
        with borrow_secret("temp") as secret:
            assert bytes(secret.expose()) == b"temp"
        assert secret.wiped

    def test_borrow_rejects_other_types(self):
        """Test that only str, bytes and SecretBytes are accepted."""
        with pytest.raises(TypeError):
            with borrow_secret(1234):
                pass


# --- Test Passphrase Helpers ---

class TestPassphraseHelpers:
    """Tests for passphrase strength and generation."""

    def test_strong_passphrase(self):
        """Test that a long mixed passphrase scores high."""
        result = assess_passphrase("Correct-Horse-Battery-42!")
        assert result.score >= 80
        assert result.is_valid is True
        assert result.feedback[0] == "Strong passphrase"

    def test_numeric_passphrase_is_weak(self):
        """Test that a short numeric passphrase is not valid."""
        result = assess_passphrase("1234")
        assert result.is_valid is False
        assert "Use a mix of letters, numbers, and special characters" in result.feedback

    def test_score_bounds(self):
        """Test that the score stays within 0..100."""
        for candidate in ("", "aaa", "x" * 200, "Aa1!" * 10):
            assert 0 <= assess_passphrase(candidate).score <= 100

    def test_strength_does_not_gate_encryption(self):
        """Test that a weak passphrase still encrypts."""
        env = encrypt(b"data", "1234")
        assert decrypt(env, "1234") == b"data"

    def test_generate_passphrase(self):
        """Test generated passphrase shape."""
        phrase = generate_passphrase(word_count=5, separator=" ")
        assert len(phrase.split(" ")) == 5

    def test_generate_rejects_zero_words(self):
        """Test that word_count must be positive."""
        with pytest.raises(ValueError):
            generate_passphrase(word_count=0)
