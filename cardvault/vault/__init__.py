"""Card Vault — Passphrase-encrypted records kept in a user-owned blob store.

Security Note (Threat Model):
    The passphrase and derived keys live in process memory while in use
    (and in the session cache for the lease duration). Buffers are wiped
    when released, but copies made by the interpreter (str objects, the
    cryptography backend) cannot be scrubbed. A memory dump of the process
    during a lease could expose the passphrase. The blob store only ever
    sees envelopes and object names.
"""

from .config import VaultConfig
from .crypto import (
    Envelope,
    EnvelopeCipher,
    PassphraseStrength,
    SecretBytes,
    assess_passphrase,
    check_crypto_provider,
    decrypt,
    derive_key,
    encrypt,
    generate_passphrase,
)
from .codec import (
    IndexEntry,
    RecordCategory,
    VaultIndex,
    VaultRecord,
    decrypt_attachment,
    decrypt_index,
    decrypt_json,
    decrypt_record,
    encrypt_attachment,
    encrypt_index,
    encrypt_json,
    encrypt_record,
    fingerprint,
    verify,
)
from .session import SessionCache, SessionState
from .blobstore import BlobStoreClient, DriveClient, MemoryBlobClient
from .storage import (
    BatchResult,
    FolderLayout,
    LoadedRecord,
    VaultStorage,
    require_storage_scope,
)
from .rotation import rotate_passphrase

__all__ = [
    "VaultConfig",
    "Envelope",
    "EnvelopeCipher",
    "PassphraseStrength",
    "SecretBytes",
    "assess_passphrase",
    "check_crypto_provider",
    "decrypt",
    "derive_key",
    "encrypt",
    "generate_passphrase",
    "IndexEntry",
    "RecordCategory",
    "VaultIndex",
    "VaultRecord",
    "decrypt_attachment",
    "decrypt_index",
    "decrypt_json",
    "decrypt_record",
    "encrypt_attachment",
    "encrypt_index",
    "encrypt_json",
    "encrypt_record",
    "fingerprint",
    "verify",
    "SessionCache",
    "SessionState",
    "BlobStoreClient",
    "DriveClient",
    "MemoryBlobClient",
    "BatchResult",
    "FolderLayout",
    "LoadedRecord",
    "VaultStorage",
    "require_storage_scope",
    "rotate_passphrase",
]
