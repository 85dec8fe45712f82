"""
Vault Passphrase Rotation — Batch re-encryption of every vault object.

Re-encrypts records, attachments, the index and the preferences from one
passphrase to another in batches. Objects within a batch are processed
concurrently and independently. The operation is idempotent and resumable:
objects that already decrypt under the new passphrase are skipped.

Security Note:
    Plaintext exists in memory only during re-encryption of each object.
    Never log plaintext, ciphertext or passphrases.
"""
import asyncio
import logging
from typing import Optional

from ..exceptions import DecryptionError
from .blobstore import FileQuery, RemoteFile
from .crypto import Envelope, EnvelopeCipher, Passphrase
from .storage import OutcomeStatus, VaultStorage, gather_outcomes

logger = logging.getLogger("cardvault.vault")


async def _rotate_object(
    storage: VaultStorage,
    remote: RemoteFile,
    old_passphrase: Passphrase,
    new_passphrase: Passphrase,
    new_cipher: EnvelopeCipher,
) -> str:
    envelope = Envelope.from_json(await storage.client.download(remote.id))
    try:
        plaintext = await asyncio.to_thread(storage.cipher.decrypt, envelope, old_passphrase)
    except DecryptionError:
        # left over from an interrupted run; raises again if unreadable
        await asyncio.to_thread(new_cipher.decrypt, envelope, new_passphrase)
        return "skipped"
    rotated = await asyncio.to_thread(new_cipher.encrypt, plaintext, new_passphrase)
    await storage.client.update_file(remote.id, rotated.to_json(), mime_type=remote.mime_type)
    return "rotated"


async def rotate_passphrase(
    storage: VaultStorage,
    old_passphrase: Passphrase,
    new_passphrase: Passphrase,
    batch_size: int = 20,
    new_cipher: Optional[EnvelopeCipher] = None,
) -> dict:
    """Re-encrypt every vault object from ``old_passphrase`` to ``new_passphrase``.

    Args:
        storage: Vault storage whose objects are rotated.
        old_passphrase: Passphrase the objects are currently sealed with.
        new_passphrase: Target passphrase.
        batch_size: Number of objects processed concurrently per batch.
        new_cipher: Target cipher (KDF parameters or label), defaults to
            the storage cipher.

    Returns:
        Stats dict with keys: total, rotated, errors, skipped.

    Raises:
        ValueError: If batch_size is not positive.
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be positive, got {batch_size}")
    new_cipher = new_cipher or storage.cipher

    layout = await storage.resolve()
    objects: list[RemoteFile] = []
    for folder_id in (layout.records, layout.index, layout.preferences):
        files = await storage.client.list_files(FileQuery(parent=folder_id))
        objects.extend(f for f in files if not f.is_folder)

    stats = {"total": 0, "rotated": 0, "errors": 0, "skipped": 0}
    logger.info(
        "Starting passphrase rotation of %d object(s) (batch_size=%d)",
        len(objects), batch_size,
    )

    for offset in range(0, len(objects), batch_size):
        batch = objects[offset:offset + batch_size]
        logger.info(
            "Processing batch %d (%d objects)", offset // batch_size + 1, len(batch),
        )
        result = await gather_outcomes([
            (
                remote.name,
                _rotate_object(storage, remote, old_passphrase, new_passphrase, new_cipher),
            )
            for remote in batch
        ])
        for outcome in result.outcomes:
            stats["total"] += 1
            if outcome.status is OutcomeStatus.OK:
                stats[outcome.value] += 1
            else:
                logger.error(
                    "Error rotating object %s: %s",
                    outcome.key, outcome.error.__class__.__name__,
                )
                stats["errors"] += 1

    logger.info("Passphrase rotation complete: %s", stats)
    return stats
