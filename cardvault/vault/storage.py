"""
VaultStorage — Logical vault operations on top of a blob store.

Provides the public API for persisting the vault:
- ``resolve()`` — find-or-create the folder layout (root + three subfolders)
- ``save_record()`` / ``update_record()`` / ``load_record()`` / ``load_records()``
- ``delete_record()`` / ``delete_records()`` / ``reset_vault()`` — cascading deletes
- ``save_preferences()`` / ``load_preferences()`` — singleton, update-or-insert
- ``save_index()`` / ``load_index()`` / ``rebuild_index()`` — singleton, non-authoritative

Object names are the on-disk contract::

    record_<id>.json              record envelope
    record_<id>_image.enc         primary attachment
    record_<id>_thumb_<size>.enc  size variants
    index.json                    index envelope
    preferences.json              preferences envelope

Batch operations never short-circuit: they return a ``BatchResult`` with
one outcome per item.

Security Note:
    Never log passphrases or decrypted values. Object names and ids only.
    Object descriptions stay generic; labels are never written in clear.
"""
import re
import asyncio
import logging
from enum import Enum
from operator import attrgetter
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Iterable,
    Mapping,
    Optional,
    Sequence,
    TypeVar,
    Union,
)

import orjson

from ..exceptions import NotFoundError, RemoteUnavailableError, VaultError
from .blobstore import (
    BINARY_MIME_TYPE,
    JSON_MIME_TYPE,
    BlobStoreClient,
    FileQuery,
    RemoteFile,
)
from .codec import (
    IndexEntry,
    VaultIndex,
    VaultRecord,
    decrypt_attachment,
    decrypt_index,
    decrypt_json,
    decrypt_record,
    encode_index,
    encrypt_attachment,
    encrypt_json,
    encrypt_record,
)
from .config import VaultConfig
from .crypto import Envelope, EnvelopeCipher, Passphrase

logger = logging.getLogger("cardvault.vault")

T = TypeVar("T")

RECORD_PREFIX = "record_"
INDEX_NAME = "index.json"
PREFERENCES_NAME = "preferences.json"

_RECORD_NAME = re.compile(r"^record_([A-Za-z0-9-]+)\.json$")
_STORAGE_SCOPES = frozenset({"drive", "drive.file"})


# ---------------------------------------------------------------------------
# Naming
# ---------------------------------------------------------------------------

def record_name(record_id: str) -> str:
    return f"{RECORD_PREFIX}{record_id}.json"


def image_name(record_id: str) -> str:
    return f"{RECORD_PREFIX}{record_id}_image.enc"


def thumbnail_name(record_id: str, size: Union[int, str]) -> str:
    return f"{RECORD_PREFIX}{record_id}_thumb_{size}.enc"


def record_id_from_name(name: str) -> Optional[str]:
    """Record id of a ``record_<id>.json`` name, None for anything else."""
    match = _RECORD_NAME.match(name)
    return match.group(1) if match else None


def belongs_to_record(name: str, record_id: str) -> bool:
    """True for the record object and every attachment object of ``record_id``."""
    return name == record_name(record_id) or name.startswith(f"{RECORD_PREFIX}{record_id}_")


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FolderLayout:
    """Folder ids of one vault."""

    root: str
    records: str
    index: str
    preferences: str


class OutcomeStatus(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    FAILED = "failed"


@dataclass
class Outcome:
    key: str
    status: OutcomeStatus
    value: Any = None
    error: Optional[BaseException] = None


@dataclass
class BatchResult:
    """Outcome vector of a batch of independent operations."""

    outcomes: list[Outcome] = field(default_factory=list)

    def _with(self, status: OutcomeStatus) -> list[Outcome]:
        return [o for o in self.outcomes if o.status is status]

    @property
    def succeeded(self) -> list[Outcome]:
        return self._with(OutcomeStatus.OK)

    @property
    def not_found(self) -> list[Outcome]:
        return self._with(OutcomeStatus.NOT_FOUND)

    @property
    def failed(self) -> list[Outcome]:
        return self._with(OutcomeStatus.FAILED)

    @property
    def ok(self) -> bool:
        """No outcome failed (missing objects do not count as failures)."""
        return not self.failed

    def values(self) -> list[Any]:
        return [o.value for o in self.succeeded]

    def summary(self) -> dict[str, int]:
        return {
            "total": len(self.outcomes),
            "succeeded": len(self.succeeded),
            "not_found": len(self.not_found),
            "failed": len(self.failed),
        }


async def gather_outcomes(
    items: Sequence[tuple[str, Awaitable[Any]]],
    limit: Optional[asyncio.Semaphore] = None,
) -> BatchResult:
    """Run independent awaitables concurrently and collect every outcome.

    A failing item never cancels its siblings. ``NotFoundError`` is reported
    as NOT_FOUND, anything else as FAILED.
    """
    async def run(key: str, aw: Awaitable[Any]) -> Outcome:
        try:
            if limit is None:
                value = await aw
            else:
                async with limit:
                    value = await aw
        except NotFoundError as err:
            return Outcome(key, OutcomeStatus.NOT_FOUND, error=err)
        except Exception as err:
            return Outcome(key, OutcomeStatus.FAILED, error=err)
        return Outcome(key, OutcomeStatus.OK, value=value)

    outcomes = await asyncio.gather(*(run(key, aw) for key, aw in items))
    result = BatchResult(list(outcomes))
    if result.failed:
        logger.warning("Batch completed with failures: %s", result.summary())
    return result


@dataclass
class SavedRecord:
    file_id: str
    record: VaultRecord


@dataclass
class LoadedRecord:
    """A decrypted record; the attachment degrades to None when unreadable."""

    record: VaultRecord
    file_id: str
    attachment: Optional[bytes] = None
    attachment_error: Optional[VaultError] = None

    @property
    def attachment_available(self) -> bool:
        return self.attachment is not None


@dataclass
class RecordListing:
    id: str
    file_id: str
    name: str
    modified_time: Optional[str] = None


@dataclass
class StorageUsage:
    total_size: int = 0
    record_count: int = 0
    attachment_count: int = 0


def require_storage_scope(scopes: Optional[Iterable[str]]) -> None:
    """Fail unless the identity provider explicitly granted storage access.

    Missing, empty or ``unknown`` scope lists are treated as not granted.

    Raises:
        RemoteUnavailableError: reason ``permission``.
    """
    granted = [
        scope.rstrip("/").rsplit("/", 1)[-1]
        for scope in (scopes or [])
        if isinstance(scope, str)
    ]
    if not any(scope in _STORAGE_SCOPES for scope in granted):
        raise RemoteUnavailableError(
            "Storage access was not granted by the identity provider",
            reason="permission",
        )


_records = attrgetter("records")
_index = attrgetter("index")
_preferences = attrgetter("preferences")


class VaultStorage:
    """Blob-store backed persistence of one vault.

    Args:
        client: Object store client (remote or in-memory).
        config: Vault configuration (folder names, KDF, concurrency).
        layout: Previously resolved folder layout to reuse.
        cipher: Envelope cipher, defaults to one built from ``config``.
    """

    def __init__(
        self,
        client: BlobStoreClient,
        config: Optional[VaultConfig] = None,
        layout: Optional[FolderLayout] = None,
        cipher: Optional[EnvelopeCipher] = None,
    ) -> None:
        self._client = client
        self._config = config or VaultConfig()
        self._cipher = cipher or EnvelopeCipher.from_config(self._config)
        self._layout = layout
        self._lock = asyncio.Lock()
        self._limit = asyncio.Semaphore(self._config.max_concurrency)

    def __repr__(self) -> str:
        return f"<VaultStorage root={self._config.root_folder!r} resolved={self._layout is not None}>"

    @property
    def client(self) -> BlobStoreClient:
        return self._client

    @property
    def cipher(self) -> EnvelopeCipher:
        return self._cipher

    @property
    def layout(self) -> Optional[FolderLayout]:
        return self._layout

    # ------------------------------------------------------------------
    # Folder resolution
    # ------------------------------------------------------------------

    async def resolve(self, force: bool = False) -> FolderLayout:
        """Find or create the vault folders and return their ids.

        The layout is cached on this instance; ``force`` looks it up again.
        Lookup is by name, so repeated calls never create duplicates.
        """
        async with self._lock:
            if self._layout is not None and not force:
                return self._layout
            root = await self._find_or_create_root()
            children = await self._client.list_files(
                FileQuery(parent=root, folders_only=True),
            )
            existing: dict[str, str] = {}
            for folder in children:
                existing.setdefault(folder.name, folder.id)
            ids = []
            for name in (
                self._config.records_folder,
                self._config.index_folder,
                self._config.preferences_folder,
            ):
                folder_id = existing.get(name)
                if folder_id is None:
                    folder_id = (await self._client.create_folder(name, root)).id
                    logger.info("Created vault folder %s/%s", self._config.root_folder, name)
                ids.append(folder_id)
            self._layout = FolderLayout(root, *ids)
            logger.debug("Vault layout resolved: %s", self._layout)
            return self._layout

    async def _find_or_create_root(self) -> str:
        found = await self._client.list_files(
            FileQuery(name=self._config.root_folder, folders_only=True),
        )
        if found:
            return found[0].id
        folder = await self._client.create_folder(self._config.root_folder)
        logger.info("Created vault root folder %s", self._config.root_folder)
        return folder.id

    async def _in_folder(
        self,
        pick: Callable[[FolderLayout], str],
        op: Callable[[str], Awaitable[T]],
    ) -> T:
        """Run a folder-scoped operation, re-resolving once on a stale folder id.

        Listings under a deleted folder come back empty instead of failing,
        so an empty result is only trusted once the folder is confirmed.
        """
        layout = await self.resolve()
        folder_id = pick(layout)
        try:
            result = await op(folder_id)
        except NotFoundError:
            logger.info("Vault folder cache is stale, resolving layout again")
        else:
            if result or await self._folder_exists(folder_id):
                return result
            logger.info("Vault folder %s no longer exists, resolving layout again", folder_id)
        layout = await self.resolve(force=True)
        return await op(pick(layout))

    async def _folder_exists(self, folder_id: str) -> bool:
        try:
            folder = await self._client.get_file(folder_id)
        except NotFoundError:
            return False
        return not folder.trashed

    async def probe(self) -> None:
        """Live check that the store accepts our credential.

        Raises:
            RemoteUnavailableError: On auth, permission or transport failure.
        """
        await self._client.list_files(
            FileQuery(name=self._config.root_folder, folders_only=True),
        )

    # ------------------------------------------------------------------
    # Generic helpers
    # ------------------------------------------------------------------

    async def _find(self, folder_id: str, name: str) -> list[RemoteFile]:
        return await self._client.list_files(FileQuery(name=name, parent=folder_id))

    async def _upsert(
        self,
        pick: Callable[[FolderLayout], str],
        name: str,
        body: bytes,
        mime_type: str,
        description: Optional[str] = None,
    ) -> RemoteFile:
        """Update the object named ``name`` in place, or create it."""
        async def op(folder_id: str) -> RemoteFile:
            existing = await self._find(folder_id, name)
            if existing:
                if len(existing) > 1:
                    logger.warning(
                        "Found %d objects named %s, updating the first", len(existing), name,
                    )
                return await self._client.update_file(existing[0].id, body, mime_type=mime_type)
            return await self._client.create_file(
                name, body, mime_type, parent=folder_id, description=description,
            )
        return await self._in_folder(pick, op)

    async def _read_envelope(self, file_id: str) -> Envelope:
        return Envelope.from_json(await self._client.download(file_id))

    async def search(self, name_contains: str = "", folder: str = "records") -> list[RemoteFile]:
        """List objects of one vault folder whose name contains ``name_contains``.

        ``folder`` is one of ``records``, ``index``, ``preferences`` or ``root``.
        """
        if folder not in ("records", "index", "preferences", "root"):
            raise ValueError(f"Unknown vault folder: {folder}")

        async def op(folder_id: str) -> list[RemoteFile]:
            return await self._client.list_files(
                FileQuery(name_contains=name_contains or None, parent=folder_id),
            )
        return await self._in_folder(attrgetter(folder), op)

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    async def _save_blob(self, name: str, data: bytes, passphrase: Passphrase) -> str:
        envelope = await asyncio.to_thread(encrypt_attachment, data, passphrase, self._cipher)
        remote = await self._upsert(
            _records, name, envelope.to_json(), BINARY_MIME_TYPE,
            description="Encrypted vault attachment",
        )
        logger.debug("Saved attachment %s", name)
        return remote.id

    async def save_attachment(self, record_id: str, data: bytes, passphrase: Passphrase) -> str:
        """Encrypt and store the primary attachment of a record. Returns its object id."""
        return await self._save_blob(image_name(record_id), data, passphrase)

    async def save_thumbnails(
        self,
        record_id: str,
        thumbnails: Mapping[Union[int, str], bytes],
        passphrase: Passphrase,
    ) -> dict[str, str]:
        """Store size variants concurrently. Returns size → object id."""
        sizes = [str(size) for size in thumbnails]
        ids = await asyncio.gather(*(
            self._save_blob(thumbnail_name(record_id, size), data, passphrase)
            for size, data in zip(sizes, thumbnails.values())
        ))
        return dict(zip(sizes, ids))

    async def load_attachment(self, file_id: str, passphrase: Passphrase) -> bytes:
        envelope = await self._read_envelope(file_id)
        return await asyncio.to_thread(decrypt_attachment, envelope, passphrase, self._cipher)

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def _with_attachments(
        self,
        record: VaultRecord,
        passphrase: Passphrase,
        image: Optional[bytes],
        thumbnails: Optional[Mapping[Union[int, str], bytes]],
    ) -> VaultRecord:
        update: dict[str, Any] = {}
        if image is not None:
            update["attachment_id"] = await self.save_attachment(record.id, image, passphrase)
        if thumbnails:
            saved = await self.save_thumbnails(record.id, thumbnails, passphrase)
            update["thumbnail_ids"] = {**record.thumbnail_ids, **saved}
        return record.model_copy(update=update) if update else record

    async def save_record(
        self,
        record: VaultRecord,
        passphrase: Passphrase,
        image: Optional[bytes] = None,
        thumbnails: Optional[Mapping[Union[int, str], bytes]] = None,
    ) -> SavedRecord:
        """Encrypt and store a record (and its attachments).

        Attachments are written first so the record references their ids.
        An existing object for the same record id is overwritten.
        """
        record = await self._with_attachments(record, passphrase, image, thumbnails)
        envelope = await asyncio.to_thread(encrypt_record, record, passphrase, self._cipher)
        remote = await self._upsert(
            _records, record_name(record.id), envelope.to_json(), JSON_MIME_TYPE,
            description="Encrypted vault record",
        )
        logger.debug("Saved record=%s file=%s", record.id, remote.id)
        return SavedRecord(file_id=remote.id, record=record)

    async def update_record(
        self,
        file_id: str,
        record: VaultRecord,
        passphrase: Passphrase,
        image: Optional[bytes] = None,
        thumbnails: Optional[Mapping[Union[int, str], bytes]] = None,
    ) -> SavedRecord:
        """Re-encrypt a record and overwrite its object.

        Raises:
            NotFoundError: If ``file_id`` no longer exists.
        """
        record = await self._with_attachments(record, passphrase, image, thumbnails)
        envelope = await asyncio.to_thread(encrypt_record, record, passphrase, self._cipher)
        await self._client.update_file(
            file_id, envelope.to_json(), mime_type=JSON_MIME_TYPE, name=record_name(record.id),
        )
        logger.debug("Updated record=%s file=%s", record.id, file_id)
        return SavedRecord(file_id=file_id, record=record)

    async def load_record(
        self,
        file_id: str,
        passphrase: Passphrase,
        with_attachment: bool = True,
    ) -> LoadedRecord:
        """Download and decrypt a record.

        A failure to read the attachment does not fail the record: it is
        reported in ``attachment_error``.

        Raises:
            NotFoundError: Record object missing.
            DecryptionError: Wrong passphrase or corrupted record.
        """
        envelope = await self._read_envelope(file_id)
        record = await asyncio.to_thread(decrypt_record, envelope, passphrase, self._cipher)
        loaded = LoadedRecord(record=record, file_id=file_id)
        if with_attachment and record.attachment_id:
            try:
                loaded.attachment = await self.load_attachment(record.attachment_id, passphrase)
            except VaultError as err:
                logger.warning(
                    "Attachment unavailable for record=%s: %s",
                    record.id, err.__class__.__name__,
                )
                loaded.attachment_error = err
        return loaded

    async def list_records(self) -> list[RecordListing]:
        """List record objects (attachments excluded). Empty vault → []."""
        async def op(folder_id: str) -> list[RemoteFile]:
            return await self._client.list_files(
                FileQuery(name_contains=RECORD_PREFIX, parent=folder_id),
            )
        listings = []
        for remote in await self._in_folder(_records, op):
            record_id = record_id_from_name(remote.name)
            if record_id is not None:
                listings.append(RecordListing(
                    id=record_id,
                    file_id=remote.id,
                    name=remote.name,
                    modified_time=remote.modified_time,
                ))
        return listings

    async def load_records(
        self,
        passphrase: Passphrase,
        with_attachments: bool = False,
    ) -> BatchResult:
        """Load every record concurrently; outcome values are LoadedRecord."""
        listings = await self.list_records()
        return await gather_outcomes(
            [
                (item.id, self.load_record(item.file_id, passphrase, with_attachments))
                for item in listings
            ],
            limit=self._limit,
        )

    async def find_record_files(self, record_id: str) -> list[RemoteFile]:
        """The record object and all its attachment objects."""
        async def op(folder_id: str) -> list[RemoteFile]:
            async with self._limit:
                return await self._client.list_files(
                    FileQuery(name_contains=f"{RECORD_PREFIX}{record_id}", parent=folder_id),
                )
        return [f for f in await self._in_folder(_records, op) if belongs_to_record(f.name, record_id)]

    async def delete_objects(self, file_ids: Iterable[str]) -> BatchResult:
        """Delete objects concurrently; missing ones are reported as NOT_FOUND."""
        return await gather_outcomes(
            [(file_id, self._client.delete_file(file_id)) for file_id in file_ids],
            limit=self._limit,
        )

    async def delete_record(self, record_id: str) -> int:
        """Delete a record and every attachment of it.

        Returns:
            Number of objects deleted.

        Raises:
            NotFoundError: Nothing stored for ``record_id``.
        """
        files = await self.find_record_files(record_id)
        if not files:
            raise NotFoundError(f"No objects stored for record {record_id}", object_id=record_id)
        result = await self.delete_objects(f.id for f in files)
        if result.failed:
            raise result.failed[0].error  # type: ignore[misc]
        if not result.succeeded:
            raise NotFoundError(f"Objects for record {record_id} already gone", object_id=record_id)
        logger.debug("Deleted record=%s (%d object(s))", record_id, len(result.succeeded))
        return len(result.succeeded)

    async def delete_records(self, record_ids: Iterable[str]) -> BatchResult:
        """Delete several records concurrently; outcome per record id."""
        return await gather_outcomes(
            [(record_id, self.delete_record(record_id)) for record_id in record_ids],
        )

    async def reset_vault(self) -> BatchResult:
        """Delete every object in the vault folders (the folders stay)."""
        layout = await self.resolve()
        file_ids: list[str] = []
        for folder_id in (layout.records, layout.index, layout.preferences):
            files = await self._client.list_files(FileQuery(parent=folder_id))
            file_ids.extend(f.id for f in files if not f.is_folder)
        result = await self.delete_objects(file_ids)
        logger.info("Vault reset: %s", result.summary())
        return result

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------

    async def save_preferences(self, preferences: Any, passphrase: Passphrase) -> str:
        """Encrypt and store preferences, overwriting the existing object."""
        envelope = await asyncio.to_thread(encrypt_json, preferences, passphrase, self._cipher)
        remote = await self._upsert(
            _preferences, PREFERENCES_NAME, envelope.to_json(), JSON_MIME_TYPE,
        )
        return remote.id

    async def load_preferences(self, passphrase: Passphrase) -> Optional[Any]:
        """Decrypted preferences, or None when none were saved yet."""
        files = await self._in_folder(_preferences, lambda fid: self._find(fid, PREFERENCES_NAME))
        if not files:
            return None
        envelope = await self._read_envelope(files[0].id)
        return await asyncio.to_thread(decrypt_json, envelope, passphrase, self._cipher)

    # ------------------------------------------------------------------
    # Index
    # ------------------------------------------------------------------

    async def save_index(
        self,
        records: Union[VaultIndex, Iterable[Union[VaultRecord, IndexEntry]]],
        passphrase: Passphrase,
        file_ids: Optional[Mapping[str, str]] = None,
    ) -> str:
        """Encrypt and store the index, overwriting the existing object."""
        if isinstance(records, VaultIndex):
            payload = orjson.dumps(records.to_payload())
        else:
            payload = encode_index(records, file_ids=file_ids)
        envelope = await asyncio.to_thread(self._cipher.encrypt, payload, passphrase)
        remote = await self._upsert(_index, INDEX_NAME, envelope.to_json(), JSON_MIME_TYPE)
        return remote.id

    async def load_index(self, passphrase: Passphrase) -> Optional[VaultIndex]:
        """Decrypted index, or None when absent. May be stale."""
        files = await self._in_folder(_index, lambda fid: self._find(fid, INDEX_NAME))
        if not files:
            return None
        envelope = await self._read_envelope(files[0].id)
        return await asyncio.to_thread(decrypt_index, envelope, passphrase, self._cipher)

    async def rebuild_index(self, passphrase: Passphrase) -> VaultIndex:
        """Rebuild the index from the record objects and store it.

        Records deleted while rebuilding are skipped.

        Raises:
            VaultError: The first failure loading a record (e.g. DecryptionError).
        """
        result = await self.load_records(passphrase)
        if result.failed:
            raise result.failed[0].error  # type: ignore[misc]
        index = VaultIndex(entries=[
            IndexEntry.from_record(loaded.record, loaded.file_id)
            for loaded in result.values()
        ])
        await self.save_index(index, passphrase)
        logger.info("Vault index rebuilt with %d entries", len(index.entries))
        return index

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    async def storage_usage(self) -> StorageUsage:
        """Size and object counts of the vault folders."""
        layout = await self.resolve()
        usage = StorageUsage()
        for folder_id in (layout.records, layout.index, layout.preferences):
            for remote in await self._client.list_files(FileQuery(parent=folder_id)):
                if remote.is_folder:
                    continue
                usage.total_size += remote.size or 0
                if record_id_from_name(remote.name) is not None:
                    usage.record_count += 1
                elif remote.name.startswith(RECORD_PREFIX) and remote.name.endswith(".enc"):
                    usage.attachment_count += 1
        return usage
