"""
Vault Record Codec — Typed records, index and attachments to/from envelopes.

Every payload is serialized with orjson before it goes through the
envelope cipher:
- records: canonical JSON, stable field order, UTC timestamps with
  microsecond precision (``2024-05-01T10:00:00.000000Z``)
- index: ``{"version", "lastUpdated", "entries": [...]}`` in caller order
- attachments: opaque bytes, no parsing
- preferences: any JSON value

Security Note:
    Never log decoded field values; record ids and counts only.
"""
import hmac
import uuid
import hashlib
import logging
from enum import Enum
from datetime import datetime, timezone
from typing import Annotated, Any, Iterable, Mapping, Optional, Union

import orjson
from pydantic import (
    AfterValidator,
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    PlainSerializer,
    ValidationError,
    model_validator,
)

from ..exceptions import RecordFormatError
from .crypto import EnvelopeCipher, Envelope, Passphrase, default_cipher

logger = logging.getLogger("cardvault.vault")

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
INDEX_VERSION = "1.0"
LEGACY_INDEX_VERSION = "0"
DRIVE_REF_PREFIX = "drive://"

# Underscore is excluded: object names use it as separator.
RECORD_ID_PATTERN = r"^[A-Za-z0-9-]+$"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Canonical string form of a timestamp."""
    return _as_utc(value).strftime(TIMESTAMP_FORMAT)


UtcDatetime = Annotated[
    datetime,
    AfterValidator(_as_utc),
    PlainSerializer(format_timestamp, return_type=str),
]


def new_record_id() -> str:
    return str(uuid.uuid4())


class RecordCategory(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"
    LOYALTY = "loyalty"
    ID = "id"
    OTHER = "other"


class _CodecModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_payload(self) -> dict[str, Any]:
        """JSON-ready dict using wire names, ``None`` fields omitted."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class VaultRecord(_CodecModel):
    """A vault entry (card, ID, loyalty card).

    Wire names follow the stored JSON (``nickname``, ``addedAt``,
    ``updatedAt``); attribute names are used in Python.
    """

    id: str = Field(pattern=RECORD_ID_PATTERN)
    category: RecordCategory = RecordCategory.OTHER
    label: str = Field(alias="nickname")
    number: Optional[str] = None
    expiry_date: Optional[str] = Field(default=None, alias="expiryDate")
    issue_date: Optional[str] = Field(default=None, alias="issueDate")
    issuer_code: Optional[str] = Field(default=None, alias="issuerCode")
    notes: Optional[str] = None
    last4: Optional[str] = None
    attachment_id: Optional[str] = Field(default=None, alias="attachmentId")
    thumbnail_ids: dict[str, str] = Field(default_factory=dict, alias="thumbnailIds")
    created_at: UtcDatetime = Field(default_factory=utcnow, alias="addedAt")
    updated_at: UtcDatetime = Field(default_factory=utcnow, alias="updatedAt")

    @model_validator(mode="before")
    @classmethod
    def migrate_image_url(cls, data: Any) -> Any:
        """Convert the legacy ``imageUrl: drive://<id>`` reference to ``attachmentId``.

        Inline ``data:`` URLs and any other ``imageUrl`` value are dropped;
        attachments are never embedded in the record payload.
        """
        if not isinstance(data, dict) or "imageUrl" not in data:
            return data
        data = dict(data)
        image_url = data.pop("imageUrl")
        has_ref = data.get("attachmentId") or data.get("attachment_id")
        if isinstance(image_url, str) and image_url.startswith(DRIVE_REF_PREFIX) and not has_ref:
            data["attachmentId"] = image_url[len(DRIVE_REF_PREFIX):]
            logger.debug("Migrated legacy image reference for record=%s", data.get("id"))
        return data

    @property
    def has_attachment(self) -> bool:
        return self.attachment_id is not None


class IndexEntry(_CodecModel):
    """Minimal projection of a record kept in the index."""

    id: str
    category: RecordCategory = RecordCategory.OTHER
    label: str = Field(alias="nickname")
    last4: Optional[str] = None
    created_at: UtcDatetime = Field(alias="addedAt")
    updated_at: UtcDatetime = Field(alias="updatedAt")
    file_id: Optional[str] = Field(default=None, alias="fileId")

    @classmethod
    def from_record(cls, record: VaultRecord, file_id: Optional[str] = None) -> "IndexEntry":
        return cls(
            id=record.id,
            category=record.category,
            label=record.label,
            last4=record.last4,
            created_at=record.created_at,
            updated_at=record.updated_at,
            file_id=file_id,
        )


class VaultIndex(_CodecModel):
    """Encrypted summary of the vault. A cache: record objects are authoritative."""

    version: str = INDEX_VERSION
    last_updated: UtcDatetime = Field(default_factory=utcnow, alias="lastUpdated")
    entries: list[IndexEntry] = Field(
        default_factory=list, validation_alias=AliasChoices("entries", "cards"),
    )

    def ids(self) -> list[str]:
        return [entry.id for entry in self.entries]

    def stale_ids(self, record_ids: Iterable[str]) -> list[str]:
        """Entries whose record is no longer in ``record_ids``."""
        known = set(record_ids)
        return [entry.id for entry in self.entries if entry.id not in known]

    def missing_ids(self, record_ids: Iterable[str]) -> list[str]:
        """Records in ``record_ids`` without an index entry."""
        indexed = set(self.ids())
        return [rid for rid in record_ids if rid not in indexed]


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def _loads(data: Union[bytes, str], what: str) -> Any:
    try:
        return orjson.loads(data)
    except orjson.JSONDecodeError as err:
        raise RecordFormatError(f"{what} payload is not valid JSON") from err


def encode_record(record: VaultRecord) -> bytes:
    """Serialize a record into its canonical byte payload."""
    return orjson.dumps(record.to_payload())


def decode_record(data: Union[bytes, str]) -> VaultRecord:
    """Exact inverse of :func:`encode_record` (also reads legacy payloads)."""
    parsed = _loads(data, "Record")
    try:
        return VaultRecord.model_validate(parsed)
    except ValidationError as err:
        raise RecordFormatError(f"Record payload is invalid: {err.error_count()} error(s)") from err


def encode_index(
    records: Iterable[Union[VaultRecord, IndexEntry]],
    last_updated: Optional[datetime] = None,
    file_ids: Optional[Mapping[str, str]] = None,
) -> bytes:
    """Project records to index entries, in the order supplied.

    Args:
        records: Records (or ready-made entries).
        last_updated: Index timestamp, defaults to now.
        file_ids: Optional record id → remote file id mapping.
    """
    file_ids = file_ids or {}
    entries = []
    for item in records:
        if isinstance(item, VaultRecord):
            item = IndexEntry.from_record(item, file_ids.get(item.id))
        entries.append(item)
    index = VaultIndex(last_updated=last_updated or utcnow(), entries=entries)
    return orjson.dumps(index.to_payload())


def decode_index(data: Union[bytes, str]) -> VaultIndex:
    """Decode an index payload.

    Entries are not checked against the store; stale ids are the
    consumer's to reconcile (see :meth:`VaultIndex.stale_ids`). Older
    layouts are accepted: entries under ``cards``, or a bare JSON array.
    """
    parsed = _loads(data, "Index")
    try:
        if isinstance(parsed, list):
            entries = [IndexEntry.model_validate(item) for item in parsed]
            last = max((e.updated_at for e in entries), default=datetime.fromtimestamp(0, timezone.utc))
            return VaultIndex(version=LEGACY_INDEX_VERSION, last_updated=last, entries=entries)
        return VaultIndex.model_validate(parsed)
    except ValidationError as err:
        raise RecordFormatError(f"Index payload is invalid: {err.error_count()} error(s)") from err


# ---------------------------------------------------------------------------
# Envelope helpers
# ---------------------------------------------------------------------------

def _as_envelope(envelope: Union[Envelope, Mapping[str, Any]]) -> Envelope:
    if isinstance(envelope, Envelope):
        return envelope
    return Envelope.from_dict(dict(envelope))


def encrypt_record(
    record: VaultRecord,
    passphrase: Passphrase,
    cipher: Optional[EnvelopeCipher] = None,
) -> Envelope:
    return (cipher or default_cipher).encrypt(encode_record(record), passphrase)


def decrypt_record(
    envelope: Union[Envelope, Mapping[str, Any]],
    passphrase: Passphrase,
    cipher: Optional[EnvelopeCipher] = None,
) -> VaultRecord:
    plaintext = (cipher or default_cipher).decrypt(_as_envelope(envelope), passphrase)
    return decode_record(plaintext)


def encrypt_index(
    records: Iterable[Union[VaultRecord, IndexEntry]],
    passphrase: Passphrase,
    cipher: Optional[EnvelopeCipher] = None,
    file_ids: Optional[Mapping[str, str]] = None,
) -> Envelope:
    return (cipher or default_cipher).encrypt(encode_index(records, file_ids=file_ids), passphrase)


def decrypt_index(
    envelope: Union[Envelope, Mapping[str, Any]],
    passphrase: Passphrase,
    cipher: Optional[EnvelopeCipher] = None,
) -> VaultIndex:
    plaintext = (cipher or default_cipher).decrypt(_as_envelope(envelope), passphrase)
    return decode_index(plaintext)


def encrypt_attachment(
    data: Union[bytes, bytearray, memoryview],
    passphrase: Passphrase,
    cipher: Optional[EnvelopeCipher] = None,
) -> Envelope:
    """Encrypt an attachment; the bytes are treated as opaque."""
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise TypeError(f"Attachment must be bytes, got {type(data).__name__}")
    return (cipher or default_cipher).encrypt(bytes(data), passphrase)


def decrypt_attachment(
    envelope: Union[Envelope, Mapping[str, Any]],
    passphrase: Passphrase,
    cipher: Optional[EnvelopeCipher] = None,
) -> bytes:
    return (cipher or default_cipher).decrypt(_as_envelope(envelope), passphrase)


def encrypt_json(
    value: Any,
    passphrase: Passphrase,
    cipher: Optional[EnvelopeCipher] = None,
) -> Envelope:
    """Encrypt any JSON-serializable value (preferences)."""
    return (cipher or default_cipher).encrypt(orjson.dumps(value), passphrase)


def decrypt_json(
    envelope: Union[Envelope, Mapping[str, Any]],
    passphrase: Passphrase,
    cipher: Optional[EnvelopeCipher] = None,
) -> Any:
    plaintext = (cipher or default_cipher).decrypt(_as_envelope(envelope), passphrase)
    return _loads(plaintext, "JSON")


# ---------------------------------------------------------------------------
# Fingerprints
# ---------------------------------------------------------------------------

def _millis_timestamp(value: datetime) -> str:
    value = _as_utc(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def fingerprint(record: VaultRecord) -> str:
    """SHA-256 hex digest over (id, nickname, category, last4, updatedAt).

    Cheap staleness/tamper check without decrypting and comparing records.
    The projection is compact JSON with a millisecond ``updatedAt`` and no
    ``last4`` key when it is unset, so digests made by the web client verify.
    """
    projection: dict[str, Any] = {
        "id": record.id,
        "nickname": record.label,
        "category": record.category.value,
    }
    if record.last4 is not None:
        projection["last4"] = record.last4
    projection["updatedAt"] = _millis_timestamp(record.updated_at)
    return hashlib.sha256(orjson.dumps(projection)).hexdigest()


def verify(record: VaultRecord, digest: str) -> bool:
    """True if ``digest`` matches the record's current fingerprint."""
    if not isinstance(digest, str):
        return False
    return hmac.compare_digest(
        fingerprint(record).encode("ascii"), digest.lower().encode("utf-8"),
    )
