"""
Blob Store Clients — Vendor-neutral access to the remote object store.

``BlobStoreClient`` is the capability set the vault depends on: folders
containing files with a name, a MIME type and opaque bytes, plus
create/read/update/delete and list-by-query. Two implementations:

- ``DriveClient``: Drive-v3-shaped REST API over HTTPS (aiohttp), bearer
  token attached to every call, multipart uploads, paginated listing.
- ``MemoryBlobClient``: in-process store with the same semantics.

Trashed objects never appear in listings.

Security Note:
    Never log request bodies or the bearer token.
"""
import asyncio
import inspect
import logging
import itertools
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Union
from urllib.parse import quote

import orjson
import aiohttp

from ..exceptions import NotFoundError, RemoteUnavailableError, VaultError
from .config import VaultConfig

logger = logging.getLogger("cardvault.vault")

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
JSON_MIME_TYPE = "application/json"
BINARY_MIME_TYPE = "application/octet-stream"

FILE_FIELDS = "id,name,mimeType,modifiedTime,size,parents,trashed"

_QUOTA_REASONS = frozenset({"storageQuotaExceeded", "quotaExceeded"})
_RATE_REASONS = frozenset({"rateLimitExceeded", "userRateLimitExceeded"})

TokenProvider = Union[str, Callable[[], Union[Optional[str], Awaitable[Optional[str]]]]]


@dataclass
class RemoteFile:
    """Metadata of one object (file or folder) in the store."""

    id: str
    name: str
    mime_type: str = BINARY_MIME_TYPE
    modified_time: Optional[str] = None
    size: Optional[int] = None
    parents: list[str] = field(default_factory=list)
    trashed: bool = False

    @property
    def is_folder(self) -> bool:
        return self.mime_type == FOLDER_MIME_TYPE

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "RemoteFile":
        size = data.get("size")
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            mime_type=data.get("mimeType", BINARY_MIME_TYPE),
            modified_time=data.get("modifiedTime"),
            size=int(size) if size is not None else None,
            parents=list(data.get("parents") or []),
            trashed=bool(data.get("trashed", False)),
        )


@dataclass
class FileQuery:
    """Listing filter; every set field must match.

    Args:
        name: Exact object name.
        name_contains: Substring of the object name.
        text: Substring of the name or of the content.
        parent: Parent folder id.
        mime_type: Exact MIME type.
        folders_only: Only folders.
    """

    name: Optional[str] = None
    name_contains: Optional[str] = None
    text: Optional[str] = None
    parent: Optional[str] = None
    mime_type: Optional[str] = None
    folders_only: bool = False


def _literal(value: str) -> str:
    """Quote a value for the Drive query language."""
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def build_query(query: FileQuery) -> str:
    """Translate a FileQuery to a Drive ``q`` expression (trashed excluded)."""
    clauses = []
    if query.name is not None:
        clauses.append(f"name = {_literal(query.name)}")
    if query.name_contains:
        clauses.append(f"name contains {_literal(query.name_contains)}")
    if query.text:
        term = _literal(query.text)
        clauses.append(f"(name contains {term} or fullText contains {term})")
    if query.parent:
        clauses.append(f"{_literal(query.parent)} in parents")
    if query.folders_only:
        clauses.append(f"mimeType = {_literal(FOLDER_MIME_TYPE)}")
    elif query.mime_type:
        clauses.append(f"mimeType = {_literal(query.mime_type)}")
    clauses.append("trashed = false")
    return " and ".join(clauses)


def error_from_status(
    status: int,
    message: str,
    reason: Optional[str] = None,
    object_id: Optional[str] = None,
) -> VaultError:
    """Map an HTTP error status to the vault error taxonomy."""
    if status == 404:
        return NotFoundError(message or "File or folder not found", object_id=object_id)
    if status == 401:
        return RemoteUnavailableError(
            message or "Authentication expired", status=status, reason="auth",
        )
    if status == 403:
        if reason in _QUOTA_REASONS:
            return RemoteUnavailableError(message, status=status, reason="quota")
        if reason in _RATE_REASONS:
            return RemoteUnavailableError(message, status=status, retryable=True, reason="server")
        return RemoteUnavailableError(
            message or "Permission denied", status=status, reason="permission",
        )
    if status == 507:
        return RemoteUnavailableError(
            message or "Storage quota exceeded", status=status, reason="quota",
        )
    if status == 429 or status >= 500:
        return RemoteUnavailableError(message, status=status, retryable=True, reason="server")
    return RemoteUnavailableError(message, status=status, reason="server")


class BlobStoreClient(ABC):
    """Capability set of the remote object store."""

    @abstractmethod
    async def create_folder(self, name: str, parent: Optional[str] = None) -> RemoteFile:
        ...

    @abstractmethod
    async def create_file(
        self,
        name: str,
        content: bytes,
        mime_type: str,
        parent: Optional[str] = None,
        description: Optional[str] = None,
    ) -> RemoteFile:
        ...

    @abstractmethod
    async def update_file(
        self,
        file_id: str,
        content: bytes,
        mime_type: Optional[str] = None,
        name: Optional[str] = None,
    ) -> RemoteFile:
        ...

    @abstractmethod
    async def download(self, file_id: str) -> bytes:
        ...

    @abstractmethod
    async def get_file(self, file_id: str) -> RemoteFile:
        ...

    @abstractmethod
    async def list_files(self, query: FileQuery) -> list[RemoteFile]:
        ...

    @abstractmethod
    async def delete_file(self, file_id: str) -> None:
        ...

    @abstractmethod
    async def storage_quota(self) -> dict[str, int]:
        ...

    async def close(self) -> None:
        """Release transport resources."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()


# ---------------------------------------------------------------------------
# Drive REST client
# ---------------------------------------------------------------------------

class DriveClient(BlobStoreClient):
    """Drive-v3-shaped REST client.

    Args:
        token: Bearer token, or a callable (sync or async) returning it.
            The token is opaque here; refresh belongs to the caller.
        config: Endpoints, page size and request timeout.
        session: Optional shared aiohttp session (not closed by us).
    """

    def __init__(
        self,
        token: TokenProvider,
        config: Optional[VaultConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._token = token
        self._config = config or VaultConfig()
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._config.request_timeout),
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _auth_headers(self) -> dict[str, str]:
        token = self._token
        if callable(token):
            token = token()
            if inspect.isawaitable(token):
                token = await token
        if not token:
            raise RemoteUnavailableError(
                "No access token available, sign in again", reason="auth",
            )
        return {"Authorization": f"Bearer {token}"}

    async def _raise_for_status(
        self, response: aiohttp.ClientResponse, object_id: Optional[str],
    ) -> None:
        message = f"Object store error: {response.status} {response.reason}"
        reason = None
        try:
            body = orjson.loads(await response.read())
            error = body.get("error", {}) if isinstance(body, dict) else {}
            message = error.get("message") or message
            errors = error.get("errors") or []
            if errors:
                reason = errors[0].get("reason")
        except (orjson.JSONDecodeError, AttributeError):
            pass  # non-JSON error body, keep the status line
        logger.debug(
            "Object store responded %s (reason=%s) for object=%s",
            response.status, reason, object_id,
        )
        raise error_from_status(response.status, message, reason, object_id)

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[dict[str, str]] = None,
        data: Any = None,
        headers: Optional[dict[str, str]] = None,
        expect: str = "json",
        object_id: Optional[str] = None,
    ) -> Any:
        session = await self._get_session()
        request_headers = await self._auth_headers()
        if headers:
            request_headers.update(headers)
        try:
            async with session.request(
                method, url, params=params, data=data, headers=request_headers,
            ) as response:
                if response.status >= 400:
                    await self._raise_for_status(response, object_id)
                if expect == "json":
                    return self._decode_json(await response.read(), response.status)
                if expect == "bytes":
                    return await response.read()
                return None
        except (aiohttp.ClientError, asyncio.TimeoutError) as err:
            raise RemoteUnavailableError(
                f"Object store unreachable: {err.__class__.__name__}",
                retryable=True,
                reason="network",
            ) from err

    @staticmethod
    def _decode_json(body: bytes, status: int) -> Any:
        try:
            return orjson.loads(body)
        except orjson.JSONDecodeError as err:
            # proxies and captive portals answer 2xx with HTML
            raise RemoteUnavailableError(
                "Object store returned a non-JSON response",
                status=status,
                retryable=True,
                reason="server",
            ) from err

    def _file_url(self, file_id: str, upload: bool = False) -> str:
        base = self._config.upload_base if upload else self._config.api_base
        return f"{base}/files/{quote(file_id, safe='')}"

    @staticmethod
    def _multipart(metadata: dict[str, Any], content: bytes, mime_type: str) -> aiohttp.MultipartWriter:
        writer = aiohttp.MultipartWriter("related")
        writer.append(
            orjson.dumps(metadata), {"Content-Type": "application/json; charset=UTF-8"},
        )
        writer.append(content, {"Content-Type": mime_type})
        return writer

    async def create_folder(self, name: str, parent: Optional[str] = None) -> RemoteFile:
        metadata: dict[str, Any] = {"name": name, "mimeType": FOLDER_MIME_TYPE}
        if parent:
            metadata["parents"] = [parent]
        data = await self._request(
            "POST",
            f"{self._config.api_base}/files",
            params={"fields": FILE_FIELDS},
            data=orjson.dumps(metadata),
            headers={"Content-Type": JSON_MIME_TYPE},
            object_id=parent,
        )
        return RemoteFile.from_api(data)

    async def create_file(
        self,
        name: str,
        content: bytes,
        mime_type: str,
        parent: Optional[str] = None,
        description: Optional[str] = None,
    ) -> RemoteFile:
        metadata: dict[str, Any] = {"name": name, "mimeType": mime_type}
        if parent:
            metadata["parents"] = [parent]
        if description:
            metadata["description"] = description
        data = await self._request(
            "POST",
            f"{self._config.upload_base}/files",
            params={"uploadType": "multipart", "fields": FILE_FIELDS},
            data=self._multipart(metadata, content, mime_type),
            object_id=parent,
        )
        return RemoteFile.from_api(data)

    async def update_file(
        self,
        file_id: str,
        content: bytes,
        mime_type: Optional[str] = None,
        name: Optional[str] = None,
    ) -> RemoteFile:
        url = self._file_url(file_id, upload=True)
        if name or mime_type:
            metadata = {
                key: value
                for key, value in (("name", name), ("mimeType", mime_type))
                if value
            }
            data = await self._request(
                "PATCH",
                url,
                params={"uploadType": "multipart", "fields": FILE_FIELDS},
                data=self._multipart(metadata, content, mime_type or BINARY_MIME_TYPE),
                object_id=file_id,
            )
        else:
            data = await self._request(
                "PATCH",
                url,
                params={"uploadType": "media", "fields": FILE_FIELDS},
                data=content,
                headers={"Content-Type": BINARY_MIME_TYPE},
                object_id=file_id,
            )
        return RemoteFile.from_api(data)

    async def download(self, file_id: str) -> bytes:
        return await self._request(
            "GET", self._file_url(file_id), params={"alt": "media"},
            expect="bytes", object_id=file_id,
        )

    async def get_file(self, file_id: str) -> RemoteFile:
        data = await self._request(
            "GET", self._file_url(file_id), params={"fields": FILE_FIELDS},
            object_id=file_id,
        )
        return RemoteFile.from_api(data)

    async def list_files(self, query: FileQuery) -> list[RemoteFile]:
        params = {
            "q": build_query(query),
            "pageSize": str(self._config.page_size),
            "fields": f"nextPageToken,files({FILE_FIELDS})",
            "orderBy": "modifiedTime desc",
        }
        files: list[RemoteFile] = []
        while True:
            data = await self._request(
                "GET", f"{self._config.api_base}/files", params=params,
                object_id=query.parent,
            )
            files.extend(RemoteFile.from_api(item) for item in data.get("files") or [])
            page_token = data.get("nextPageToken")
            if not page_token:
                return files
            params["pageToken"] = page_token

    async def delete_file(self, file_id: str) -> None:
        await self._request(
            "DELETE", self._file_url(file_id), expect="none", object_id=file_id,
        )

    async def storage_quota(self) -> dict[str, int]:
        data = await self._request(
            "GET", f"{self._config.api_base}/about", params={"fields": "storageQuota"},
        )
        quota = data.get("storageQuota") or {}
        return {
            "usage": int(quota.get("usage") or 0),
            "limit": int(quota.get("limit") or 0),
            "usage_in_drive": int(quota.get("usageInDrive") or 0),
            "usage_in_trash": int(quota.get("usageInDriveTrash") or 0),
        }


# ---------------------------------------------------------------------------
# In-memory client
# ---------------------------------------------------------------------------

@dataclass
class _StoredObject:
    meta: RemoteFile
    content: bytes = b""
    trashed: bool = False


def _now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _copy(meta: RemoteFile) -> RemoteFile:
    return replace(meta, parents=list(meta.parents))


class MemoryBlobClient(BlobStoreClient):
    """In-process object store with the same contract as the remote one.

    ``calls`` counts invocations per method name.
    """

    def __init__(self) -> None:
        self._objects: dict[str, _StoredObject] = {}
        self._ids = itertools.count(1)
        self.calls: Counter = Counter()

    def _live(self, file_id: str) -> _StoredObject:
        obj = self._objects.get(file_id)
        if obj is None or obj.trashed:
            raise NotFoundError(f"File or folder not found: {file_id}", object_id=file_id)
        return obj

    def _insert(
        self, name: str, mime_type: str, content: bytes, parent: Optional[str],
    ) -> RemoteFile:
        if parent is not None:
            self._live(parent)
        file_id = f"mem-{next(self._ids):06d}"
        meta = RemoteFile(
            id=file_id,
            name=name,
            mime_type=mime_type,
            modified_time=_now_iso(),
            size=len(content),
            parents=[parent] if parent else [],
        )
        self._objects[file_id] = _StoredObject(meta=meta, content=content)
        return _copy(meta)

    def trash(self, file_id: str) -> None:
        """Move an object to the trash; it disappears from listings."""
        self._live(file_id).trashed = True

    def purge(self, file_id: str) -> None:
        """Remove an object behind the vault's back (tests, remote deletes)."""
        self._objects.pop(file_id, None)

    async def create_folder(self, name: str, parent: Optional[str] = None) -> RemoteFile:
        self.calls["create_folder"] += 1
        await asyncio.sleep(0)
        return self._insert(name, FOLDER_MIME_TYPE, b"", parent)

    async def create_file(
        self,
        name: str,
        content: bytes,
        mime_type: str,
        parent: Optional[str] = None,
        description: Optional[str] = None,
    ) -> RemoteFile:
        self.calls["create_file"] += 1
        await asyncio.sleep(0)
        return self._insert(name, mime_type, bytes(content), parent)

    async def update_file(
        self,
        file_id: str,
        content: bytes,
        mime_type: Optional[str] = None,
        name: Optional[str] = None,
    ) -> RemoteFile:
        self.calls["update_file"] += 1
        await asyncio.sleep(0)
        obj = self._live(file_id)
        obj.content = bytes(content)
        obj.meta.size = len(obj.content)
        obj.meta.modified_time = _now_iso()
        if mime_type:
            obj.meta.mime_type = mime_type
        if name:
            obj.meta.name = name
        return _copy(obj.meta)

    async def download(self, file_id: str) -> bytes:
        self.calls["download"] += 1
        await asyncio.sleep(0)
        return self._live(file_id).content

    async def get_file(self, file_id: str) -> RemoteFile:
        self.calls["get_file"] += 1
        return _copy(self._live(file_id).meta)

    @staticmethod
    def _matches(obj: _StoredObject, query: FileQuery) -> bool:
        meta = obj.meta
        if obj.trashed:
            return False
        if query.name is not None and meta.name != query.name:
            return False
        if query.name_contains and query.name_contains not in meta.name:
            return False
        if query.text and query.text not in meta.name and query.text.encode("utf-8") not in obj.content:
            return False
        if query.parent and query.parent not in meta.parents:
            return False
        if query.folders_only and not meta.is_folder:
            return False
        if query.mime_type and not query.folders_only and meta.mime_type != query.mime_type:
            return False
        return True

    async def list_files(self, query: FileQuery) -> list[RemoteFile]:
        self.calls["list_files"] += 1
        await asyncio.sleep(0)
        return [
            _copy(obj.meta)
            for obj in self._objects.values()
            if self._matches(obj, query)
        ]

    async def delete_file(self, file_id: str) -> None:
        self.calls["delete_file"] += 1
        await asyncio.sleep(0)
        self._live(file_id)
        del self._objects[file_id]

    async def storage_quota(self) -> dict[str, int]:
        usage = sum(len(obj.content) for obj in self._objects.values())
        trash = sum(len(obj.content) for obj in self._objects.values() if obj.trashed)
        return {"usage": usage, "limit": 0, "usage_in_drive": usage, "usage_in_trash": trash}

    def names(self, parent: Optional[str] = None) -> list[str]:
        """Names of live objects, optionally under ``parent``."""
        return [
            obj.meta.name for obj in self._objects.values()
            if not obj.trashed and (parent is None or parent in obj.meta.parents)
        ]
