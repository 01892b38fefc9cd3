"""polystore WebDAV storage backend.

Objects map to resources under a base collection URL. Keys containing "/"
map to nested collections, created on demand with MKCOL.

Uploads go to a temporary resource in the target collection and are
published with MOVE, so a failed or oversized upload never replaces the
visible object. The SHA-256 and custom metadata are kept as dead properties
in the ``urn:polystore:props`` namespace and travel with MOVE and COPY.

Capacity comes from the RFC 4331 quota properties of the base collection.
"""

from __future__ import annotations

import io
import json
import logging
import threading
import uuid
import xml.etree.ElementTree as ET
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import BinaryIO, Final
from urllib.parse import quote, unquote, urlsplit

import httpx

from polystore.storage.backend import DEFAULT_MAX_FILE_SIZE, StorageBackend
from polystore.storage.checksum import HashingReader, Readable, hash_stream
from polystore.storage.classify import classified_stream, storage_boundary
from polystore.storage.errors import StorageError, StorageErrorKind
from polystore.storage.models import (
    UNBOUNDED_SPACE,
    StorageObjectMetadata,
    StorageOperationResult,
    StorageStats,
    StorageType,
)
from polystore.storage.tracing import traced_storage_operation

logger = logging.getLogger(__name__)

DAV_NS: Final[str] = "DAV:"
PROPS_NS: Final[str] = "urn:polystore:props"
UPLOAD_PREFIX: Final[str] = ".polystore-upload-"

ET.register_namespace("D", DAV_NS)
ET.register_namespace("P", PROPS_NS)


def _dav(name: str) -> str:
    return f"{{{DAV_NS}}}{name}"


def _prop(name: str) -> str:
    return f"{{{PROPS_NS}}}{name}"


_METADATA_PROPS: Final[tuple[str, ...]] = (
    _dav("getcontentlength"),
    _dav("getcontenttype"),
    _dav("getlastmodified"),
    _dav("creationdate"),
    _dav("resourcetype"),
    _prop("sha256"),
    _prop("custom-metadata"),
)
_LISTING_PROPS: Final[tuple[str, ...]] = (_dav("resourcetype"), _dav("getcontentlength"))
_QUOTA_PROPS: Final[tuple[str, ...]] = (
    _dav("quota-available-bytes"),
    _dav("quota-used-bytes"),
)


@dataclass
class DavResource:
    """One <D:response> of a multistatus body, with its 200-status properties."""

    href: str
    props: dict[str, ET.Element] = field(default_factory=dict)

    def text(self, tag: str) -> str | None:
        elem = self.props.get(tag)
        if elem is None or elem.text is None:
            return None
        return elem.text.strip()

    @property
    def is_collection(self) -> bool:
        elem = self.props.get(_dav("resourcetype"))
        return elem is not None and elem.find(_dav("collection")) is not None


def build_propfind(props: tuple[str, ...]) -> bytes:
    """Serialize a PROPFIND request body asking for the given properties."""
    root = ET.Element(_dav("propfind"))
    prop = ET.SubElement(root, _dav("prop"))
    for tag in props:
        ET.SubElement(prop, tag)
    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


def build_proppatch(values: Mapping[str, str]) -> bytes:
    """Serialize a PROPPATCH body setting properties in the polystore namespace."""
    root = ET.Element(_dav("propertyupdate"))
    prop = ET.SubElement(ET.SubElement(root, _dav("set")), _dav("prop"))
    for name, value in values.items():
        ET.SubElement(prop, _prop(name)).text = value
    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


def parse_multistatus(content: bytes) -> list[DavResource]:
    """Parse a 207 Multi-Status body.

    Raises:
        StorageError: IO_ERROR if the body is not valid XML.
    """
    try:
        root = ET.fromstring(content)
    except ET.ParseError as e:
        raise StorageError(
            StorageErrorKind.IO_ERROR,
            f"Malformed multistatus response: {e}",
            cause=e,
        ) from e

    resources: list[DavResource] = []
    for response in root.findall(_dav("response")):
        href = response.findtext(_dav("href"), default="").strip()
        resource = DavResource(href=href)
        for propstat in response.findall(_dav("propstat")):
            status = propstat.findtext(_dav("status"), default="")
            if " 200 " not in f"{status} ":
                continue
            prop = propstat.find(_dav("prop"))
            if prop is None:
                continue
            for elem in prop:
                resource.props[elem.tag] = elem
        resources.append(resource)
    return resources


def failed_propstats(content: bytes) -> list[str]:
    """Return the non-2xx propstat status lines of a PROPPATCH response."""
    try:
        root = ET.fromstring(content)
    except ET.ParseError as e:
        raise StorageError(
            StorageErrorKind.IO_ERROR,
            f"Malformed multistatus response: {e}",
            cause=e,
        ) from e
    failures: list[str] = []
    for status in root.iter(_dav("status")):
        parts = (status.text or "").split()
        if len(parts) >= 2 and not parts[1].startswith("2"):
            failures.append(status.text or "")
    return failures


def _parse_http_date(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        return parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None


def _parse_iso_date(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        return None


def _href_path(href: str) -> str:
    return unquote(urlsplit(href).path).rstrip("/")


class _ResponseStream(io.RawIOBase):
    """Raw stream over the body of a streamed httpx response."""

    def __init__(self, response: httpx.Response) -> None:
        self._response = response
        self._chunks: Iterator[bytes] = response.iter_bytes()
        self._pending = b""

    def readable(self) -> bool:
        return True

    def readinto(self, buffer: bytearray | memoryview) -> int:  # type: ignore[override]
        while not self._pending:
            chunk = next(self._chunks, None)
            if chunk is None:
                return 0
            self._pending = chunk
        n = min(len(buffer), len(self._pending))
        buffer[:n] = self._pending[:n]
        self._pending = self._pending[n:]
        return n

    def close(self) -> None:
        if not self.closed:
            self._response.close()
        super().close()


class WebDAVStore(StorageBackend):
    """WebDAV-based storage.

    Args:
        base_url: URL of the collection holding the objects.
        username: Basic auth user (no auth when empty).
        password: Basic auth password.
        verify_tls: Verify the server certificate.
        connect_timeout: Connect timeout in seconds.
        read_timeout: Read/write timeout in seconds.
        max_file_size: Largest object accepted by store, in bytes.
        client: Optional httpx.Client for dependency injection (testing).
    """

    def __init__(
        self,
        base_url: str,
        *,
        username: str | None = None,
        password: str | None = None,
        verify_tls: bool = True,
        connect_timeout: float = 10.0,
        read_timeout: float = 60.0,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        client: httpx.Client | None = None,
    ) -> None:
        super().__init__(max_file_size=max_file_size)
        if not base_url:
            raise StorageError(
                StorageErrorKind.CONFIGURATION_ERROR,
                "WebDAV base URL is required",
                backend=self.backend_name,
            )
        self._base_url = httpx.URL(base_url if base_url.endswith("/") else f"{base_url}/")
        self._owns_client = client is None
        if client is None:
            client = httpx.Client(
                timeout=httpx.Timeout(read_timeout, connect=connect_timeout),
                auth=(username, password or "") if username else None,
                verify=verify_tls,
            )
        self._client = client
        self._known_collections: set[str] = set()
        self._collections_lock = threading.Lock()
        logger.info(
            "webdav storage initialized: host=%s path=%s",
            self._base_url.host,
            self._base_url.path,
        )

    @property
    def storage_type(self) -> StorageType:
        return StorageType.WEBDAV

    @property
    def backend_name(self) -> str:
        return "webdav"

    @property
    def is_external(self) -> bool:
        return True

    def _url(self, path: str) -> httpx.URL:
        return self._base_url.join(quote(path.lstrip("/"), safe="/"))

    def _temp_path(self, key: str) -> str:
        parent, _, _ = key.lstrip("/").rpartition("/")
        name = f"{UPLOAD_PREFIX}{uuid.uuid4().hex}.tmp"
        return f"{parent}/{name}" if parent else name

    @staticmethod
    def _check(response: httpx.Response) -> httpx.Response:
        response.raise_for_status()
        return response

    def _ensure_collections(self, key: str) -> None:
        """MKCOL every missing parent collection of key, top-down."""
        segments = key.lstrip("/").split("/")[:-1]
        path = ""
        for segment in segments:
            path = f"{path}{segment}/"
            with self._collections_lock:
                if path in self._known_collections:
                    continue
            response = self._client.request("MKCOL", self._url(path))
            # 405: the collection already exists.
            if response.status_code not in (201, 405):
                self._check(response)
            with self._collections_lock:
                self._known_collections.add(path)

    def _propfind(
        self, path: str, props: tuple[str, ...], depth: str = "0"
    ) -> list[DavResource] | None:
        response = self._client.request(
            "PROPFIND",
            self._url(path),
            content=build_propfind(props),
            headers={"Depth": depth, "Content-Type": "application/xml; charset=utf-8"},
        )
        if response.status_code == 404:
            return None
        self._check(response)
        return parse_multistatus(response.content)

    def _proppatch(self, path: str, values: Mapping[str, str]) -> None:
        response = self._check(
            self._client.request(
                "PROPPATCH",
                self._url(path),
                content=build_proppatch(values),
                headers={"Content-Type": "application/xml; charset=utf-8"},
            )
        )
        if response.status_code == 207:
            failures = failed_propstats(response.content)
            if failures:
                raise StorageError(
                    StorageErrorKind.IO_ERROR,
                    f"Server rejected metadata properties: {'; '.join(failures)}",
                    backend=self.backend_name,
                )

    def _delete_quietly(self, path: str) -> None:
        try:
            self._client.request("DELETE", self._url(path))
        except httpx.HTTPError as e:
            logger.warning("Failed to remove temporary upload: backend=webdav error=%s", e)

    def _hash_remote(self, path: str) -> tuple[int, str]:
        with self._client.stream("GET", self._url(path)) as response:
            self._check(response)
            return hash_stream(io.BufferedReader(_ResponseStream(response)))

    @traced_storage_operation("store")
    @storage_boundary("store")
    def store(
        self,
        key: str,
        stream: Readable,
        length: int | None,
        content_type: str | None,
        *,
        custom_metadata: Mapping[str, str] | None = None,
        overwrite: bool = True,
    ) -> StorageOperationResult:
        """Upload to a temporary resource, tag it, and MOVE it into place."""
        self.validate_key(key)
        self.check_declared_size(key, length)
        self._ensure_collections(key)

        temp_path = self._temp_path(key)
        reader = HashingReader(stream, max_bytes=self.max_file_size, key=key)
        headers = {"Content-Type": content_type or "application/octet-stream"}
        try:
            self._check(
                self._client.put(
                    self._url(temp_path), content=reader.iter_chunks(), headers=headers
                )
            )
            self._proppatch(
                temp_path,
                {
                    "sha256": reader.hexdigest(),
                    "custom-metadata": json.dumps(dict(custom_metadata or {}), sort_keys=True),
                },
            )
            self._check(
                self._client.request(
                    "MOVE",
                    self._url(temp_path),
                    headers={
                        "Destination": str(self._url(key)),
                        # F makes the server answer 412 if the key exists.
                        "Overwrite": "T" if overwrite else "F",
                    },
                )
            )
        except Exception:
            self._delete_quietly(temp_path)
            raise

        logger.debug(
            "Stored object: backend=webdav size=%d sha256=%s", reader.bytes_read, reader.hexdigest()
        )
        return StorageOperationResult(
            key=key,
            size=reader.bytes_read,
            checksum=reader.hexdigest(),
            content_type=content_type,
            stored_at=datetime.now(UTC),
            storage_path=str(self._url(key)),
        )

    @traced_storage_operation("retrieve")
    @storage_boundary("retrieve")
    def retrieve(self, key: str) -> BinaryIO | None:
        """Stream an object; the caller closes the returned stream."""
        self.validate_key(key)
        request = self._client.build_request("GET", self._url(key))
        response = self._client.send(request, stream=True)
        if response.status_code == 404:
            response.close()
            return None
        try:
            self._check(response)
        except httpx.HTTPStatusError:
            response.close()
            raise
        return classified_stream(_ResponseStream(response), key=key, backend=self.backend_name)

    @traced_storage_operation("delete")
    @storage_boundary("delete")
    def delete(self, key: str) -> bool:
        self.validate_key(key)
        response = self._client.request("DELETE", self._url(key))
        if response.status_code == 404:
            return False
        self._check(response)
        return True

    @traced_storage_operation("exists")
    @storage_boundary("exists")
    def exists(self, key: str) -> bool:
        self.validate_key(key)
        resources = self._propfind(key, (_dav("resourcetype"),))
        return bool(resources) and not resources[0].is_collection

    @traced_storage_operation("get_metadata")
    @storage_boundary("get_metadata")
    def get_metadata(self, key: str) -> StorageObjectMetadata | None:
        """Read live and polystore properties with a depth-0 PROPFIND."""
        self.validate_key(key)
        resources = self._propfind(key, _METADATA_PROPS)
        if not resources or resources[0].is_collection:
            return None
        resource = resources[0]

        last_modified = (
            _parse_http_date(resource.text(_dav("getlastmodified"))) or datetime.now(UTC)
        )
        created_at = _parse_iso_date(resource.text(_dav("creationdate"))) or last_modified
        custom_raw = resource.text(_prop("custom-metadata"))
        custom: dict[str, str] = {}
        if custom_raw:
            try:
                custom = {str(k): str(v) for k, v in json.loads(custom_raw).items()}
            except (json.JSONDecodeError, AttributeError) as e:
                logger.warning("Unreadable custom metadata property: backend=webdav error=%s", e)

        return StorageObjectMetadata(
            key=key,
            size=int(resource.text(_dav("getcontentlength")) or 0),
            content_type=resource.text(_dav("getcontenttype")),
            checksum=resource.text(_prop("sha256")),
            created_at=created_at,
            last_modified=last_modified,
            storage_path=str(self._url(key)),
            storage_type=self.storage_type,
            custom_metadata=custom,
        )

    def _copy_object(
        self,
        source: str,
        target: str,
        source_meta: StorageObjectMetadata,
    ) -> StorageOperationResult:
        """Server-side COPY, then re-hash the destination."""
        self._ensure_collections(target)
        self._check(
            self._client.request(
                "COPY",
                self._url(source),
                headers={"Destination": str(self._url(target)), "Overwrite": "T", "Depth": "0"},
            )
        )
        size, checksum = self._hash_remote(target)
        return StorageOperationResult(
            key=target,
            size=size,
            checksum=checksum,
            content_type=source_meta.content_type,
            stored_at=datetime.now(UTC),
            storage_path=str(self._url(target)),
        )

    def _count_objects(self, path: str) -> int:
        """Count non-collection resources below path with depth-1 PROPFINDs."""
        count = 0
        pending = [path]
        while pending:
            current = pending.pop()
            resources = self._propfind(current, _LISTING_PROPS, depth="1") or []
            own_path = _href_path(str(self._url(current)))
            for resource in resources:
                resource_path = _href_path(resource.href)
                if resource_path == own_path:
                    continue
                name = resource_path.rsplit("/", 1)[-1]
                if resource.is_collection:
                    base_path = _href_path(str(self._base_url))
                    pending.append(resource_path[len(base_path) :].lstrip("/") + "/")
                elif not name.startswith(UPLOAD_PREFIX):
                    count += 1
        return count

    @traced_storage_operation("get_stats")
    def get_stats(self) -> StorageStats:
        """Quota of the base collection and the number of stored objects."""
        try:
            resources = self._propfind("", _QUOTA_PROPS) or []
            file_count = self._count_objects("")
        except (httpx.HTTPError, StorageError) as e:
            logger.error("Failed to collect stats: backend=webdav error=%s", e)
            return StorageStats(
                storage_type=self.storage_type,
                total_space=UNBOUNDED_SPACE,
                available_space=UNBOUNDED_SPACE,
                healthy=False,
                health_message=str(e),
            )

        available_raw = resources[0].text(_dav("quota-available-bytes")) if resources else None
        used_raw = resources[0].text(_dav("quota-used-bytes")) if resources else None
        used = int(used_raw) if used_raw else 0
        if available_raw:
            available = int(available_raw)
            total = used + available
        else:
            available = UNBOUNDED_SPACE
            total = UNBOUNDED_SPACE

        return StorageStats(
            storage_type=self.storage_type,
            total_space=total,
            used_space=used,
            available_space=available,
            file_count=file_count,
            healthy=True,
            health_message="OK",
        )

    def close(self) -> None:
        """Close the HTTP client if this store created it."""
        if self._owns_client:
            self._client.close()
