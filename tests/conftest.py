"""Pytest configuration and fixtures for polystore tests.

This module provides common fixtures and configuration for all tests, plus
in-process fakes for the network backends:

- FakeS3Client: the subset of the boto3 S3 client used by S3Store, raising
  real botocore ClientErrors
- FakeDavServer: an httpx.MockTransport handler implementing the WebDAV
  methods used by WebDAVStore
"""

from __future__ import annotations

import io
import os
import xml.etree.ElementTree as ET
from collections.abc import Iterator
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from email.utils import format_datetime
from pathlib import Path
from typing import Any
from urllib.parse import quote, unquote, urlsplit

import httpx
import pytest
from botocore.exceptions import ClientError

from polystore.storage.filesystem_store import LocalFilesystemStore
from polystore.storage.memory_store import InMemoryStore
from polystore.storage.s3_store import S3Store
from polystore.storage.webdav_store import WebDAVStore

POLYSTORE_ENV_PREFIX = "POLYSTORE_"
TEST_MAX_FILE_SIZE = 64 * 1024
TEST_BUCKET = "polystore-test"
DAV_ROOT = "/dav"
DAV_BASE_URL = f"http://dav.example.test{DAV_ROOT}"


@pytest.fixture(autouse=True)
def clean_polystore_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove POLYSTORE_* variables so host configuration never leaks into tests."""
    for name in list(os.environ):
        if name.startswith(POLYSTORE_ENV_PREFIX):
            monkeypatch.delenv(name, raising=False)


# ---------------------------------------------------------------------------
# S3


def s3_client_error(code: str, status: int, operation: str) -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


@dataclass
class _S3Object:
    data: bytes
    metadata: dict[str, str]
    content_type: str
    last_modified: datetime = field(default_factory=lambda: datetime.now(UTC))


class _FakePaginator:
    def __init__(self, client: FakeS3Client) -> None:
        self._client = client

    def paginate(self, Bucket: str, Prefix: str = "") -> Iterator[dict[str, Any]]:
        self._client._record("list_objects_v2")
        bucket = self._client._bucket(Bucket, "ListObjectsV2")
        contents = [
            {"Key": key, "Size": len(obj.data)}
            for key, obj in sorted(bucket.items())
            if key.startswith(Prefix)
        ]
        # Two pages to exercise pagination.
        middle = len(contents) // 2
        yield {"Contents": contents[:middle]}
        yield {"Contents": contents[middle:]}


class FakeS3Client:
    """In-memory stand-in for the boto3 S3 client.

    Attributes:
        buckets: Bucket name -> key -> object.
        calls: Names of the client methods called, in order.
        fail_on: Method name -> exception raised on the next calls of it.
        corrupt_copies: Append a byte to objects copied with MetadataDirective=COPY.
    """

    def __init__(self, buckets: tuple[str, ...] = (TEST_BUCKET,)) -> None:
        self.buckets: dict[str, dict[str, _S3Object]] = {name: {} for name in buckets}
        self.calls: list[str] = []
        self.fail_on: dict[str, Exception] = {}
        self.corrupt_copies = False
        self.created_buckets: list[dict[str, Any]] = []
        self.closed = False

    def _record(self, method: str) -> None:
        self.calls.append(method)
        exc = self.fail_on.get(method)
        if exc is not None:
            raise exc

    def _bucket(self, name: str, operation: str) -> dict[str, _S3Object]:
        if name not in self.buckets:
            raise s3_client_error("NoSuchBucket", 404, operation)
        return self.buckets[name]

    def head_bucket(self, Bucket: str) -> dict[str, Any]:
        self._record("head_bucket")
        if Bucket not in self.buckets:
            raise s3_client_error("404", 404, "HeadBucket")
        return {}

    def create_bucket(self, **kwargs: Any) -> dict[str, Any]:
        self._record("create_bucket")
        self.created_buckets.append(kwargs)
        self.buckets.setdefault(kwargs["Bucket"], {})
        return {}

    def upload_fileobj(
        self, Fileobj: Any, Bucket: str, Key: str, ExtraArgs: dict[str, Any] | None = None
    ) -> None:
        self._record("upload_fileobj")
        bucket = self._bucket(Bucket, "PutObject")
        extra = ExtraArgs or {}
        chunks = []
        while True:
            chunk = Fileobj.read(8192)
            if not chunk:
                break
            chunks.append(chunk)
        bucket[Key] = _S3Object(
            data=b"".join(chunks),
            metadata=dict(extra.get("Metadata") or {}),
            content_type=extra.get("ContentType", "binary/octet-stream"),
        )

    def copy_object(
        self,
        Bucket: str,
        Key: str,
        CopySource: dict[str, str],
        MetadataDirective: str = "COPY",
        Metadata: dict[str, str] | None = None,
        ContentType: str | None = None,
    ) -> dict[str, Any]:
        self._record("copy_object")
        source = self._bucket(CopySource["Bucket"], "CopyObject").get(CopySource["Key"])
        if source is None:
            raise s3_client_error("NoSuchKey", 404, "CopyObject")
        if MetadataDirective == "REPLACE":
            copied = replace(
                source,
                metadata=dict(Metadata or {}),
                content_type=ContentType or source.content_type,
                last_modified=datetime.now(UTC),
            )
        else:
            data = source.data + b"!" if self.corrupt_copies else source.data
            copied = replace(
                source, data=data, metadata=dict(source.metadata), last_modified=datetime.now(UTC)
            )
        self._bucket(Bucket, "CopyObject")[Key] = copied
        return {}

    def head_object(self, Bucket: str, Key: str) -> dict[str, Any]:
        self._record("head_object")
        obj = self._bucket(Bucket, "HeadObject").get(Key)
        if obj is None:
            raise s3_client_error("404", 404, "HeadObject")
        return {
            "ContentLength": len(obj.data),
            "ContentType": obj.content_type,
            "Metadata": dict(obj.metadata),
            "LastModified": obj.last_modified,
        }

    def get_object(self, Bucket: str, Key: str) -> dict[str, Any]:
        self._record("get_object")
        obj = self._bucket(Bucket, "GetObject").get(Key)
        if obj is None:
            raise s3_client_error("NoSuchKey", 404, "GetObject")
        return {"Body": io.BytesIO(obj.data), "ContentLength": len(obj.data)}

    def delete_object(self, Bucket: str, Key: str) -> dict[str, Any]:
        self._record("delete_object")
        self._bucket(Bucket, "DeleteObject").pop(Key, None)
        return {}

    def get_paginator(self, operation_name: str) -> _FakePaginator:
        assert operation_name == "list_objects_v2"
        return _FakePaginator(self)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def s3_client() -> FakeS3Client:
    """Return an empty fake S3 client with the test bucket."""
    return FakeS3Client()


@pytest.fixture
def s3_store(s3_client: FakeS3Client) -> S3Store:
    """Return an S3Store over the fake client."""
    return S3Store(TEST_BUCKET, client=s3_client, max_file_size=TEST_MAX_FILE_SIZE)


# ---------------------------------------------------------------------------
# WebDAV

DAV = "DAV:"


def _dav(name: str) -> str:
    return f"{{{DAV}}}{name}"


@dataclass
class _DavFile:
    data: bytes
    content_type: str
    dead_props: dict[str, str] = field(default_factory=dict)
    created: datetime = field(default_factory=lambda: datetime.now(UTC))
    modified: datetime = field(default_factory=lambda: datetime.now(UTC))


class FakeDavServer:
    """Minimal class-1 WebDAV server with dead properties, for httpx.MockTransport.

    Attributes:
        collections: Paths of existing collections (no trailing slash).
        files: Path -> resource.
        requests: (method, path) of every request received.
        fail: Method -> status code returned instead of handling it.
        quota_available: Value of DAV:quota-available-bytes, or None if unsupported.
        corrupt_copies: Append a byte to resources created by COPY.
    """

    def __init__(self, quota_available: int | None = None) -> None:
        self.collections: set[str] = {DAV_ROOT}
        self.files: dict[str, _DavFile] = {}
        self.requests: list[tuple[str, str]] = []
        self.fail: dict[str, int] = {}
        self.quota_available = quota_available
        self.corrupt_copies = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.rstrip("/") or "/"
        self.requests.append((request.method, path))
        if request.method in self.fail:
            return httpx.Response(self.fail[request.method])
        handler = getattr(self, f"_handle_{request.method.lower()}", None)
        if handler is None:
            return httpx.Response(405)
        return handler(request, path)

    @staticmethod
    def _parent(path: str) -> str:
        return path.rsplit("/", 1)[0]

    def _destination(self, request: httpx.Request) -> str:
        return unquote(urlsplit(request.headers["Destination"]).path).rstrip("/")

    def _handle_mkcol(self, request: httpx.Request, path: str) -> httpx.Response:
        if path in self.collections or path in self.files:
            return httpx.Response(405)
        if self._parent(path) not in self.collections:
            return httpx.Response(409)
        self.collections.add(path)
        return httpx.Response(201)

    def _handle_put(self, request: httpx.Request, path: str) -> httpx.Response:
        if self._parent(path) not in self.collections:
            return httpx.Response(409)
        if path in self.collections:
            return httpx.Response(405)
        existed = path in self.files
        self.files[path] = _DavFile(
            data=request.read(),
            content_type=request.headers.get("Content-Type", "application/octet-stream"),
        )
        return httpx.Response(204 if existed else 201)

    def _handle_get(self, request: httpx.Request, path: str) -> httpx.Response:
        resource = self.files.get(path)
        if resource is None:
            return httpx.Response(404)
        return httpx.Response(
            200, content=resource.data, headers={"Content-Type": resource.content_type}
        )

    def _handle_delete(self, request: httpx.Request, path: str) -> httpx.Response:
        if self.files.pop(path, None) is not None:
            return httpx.Response(204)
        if path in self.collections and path != DAV_ROOT:
            prefix = f"{path}/"
            self.collections = {
                c for c in self.collections if c != path and not c.startswith(prefix)
            }
            self.files = {p: f for p, f in self.files.items() if not p.startswith(prefix)}
            return httpx.Response(204)
        return httpx.Response(404)

    def _handle_proppatch(self, request: httpx.Request, path: str) -> httpx.Response:
        resource = self.files.get(path)
        if resource is None:
            return httpx.Response(404)
        root = ET.fromstring(request.read())
        tags: list[str] = []
        for prop in root.iter(_dav("prop")):
            for elem in prop:
                resource.dead_props[elem.tag] = elem.text or ""
                tags.append(elem.tag)
        found = [ET.Element(tag) for tag in tags]
        body = self._multistatus([(path, [(found, "HTTP/1.1 200 OK")])])
        return httpx.Response(207, content=body)

    def _transfer(self, request: httpx.Request, path: str, *, move: bool) -> httpx.Response:
        source = self.files.get(path)
        if source is None:
            return httpx.Response(404)
        destination = self._destination(request)
        if self._parent(destination) not in self.collections:
            return httpx.Response(409)
        existed = destination in self.files
        if existed and request.headers.get("Overwrite", "T") == "F":
            return httpx.Response(412)
        data = source.data + b"!" if self.corrupt_copies and not move else source.data
        self.files[destination] = replace(
            source, data=data, dead_props=dict(source.dead_props), modified=datetime.now(UTC)
        )
        if move:
            del self.files[path]
        return httpx.Response(204 if existed else 201)

    def _handle_move(self, request: httpx.Request, path: str) -> httpx.Response:
        return self._transfer(request, path, move=True)

    def _handle_copy(self, request: httpx.Request, path: str) -> httpx.Response:
        return self._transfer(request, path, move=False)

    def _handle_propfind(self, request: httpx.Request, path: str) -> httpx.Response:
        body = request.read()
        requested = [elem.tag for prop in ET.fromstring(body).iter(_dav("prop")) for elem in prop]
        depth = request.headers.get("Depth", "1")

        if path in self.files:
            targets = [path]
        elif path in self.collections:
            targets = [path]
            if depth == "1":
                prefix = f"{path}/"
                children = [
                    p
                    for p in sorted(self.collections | set(self.files))
                    if p.startswith(prefix) and "/" not in p[len(prefix) :]
                ]
                targets.extend(children)
        else:
            return httpx.Response(404)

        responses = []
        for target in targets:
            values = self._properties(target)
            found = [values[tag] for tag in requested if tag in values]
            missing = [ET.Element(tag) for tag in requested if tag not in values]
            propstats = [(found, "HTTP/1.1 200 OK")]
            if missing:
                propstats.append((missing, "HTTP/1.1 404 Not Found"))
            responses.append((target, propstats))
        return httpx.Response(207, content=self._multistatus(responses))

    def _properties(self, path: str) -> dict[str, ET.Element]:
        values: dict[str, ET.Element] = {}

        def text(tag: str, value: str) -> None:
            elem = ET.Element(tag)
            elem.text = value
            values[tag] = elem

        resourcetype = ET.Element(_dav("resourcetype"))
        values[_dav("resourcetype")] = resourcetype
        if path in self.collections:
            ET.SubElement(resourcetype, _dav("collection"))
            if path == DAV_ROOT and self.quota_available is not None:
                used = sum(len(f.data) for f in self.files.values())
                text(_dav("quota-used-bytes"), str(used))
                text(_dav("quota-available-bytes"), str(self.quota_available))
            return values

        resource = self.files[path]
        text(_dav("getcontentlength"), str(len(resource.data)))
        text(_dav("getcontenttype"), resource.content_type)
        text(_dav("getlastmodified"), format_datetime(resource.modified, usegmt=True))
        text(_dav("creationdate"), resource.created.isoformat())
        for tag, value in resource.dead_props.items():
            text(tag, value)
        return values

    def _multistatus(
        self, responses: list[tuple[str, list[tuple[list[ET.Element], str]]]]
    ) -> bytes:
        root = ET.Element(_dav("multistatus"))
        for path, propstats in responses:
            response = ET.SubElement(root, _dav("response"))
            href = quote(path) + ("/" if path in self.collections else "")
            ET.SubElement(response, _dav("href")).text = href
            for elements, status in propstats:
                propstat = ET.SubElement(response, _dav("propstat"))
                prop = ET.SubElement(propstat, _dav("prop"))
                prop.extend(elements)
                ET.SubElement(propstat, _dav("status")).text = status
        return ET.tostring(root, encoding="utf-8", xml_declaration=True)


@pytest.fixture
def dav_server() -> FakeDavServer:
    """Return an empty fake WebDAV server."""
    return FakeDavServer()


@pytest.fixture
def dav_store(dav_server: FakeDavServer) -> Iterator[WebDAVStore]:
    """Return a WebDAVStore talking to the fake server through MockTransport."""
    client = httpx.Client(transport=httpx.MockTransport(dav_server))
    store = WebDAVStore(DAV_BASE_URL, client=client, max_file_size=TEST_MAX_FILE_SIZE)
    yield store
    client.close()


# ---------------------------------------------------------------------------
# Local and in-memory


@pytest.fixture
def local_store(tmp_path: Path) -> LocalFilesystemStore:
    """Return a LocalFilesystemStore rooted in a temp directory."""
    return LocalFilesystemStore(tmp_path / "objects", max_file_size=TEST_MAX_FILE_SIZE)


@pytest.fixture
def memory_store() -> InMemoryStore:
    """Return an InMemoryStore with a small size limit."""
    return InMemoryStore(max_file_size=TEST_MAX_FILE_SIZE, capacity_bytes=4 * TEST_MAX_FILE_SIZE)
