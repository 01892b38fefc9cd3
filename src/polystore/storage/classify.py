"""Classification of backend-native faults into StorageErrorKind.

Each backend wraps its public operations with ``storage_boundary`` so that
OSError, botocore and httpx exceptions are converted exactly once into a
StorageError before they reach a caller. Streams handed out by retrieve are
wrapped with ``classified_stream`` so faults raised mid-body are converted too.
"""

from __future__ import annotations

import errno
import functools
import io
import logging
import subprocess
from collections.abc import Callable
from typing import Any, BinaryIO, Final, TypeVar, cast

import httpx
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    HTTPClientError,
    NoCredentialsError,
    ParamValidationError,
    PartialCredentialsError,
)

from polystore.storage.errors import StorageError, StorageErrorKind

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

NETWORK_ERRNOS: Final[frozenset[int]] = frozenset(
    {
        errno.ETIMEDOUT,
        errno.EHOSTDOWN,
        errno.EHOSTUNREACH,
        errno.ENETUNREACH,
        errno.ENETDOWN,
        errno.ECONNREFUSED,
        errno.ECONNRESET,
        errno.ECONNABORTED,
        errno.ESTALE,
        errno.ENOTCONN,
    }
)

_S3_CODE_KINDS: Final[dict[str, StorageErrorKind]] = {
    "NoSuchKey": StorageErrorKind.NOT_FOUND,
    "NoSuchBucket": StorageErrorKind.NOT_FOUND,
    "NotFound": StorageErrorKind.NOT_FOUND,
    "404": StorageErrorKind.NOT_FOUND,
    "AccessDenied": StorageErrorKind.ACCESS_DENIED,
    "InvalidAccessKeyId": StorageErrorKind.ACCESS_DENIED,
    "SignatureDoesNotMatch": StorageErrorKind.ACCESS_DENIED,
    "AllAccessDisabled": StorageErrorKind.ACCESS_DENIED,
    "403": StorageErrorKind.ACCESS_DENIED,
    "EntityTooLarge": StorageErrorKind.SIZE_EXCEEDED,
    "BadDigest": StorageErrorKind.CHECKSUM_MISMATCH,
    "InvalidDigest": StorageErrorKind.CHECKSUM_MISMATCH,
    "PreconditionFailed": StorageErrorKind.ALREADY_EXISTS,
    "BucketAlreadyExists": StorageErrorKind.ALREADY_EXISTS,
    "InsufficientStorage": StorageErrorKind.INSUFFICIENT_STORAGE,
    "QuotaExceeded": StorageErrorKind.INSUFFICIENT_STORAGE,
    "RequestTimeout": StorageErrorKind.NETWORK_ERROR,
    "SlowDown": StorageErrorKind.NETWORK_ERROR,
    "ServiceUnavailable": StorageErrorKind.NETWORK_ERROR,
    "InternalError": StorageErrorKind.NETWORK_ERROR,
    "InvalidBucketName": StorageErrorKind.CONFIGURATION_ERROR,
}


def classify_os_error(exc: OSError) -> StorageErrorKind:
    """Map a filesystem error to its canonical kind."""
    if isinstance(exc, FileNotFoundError):
        return StorageErrorKind.NOT_FOUND
    if isinstance(exc, FileExistsError):
        return StorageErrorKind.ALREADY_EXISTS
    if isinstance(exc, PermissionError):
        return StorageErrorKind.ACCESS_DENIED
    if isinstance(exc, TimeoutError | ConnectionError):
        return StorageErrorKind.NETWORK_ERROR
    if exc.errno in (errno.ENOSPC, errno.EDQUOT):
        return StorageErrorKind.INSUFFICIENT_STORAGE
    if exc.errno == errno.EFBIG:
        return StorageErrorKind.SIZE_EXCEEDED
    if exc.errno in (errno.EACCES, errno.EPERM, errno.EROFS):
        return StorageErrorKind.ACCESS_DENIED
    if exc.errno in NETWORK_ERRNOS:
        return StorageErrorKind.NETWORK_ERROR
    return StorageErrorKind.IO_ERROR


def s3_error_code(exc: ClientError) -> str:
    """Return the S3 error code of a ClientError ("" when absent)."""
    return str(exc.response.get("Error", {}).get("Code", ""))


def s3_status_code(exc: ClientError) -> int:
    """Return the HTTP status of a ClientError (0 when absent)."""
    return int(exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0)


def is_s3_not_found(exc: ClientError) -> bool:
    """True when a ClientError means the key (or bucket) does not exist."""
    return s3_error_code(exc) in ("NoSuchKey", "NotFound", "404") or s3_status_code(exc) == 404


def classify_boto_error(exc: Exception) -> StorageErrorKind:
    """Map a boto3/botocore exception to its canonical kind."""
    if isinstance(exc, ClientError):
        kind = _S3_CODE_KINDS.get(s3_error_code(exc))
        if kind is not None:
            return kind
        return classify_http_status(s3_status_code(exc))
    if isinstance(exc, NoCredentialsError | PartialCredentialsError | ParamValidationError):
        return StorageErrorKind.CONFIGURATION_ERROR
    if isinstance(exc, BotoConnectionError | HTTPClientError):
        return StorageErrorKind.NETWORK_ERROR
    return StorageErrorKind.UNKNOWN


def classify_http_status(status_code: int) -> StorageErrorKind:
    """Map an HTTP status code returned by a storage server to its kind."""
    if status_code in (401, 403):
        return StorageErrorKind.ACCESS_DENIED
    if status_code in (404, 409, 410):
        return StorageErrorKind.NOT_FOUND
    if status_code == 412:
        return StorageErrorKind.ALREADY_EXISTS
    if status_code == 413:
        return StorageErrorKind.SIZE_EXCEEDED
    if status_code == 507:
        return StorageErrorKind.INSUFFICIENT_STORAGE
    if status_code == 408 or status_code >= 500:
        return StorageErrorKind.NETWORK_ERROR
    return StorageErrorKind.UNKNOWN


def classify_httpx_error(exc: httpx.HTTPError) -> StorageErrorKind:
    """Map an httpx exception to its canonical kind."""
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_http_status(exc.response.status_code)
    if isinstance(exc, httpx.TimeoutException | httpx.TransportError):
        return StorageErrorKind.NETWORK_ERROR
    return StorageErrorKind.UNKNOWN


def classify(exc: BaseException) -> StorageErrorKind:
    """Map any backend-native exception to its canonical kind."""
    if isinstance(exc, StorageError):
        return exc.kind
    if isinstance(exc, subprocess.TimeoutExpired):
        return StorageErrorKind.NETWORK_ERROR
    # botocore timeouts also subclass OSError through requests.
    if isinstance(exc, ClientError | BotoCoreError):
        return classify_boto_error(exc)
    if isinstance(exc, OSError):
        return classify_os_error(exc)
    if isinstance(exc, httpx.HTTPError):
        return classify_httpx_error(exc)
    return StorageErrorKind.UNKNOWN


def to_storage_error(
    exc: BaseException,
    *,
    operation: str,
    key: str | None = None,
    backend: str | None = None,
) -> StorageError:
    """Wrap a backend-native exception in a StorageError.

    StorageErrors are returned unchanged.
    """
    if isinstance(exc, StorageError):
        return exc
    kind = classify(exc)
    return StorageError(
        kind,
        f"{operation} failed: {exc}",
        key=key,
        backend=backend,
        cause=exc,
    )


def storage_boundary(operation: str) -> Callable[[F], F]:
    """Decorator converting native faults of a backend method into StorageError.

    The first positional argument after ``self`` is taken as the key for the
    error context.

    Args:
        operation: Operation name used in messages (e.g., "store").
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
            try:
                return func(self, *args, **kwargs)
            except StorageError:
                raise
            except Exception as e:
                key = args[0] if args and isinstance(args[0], str) else None
                backend = getattr(self, "backend_name", None)
                error = to_storage_error(e, operation=operation, key=key, backend=backend)
                logger.error(
                    "Storage %s failed: backend=%s kind=%s error=%s",
                    operation,
                    backend,
                    error.kind.value,
                    e,
                )
                raise error from e

        return cast(F, wrapper)

    return decorator


class ClassifyingStream(io.RawIOBase):
    """Raw reader that converts native faults raised while reading into StorageError.

    storage_boundary only covers the retrieve() call itself; the bytes of a
    network object arrive later, through the returned stream.
    """

    def __init__(self, stream: Any, *, key: str, backend: str) -> None:
        self._stream = stream
        self._key = key
        self._backend = backend

    def readable(self) -> bool:
        return True

    def readinto(self, buffer: bytearray | memoryview) -> int:  # type: ignore[override]
        try:
            data = self._stream.read(len(buffer))
        except StorageError:
            raise
        except Exception as e:
            error = to_storage_error(e, operation="retrieve", key=self._key, backend=self._backend)
            logger.error(
                "Storage read failed: backend=%s kind=%s error=%s",
                self._backend,
                error.kind.value,
                e,
            )
            raise error from e
        n = len(data)
        buffer[:n] = data
        return n

    def close(self) -> None:
        if not self.closed:
            try:
                self._stream.close()
            finally:
                super().close()


def classified_stream(stream: Any, *, key: str, backend: str) -> BinaryIO:
    """Wrap a backend read stream so read errors surface as StorageError."""
    return io.BufferedReader(ClassifyingStream(stream, key=key, backend=backend))
