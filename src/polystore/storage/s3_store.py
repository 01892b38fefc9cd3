"""polystore S3-compatible object storage backend.

Works with AWS S3 and S3-compatible services (MinIO, Ceph RGW, ...) through
boto3. The SHA-256 of each object is computed while it streams up and is
recorded as the ``sha256`` user metadata entry.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any, BinaryIO

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from polystore.storage.backend import DEFAULT_MAX_FILE_SIZE, StorageBackend
from polystore.storage.checksum import HashingReader, Readable, hash_stream
from polystore.storage.classify import (
    classified_stream,
    is_s3_not_found,
    storage_boundary,
    to_storage_error,
)
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

CHECKSUM_METADATA_KEY = "sha256"


class S3Store(StorageBackend):
    """S3-compatible object storage.

    Args:
        bucket: Bucket holding the objects.
        endpoint_url: Service endpoint; None uses the AWS default.
        region: Region name.
        access_key: Access key ID (None uses the boto3 credential chain).
        secret_key: Secret access key.
        prefix: Prefix prepended to every key.
        connect_timeout: Connect timeout in seconds.
        read_timeout: Read timeout in seconds.
        max_file_size: Largest object accepted by store, in bytes.
        ensure_bucket: Create the bucket at construction if it is missing.
        client: Pre-built S3 client (testing).
    """

    def __init__(
        self,
        bucket: str,
        *,
        endpoint_url: str | None = None,
        region: str = "us-east-1",
        access_key: str | None = None,
        secret_key: str | None = None,
        prefix: str = "",
        connect_timeout: float = 10.0,
        read_timeout: float = 60.0,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        ensure_bucket: bool = False,
        client: Any = None,
    ) -> None:
        super().__init__(max_file_size=max_file_size)
        if not bucket:
            raise StorageError(
                StorageErrorKind.CONFIGURATION_ERROR,
                "S3 bucket name is required",
                backend=self.backend_name,
            )
        self._bucket = bucket
        self._prefix = prefix
        self._region = region
        self._owns_client = client is None

        if client is None:
            config = Config(
                connect_timeout=connect_timeout,
                read_timeout=read_timeout,
                retries={"total_max_attempts": 1},
                s3={"addressing_style": "path"} if endpoint_url else None,
            )
            try:
                client = boto3.client(
                    "s3",
                    endpoint_url=endpoint_url,
                    region_name=region,
                    aws_access_key_id=access_key,
                    aws_secret_access_key=secret_key,
                    config=config,
                )
            except (BotoCoreError, ValueError) as e:
                raise StorageError(
                    StorageErrorKind.CONFIGURATION_ERROR,
                    f"Failed to initialize S3 client: {e}",
                    backend=self.backend_name,
                    cause=e,
                ) from e
        self._client = client

        if ensure_bucket:
            self._ensure_bucket()

        logger.info(
            "s3 storage initialized: bucket=%s region=%s endpoint=%s",
            bucket,
            region,
            "custom" if endpoint_url else "default",
        )

    @property
    def storage_type(self) -> StorageType:
        return StorageType.S3_COMPATIBLE

    @property
    def backend_name(self) -> str:
        return "s3"

    @property
    def is_external(self) -> bool:
        return True

    @property
    def bucket(self) -> str:
        return self._bucket

    def _object_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def _storage_path(self, key: str) -> str:
        return f"s3://{self._bucket}/{self._object_key(key)}"

    def _ensure_bucket(self) -> None:
        try:
            self._client.head_bucket(Bucket=self._bucket)
            return
        except ClientError as e:
            if not is_s3_not_found(e):
                raise to_storage_error(e, operation="head_bucket", backend=self.backend_name) from e
        except BotoCoreError as e:
            raise to_storage_error(e, operation="head_bucket", backend=self.backend_name) from e

        kwargs: dict[str, Any] = {"Bucket": self._bucket}
        if self._region and self._region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self._region}
        try:
            self._client.create_bucket(**kwargs)
        except (ClientError, BotoCoreError) as e:
            raise to_storage_error(e, operation="create_bucket", backend=self.backend_name) from e
        logger.info("Created S3 bucket: bucket=%s", self._bucket)

    def _head(self, key: str) -> dict[str, Any] | None:
        try:
            return dict(self._client.head_object(Bucket=self._bucket, Key=self._object_key(key)))
        except ClientError as e:
            if is_s3_not_found(e):
                return None
            raise

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
        """Upload an object, hashing it as it streams."""
        self.validate_key(key)
        self.check_declared_size(key, length)
        if not overwrite and self._head(key) is not None:
            raise StorageError(
                StorageErrorKind.ALREADY_EXISTS,
                "Object already exists",
                key=key,
                backend=self.backend_name,
            )

        object_key = self._object_key(key)
        user_metadata = dict(custom_metadata or {})
        extra_args: dict[str, Any] = {"Metadata": user_metadata}
        if content_type:
            extra_args["ContentType"] = content_type

        reader = HashingReader(stream, max_bytes=self.max_file_size, key=key)
        self._client.upload_fileobj(reader, self._bucket, object_key, ExtraArgs=extra_args)
        checksum = reader.hexdigest()

        copy_args: dict[str, Any] = {
            "Bucket": self._bucket,
            "Key": object_key,
            "CopySource": {"Bucket": self._bucket, "Key": object_key},
            "Metadata": {**user_metadata, CHECKSUM_METADATA_KEY: checksum},
            "MetadataDirective": "REPLACE",
        }
        if content_type:
            copy_args["ContentType"] = content_type
        try:
            self._client.copy_object(**copy_args)
        except (ClientError, BotoCoreError):
            self._discard(key)
            raise

        logger.debug(
            "Stored object: backend=s3 size=%d sha256=%s", reader.bytes_read, checksum
        )
        return StorageOperationResult(
            key=key,
            size=reader.bytes_read,
            checksum=checksum,
            content_type=content_type,
            stored_at=datetime.now(UTC),
            storage_path=self._storage_path(key),
        )

    @traced_storage_operation("retrieve")
    @storage_boundary("retrieve")
    def retrieve(self, key: str) -> BinaryIO | None:
        """Return the streaming body of an object."""
        self.validate_key(key)
        try:
            response = self._client.get_object(Bucket=self._bucket, Key=self._object_key(key))
        except ClientError as e:
            if is_s3_not_found(e):
                return None
            raise
        return classified_stream(response["Body"], key=key, backend=self.backend_name)

    @traced_storage_operation("delete")
    @storage_boundary("delete")
    def delete(self, key: str) -> bool:
        """Delete an object; S3 deletes are idempotent so the key is headed first."""
        self.validate_key(key)
        if self._head(key) is None:
            return False
        self._client.delete_object(Bucket=self._bucket, Key=self._object_key(key))
        return True

    @traced_storage_operation("exists")
    @storage_boundary("exists")
    def exists(self, key: str) -> bool:
        self.validate_key(key)
        return self._head(key) is not None

    @traced_storage_operation("get_metadata")
    @storage_boundary("get_metadata")
    def get_metadata(self, key: str) -> StorageObjectMetadata | None:
        self.validate_key(key)
        head = self._head(key)
        if head is None:
            return None

        user_metadata = {str(k): str(v) for k, v in dict(head.get("Metadata") or {}).items()}
        checksum = user_metadata.pop(CHECKSUM_METADATA_KEY, None)
        last_modified = head.get("LastModified")
        if not isinstance(last_modified, datetime):
            last_modified = datetime.now(UTC)
        return StorageObjectMetadata(
            key=key,
            size=int(head.get("ContentLength") or 0),
            content_type=head.get("ContentType"),
            checksum=checksum,
            created_at=last_modified,
            last_modified=last_modified,
            storage_path=self._storage_path(key),
            storage_type=self.storage_type,
            custom_metadata=user_metadata,
        )

    def _copy_object(
        self,
        source: str,
        target: str,
        source_meta: StorageObjectMetadata,
    ) -> StorageOperationResult:
        """Server-side copy, then re-hash the destination."""
        self._client.copy_object(
            Bucket=self._bucket,
            Key=self._object_key(target),
            CopySource={"Bucket": self._bucket, "Key": self._object_key(source)},
            MetadataDirective="COPY",
        )
        response = self._client.get_object(Bucket=self._bucket, Key=self._object_key(target))
        with response["Body"] as body:
            size, checksum = hash_stream(body)
        return StorageOperationResult(
            key=target,
            size=size,
            checksum=checksum,
            content_type=source_meta.content_type,
            stored_at=datetime.now(UTC),
            storage_path=self._storage_path(target),
        )

    @traced_storage_operation("get_stats")
    def get_stats(self) -> StorageStats:
        """Total bytes and object count under the prefix; capacity is unbounded."""
        used = 0
        count = 0
        try:
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self._bucket, Prefix=self._prefix):
                for obj in page.get("Contents", []):
                    used += int(obj.get("Size") or 0)
                    count += 1
        except (ClientError, BotoCoreError) as e:
            logger.error("Failed to collect stats: backend=s3 error=%s", e)
            return StorageStats(
                storage_type=self.storage_type,
                total_space=UNBOUNDED_SPACE,
                available_space=UNBOUNDED_SPACE,
                healthy=False,
                health_message=str(e),
            )

        return StorageStats(
            storage_type=self.storage_type,
            total_space=UNBOUNDED_SPACE,
            used_space=used,
            available_space=UNBOUNDED_SPACE,
            file_count=count,
            healthy=True,
            health_message="OK",
        )

    def close(self) -> None:
        """Close the client's connection pool if this store created it."""
        if self._owns_client:
            self._client.close()
