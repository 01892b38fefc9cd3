"""polystore settings.

Settings are read once from ``POLYSTORE_*`` environment variables into frozen
pydantic models. Every variable follows ``POLYSTORE_<SECTION>_<FIELD>``:
``POLYSTORE_S3_BUCKET`` sets ``S3Settings.bucket``, ``POLYSTORE_HEALTH_INTERVAL_SECONDS``
sets ``HealthSettings.interval_seconds``. The primary backend is chosen with
``POLYSTORE_STORAGE_PRIMARY``.

Invalid values fail loudly: load_storage_settings() raises a single
StorageConfigError listing every offending variable.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from typing import Any, Final

from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, model_validator

from polystore.health.prober import (
    DEFAULT_PROBE_TIMEOUT_SECONDS,
    DEFAULT_USAGE_CRITICAL_PERCENT,
    DEFAULT_USAGE_WARNING_PERCENT,
    StorageHealthProber,
)
from polystore.storage.backend import DEFAULT_MAX_FILE_SIZE, StorageBackend
from polystore.storage.errors import StorageConfigError
from polystore.storage.filesystem_store import LocalFilesystemStore
from polystore.storage.gateway import StorageGateway
from polystore.storage.memory_store import DEFAULT_MEMORY_MAX_FILE_SIZE, InMemoryStore
from polystore.storage.models import parse_storage_type
from polystore.storage.nfs_store import DEFAULT_NFS_MOUNT_OPTIONS, NFSStore
from polystore.storage.s3_store import S3Store
from polystore.storage.smb_store import DEFAULT_SMB_MOUNT_OPTIONS, SMBStore
from polystore.storage.webdav_store import WebDAVStore

logger = logging.getLogger(__name__)

ENV_PREFIX: Final[str] = "POLYSTORE"
PRIMARY_ENV: Final[str] = "POLYSTORE_STORAGE_PRIMARY"


class _Section(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class LocalSettings(_Section):
    enabled: bool = True
    root: str = Field(default="./storage", min_length=1)
    max_file_size: int = Field(default=DEFAULT_MAX_FILE_SIZE, gt=0)


class S3Settings(_Section):
    enabled: bool = False
    endpoint: str | None = None
    region: str = "us-east-1"
    access_key: str | None = None
    secret_key: SecretStr | None = None
    bucket: str = ""
    prefix: str = ""
    ensure_bucket: bool = False
    max_file_size: int = Field(default=DEFAULT_MAX_FILE_SIZE, gt=0)
    connect_timeout: float = Field(default=10.0, gt=0)
    read_timeout: float = Field(default=60.0, gt=0)

    @model_validator(mode="after")
    def _require_bucket(self) -> S3Settings:
        if self.enabled and not self.bucket:
            raise ValueError("bucket is required when S3 storage is enabled")
        return self


class _MountSettings(_Section):
    enabled: bool = False
    mount_point: str = ""
    mount_options: str = ""
    manage_mount: bool = True
    max_file_size: int = Field(default=DEFAULT_MAX_FILE_SIZE, gt=0)
    connect_timeout: float = Field(default=30.0, gt=0)
    read_timeout: float = Field(default=60.0, gt=0)
    retry_count: int = Field(default=3, ge=1)


class NFSSettings(_MountSettings):
    server: str = ""
    export_path: str = ""
    mount_point: str = "/mnt/nfs-storage"
    mount_options: str = DEFAULT_NFS_MOUNT_OPTIONS

    @model_validator(mode="after")
    def _require_share(self) -> NFSSettings:
        if self.enabled and self.manage_mount and not (self.server and self.export_path):
            raise ValueError("server and export_path are required when NFS mounting is managed")
        return self


class SMBSettings(_MountSettings):
    server: str = ""
    share: str = ""
    username: str | None = None
    password: SecretStr | None = None
    domain: str | None = None
    mount_point: str = "/mnt/smb-storage"
    mount_options: str = DEFAULT_SMB_MOUNT_OPTIONS

    @model_validator(mode="after")
    def _require_share(self) -> SMBSettings:
        if self.enabled and self.manage_mount and not (self.server and self.share):
            raise ValueError("server and share are required when SMB mounting is managed")
        return self


class WebDAVSettings(_Section):
    enabled: bool = False
    base_url: str = ""
    username: str | None = None
    password: SecretStr | None = None
    verify_tls: bool = True
    max_file_size: int = Field(default=DEFAULT_MAX_FILE_SIZE, gt=0)
    connect_timeout: float = Field(default=10.0, gt=0)
    read_timeout: float = Field(default=60.0, gt=0)

    @model_validator(mode="after")
    def _require_base_url(self) -> WebDAVSettings:
        if self.enabled and not self.base_url.startswith(("http://", "https://")):
            raise ValueError("base_url must be an http(s) URL when WebDAV storage is enabled")
        return self


class MemorySettings(_Section):
    enabled: bool = False
    max_file_size: int = Field(default=DEFAULT_MEMORY_MAX_FILE_SIZE, gt=0)
    capacity_bytes: int | None = Field(default=None, gt=0)


class HealthSettings(_Section):
    interval_seconds: float = Field(default=60.0, gt=0)
    probe_timeout_seconds: float = Field(default=DEFAULT_PROBE_TIMEOUT_SECONDS, gt=0)
    usage_warning_percent: float = Field(default=DEFAULT_USAGE_WARNING_PERCENT, gt=0, le=100)
    usage_critical_percent: float = Field(default=DEFAULT_USAGE_CRITICAL_PERCENT, gt=0, le=100)

    @model_validator(mode="after")
    def _ordered_thresholds(self) -> HealthSettings:
        if self.usage_warning_percent > self.usage_critical_percent:
            raise ValueError("usage_warning_percent must not exceed usage_critical_percent")
        return self


class StorageSettings(BaseModel):
    """Complete storage configuration."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    primary: str = "local"
    local: LocalSettings = Field(default_factory=LocalSettings)
    s3: S3Settings = Field(default_factory=S3Settings)
    nfs: NFSSettings = Field(default_factory=NFSSettings)
    smb: SMBSettings = Field(default_factory=SMBSettings)
    webdav: WebDAVSettings = Field(default_factory=WebDAVSettings)
    memory: MemorySettings = Field(default_factory=MemorySettings)
    health: HealthSettings = Field(default_factory=HealthSettings)


_SECTIONS: Final[dict[str, type[_Section]]] = {
    "local": LocalSettings,
    "s3": S3Settings,
    "nfs": NFSSettings,
    "smb": SMBSettings,
    "webdav": WebDAVSettings,
    "memory": MemorySettings,
    "health": HealthSettings,
}


def env_var_name(section: str, field: str) -> str:
    """Return the environment variable that sets a settings field."""
    return f"{ENV_PREFIX}_{section.upper()}_{field.upper()}"


def _read_section(
    environ: Mapping[str, str], section: str, model: type[_Section]
) -> dict[str, str]:
    raw: dict[str, str] = {}
    for field in model.model_fields:
        value = environ.get(env_var_name(section, field), "").strip()
        if value:
            raw[field] = value
    return raw


def _describe(error: Any) -> str:
    loc = tuple(str(part) for part in error["loc"])
    if not loc:
        target = f"{ENV_PREFIX}_*"
    elif len(loc) == 1:
        target = PRIMARY_ENV if loc[0] == "primary" else f"{ENV_PREFIX}_{loc[0].upper()}_*"
    else:
        target = env_var_name(loc[0], loc[1])
    return f"{target}: {error['msg']}"


def load_storage_settings(environ: Mapping[str, str] | None = None) -> StorageSettings:
    """Load storage settings from environment variables.

    Args:
        environ: Variables to read. Defaults to os.environ.

    Returns:
        Validated, immutable settings.

    Raises:
        StorageConfigError: If any variable holds an invalid value. The
            ``errors`` attribute names each offending variable.
    """
    env = os.environ if environ is None else environ

    raw: dict[str, Any] = {
        section: _read_section(env, section, model) for section, model in _SECTIONS.items()
    }
    primary = env.get(PRIMARY_ENV, "").strip()
    if primary:
        raw["primary"] = primary

    try:
        settings = StorageSettings.model_validate(raw)
    except ValidationError as e:
        errors = [_describe(err) for err in e.errors()]
        raise StorageConfigError(
            f"Invalid storage configuration ({len(errors)} error(s))", errors
        ) from e

    if parse_storage_type(settings.primary) is None:
        logger.warning(
            "%s=%r is not a known storage type; the first enabled backend will be primary",
            PRIMARY_ENV,
            settings.primary,
        )
    return settings


def _secret(value: SecretStr | None) -> str | None:
    return value.get_secret_value() if value is not None else None


def _build_backends(settings: StorageSettings, backends: list[StorageBackend]) -> None:
    if settings.local.enabled:
        backends.append(
            LocalFilesystemStore(settings.local.root, max_file_size=settings.local.max_file_size)
        )
    if settings.s3.enabled:
        s3 = settings.s3
        backends.append(
            S3Store(
                s3.bucket,
                endpoint_url=s3.endpoint,
                region=s3.region,
                access_key=s3.access_key,
                secret_key=_secret(s3.secret_key),
                prefix=s3.prefix,
                connect_timeout=s3.connect_timeout,
                read_timeout=s3.read_timeout,
                max_file_size=s3.max_file_size,
                ensure_bucket=s3.ensure_bucket,
            )
        )
    if settings.nfs.enabled:
        nfs = settings.nfs
        backends.append(
            NFSStore(
                nfs.server,
                nfs.export_path,
                nfs.mount_point,
                mount_options=nfs.mount_options,
                manage_mount=nfs.manage_mount,
                connect_timeout=nfs.connect_timeout,
                read_timeout=nfs.read_timeout,
                retry_count=nfs.retry_count,
                max_file_size=nfs.max_file_size,
            )
        )
    if settings.smb.enabled:
        smb = settings.smb
        backends.append(
            SMBStore(
                smb.server,
                smb.share,
                smb.mount_point,
                username=smb.username,
                password=_secret(smb.password),
                domain=smb.domain,
                mount_options=smb.mount_options,
                manage_mount=smb.manage_mount,
                connect_timeout=smb.connect_timeout,
                read_timeout=smb.read_timeout,
                retry_count=smb.retry_count,
                max_file_size=smb.max_file_size,
            )
        )
    if settings.webdav.enabled:
        dav = settings.webdav
        backends.append(
            WebDAVStore(
                dav.base_url,
                username=dav.username,
                password=_secret(dav.password),
                verify_tls=dav.verify_tls,
                connect_timeout=dav.connect_timeout,
                read_timeout=dav.read_timeout,
                max_file_size=dav.max_file_size,
            )
        )
    if settings.memory.enabled:
        backends.append(
            InMemoryStore(
                max_file_size=settings.memory.max_file_size,
                capacity_bytes=settings.memory.capacity_bytes,
            )
        )


def build_gateway(settings: StorageSettings) -> StorageGateway:
    """Construct every enabled backend and register them in a gateway.

    Backends are built in a fixed order: local, s3, nfs, smb, webdav, memory.
    If one fails to initialize, the ones already built are closed and the
    error propagates.

    Raises:
        StorageError: If a backend cannot be initialized.
    """
    built: list[StorageBackend] = []
    try:
        _build_backends(settings, built)
    except Exception:
        for backend in built:
            backend.close()
        raise
    return StorageGateway(built, primary_type=settings.primary)


def build_prober(settings: StorageSettings, gateway: StorageGateway) -> StorageHealthProber:
    """Create a health prober over a gateway using the health settings."""
    health = settings.health
    return StorageHealthProber(
        gateway,
        timeout_seconds=health.probe_timeout_seconds,
        usage_warning_percent=health.usage_warning_percent,
        usage_critical_percent=health.usage_critical_percent,
    )
