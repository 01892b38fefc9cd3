"""Tests for environment-driven settings and gateway construction."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest
from pydantic import ValidationError

from polystore.config import (
    PRIMARY_ENV,
    StorageSettings,
    build_gateway,
    build_prober,
    env_var_name,
    load_storage_settings,
)
from polystore.storage import LocalFilesystemStore, StorageConfigError, StorageError, StorageType
from polystore.storage.backend import DEFAULT_MAX_FILE_SIZE
from polystore.storage.nfs_store import NFSStore


class TestLoadSettings:
    """Tests for load_storage_settings."""

    def test_defaults(self) -> None:
        """With no variables only the local backend is enabled and primary."""
        settings = load_storage_settings({})

        assert settings.primary == "local"
        assert settings.local.enabled is True
        assert settings.local.max_file_size == DEFAULT_MAX_FILE_SIZE
        assert settings.s3.enabled is False
        assert settings.nfs.mount_point == "/mnt/nfs-storage"
        assert settings.smb.mount_point == "/mnt/smb-storage"
        assert settings.health.interval_seconds == 60.0

    def test_env_var_naming(self) -> None:
        """Variables follow POLYSTORE_<SECTION>_<FIELD>."""
        assert env_var_name("s3", "bucket") == "POLYSTORE_S3_BUCKET"
        assert env_var_name("health", "interval_seconds") == "POLYSTORE_HEALTH_INTERVAL_SECONDS"

    def test_values_parsed(self) -> None:
        """Strings should be coerced to the field types."""
        settings = load_storage_settings(
            {
                PRIMARY_ENV: "s3",
                "POLYSTORE_S3_ENABLED": "true",
                "POLYSTORE_S3_BUCKET": "documents",
                "POLYSTORE_S3_ENDPOINT": "http://minio.example.test:9000",
                "POLYSTORE_S3_CONNECT_TIMEOUT": "2.5",
                "POLYSTORE_LOCAL_ENABLED": "0",
                "POLYSTORE_NFS_RETRY_COUNT": "5",
                "POLYSTORE_NFS_READ_TIMEOUT": "15",
            }
        )

        assert settings.primary == "s3"
        assert settings.s3.enabled is True
        assert settings.s3.bucket == "documents"
        assert settings.s3.connect_timeout == 2.5
        assert settings.local.enabled is False
        assert settings.nfs.retry_count == 5
        assert settings.nfs.read_timeout == 15.0
        assert settings.smb.read_timeout == 60.0

    def test_reads_process_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Without an explicit mapping os.environ should be read."""
        monkeypatch.setenv("POLYSTORE_MEMORY_ENABLED", "1")
        monkeypatch.setenv("POLYSTORE_MEMORY_CAPACITY_BYTES", "4096")

        settings = load_storage_settings()

        assert settings.memory.enabled is True
        assert settings.memory.capacity_bytes == 4096

    def test_blank_values_ignored(self) -> None:
        """Empty or whitespace values should leave the default in place."""
        settings = load_storage_settings({"POLYSTORE_LOCAL_ROOT": "   "})

        assert settings.local.root == "./storage"

    def test_secrets_not_exposed(self) -> None:
        """Passwords and secret keys should be masked in reprs."""
        settings = load_storage_settings(
            {
                "POLYSTORE_SMB_PASSWORD": "hunter2",
                "POLYSTORE_S3_SECRET_KEY": "s3-secret",
            }
        )

        assert settings.smb.password is not None
        assert settings.smb.password.get_secret_value() == "hunter2"
        assert "hunter2" not in repr(settings)
        assert "s3-secret" not in repr(settings)

    def test_errors_aggregated_with_variable_names(self) -> None:
        """Every invalid variable should be reported in one error."""
        with pytest.raises(StorageConfigError) as exc_info:
            load_storage_settings(
                {
                    "POLYSTORE_LOCAL_MAX_FILE_SIZE": "-5",
                    "POLYSTORE_HEALTH_INTERVAL_SECONDS": "often",
                }
            )

        errors = exc_info.value.errors
        assert len(errors) == 2
        assert any(e.startswith("POLYSTORE_LOCAL_MAX_FILE_SIZE:") for e in errors)
        assert any(e.startswith("POLYSTORE_HEALTH_INTERVAL_SECONDS:") for e in errors)
        assert "2 error(s)" in exc_info.value.message

    def test_enabled_s3_requires_bucket(self) -> None:
        """Enabling S3 without a bucket should fail naming the section."""
        with pytest.raises(StorageConfigError) as exc_info:
            load_storage_settings({"POLYSTORE_S3_ENABLED": "true"})

        assert exc_info.value.errors[0].startswith("POLYSTORE_S3_*:")
        assert "bucket is required" in exc_info.value.errors[0]

    def test_managed_nfs_requires_server(self) -> None:
        """A managed NFS mount needs a server and an export path."""
        with pytest.raises(StorageConfigError):
            load_storage_settings({"POLYSTORE_NFS_ENABLED": "true"})

    def test_unmanaged_nfs_needs_no_server(self) -> None:
        """A host-mounted share needs only a mount point."""
        settings = load_storage_settings(
            {"POLYSTORE_NFS_ENABLED": "true", "POLYSTORE_NFS_MANAGE_MOUNT": "false"}
        )

        assert settings.nfs.enabled is True
        assert settings.nfs.manage_mount is False

    def test_webdav_url_scheme_checked(self) -> None:
        """An enabled WebDAV backend needs an http(s) base URL."""
        with pytest.raises(StorageConfigError):
            load_storage_settings(
                {"POLYSTORE_WEBDAV_ENABLED": "true", "POLYSTORE_WEBDAV_BASE_URL": "ftp://x"}
            )

    def test_threshold_order_checked(self) -> None:
        """The warning threshold must not exceed the critical threshold."""
        with pytest.raises(StorageConfigError):
            load_storage_settings(
                {
                    "POLYSTORE_HEALTH_USAGE_WARNING_PERCENT": "95",
                    "POLYSTORE_HEALTH_USAGE_CRITICAL_PERCENT": "90",
                }
            )

    def test_unknown_primary_warns(self, caplog: pytest.LogCaptureFixture) -> None:
        """An unknown primary is accepted with a warning; resolution falls back later."""
        with caplog.at_level(logging.WARNING, logger="polystore.config"):
            settings = load_storage_settings({PRIMARY_ENV: "tape"})

        assert settings.primary == "tape"
        assert PRIMARY_ENV in caplog.text

    def test_settings_frozen(self) -> None:
        """Settings should be immutable."""
        settings = load_storage_settings({})

        with pytest.raises(ValidationError):
            settings.primary = "s3"  # type: ignore[misc]


class TestBuildGateway:
    """Tests for build_gateway and build_prober."""

    def test_backends_built_in_order(self, tmp_path: Path) -> None:
        """Enabled backends should be registered local first, memory last."""
        settings = load_storage_settings(
            {
                "POLYSTORE_LOCAL_ROOT": str(tmp_path / "objects"),
                "POLYSTORE_MEMORY_ENABLED": "true",
                PRIMARY_ENV: "memory",
            }
        )

        gateway = build_gateway(settings)

        assert [b.storage_type for b in gateway.list()] == [
            StorageType.LOCAL_FILESYSTEM,
            StorageType.IN_MEMORY,
        ]
        assert gateway.get_primary().storage_type == StorageType.IN_MEMORY
        assert (tmp_path / "objects").is_dir()
        gateway.close()

    def test_memory_only(self) -> None:
        """Disabling local should leave only the enabled backends."""
        settings = load_storage_settings(
            {
                "POLYSTORE_LOCAL_ENABLED": "false",
                "POLYSTORE_MEMORY_ENABLED": "true",
                "POLYSTORE_MEMORY_MAX_FILE_SIZE": "1024",
            }
        )

        gateway = build_gateway(settings)

        assert len(gateway) == 1
        primary = gateway.get_primary()
        assert primary.storage_type == StorageType.IN_MEMORY
        assert primary.max_file_size == 1024

    def test_nothing_enabled(self) -> None:
        """A gateway with no backends can be built but has no primary."""
        gateway = build_gateway(load_storage_settings({"POLYSTORE_LOCAL_ENABLED": "false"}))

        assert len(gateway) == 0
        with pytest.raises(StorageError):
            gateway.get_primary()

    def test_failure_closes_built_backends(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """A backend failing to initialize should close those already built."""
        closed: list[str] = []
        monkeypatch.setattr(
            LocalFilesystemStore, "close", lambda self: closed.append(self.backend_name)
        )
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        settings = load_storage_settings(
            {
                "POLYSTORE_LOCAL_ROOT": str(tmp_path / "objects"),
                "POLYSTORE_NFS_ENABLED": "true",
                "POLYSTORE_NFS_MANAGE_MOUNT": "false",
                "POLYSTORE_NFS_MOUNT_POINT": str(blocker / "mnt"),
            }
        )

        with pytest.raises(StorageError):
            build_gateway(settings)

        assert closed == ["local"]

    def test_mount_read_timeout_passed_to_store(self, tmp_path: Path) -> None:
        """POLYSTORE_NFS_READ_TIMEOUT should reach the mount options."""
        settings = load_storage_settings(
            {
                "POLYSTORE_LOCAL_ENABLED": "false",
                "POLYSTORE_NFS_ENABLED": "true",
                "POLYSTORE_NFS_MANAGE_MOUNT": "false",
                "POLYSTORE_NFS_MOUNT_POINT": str(tmp_path),
                "POLYSTORE_NFS_READ_TIMEOUT": "2.5",
            }
        )

        gateway = build_gateway(settings)

        nfs = gateway.get_primary()
        assert isinstance(nfs, NFSStore)
        assert "timeo=25" in nfs._mount_command()[4].split(",")
        gateway.close()

    def test_build_prober_uses_health_settings(self) -> None:
        """The prober should take its timeout from the health settings."""
        settings = load_storage_settings(
            {
                "POLYSTORE_LOCAL_ENABLED": "false",
                "POLYSTORE_MEMORY_ENABLED": "true",
                "POLYSTORE_HEALTH_PROBE_TIMEOUT_SECONDS": "3",
            }
        )
        gateway = build_gateway(settings)

        prober = build_prober(settings, gateway)

        assert prober.timeout_seconds == 3.0
        assert prober.probe_all().status == "UP"

    def test_settings_constructible_directly(self, tmp_path: Path) -> None:
        """Settings can also be built in code without the environment."""
        settings = StorageSettings.model_validate(
            {"local": {"root": str(tmp_path)}, "memory": {"enabled": True}}
        )

        assert len(build_gateway(settings)) == 2
