"""polystore storage on a mounted network filesystem.

NFS and SMB/CIFS shares use the local filesystem layout once mounted. This
module adds mount management on top of LocalFilesystemStore:

- At construction the share is mounted (unless already mounted) with up to
  ``retry_count`` attempts, then an access check writes, reads back and
  deletes a scratch file. A share this store mounted is unmounted again when
  the access check fails.
- Mount options bound each operation on the share by ``read_timeout``.
- Every operation first checks that the store is mounted.
- ``close()`` unmounts the share if this store mounted it.

Mount management is optional (``manage_mount=False``) for shares mounted by
the host, e.g. through /etc/fstab.
"""

from __future__ import annotations

import logging
import subprocess
import uuid
from abc import abstractmethod
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Any, Final

from polystore.storage.backend import DEFAULT_MAX_FILE_SIZE
from polystore.storage.classify import to_storage_error
from polystore.storage.errors import StorageError, StorageErrorKind
from polystore.storage.filesystem_store import LocalFilesystemStore

logger = logging.getLogger(__name__)

PROC_MOUNTS: Final[Path] = Path("/proc/mounts")
UNMOUNT_TIMEOUT_SECONDS: Final[float] = 10.0
FORCE_UNMOUNT_TIMEOUT_SECONDS: Final[float] = 5.0

CommandRunner = Callable[..., "subprocess.CompletedProcess[str]"]


def is_mount_point_active(
    mount_point: Path,
    fstypes: Sequence[str],
    *,
    mounts_file: Path = PROC_MOUNTS,
) -> bool:
    """Check whether a filesystem of one of the given types is mounted at mount_point.

    Reads the kernel mount table; falls back to ``os.path.ismount`` semantics
    when the table is unavailable.
    """
    target = str(mount_point)
    try:
        lines = mounts_file.read_text(encoding="utf-8").splitlines()
    except OSError:
        return mount_point.is_mount()

    for line in lines:
        fields = line.split()
        if len(fields) >= 3 and fields[1] == target and fields[2] in fstypes:
            return True
    return False


def merge_mount_options(options: str, extra: Sequence[str]) -> str:
    """Append each extra option whose name the configured options do not already set.

    An explicit ``hard`` keeps ``soft`` out, so a configured hard mount stays hard.
    """
    merged = [o.strip() for o in options.split(",") if o.strip()]
    names = {o.partition("=")[0] for o in merged}
    for option in extra:
        name = option.partition("=")[0]
        if name in names or (name == "soft" and "hard" in names):
            continue
        merged.append(option)
        names.add(name)
    return ",".join(merged)


class MountedFilesystemStore(LocalFilesystemStore):
    """Base class for stores backed by a mounted network share.

    Args:
        mount_point: Local directory the share is mounted on.
        mount_options: Options passed to ``mount -o``.
        manage_mount: Mount at construction and unmount on close.
        connect_timeout: Seconds allowed for each mount attempt.
        read_timeout: Seconds after which an unanswered read or write on the
            share fails instead of blocking.
        retry_count: Number of mount attempts at construction.
        max_file_size: Largest object accepted by store, in bytes.
        runner: Replacement for subprocess.run (testing).
    """

    FSTYPES: tuple[str, ...] = ()

    def __init__(
        self,
        mount_point: str | Path,
        *,
        mount_options: str,
        manage_mount: bool = True,
        connect_timeout: float = 30.0,
        read_timeout: float = 60.0,
        retry_count: int = 3,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        runner: CommandRunner | None = None,
    ) -> None:
        if retry_count < 1:
            raise StorageError(
                StorageErrorKind.CONFIGURATION_ERROR,
                f"retry_count must be >= 1, got {retry_count}",
            )
        if read_timeout <= 0:
            raise StorageError(
                StorageErrorKind.CONFIGURATION_ERROR,
                f"read_timeout must be positive, got {read_timeout}",
            )
        self._mount_point = Path(mount_point).expanduser().resolve()
        self._mount_options = mount_options
        self._manage_mount = manage_mount
        self._connect_timeout = connect_timeout
        self._read_timeout = read_timeout
        self._retry_count = retry_count
        self._runner: CommandRunner = runner or subprocess.run
        self._mounted = False
        self._mounted_by_us = False
        super().__init__(self._mount_point, max_file_size=max_file_size)

    @property
    def is_external(self) -> bool:
        return True

    @property
    def mount_point(self) -> Path:
        return self._mount_point

    @property
    def is_mounted(self) -> bool:
        """Whether the store passed its mount and access checks."""
        return self._mounted

    @abstractmethod
    def _mount_command(self) -> list[str]:
        """Return the argv of the mount command."""
        ...

    def _timeout_options(self) -> list[str]:
        """Mount options bounding a single operation by read_timeout."""
        return []

    def _effective_mount_options(self) -> str:
        return merge_mount_options(self._mount_options, self._timeout_options())

    def _mount_env(self) -> Mapping[str, str] | None:
        """Environment for the mount command (None inherits the current one)."""
        return None

    @abstractmethod
    def _share_description(self) -> str:
        """Return the share location for logs, without credentials."""
        ...

    def _prepare_root(self) -> None:
        super()._prepare_root()
        if self._manage_mount and not is_mount_point_active(self._mount_point, self.FSTYPES):
            self._mount()
        try:
            self._verify_access()
        except StorageError:
            if self._mounted_by_us:
                logger.warning(
                    "Access check failed, unmounting: backend=%s mount_point=%s",
                    self.backend_name,
                    self._mount_point,
                )
                self._unmount()
            raise
        self._mounted = True

    def _mount(self) -> None:
        command = self._mount_command()
        env = self._mount_env()
        last_error = ""
        for attempt in range(1, self._retry_count + 1):
            logger.info(
                "Mounting share: backend=%s share=%s mount_point=%s attempt=%d/%d",
                self.backend_name,
                self._share_description(),
                self._mount_point,
                attempt,
                self._retry_count,
            )
            try:
                completed = self._run(command, timeout=self._connect_timeout, env=env)
            except subprocess.TimeoutExpired:
                last_error = f"mount timed out after {self._connect_timeout}s"
                logger.warning("Mount attempt failed: backend=%s %s", self.backend_name, last_error)
                continue
            except OSError as e:
                raise StorageError(
                    StorageErrorKind.CONFIGURATION_ERROR,
                    f"Cannot run mount command: {e}",
                    backend=self.backend_name,
                    cause=e,
                ) from e

            if completed.returncode == 0:
                self._mounted_by_us = True
                logger.info(
                    "Mounted share: backend=%s mount_point=%s", self.backend_name, self._mount_point
                )
                return

            last_error = (completed.stderr or "").strip() or f"exit code {completed.returncode}"
            logger.warning(
                "Mount attempt failed: backend=%s error=%s", self.backend_name, last_error
            )

        raise StorageError(
            StorageErrorKind.NETWORK_ERROR,
            f"Failed to mount {self._share_description()} after {self._retry_count} attempts: "
            f"{last_error}",
            backend=self.backend_name,
        )

    def _run(
        self,
        command: list[str],
        *,
        timeout: float,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        kwargs: dict[str, Any] = {
            "capture_output": True,
            "text": True,
            "timeout": timeout,
            "check": False,
        }
        if env is not None:
            kwargs["env"] = dict(env)
        return self._runner(command, **kwargs)

    def _verify_access(self) -> None:
        """Write, read back and delete a probe file on the share."""
        probe = self._mount_point / f".polystore-access-check-{uuid.uuid4().hex}"
        payload = b"polystore access check"
        try:
            probe.write_bytes(payload)
            read_back = probe.read_bytes()
            probe.unlink()
            if read_back != payload:
                raise StorageError(
                    StorageErrorKind.IO_ERROR,
                    "Access check read back different content",
                    backend=self.backend_name,
                )
        except OSError as e:
            probe.unlink(missing_ok=True)
            raise to_storage_error(e, operation="access check", backend=self.backend_name) from e

    def _ensure_ready(self) -> None:
        if not self._mounted:
            raise StorageError(
                StorageErrorKind.CONFIGURATION_ERROR,
                "Storage is not mounted",
                backend=self.backend_name,
            )

    def close(self) -> None:
        """Unmount the share if this store mounted it."""
        self._mounted = False
        if self._mounted_by_us:
            self._unmount()

    def _unmount(self) -> None:
        self._mounted_by_us = False
        target = str(self._mount_point)
        try:
            completed = self._run(["umount", target], timeout=UNMOUNT_TIMEOUT_SECONDS)
        except subprocess.TimeoutExpired:
            logger.warning("Unmount timed out, forcing: backend=%s", self.backend_name)
            try:
                completed = self._run(
                    ["umount", "-f", target], timeout=FORCE_UNMOUNT_TIMEOUT_SECONDS
                )
            except (subprocess.TimeoutExpired, OSError) as e:
                logger.error("Forced unmount failed: backend=%s error=%s", self.backend_name, e)
                return
        except OSError as e:
            logger.error("Unmount failed: backend=%s error=%s", self.backend_name, e)
            return

        if completed.returncode != 0:
            logger.error(
                "Unmount failed: backend=%s error=%s",
                self.backend_name,
                (completed.stderr or "").strip(),
            )
            return
        logger.info("Unmounted share: backend=%s mount_point=%s", self.backend_name, target)
