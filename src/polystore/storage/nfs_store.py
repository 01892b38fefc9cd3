"""polystore NFS storage backend."""

from __future__ import annotations

from pathlib import Path

from polystore.storage.backend import DEFAULT_MAX_FILE_SIZE
from polystore.storage.errors import StorageError, StorageErrorKind
from polystore.storage.models import StorageType
from polystore.storage.mounted_store import CommandRunner, MountedFilesystemStore

DEFAULT_NFS_MOUNT_OPTIONS = "rw,sync,intr"
NFS_RETRANS = 2


class NFSStore(MountedFilesystemStore):
    """Storage on an NFS export.

    Args:
        server: NFS server host name or address.
        export_path: Exported directory on the server (e.g., "/exports/data").
        mount_point: Local directory the export is mounted on.
        mount_options: Options passed to ``mount -o``.
        manage_mount: Mount at construction and unmount on close.
        connect_timeout: Seconds allowed for each mount attempt.
        read_timeout: Seconds before an unanswered NFS request is retransmitted;
            with ``soft`` the call fails after ``NFS_RETRANS`` retransmissions.
        retry_count: Number of mount attempts at construction.
        max_file_size: Largest object accepted by store, in bytes.
        runner: Replacement for subprocess.run (testing).
    """

    FSTYPES = ("nfs", "nfs4")

    def __init__(
        self,
        server: str,
        export_path: str,
        mount_point: str | Path,
        *,
        mount_options: str = DEFAULT_NFS_MOUNT_OPTIONS,
        manage_mount: bool = True,
        connect_timeout: float = 30.0,
        read_timeout: float = 60.0,
        retry_count: int = 3,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        runner: CommandRunner | None = None,
    ) -> None:
        if manage_mount and (not server or not export_path):
            raise StorageError(
                StorageErrorKind.CONFIGURATION_ERROR,
                "NFS server and export path are required to mount",
                backend="nfs",
            )
        self._server = server
        self._export_path = export_path
        super().__init__(
            mount_point,
            mount_options=mount_options,
            manage_mount=manage_mount,
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
            retry_count=retry_count,
            max_file_size=max_file_size,
            runner=runner,
        )

    @property
    def storage_type(self) -> StorageType:
        return StorageType.NFS

    @property
    def backend_name(self) -> str:
        return "nfs"

    def _share_description(self) -> str:
        return f"{self._server}:{self._export_path}"

    def _timeout_options(self) -> list[str]:
        # timeo is in tenths of a second.
        return ["soft", f"timeo={max(1, round(self._read_timeout * 10))}", f"retrans={NFS_RETRANS}"]

    def _mount_command(self) -> list[str]:
        return [
            "mount",
            "-t",
            "nfs",
            "-o",
            self._effective_mount_options(),
            self._share_description(),
            str(self.mount_point),
        ]

    def _extra_metadata(self) -> dict[str, str]:
        return {
            "nfs.server": self._server,
            "nfs.export": self._export_path,
            "nfs.mount_point": str(self.mount_point),
        }
