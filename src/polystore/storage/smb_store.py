"""polystore SMB/CIFS storage backend.

The share is mounted with mount.cifs. The password is handed to the mount
helper through its PASSWD environment variable so it never appears in the
process arguments or in logs.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path

from polystore.storage.backend import DEFAULT_MAX_FILE_SIZE
from polystore.storage.errors import StorageError, StorageErrorKind
from polystore.storage.models import StorageType
from polystore.storage.mounted_store import CommandRunner, MountedFilesystemStore

DEFAULT_SMB_MOUNT_OPTIONS = "rw"


class SMBStore(MountedFilesystemStore):
    """Storage on an SMB/CIFS share.

    Args:
        server: SMB server host name or address.
        share: Share name on the server.
        mount_point: Local directory the share is mounted on.
        username: Account used to mount the share (guest when empty).
        password: Password of the account.
        domain: Optional Windows domain / workgroup.
        mount_options: Options passed to ``mount -o``.
        manage_mount: Mount at construction and unmount on close.
        connect_timeout: Seconds allowed for each mount attempt.
        read_timeout: Seconds without an answer from the server before the
            session is considered dead and pending calls fail.
        retry_count: Number of mount attempts at construction.
        max_file_size: Largest object accepted by store, in bytes.
        runner: Replacement for subprocess.run (testing).
    """

    FSTYPES = ("cifs", "smb3", "smbfs")

    def __init__(
        self,
        server: str,
        share: str,
        mount_point: str | Path,
        *,
        username: str | None = None,
        password: str | None = None,
        domain: str | None = None,
        mount_options: str = DEFAULT_SMB_MOUNT_OPTIONS,
        manage_mount: bool = True,
        connect_timeout: float = 30.0,
        read_timeout: float = 60.0,
        retry_count: int = 3,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        runner: CommandRunner | None = None,
    ) -> None:
        if manage_mount and (not server or not share):
            raise StorageError(
                StorageErrorKind.CONFIGURATION_ERROR,
                "SMB server and share are required to mount",
                backend="smb",
            )
        self._server = server
        self._share = share.strip("/")
        self._username = username
        self._password = password
        self._domain = domain
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
        return StorageType.SMB_CIFS

    @property
    def backend_name(self) -> str:
        return "smb"

    def _share_description(self) -> str:
        return f"//{self._server}/{self._share}"

    def _timeout_options(self) -> list[str]:
        # The client drops a session after two missed echoes; the kernel allows 1 to 600.
        echo_interval = min(600, max(1, round(self._read_timeout / 2)))
        return ["soft", f"echo_interval={echo_interval}"]

    def _mount_command(self) -> list[str]:
        effective = self._effective_mount_options()
        options = [effective] if effective else []
        if self._username:
            options.append(f"username={self._username}")
        else:
            options.append("guest")
        if self._domain:
            options.append(f"domain={self._domain}")
        return [
            "mount",
            "-t",
            "cifs",
            "-o",
            ",".join(options),
            self._share_description(),
            str(self.mount_point),
        ]

    def _mount_env(self) -> Mapping[str, str] | None:
        if not self._password:
            return None
        return {**os.environ, "PASSWD": self._password}

    def _extra_metadata(self) -> dict[str, str]:
        return {
            "smb.server": self._server,
            "smb.share": self._share,
            "smb.mount_point": str(self.mount_point),
        }
