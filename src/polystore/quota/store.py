"""SQLite-backed quota persistence with optimistic concurrency.

Each owner's quota row carries a version counter. Updates are applied with
compare-and-set on that version, so two concurrent uploads for one owner
can never lose each other's usage increments.
"""

from __future__ import annotations

import contextlib
import logging
import os
import sqlite3
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import NamedTuple

from polystore.quota.errors import InvalidQuotaError, QuotaConflictError, QuotaStoreError
from polystore.quota.quota import Quota

logger = logging.getLogger(__name__)

POLYSTORE_QUOTA_DB_PATH_ENV = "POLYSTORE_QUOTA_DB_PATH"
DEFAULT_QUOTA_DB_PATH = "./var/quota/quota.sqlite3"
DEFAULT_MAX_ATTEMPTS = 10
BUSY_TIMEOUT_SECONDS = 30.0


class QuotaRecord(NamedTuple):
    """Persisted quota with its concurrency version."""

    owner_id: str
    quota: Quota
    version: int
    updated_at: str


def _now() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


class SqliteQuotaStore:
    """SQLite-backed quota store with thread-safe access.

    Creates database and parent directories on first use.
    Uses WAL mode for better concurrent read performance.

    Environment:
        POLYSTORE_QUOTA_DB_PATH: Path to SQLite database file.
            Default: ./var/quota/quota.sqlite3
    """

    _CREATE_TABLE_SQL = """
        CREATE TABLE IF NOT EXISTS owner_quotas (
            owner_id TEXT PRIMARY KEY,
            quota INTEGER NOT NULL,
            used INTEGER NOT NULL,
            version INTEGER NOT NULL,
            updated_at TEXT NOT NULL
        )
    """

    _SELECT_SQL = """
        SELECT owner_id, quota, used, version, updated_at
        FROM owner_quotas
        WHERE owner_id = ?
    """

    _INSERT_SQL = """
        INSERT OR IGNORE INTO owner_quotas (owner_id, quota, used, version, updated_at)
        VALUES (?, ?, ?, 0, ?)
    """

    _CAS_SQL = """
        UPDATE owner_quotas
        SET quota = ?, used = ?, version = version + 1, updated_at = ?
        WHERE owner_id = ? AND version = ?
    """

    def __init__(self, db_path: str | None = None) -> None:
        """Initialize the quota store.

        Args:
            db_path: Path to SQLite database file. If None, uses environment
                variable POLYSTORE_QUOTA_DB_PATH or default path.
        """
        if db_path is None:
            db_path = os.environ.get(POLYSTORE_QUOTA_DB_PATH_ENV, DEFAULT_QUOTA_DB_PATH)

        self._db_path = db_path
        self._local = threading.local()
        self._initialized = False
        self._init_lock = threading.Lock()

    def _get_connection(self) -> sqlite3.Connection:
        if not self._initialized:
            with self._init_lock:
                if not self._initialized:
                    self._ensure_database()
                    self._initialized = True

        conn = getattr(self._local, "conn", None)
        if conn is None:
            try:
                conn = sqlite3.connect(
                    self._db_path, timeout=BUSY_TIMEOUT_SECONDS, check_same_thread=False
                )
                conn.row_factory = sqlite3.Row
                self._local.conn = conn
            except sqlite3.Error as e:
                raise QuotaStoreError(f"Failed to connect to quota store: {e}") from e

        return conn

    def _ensure_database(self) -> None:
        try:
            db_path = Path(self._db_path)
            if db_path.is_dir():
                raise QuotaStoreError(f"Quota store path is a directory: {self._db_path}")

            db_path.parent.mkdir(parents=True, exist_ok=True)

            conn = sqlite3.connect(self._db_path)
            try:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute(self._CREATE_TABLE_SQL)
                conn.commit()
            finally:
                conn.close()

            logger.info("Initialized quota store at %s", self._db_path)

        except sqlite3.Error as e:
            raise QuotaStoreError(f"Failed to initialize quota store: {e}") from e
        except OSError as e:
            raise QuotaStoreError(f"Failed to create quota store directory: {e}") from e

    def get_record(self, owner_id: str) -> QuotaRecord | None:
        """Look up an owner's quota together with its version.

        Raises:
            QuotaStoreError: If the lookup fails or the stored row is invalid.
        """
        try:
            rows = self._get_connection().execute(self._SELECT_SQL, (owner_id,)).fetchall()
        except sqlite3.Error as e:
            raise QuotaStoreError(f"Failed to read quota: {e}") from e

        if not rows:
            return None
        row = rows[0]
        try:
            quota = Quota(quota=row["quota"], used=row["used"])
        except InvalidQuotaError as e:
            raise QuotaStoreError(f"Stored quota for {owner_id} is invalid: {e.message}") from e
        return QuotaRecord(
            owner_id=row["owner_id"],
            quota=quota,
            version=row["version"],
            updated_at=row["updated_at"],
        )

    def get(self, owner_id: str) -> Quota | None:
        """Return an owner's quota, or None if the owner was never provisioned."""
        record = self.get_record(owner_id)
        return record.quota if record is not None else None

    def provision(self, owner_id: str, quota: Quota | None = None) -> Quota:
        """Create an owner's quota if it does not exist yet.

        Idempotent: an existing quota is returned unchanged.
        """
        initial = quota or Quota.default()
        try:
            conn = self._get_connection()
            conn.execute(self._INSERT_SQL, (owner_id, initial.quota, initial.used, _now()))
            conn.commit()
        except sqlite3.Error as e:
            raise QuotaStoreError(f"Failed to provision quota: {e}") from e

        current = self.get(owner_id)
        if current is None:
            raise QuotaStoreError(f"Quota for {owner_id} vanished after provisioning")
        return current

    def compare_and_set(self, owner_id: str, expected_version: int, new_quota: Quota) -> bool:
        """Write new_quota only if the stored version is still expected_version.

        Returns:
            True if the row was updated, False if another writer got there first.
        """
        try:
            conn = self._get_connection()
            cursor = conn.execute(
                self._CAS_SQL,
                (new_quota.quota, new_quota.used, _now(), owner_id, expected_version),
            )
            conn.commit()
        except sqlite3.Error as e:
            raise QuotaStoreError(f"Failed to update quota: {e}") from e
        return cursor.rowcount == 1

    def update(
        self,
        owner_id: str,
        transition: Callable[[Quota], Quota],
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> Quota:
        """Apply a quota transition with optimistic retry.

        Args:
            owner_id: Owner whose quota is updated.
            transition: Pure function from the current Quota to the next one,
                e.g. ``lambda q: q.add_usage(size)``. Quota errors it raises
                propagate and leave the stored value untouched.
            max_attempts: Compare-and-set attempts before giving up.

        Returns:
            The quota that was persisted.

        Raises:
            QuotaStoreError: If the owner is not provisioned or the store fails.
            QuotaConflictError: If every attempt lost to a concurrent writer.
        """
        for attempt in range(1, max_attempts + 1):
            record = self.get_record(owner_id)
            if record is None:
                raise QuotaStoreError(f"No quota provisioned for owner {owner_id}")

            updated = transition(record.quota)
            if updated == record.quota:
                return updated
            if self.compare_and_set(owner_id, record.version, updated):
                return updated

            logger.debug(
                "Quota update conflict: owner=%s attempt=%d/%d", owner_id, attempt, max_attempts
            )

        raise QuotaConflictError(owner_id, max_attempts)

    def close(self) -> None:
        """Close the thread-local database connection if open."""
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            with contextlib.suppress(sqlite3.Error):
                conn.close()
            self._local.conn = None
