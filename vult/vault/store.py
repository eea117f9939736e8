"""
EncryptedStore — SQLite persistence for the vault configuration and secrets.

The store only moves bytes: it never sees key material or plaintext.
Opening a store brings its schema up to date (see ``migrations``).

Tables:
- ``vault_config``: singleton row (id = 1) with the vault salt and PIN verifier
- ``api_keys``: one row per secret with ciphertext, nonce and per-secret salt
- ``schema_version``: one row per applied schema version
"""
import logging
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Optional

import aiosqlite

from .config import MEMORY_DB
from .exceptions import DuplicateKey, StorageFailed
from .migrations import detect_version, migrate
from .models import (
    SecretMetadata,
    SecretRecord,
    VaultConfig,
    from_timestamp,
    to_timestamp,
)

logger = logging.getLogger("vult")

BACKUP_PREFIX = "vault_backup_"

# ---------------------------------------------------------------------------
# SQL statements
# ---------------------------------------------------------------------------

_SELECT_CONFIG = """
SELECT salt, pin_hash, verification_hash,
       previous_salt, previous_verification_hash, created_at
FROM vault_config
WHERE id = 1
"""

_INSERT_CONFIG = """
INSERT INTO vault_config (id, salt, pin_hash, verification_hash, created_at)
VALUES (1, ?, NULL, ?, ?)
"""

_UPDATE_CONFIG = """
UPDATE vault_config
SET salt = ?, pin_hash = NULL, verification_hash = ?
WHERE id = 1
"""

_ROTATE_CONFIG = """
UPDATE vault_config
SET salt = ?, pin_hash = NULL, verification_hash = ?,
    previous_salt = ?, previous_verification_hash = ?
WHERE id = 1
"""

_CLEAR_PREVIOUS_KEY = """
UPDATE vault_config
SET previous_salt = NULL, previous_verification_hash = NULL
WHERE id = 1
"""

_SECRET_COLUMNS = (
    "id, app_name, key_name, api_url, description, "
    "encrypted_key_value, nonce, key_salt, created_at, updated_at"
)

_METADATA_COLUMNS = (
    "id, app_name, key_name, api_url, description, created_at, updated_at"
)

_INSERT_SECRET = f"""
INSERT INTO api_keys ({_SECRET_COLUMNS})
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

_SELECT_SECRET_BY_ID = f"""
SELECT {_SECRET_COLUMNS}
FROM api_keys
WHERE id = ?
"""

_SELECT_SECRET_BY_NAME = f"""
SELECT {_SECRET_COLUMNS}
FROM api_keys
WHERE key_name = ?
  AND (app_name = ? OR (app_name IS NULL AND ? = ''))
"""

_SELECT_ALL_SECRETS = f"""
SELECT {_SECRET_COLUMNS}
FROM api_keys
ORDER BY app_name, key_name
"""

_SELECT_ALL_METADATA = f"""
SELECT {_METADATA_COLUMNS}
FROM api_keys
ORDER BY app_name, key_name
"""

_UPDATE_SECRET = """
UPDATE api_keys
SET app_name = ?, key_name = ?, api_url = ?, description = ?,
    encrypted_key_value = ?, nonce = ?, key_salt = ?, updated_at = ?
WHERE id = ?
"""

_UPDATE_CIPHERTEXT = """
UPDATE api_keys
SET encrypted_key_value = ?, nonce = ?, key_salt = ?
WHERE id = ? AND encrypted_key_value = ?
"""

_DELETE_SECRET = "DELETE FROM api_keys WHERE id = ?"

_COUNT_SECRETS = "SELECT COUNT(*) FROM api_keys"

_COUNT_BY_SALT = "SELECT COUNT(*) FROM api_keys WHERE key_salt = ?"


def _optional_bytes(value) -> Optional[bytes]:
    return bytes(value) if value is not None else None


def _metadata_from_row(row) -> SecretMetadata:
    return SecretMetadata(
        id=row["id"],
        app_name=row["app_name"],
        key_name=row["key_name"],
        api_url=row["api_url"],
        description=row["description"],
        created_at=from_timestamp(row["created_at"]),
        updated_at=from_timestamp(row["updated_at"]),
    )


class EncryptedStore:
    """Async SQLite store for vault rows.

    One connection is shared by all tasks; an ``asyncio.Lock`` serialises
    statements so an open transaction is never joined by another task.
    """

    def __init__(self, db_path: str = MEMORY_DB, backup_keep: int = 5):
        self._db_path = db_path
        self._backup_keep = backup_keep
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def is_memory(self) -> bool:
        return self._db_path == MEMORY_DB

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Connect and bring the schema up to date.

        Raises:
            IncompatibleSchemaVersion: If the file was written by a newer release.
            StorageFailed: On any other database error.
        """
        if self._conn is not None:
            return
        if not self.is_memory:
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            # autocommit; transactions are explicit
            self._conn = await aiosqlite.connect(
                self._db_path, isolation_level=None,
            )
            self._conn.row_factory = aiosqlite.Row
        except aiosqlite.Error as err:
            raise StorageFailed(f"Cannot open vault database: {err}") from err
        try:
            await migrate(self)
        except BaseException:
            await self.close()
            raise
        logger.info("Vault store opened: %s", self._db_path)

    async def close(self) -> None:
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        await conn.close()
        logger.debug("Vault store closed: %s", self._db_path)

    async def schema_version(self) -> int:
        """Schema version recorded in the database."""
        async with self._guard() as conn:
            return await detect_version(conn)

    async def __aenter__(self) -> "EncryptedStore":
        await self.open()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------

    def _require_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StorageFailed("Vault store is not open")
        return self._conn

    @asynccontextmanager
    async def _guard(
        self,
        app_name: Optional[str] = None,
        key_name: Optional[str] = None,
    ) -> AsyncIterator[aiosqlite.Connection]:
        """Serialise access and translate sqlite errors."""
        conn = self._require_conn()
        async with self._lock:
            try:
                yield conn
            except aiosqlite.IntegrityError as err:
                if key_name is not None and "UNIQUE" in str(err):
                    raise DuplicateKey(app_name, key_name) from err
                raise StorageFailed(f"Constraint violation: {err}") from err
            except aiosqlite.Error as err:
                raise StorageFailed(f"Storage operation failed: {err}") from err

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run several statements atomically.

        Example:
            async with store.transaction() as conn:
                await conn.execute(...)
        """
        async with self._guard() as conn:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            await conn.execute("COMMIT")

    async def _fetchone(self, conn, sql: str, params=()):
        async with conn.execute(sql, params) as cursor:
            return await cursor.fetchone()

    async def _fetchall(self, conn, sql: str, params=()):
        async with conn.execute(sql, params) as cursor:
            return await cursor.fetchall()

    # ------------------------------------------------------------------
    # Vault configuration
    # ------------------------------------------------------------------

    async def read_config(self) -> Optional[VaultConfig]:
        """Return the vault configuration, or None before initialization."""
        async with self._guard() as conn:
            row = await self._fetchone(conn, _SELECT_CONFIG)
        if row is None:
            return None
        return VaultConfig(
            salt=bytes(row["salt"]),
            verification_hash=_optional_bytes(row["verification_hash"]),
            legacy_pin_hash=row["pin_hash"],
            previous_salt=_optional_bytes(row["previous_salt"]),
            previous_verification_hash=_optional_bytes(
                row["previous_verification_hash"]
            ),
            created_at=from_timestamp(row["created_at"]),
        )

    async def insert_config(self, config: VaultConfig) -> None:
        async with self._guard() as conn:
            await conn.execute(
                _INSERT_CONFIG,
                (
                    config.salt,
                    config.verification_hash,
                    to_timestamp(config.created_at),
                ),
            )
        logger.debug("Vault configuration created")

    async def update_config(self, salt: bytes, verification_hash: bytes) -> None:
        """Replace the vault salt and verifier (drops any legacy PIN hash)."""
        async with self._guard() as conn:
            cursor = await conn.execute(_UPDATE_CONFIG, (salt, verification_hash))
            if cursor.rowcount != 1:
                raise StorageFailed("Vault configuration row is missing")
        logger.debug("Vault configuration updated")

    async def rotate_config(
        self,
        salt: bytes,
        verification_hash: bytes,
        previous_salt: bytes,
        previous_verification_hash: bytes,
    ) -> None:
        """Install a new vault salt and verifier, remembering the old ones."""
        async with self._guard() as conn:
            cursor = await conn.execute(
                _ROTATE_CONFIG,
                (salt, verification_hash, previous_salt, previous_verification_hash),
            )
            if cursor.rowcount != 1:
                raise StorageFailed("Vault configuration row is missing")
        logger.debug("Vault configuration rotated")

    async def clear_previous_key(self) -> None:
        """Forget the pre-change salt and verifier."""
        async with self._guard() as conn:
            await conn.execute(_CLEAR_PREVIOUS_KEY)
        logger.debug("Previous vault key cleared")

    # ------------------------------------------------------------------
    # Secrets
    # ------------------------------------------------------------------

    async def insert_secret(self, record: SecretRecord) -> None:
        async with self._guard(record.app_name, record.key_name) as conn:
            await conn.execute(
                _INSERT_SECRET,
                (
                    record.id,
                    record.app_name,
                    record.key_name,
                    record.api_url,
                    record.description,
                    record.encrypted_value,
                    record.nonce,
                    record.key_salt,
                    to_timestamp(record.created_at),
                    to_timestamp(record.updated_at),
                ),
            )

    async def fetch_secret(self, secret_id: str) -> Optional[SecretRecord]:
        async with self._guard() as conn:
            row = await self._fetchone(conn, _SELECT_SECRET_BY_ID, (secret_id,))
        return SecretRecord.from_row(row) if row is not None else None

    async def fetch_secret_by_name(
        self, app_name: Optional[str], key_name: str
    ) -> Optional[SecretRecord]:
        app = app_name or ""
        async with self._guard() as conn:
            row = await self._fetchone(
                conn, _SELECT_SECRET_BY_NAME, (key_name, app, app),
            )
        return SecretRecord.from_row(row) if row is not None else None

    async def fetch_all_secrets(self) -> list[SecretRecord]:
        async with self._guard() as conn:
            rows = await self._fetchall(conn, _SELECT_ALL_SECRETS)
        return [SecretRecord.from_row(row) for row in rows]

    async def fetch_all_metadata(self) -> list[SecretMetadata]:
        async with self._guard() as conn:
            rows = await self._fetchall(conn, _SELECT_ALL_METADATA)
        return [_metadata_from_row(row) for row in rows]

    async def update_secret(self, record: SecretRecord) -> None:
        """Overwrite every mutable column of an existing row."""
        async with self._guard(record.app_name, record.key_name) as conn:
            cursor = await conn.execute(
                _UPDATE_SECRET,
                (
                    record.app_name,
                    record.key_name,
                    record.api_url,
                    record.description,
                    record.encrypted_value,
                    record.nonce,
                    record.key_salt,
                    to_timestamp(record.updated_at),
                    record.id,
                ),
            )
            if cursor.rowcount != 1:
                raise StorageFailed(f"Secret {record.id} vanished during update")

    async def replace_ciphertext(
        self,
        secret_id: str,
        expected_ciphertext: bytes,
        encrypted_value: bytes,
        nonce: bytes,
        key_salt: bytes,
    ) -> bool:
        """Swap a row's ciphertext if it still holds ``expected_ciphertext``.

        Returns:
            False if the row was changed or deleted concurrently.
        """
        async with self._guard() as conn:
            cursor = await conn.execute(
                _UPDATE_CIPHERTEXT,
                (encrypted_value, nonce, key_salt, secret_id, expected_ciphertext),
            )
            return cursor.rowcount == 1

    async def delete_secret(self, secret_id: str) -> bool:
        async with self._guard() as conn:
            cursor = await conn.execute(_DELETE_SECRET, (secret_id,))
            return cursor.rowcount == 1

    async def count_secrets(self) -> int:
        async with self._guard() as conn:
            row = await self._fetchone(conn, _COUNT_SECRETS)
        return int(row[0])

    async def count_with_salt(self, salt: bytes) -> int:
        async with self._guard() as conn:
            row = await self._fetchone(conn, _COUNT_BY_SALT, (salt,))
        return int(row[0])

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    async def create_backup(self) -> Optional[Path]:
        """Copy the database next to itself as ``vault_backup_<ts>.db``.

        In-memory stores are never backed up. Only the newest
        ``backup_keep`` backups are retained.

        Returns:
            Path of the new backup, or None when skipped.
        """
        if self.is_memory:
            logger.warning("Skipping backup for in-memory database")
            return None
        if self._backup_keep <= 0:
            logger.warning("Skipping backup: backups are disabled")
            return None

        directory = Path(self._db_path).parent
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        target = directory / f"{BACKUP_PREFIX}{stamp}.db"
        suffix = 1
        while target.exists():
            target = directory / f"{BACKUP_PREFIX}{stamp}_{suffix}.db"
            suffix += 1

        async with self._guard() as conn:
            await conn.execute("VACUUM INTO ?", (str(target),))
        logger.info("Database backup created: %s", target)

        await asyncio.to_thread(self._prune_backups, directory)
        return target

    def _prune_backups(self, directory: Path) -> None:
        backups = sorted(
            directory.glob(f"{BACKUP_PREFIX}*.db"),
            key=lambda p: (p.stat().st_mtime, p.name),
        )
        for old in backups[:-self._backup_keep]:
            try:
                old.unlink()
                logger.debug("Removed old backup: %s", old)
            except OSError as err:
                logger.warning("Could not remove old backup %s: %s", old, err)
