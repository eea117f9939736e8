"""
Vault Schema Migrations — versioned, transactional schema upgrades.

Schema versions:
    1. ``api_keys`` without per-secret salts, unique per (app_name, key_name)
    2. ``api_keys.key_salt`` added, ``key_name`` unique across the vault
    3. ``vault_config.verification_hash`` holds a full PIN verifier
    4. ``vault_config.previous_salt`` and ``previous_verification_hash`` keep
       the pre-change key reachable until a PIN change has re-encrypted
       every secret

Each step runs in its own transaction together with the ``schema_version``
row that records it, so an interrupted upgrade is simply re-run on the next
open. Rows carried over from version 1 get the all-zero legacy salt: their
values stay encrypted under the master key until the registry re-encrypts
them after the next unlock.
"""
import logging
from typing import Awaitable, Callable

from .crypto import LEGACY_SALT
from .exceptions import IncompatibleSchemaVersion
from .models import to_timestamp, utcnow

logger = logging.getLogger("vult")

CURRENT_SCHEMA_VERSION = 4

# Work tables of a copy-and-rename step mapped to the table they replace.
ORPHANED_TABLES = {
    "api_keys_new": "api_keys",
    "api_keys_v2": "api_keys",
    "vault_config_v3": "vault_config",
}

# ---------------------------------------------------------------------------
# SQL statements
# ---------------------------------------------------------------------------

_CREATE_SCHEMA_VERSION = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL,
    migrated_at INTEGER NOT NULL
)
"""

_CREATE_API_KEYS = """
CREATE TABLE {table} (
    id TEXT PRIMARY KEY,
    app_name TEXT,
    key_name TEXT NOT NULL,
    api_url TEXT,
    description TEXT,
    encrypted_key_value BLOB NOT NULL,
    nonce BLOB NOT NULL,
    key_salt BLOB NOT NULL,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    UNIQUE(key_name)
)
"""

_CREATE_VAULT_CONFIG = """
CREATE TABLE {table} (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    salt BLOB NOT NULL,
    pin_hash TEXT,
    verification_hash BLOB,
    previous_salt BLOB,
    previous_verification_hash BLOB,
    created_at INTEGER NOT NULL
)
"""

_SELECT_VERSION = "SELECT MAX(version) FROM schema_version"

_INSERT_VERSION = """
INSERT INTO schema_version (version, migrated_at) VALUES (?, ?)
"""

_ADD_PREVIOUS_KEY_COLUMNS = (
    "ALTER TABLE vault_config ADD COLUMN previous_salt BLOB",
    "ALTER TABLE vault_config ADD COLUMN previous_verification_hash BLOB",
)

_SELECT_TABLES = "SELECT name FROM sqlite_master WHERE type = 'table'"

_SELECT_V1_KEYS = """
SELECT id, app_name, key_name, api_url, description,
       encrypted_key_value, nonce, created_at, updated_at
FROM api_keys
ORDER BY created_at, id
"""

_INSERT_V2_KEY = """
INSERT INTO api_keys_v2 (
    id, app_name, key_name, api_url, description,
    encrypted_key_value, nonce, key_salt, created_at, updated_at
)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

_COPY_V2_CONFIG = """
INSERT INTO vault_config_v3 (id, salt, pin_hash, verification_hash, created_at)
SELECT 1, salt, pin_hash, NULL, created_at
FROM vault_config
ORDER BY id
LIMIT 1
"""


# ---------------------------------------------------------------------------
# Introspection helpers
# ---------------------------------------------------------------------------

async def _tables(conn) -> set[str]:
    async with conn.execute(_SELECT_TABLES) as cursor:
        return {row[0] for row in await cursor.fetchall()}


async def _columns(conn, table: str) -> set[str]:
    async with conn.execute(f"PRAGMA table_info({table})") as cursor:
        return {row[1] for row in await cursor.fetchall()}


async def _record_version(conn, version: int) -> None:
    await conn.execute(_INSERT_VERSION, (version, to_timestamp(utcnow())))


async def detect_version(conn) -> int:
    """Return the stored schema version; 0 for an empty database.

    Databases that predate version tracking have vault tables but no
    ``schema_version`` row and are treated as version 1.
    """
    async with conn.execute(_SELECT_VERSION) as cursor:
        row = await cursor.fetchone()
    if row is not None and row[0] is not None:
        return int(row[0])
    tables = await _tables(conn)
    if {"api_keys", "vault_config"} & tables:
        return 1
    return 0


async def recover_orphaned_tables(conn) -> None:
    """Drop work tables left by an interrupted copy-and-rename.

    A work table whose target is missing holds the only copy of the data
    and is renamed into place instead.
    """
    tables = await _tables(conn)
    for orphan, target in ORPHANED_TABLES.items():
        if orphan not in tables:
            continue
        if target not in tables:
            logger.warning("Restoring interrupted migration table %s", orphan)
            await conn.execute(f"ALTER TABLE {orphan} RENAME TO {target}")
            tables.add(target)
        else:
            logger.warning("Removing orphaned table: %s", orphan)
            await conn.execute(f"DROP TABLE IF EXISTS {orphan}")


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------

async def create_current_schema(conn) -> None:
    tables = await _tables(conn)
    if "vault_config" not in tables:
        await conn.execute(_CREATE_VAULT_CONFIG.format(table="vault_config"))
    if "api_keys" not in tables:
        await conn.execute(_CREATE_API_KEYS.format(table="api_keys"))


async def migrate_v1_to_v2(conn) -> None:
    """Add per-secret salts and make ``key_name`` globally unique.

    Version 1 allowed the same key name under two apps. Later duplicates
    are renamed to ``<key_name>@<app_name>``; their values are still
    encrypted under the bare master key, so renaming is safe.
    """
    tables = await _tables(conn)
    if "api_keys" not in tables:
        await conn.execute(_CREATE_API_KEYS.format(table="api_keys"))
        return
    if "key_salt" in await _columns(conn, "api_keys"):
        return

    await conn.execute(_CREATE_API_KEYS.format(table="api_keys_v2"))
    async with conn.execute(_SELECT_V1_KEYS) as cursor:
        rows = await cursor.fetchall()

    logger.info("Migrating %d key(s) to schema version 2", len(rows))
    seen: set[str] = set()
    for row in rows:
        app_name = row["app_name"] or None
        key_name = row["key_name"]
        if key_name in seen:
            renamed = f"{key_name}@{app_name or ''}"
            suffix = 2
            while renamed in seen:
                renamed = f"{key_name}@{app_name or ''}#{suffix}"
                suffix += 1
            logger.warning(
                "Renaming duplicate key %s/%s to %s", app_name or '', key_name, renamed,
            )
            key_name = renamed
        seen.add(key_name)
        await conn.execute(
            _INSERT_V2_KEY,
            (
                row["id"], app_name, key_name, row["api_url"], row["description"],
                row["encrypted_key_value"], row["nonce"], LEGACY_SALT,
                row["created_at"], row["updated_at"],
            ),
        )

    await conn.execute("DROP TABLE api_keys")
    await conn.execute("ALTER TABLE api_keys_v2 RENAME TO api_keys")


async def migrate_v2_to_v3(conn) -> None:
    """Rebuild ``vault_config`` with a nullable legacy hash and a verifier column."""
    tables = await _tables(conn)
    if "vault_config" not in tables:
        await conn.execute(_CREATE_VAULT_CONFIG.format(table="vault_config"))
        return
    if "verification_hash" in await _columns(conn, "vault_config"):
        return

    await conn.execute(_CREATE_VAULT_CONFIG.format(table="vault_config_v3"))
    await conn.execute(_COPY_V2_CONFIG)
    await conn.execute("DROP TABLE vault_config")
    await conn.execute("ALTER TABLE vault_config_v3 RENAME TO vault_config")


async def migrate_v3_to_v4(conn) -> None:
    """Add the columns that track an unfinished PIN change."""
    if "previous_salt" in await _columns(conn, "vault_config"):
        return
    for statement in _ADD_PREVIOUS_KEY_COLUMNS:
        await conn.execute(statement)


MIGRATIONS: dict[int, Callable[..., Awaitable[None]]] = {
    1: migrate_v1_to_v2,
    2: migrate_v2_to_v3,
    3: migrate_v3_to_v4,
}


async def migrate(store) -> int:
    """Bring an open store's schema to ``CURRENT_SCHEMA_VERSION``.

    Args:
        store: EncryptedStore whose connection is already open.

    Returns:
        The schema version the database was found at (0 if new).

    Raises:
        IncompatibleSchemaVersion: If the database is newer than this release.
    """
    async with store.transaction() as conn:
        await conn.execute(_CREATE_SCHEMA_VERSION)
        found = await detect_version(conn)
        # rolls back, leaving a newer database untouched
        if found > CURRENT_SCHEMA_VERSION:
            raise IncompatibleSchemaVersion(found, CURRENT_SCHEMA_VERSION)
        await recover_orphaned_tables(conn)
        if found == 0:
            # a recovered work table may turn out to be a legacy vault
            found = await detect_version(conn)
        if found == 0:
            await create_current_schema(conn)
            await _record_version(conn, CURRENT_SCHEMA_VERSION)
            logger.info(
                "Created vault schema version %d", CURRENT_SCHEMA_VERSION,
            )

    if 0 < found < CURRENT_SCHEMA_VERSION:
        logger.info(
            "Migrating database from version %d to %d",
            found, CURRENT_SCHEMA_VERSION,
        )
        await store.create_backup()
        for version in range(found, CURRENT_SCHEMA_VERSION):
            async with store.transaction() as conn:
                await MIGRATIONS[version](conn)
                await _record_version(conn, version + 1)
            logger.info("Schema migrated to version %d", version + 1)

    return found
