"""
Tests for EncryptedStore and schema migrations.

Tests cover:
- Fresh schema creation and persistence across reopen
- Refusal to open databases from a newer release
- Cleanup and recovery of interrupted-migration tables
- Migration of version 1 vaults, including legacy re-encryption
- Backups
"""
import sqlite3

import pytest

from vult.vault.config import VaultSettings
from vult.vault.crypto import LEGACY_SALT
from vult.vault.exceptions import IncompatibleSchemaVersion, StorageFailed
from vult.vault.manager import VaultManager
from vult.vault.migrations import CURRENT_SCHEMA_VERSION
from vult.vault.store import EncryptedStore

from .conftest import OTHER_PIN, PIN, make_v1_vault, table_names


def _execute(path, sql, params=()):
    conn = sqlite3.connect(str(path))
    try:
        conn.execute(sql, params)
        conn.commit()
    finally:
        conn.close()


def _columns(path, table):
    conn = sqlite3.connect(str(path))
    try:
        return {row[1] for row in conn.execute(f"PRAGMA table_info({table})")}
    finally:
        conn.close()


class TestSchema:
    """Tests for schema creation."""

    @pytest.mark.asyncio
    async def test_fresh_memory_store(self, store):
        assert await store.schema_version() == CURRENT_SCHEMA_VERSION
        assert await store.read_config() is None
        assert await store.count_secrets() == 0

    @pytest.mark.asyncio
    async def test_fresh_file_store(self, tmp_path):
        path = tmp_path / "nested" / "vault.db"
        async with EncryptedStore(str(path)) as store:
            assert await store.schema_version() == CURRENT_SCHEMA_VERSION
        assert {"vault_config", "api_keys", "schema_version"} <= table_names(path)
        # no backup for a brand-new vault
        assert not list(path.parent.glob("vault_backup_*.db"))

    @pytest.mark.asyncio
    async def test_closed_store_raises(self):
        store = EncryptedStore(":memory:")
        with pytest.raises(StorageFailed):
            await store.count_secrets()

    @pytest.mark.asyncio
    async def test_reopen_keeps_data(self, tmp_path, sleeps):
        settings = VaultSettings(db_path=str(tmp_path / "vault.db"))
        async with VaultManager.open(settings, sleep=sleeps) as vault:
            await vault.auth.initialize(PIN)
            await vault.secrets.create("github", "token", "ghp_abc")

        async with VaultManager.open(settings, sleep=sleeps) as vault:
            assert await vault.is_initialized() is True
            assert vault.is_unlocked is False
            await vault.unlock(PIN)
            assert (await vault.secrets.get("github", "token")).value == "ghp_abc"


class TestVersionChecks:
    """Tests for schema version handling."""

    @pytest.mark.asyncio
    async def test_newer_database_refused(self, tmp_path):
        path = tmp_path / "vault.db"
        async with EncryptedStore(str(path)):
            pass
        _execute(
            path,
            "INSERT INTO schema_version (version, migrated_at) VALUES (?, ?)",
            (CURRENT_SCHEMA_VERSION + 1, 1700000000),
        )
        store = EncryptedStore(str(path))
        with pytest.raises(IncompatibleSchemaVersion) as exc:
            await store.open()
        assert exc.value.db_version == CURRENT_SCHEMA_VERSION + 1
        assert exc.value.app_version == CURRENT_SCHEMA_VERSION
        assert exc.value.category == "storage"
        assert store.is_open is False

    @pytest.mark.asyncio
    async def test_newer_database_left_untouched(self, tmp_path):
        path = tmp_path / "vault.db"
        async with EncryptedStore(str(path)):
            pass
        _execute(path, "CREATE TABLE api_keys_new (id TEXT)")
        _execute(
            path,
            "INSERT INTO schema_version (version, migrated_at) VALUES (?, ?)",
            (CURRENT_SCHEMA_VERSION + 1, 1700000000),
        )
        with pytest.raises(IncompatibleSchemaVersion):
            await EncryptedStore(str(path)).open()
        assert "api_keys_new" in table_names(path)

    @pytest.mark.asyncio
    async def test_orphaned_tables_dropped(self, tmp_path):
        path = tmp_path / "vault.db"
        async with EncryptedStore(str(path)):
            pass
        _execute(path, "CREATE TABLE api_keys_new (id TEXT)")
        _execute(path, "CREATE TABLE api_keys_v2 (id TEXT)")
        async with EncryptedStore(str(path)) as store:
            assert await store.schema_version() == CURRENT_SCHEMA_VERSION
        tables = table_names(path)
        assert "api_keys_new" not in tables
        assert "api_keys_v2" not in tables
        assert "api_keys" in tables

    @pytest.mark.asyncio
    async def test_interrupted_rename_recovered(self, tmp_path, sleeps):
        """A copy whose original was already dropped is renamed into place."""
        path = tmp_path / "vault.db"
        settings = VaultSettings(db_path=str(path))
        async with VaultManager.open(settings, sleep=sleeps) as vault:
            await vault.auth.initialize(PIN)
            await vault.secrets.create("github", "token", "ghp_abc")
        _execute(path, "ALTER TABLE api_keys RENAME TO api_keys_v2")

        async with VaultManager.open(settings, sleep=sleeps) as vault:
            await vault.unlock(PIN)
            assert (await vault.secrets.get("github", "token")).value == "ghp_abc"
        assert "api_keys_v2" not in table_names(path)


class TestMigrationFromV1:
    """Tests for upgrading version 1 vaults."""

    SECRETS = [
        ("id-1", "github", "token", "ghp_abc"),
        ("id-2", "aws", "access-key", "AKIA123"),
        ("id-3", "", "openai", "sk-xyz"),
    ]

    @pytest.mark.asyncio
    async def test_schema_upgraded(self, tmp_path):
        path = tmp_path / "vault.db"
        make_v1_vault(path, PIN, self.SECRETS)
        async with EncryptedStore(str(path)) as store:
            assert await store.schema_version() == CURRENT_SCHEMA_VERSION
            records = {r.id: r for r in await store.fetch_all_secrets()}
            assert set(records) == {"id-1", "id-2", "id-3"}
            assert all(r.key_salt == LEGACY_SALT for r in records.values())
            assert records["id-3"].app_name is None
            config = await store.read_config()
            assert config.legacy_pin_hash.startswith("$")
            assert config.verification_hash is None
            assert config.rotation_pending is False

        conn = sqlite3.connect(str(path))
        try:
            versions = [
                row[0] for row in
                conn.execute("SELECT version FROM schema_version ORDER BY version")
            ]
        finally:
            conn.close()
        assert versions == [2, 3, 4]

    @pytest.mark.asyncio
    async def test_backup_created(self, tmp_path):
        path = tmp_path / "vault.db"
        make_v1_vault(path, PIN, self.SECRETS)
        async with EncryptedStore(str(path)):
            pass
        backups = list(tmp_path.glob("vault_backup_*.db"))
        assert len(backups) == 1
        assert "key_salt" not in _columns(backups[0], "api_keys")

    @pytest.mark.asyncio
    async def test_unlock_reencrypts_legacy_secrets(self, tmp_path, sleeps):
        path = tmp_path / "vault.db"
        make_v1_vault(path, PIN, self.SECRETS)
        settings = VaultSettings(db_path=str(path))
        async with VaultManager.open(settings, sleep=sleeps) as vault:
            stats = await vault.unlock(PIN)
            assert stats["total"] == 3
            assert stats["reencrypted"] == 3
            assert stats["errors"] == 0
            assert await vault.secrets.legacy_count() == 0

            assert (await vault.secrets.get("github", "token")).value == "ghp_abc"
            assert (await vault.secrets.get("aws", "access-key")).value == "AKIA123"
            assert (await vault.secrets.get(None, "openai")).value == "sk-xyz"

            config = await vault.store.read_config()
            assert config.legacy_pin_hash is None
            assert config.verification_hash is not None

            # nothing left to do on the next unlock
            await vault.lock()
            assert await vault.unlock(PIN) is None

    @pytest.mark.asyncio
    async def test_legacy_rows_readable_before_reencryption(self, tmp_path, sleeps):
        path = tmp_path / "vault.db"
        make_v1_vault(path, PIN, self.SECRETS)
        settings = VaultSettings(db_path=str(path))
        async with VaultManager.open(settings, sleep=sleeps) as vault:
            await vault.auth.unlock(PIN)
            assert (await vault.secrets.get("github", "token")).value == "ghp_abc"

    @pytest.mark.asyncio
    async def test_duplicate_key_names_renamed(self, tmp_path, sleeps):
        path = tmp_path / "vault.db"
        make_v1_vault(path, PIN, [
            ("id-1", "github", "token", "first"),
            ("id-2", "gitlab", "token", "second"),
        ])
        settings = VaultSettings(db_path=str(path))
        async with VaultManager.open(settings, sleep=sleeps) as vault:
            await vault.unlock(PIN)
            assert (await vault.secrets.get("github", "token")).value == "first"
            assert (await vault.secrets.get("gitlab", "token@gitlab")).value == "second"

    @pytest.mark.asyncio
    async def test_change_pin_after_migration(self, tmp_path, sleeps):
        path = tmp_path / "vault.db"
        make_v1_vault(path, PIN, self.SECRETS)
        settings = VaultSettings(db_path=str(path))
        async with VaultManager.open(settings, sleep=sleeps) as vault:
            await vault.auth.unlock(PIN)
            # legacy rows are still under the old master key
            stats = await vault.change_pin(PIN, OTHER_PIN)
            assert stats["reencrypted"] == 3
            assert (await vault.secrets.get("github", "token")).value == "ghp_abc"


class TestMigrationFromV3:
    """Tests for adding the previous-key columns to version 3 vaults."""

    @staticmethod
    def _make_v3_vault(path):
        conn = sqlite3.connect(str(path))
        try:
            conn.executescript(
                """
                CREATE TABLE schema_version (
                    version INTEGER NOT NULL,
                    migrated_at INTEGER NOT NULL
                );
                CREATE TABLE vault_config (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    salt BLOB NOT NULL,
                    pin_hash TEXT,
                    verification_hash BLOB,
                    created_at INTEGER NOT NULL
                );
                CREATE TABLE api_keys (
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
                );
                INSERT INTO schema_version VALUES (2, 1700000000);
                INSERT INTO schema_version VALUES (3, 1700000000);
                """
            )
            conn.commit()
        finally:
            conn.close()

    @pytest.mark.asyncio
    async def test_columns_added(self, tmp_path, sleeps):
        path = tmp_path / "vault.db"
        self._make_v3_vault(path)
        settings = VaultSettings(db_path=str(path))
        async with VaultManager.open(settings, sleep=sleeps) as vault:
            assert await vault.store.schema_version() == CURRENT_SCHEMA_VERSION
            await vault.auth.initialize(PIN)
            await vault.secrets.create("github", "token", "ghp_abc")
            stats = await vault.change_pin(PIN, OTHER_PIN)
            assert stats["reencrypted"] == 1
        assert {"previous_salt", "previous_verification_hash"} <= _columns(
            path, "vault_config",
        )
        assert len(list(tmp_path.glob("vault_backup_*.db"))) == 1


class TestBackups:
    """Tests for manual backups."""

    @pytest.mark.asyncio
    async def test_memory_store_skips_backup(self, store):
        assert await store.create_backup() is None

    @pytest.mark.asyncio
    async def test_backup_pruning(self, tmp_path):
        path = tmp_path / "vault.db"
        async with EncryptedStore(str(path), backup_keep=2) as store:
            created = [await store.create_backup() for _ in range(3)]
        assert len(set(created)) == 3
        remaining = sorted(tmp_path.glob("vault_backup_*.db"))
        assert len(remaining) == 2
        assert created[0] not in remaining

    @pytest.mark.asyncio
    async def test_backups_disabled(self, tmp_path):
        async with EncryptedStore(str(tmp_path / "vault.db"), backup_keep=0) as store:
            assert await store.create_backup() is None
