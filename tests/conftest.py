"""
Shared fixtures for the vault tests.

Argon2 costs are lowered for every test so that key derivation stays fast;
the algorithm and output sizes are unchanged.
"""
import sqlite3

import pytest
import pytest_asyncio

from vult.vault import crypto
from vult.vault.auth import AuthSession
from vult.vault.config import VaultSettings
from vult.vault.manager import VaultManager
from vult.vault.registry import SecretRegistry
from vult.vault.store import EncryptedStore

PIN = "123456"
OTHER_PIN = "654321"

CHEAP_KDF = crypto.KdfParams(time_cost=1, memory_cost=8, parallelism=1)


class SleepRecorder:
    """Stand-in for ``asyncio.sleep`` that records the requested delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture(autouse=True)
def cheap_kdf(monkeypatch):
    """Use minimal Argon2 parameters."""
    monkeypatch.setattr(crypto, "MASTER_KDF", CHEAP_KDF)
    monkeypatch.setattr(crypto, "SECRET_KDF", CHEAP_KDF)


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def settings():
    """In-memory vault settings."""
    return VaultSettings(db_path=":memory:")


@pytest_asyncio.fixture
async def store():
    """An open in-memory store."""
    store = EncryptedStore(":memory:")
    await store.open()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def auth(store, settings, sleeps):
    """An uninitialized auth session."""
    session = AuthSession(store, settings, sleep=sleeps)
    yield session
    await session.stop_background_tasks()
    await session.lock()


@pytest_asyncio.fixture
async def unlocked_auth(auth):
    """An auth session initialized (and unlocked) with ``PIN``."""
    await auth.initialize(PIN)
    return auth


@pytest_asyncio.fixture
async def registry(unlocked_auth, store):
    """A registry on an unlocked vault."""
    return SecretRegistry(unlocked_auth, store)


@pytest_asyncio.fixture
async def vault(settings, sleeps):
    """An open in-memory VaultManager without background tasks."""
    manager = VaultManager(settings, sleep=sleeps)
    await manager.start(background_tasks=False)
    yield manager
    await manager.close()


def make_v1_vault(path, pin: str, secrets: list) -> None:
    """Write a schema-version-1 vault file.

    Version 1 vaults have no ``schema_version`` table, no per-secret salts,
    encrypt every value directly under the master key and keep only the
    first byte of the master key as PIN hash.

    Args:
        path: Database file to create.
        pin: Vault PIN.
        secrets: ``(id, app_name, key_name, value)`` tuples.
    """
    salt = crypto.generate_salt()
    master_key = crypto.derive_master_key(pin, salt)
    conn = sqlite3.connect(str(path))
    try:
        conn.executescript(
            """
            CREATE TABLE vault_config (
                id INTEGER PRIMARY KEY,
                salt BLOB NOT NULL,
                pin_hash TEXT NOT NULL,
                created_at INTEGER NOT NULL
            );
            CREATE TABLE api_keys (
                id TEXT PRIMARY KEY,
                app_name TEXT NOT NULL,
                key_name TEXT NOT NULL,
                api_url TEXT,
                description TEXT,
                encrypted_key_value BLOB NOT NULL,
                nonce BLOB NOT NULL,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                UNIQUE(app_name, key_name)
            );
            """
        )
        conn.execute(
            "INSERT INTO vault_config (id, salt, pin_hash, created_at) "
            "VALUES (1, ?, ?, ?)",
            (salt, f"${salt.hex()}:{bytes(master_key)[0]}", 1700000000),
        )
        for created, (secret_id, app_name, key_name, value) in enumerate(secrets):
            blob = crypto.encrypt(value.encode("utf-8"), master_key)
            conn.execute(
                "INSERT INTO api_keys (id, app_name, key_name, api_url, description, "
                "encrypted_key_value, nonce, created_at, updated_at) "
                "VALUES (?, ?, ?, NULL, NULL, ?, ?, ?, ?)",
                (
                    secret_id, app_name, key_name, blob.ciphertext, blob.nonce,
                    1700000000 + created, 1700000000 + created,
                ),
            )
        conn.commit()
    finally:
        conn.close()
        master_key.wipe()


def table_names(path) -> set:
    conn = sqlite3.connect(str(path))
    try:
        rows = conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table'"
        ).fetchall()
    finally:
        conn.close()
    return {row[0] for row in rows}
