"""
VaultManager — wires the store, the auth session and the registry together.

Example:
    async with VaultManager.open(VaultSettings.from_env()) as vault:
        if not await vault.is_initialized():
            await vault.auth.initialize(pin)
        else:
            await vault.unlock(pin)
        key_id = await vault.secrets.create("github", "token", "ghp_xxx")
"""
import logging
from pathlib import Path
from typing import Optional

from .auth import AuthSession
from .config import VaultSettings
from .registry import SecretRegistry
from .store import EncryptedStore

logger = logging.getLogger("vult")


class VaultManager:
    """Owns one open vault and its background tasks."""

    def __init__(self, settings: Optional[VaultSettings] = None, **auth_kwargs):
        self.settings = settings or VaultSettings()
        self.store = EncryptedStore(
            self.settings.db_path, backup_keep=self.settings.backup_keep,
        )
        self.auth = AuthSession(self.store, self.settings, **auth_kwargs)
        self.secrets = SecretRegistry(self.auth, self.store)

    @classmethod
    def open(cls, settings: Optional[VaultSettings] = None, **auth_kwargs) -> "VaultManager":
        """Create a manager to be used as ``async with VaultManager.open(...)``."""
        return cls(settings, **auth_kwargs)

    async def start(self, background_tasks: bool = True) -> "VaultManager":
        """Open the store and start the auto-lock tasks."""
        await self.store.open()
        if background_tasks:
            self.auth.start_background_tasks()
        logger.debug("Vault manager started: %s", self.settings.db_path)
        return self

    async def close(self) -> None:
        """Stop background tasks, lock the vault and close the store."""
        await self.auth.stop_background_tasks()
        await self.auth.lock()
        await self.store.close()

    async def __aenter__(self) -> "VaultManager":
        return await self.start()

    async def __aexit__(self, *exc) -> None:
        await self.close()

    @property
    def is_open(self) -> bool:
        return self.store.is_open

    @property
    def is_unlocked(self) -> bool:
        return self.auth.is_unlocked

    async def is_initialized(self) -> bool:
        return await self.auth.is_initialized()

    async def rotation_pending(self) -> bool:
        return await self.auth.rotation_pending()

    async def unlock(self, pin: str) -> Optional[dict]:
        """Unlock and upgrade any legacy secrets to per-secret keys.

        Returns:
            Re-encryption stats when legacy secrets were found, else None.
        """
        await self.auth.unlock(pin)
        if await self.secrets.legacy_count() == 0:
            return None
        logger.info("Legacy secrets found, re-encrypting with per-secret keys")
        return await self.secrets.reencrypt_all()

    async def change_pin(self, old_pin: str, new_pin: str) -> dict:
        """Change the PIN and re-encrypt every secret under the new master key.

        If re-encryption is interrupted or leaves errors, the change stays
        pending and ``resume_pin_change(old_pin)`` picks it up again.

        Returns:
            Re-encryption stats.
        """
        previous = await self.auth.change_pin(old_pin, new_pin)
        with previous:
            stats = await self.secrets.reencrypt_all(previous_key=previous)
        return await self._finish_pin_change(stats)

    async def resume_pin_change(self, old_pin: str) -> dict:
        """Re-encrypt secrets left under the key of an unfinished PIN change.

        Returns:
            Re-encryption stats.
        """
        previous = await self.auth.previous_master_key(old_pin)
        with previous:
            stats = await self.secrets.reencrypt_all(previous_key=previous)
        return await self._finish_pin_change(stats)

    async def _finish_pin_change(self, stats: dict) -> dict:
        if stats["errors"] == 0:
            await self.auth.complete_rotation()
        else:
            logger.warning(
                "%d secret(s) still need the previous PIN", stats["errors"],
            )
        return stats

    async def lock(self) -> None:
        await self.auth.lock()

    async def create_backup(self) -> Optional[Path]:
        return await self.store.create_backup()
