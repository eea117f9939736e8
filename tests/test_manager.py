"""
End-to-end scenarios through VaultManager.
"""
import pytest

from vult import VaultManager, VaultSettings, __version__
from vult.vault.exceptions import (
    AlreadyInitialized,
    DuplicateKey,
    InvalidPin,
    Locked,
    PinTooShort,
)

from .conftest import OTHER_PIN, PIN


class TestLifecycle:
    """Tests for opening and closing a vault."""

    @pytest.mark.asyncio
    async def test_context_manager(self, settings, sleeps):
        async with VaultManager.open(settings, sleep=sleeps) as vault:
            assert vault.is_open is True
            assert vault.auth.background_tasks_running is True
            assert await vault.is_initialized() is False
            await vault.auth.initialize(PIN)
            assert vault.is_unlocked is True
        assert vault.is_open is False
        assert vault.is_unlocked is False
        assert vault.auth.background_tasks_running is False

    @pytest.mark.asyncio
    async def test_unlock_without_legacy_rows(self, vault):
        await vault.auth.initialize(PIN)
        await vault.secrets.create("github", "token", "ghp_abc")
        await vault.lock()
        assert await vault.unlock(PIN) is None

    @pytest.mark.asyncio
    async def test_memory_backup_skipped(self, vault):
        assert await vault.create_backup() is None

    def test_version(self):
        assert __version__


class TestScenarios:
    """Typical user flows."""

    @pytest.mark.asyncio
    async def test_rename_github_to_gitlab(self, vault):
        await vault.auth.initialize(PIN)
        secret_id = await vault.secrets.create("github", "token", "abc")
        await vault.secrets.update(secret_id, app_name="gitlab")
        secret = await vault.secrets.get("gitlab", "token")
        assert secret.value == "abc"
        assert secret.app_name == "gitlab"

    @pytest.mark.asyncio
    async def test_short_pin_then_already_initialized(self, vault):
        with pytest.raises(PinTooShort):
            await vault.auth.initialize("12345")
        await vault.auth.initialize(PIN)
        with pytest.raises(AlreadyInitialized):
            await vault.auth.initialize(PIN)

    @pytest.mark.asyncio
    async def test_wrong_pins_then_success(self, vault, sleeps):
        await vault.auth.initialize(PIN)
        await vault.lock()
        for _ in range(3):
            with pytest.raises(InvalidPin):
                await vault.unlock(OTHER_PIN)
        assert sleeps.delays == [2.0, 4.0]
        await vault.unlock(PIN)
        assert sleeps.delays[-1] == 8.0
        assert vault.auth.failed_attempts == 0

    @pytest.mark.asyncio
    async def test_duplicate_key_across_apps(self, vault):
        await vault.auth.initialize(PIN)
        await vault.secrets.create("github", "token", "one")
        with pytest.raises(DuplicateKey):
            await vault.secrets.create("gitlab", "token", "two")

    @pytest.mark.asyncio
    async def test_locked_after_auto_lock(self, vault):
        await vault.auth.initialize(PIN)
        await vault.secrets.create("github", "token", "abc")
        vault.auth.tick(vault.settings.auto_lock_timeout)
        assert await vault.auth.check_auto_lock() is True
        with pytest.raises(Locked):
            await vault.secrets.list()
        await vault.unlock(PIN)
        assert len(await vault.secrets.list()) == 1

    @pytest.mark.asyncio
    async def test_env_settings(self, monkeypatch, tmp_path, sleeps):
        monkeypatch.setenv("VULT_DB_PATH", str(tmp_path / "env.db"))
        async with VaultManager.open(VaultSettings.from_env(), sleep=sleeps) as vault:
            await vault.auth.initialize(PIN)
        assert (tmp_path / "env.db").exists()
