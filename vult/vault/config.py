"""
Vault Configuration — validated runtime settings.

Reads optional overrides from environment variables:
    VULT_DB_PATH                  = <path to the SQLite vault file | :memory:>
    VULT_AUTO_LOCK_TIMEOUT        = <seconds of inactivity, 0 disables>
    VULT_AUTO_LOCK_CHECK_INTERVAL = <seconds between auto-lock checks>
    VULT_ACTIVITY_TICK            = <seconds per inactivity tick>
    VULT_MAX_FAILED_ATTEMPTS      = <failed unlocks before refusing>
    VULT_BACKOFF_UNIT             = <seconds multiplied by 2^attempts>
    VULT_BACKUP_KEEP              = <pre-migration backups to keep>

Security Note:
    Settings never hold key material or PINs.
"""
import os
import logging
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger("vult")

MIN_PIN_LENGTH = 6
MAX_PIN_LENGTH = 64
DEFAULT_AUTO_LOCK_TIMEOUT = 300  # 5 minutes
MEMORY_DB = ":memory:"


def default_db_path() -> str:
    """Return the default vault location, ``~/.vult/vault.db``."""
    return str(Path.home() / ".vult" / "vault.db")


class VaultSettings(BaseModel):
    """Validated vault settings."""

    db_path: str = Field(default_factory=default_db_path)
    auto_lock_timeout: int = Field(default=DEFAULT_AUTO_LOCK_TIMEOUT, ge=0)
    auto_lock_check_interval: float = Field(default=5.0, gt=0)
    activity_tick: float = Field(default=1.0, gt=0)
    max_failed_attempts: int = Field(default=10, ge=1, le=1000)
    backoff_unit: float = Field(default=1.0, ge=0)
    backup_keep: int = Field(default=5, ge=0)

    @field_validator("db_path")
    @classmethod
    def expand_db_path(cls, v: str) -> str:
        """Expand ``~`` in file paths; keep the in-memory marker as is."""
        v = v.strip()
        if not v:
            raise ValueError("db_path cannot be empty")
        if v == MEMORY_DB:
            return v
        return str(Path(v).expanduser())

    @property
    def is_memory(self) -> bool:
        return self.db_path == MEMORY_DB

    @property
    def auto_lock_enabled(self) -> bool:
        return self.auto_lock_timeout > 0

    @classmethod
    def from_env(cls) -> "VaultSettings":
        """Create VaultSettings from ``VULT_*`` environment variables.

        Unset variables fall back to the field defaults.

        Returns:
            Populated VaultSettings instance.
        """
        env_map = {
            "db_path": "VULT_DB_PATH",
            "auto_lock_timeout": "VULT_AUTO_LOCK_TIMEOUT",
            "auto_lock_check_interval": "VULT_AUTO_LOCK_CHECK_INTERVAL",
            "activity_tick": "VULT_ACTIVITY_TICK",
            "max_failed_attempts": "VULT_MAX_FAILED_ATTEMPTS",
            "backoff_unit": "VULT_BACKOFF_UNIT",
            "backup_keep": "VULT_BACKUP_KEEP",
        }
        values = {
            field: os.environ[name]
            for field, name in env_map.items()
            if os.environ.get(name)
        }
        logger.debug("Settings overridden from environment: %s", sorted(values))
        return cls(**values)
