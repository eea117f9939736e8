"""
Vault Models — records exchanged between the store, the registry and callers.

``SecretRecord`` is the persisted row (ciphertext, nonce and per-secret salt);
callers only ever see ``SecretMetadata`` or ``Secret``.
"""
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Current time truncated to whole seconds (the stored resolution)."""
    return datetime.now(timezone.utc).replace(microsecond=0)


def to_timestamp(value: datetime) -> int:
    return int(value.timestamp())


def from_timestamp(value: int) -> datetime:
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class SecretMetadata(BaseModel):
    """Everything about a secret except its value."""

    id: str
    app_name: Optional[str] = None
    key_name: str
    api_url: Optional[str] = None
    description: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class Secret(SecretMetadata):
    """Metadata plus the decrypted value."""

    value: str = Field(repr=False)


class SecretRecord(SecretMetadata):
    """A persisted secret row."""

    encrypted_value: bytes = Field(repr=False)
    nonce: bytes = Field(repr=False)
    key_salt: bytes = Field(repr=False)

    @classmethod
    def from_row(cls, row) -> "SecretRecord":
        return cls(
            id=row["id"],
            app_name=row["app_name"],
            key_name=row["key_name"],
            api_url=row["api_url"],
            description=row["description"],
            encrypted_value=bytes(row["encrypted_key_value"]),
            nonce=bytes(row["nonce"]),
            key_salt=bytes(row["key_salt"]),
            created_at=from_timestamp(row["created_at"]),
            updated_at=from_timestamp(row["updated_at"]),
        )

    @property
    def metadata(self) -> SecretMetadata:
        return SecretMetadata(
            **self.model_dump(exclude={"encrypted_value", "nonce", "key_salt"})
        )


class SecretUpdate(BaseModel):
    """Partial update of a secret.

    Only fields explicitly passed are applied, so ``SecretUpdate(api_url=None)``
    clears the URL while ``SecretUpdate()`` leaves it untouched.
    """

    model_config = ConfigDict(extra="forbid")

    app_name: Optional[str] = None
    key_name: Optional[str] = None
    value: Optional[str] = Field(default=None, repr=False)
    api_url: Optional[str] = None
    description: Optional[str] = None

    def provided(self, field: str) -> bool:
        return field in self.model_fields_set


class VaultConfig(BaseModel):
    """The vault's singleton configuration row.

    ``previous_salt`` and ``previous_verification_hash`` describe the master
    key in use before the last PIN change. They are kept until every secret
    has been re-encrypted, so the old PIN can still open unconverted rows.
    """

    salt: bytes = Field(repr=False)
    verification_hash: Optional[bytes] = Field(default=None, repr=False)
    legacy_pin_hash: Optional[str] = Field(default=None, repr=False)
    previous_salt: Optional[bytes] = Field(default=None, repr=False)
    previous_verification_hash: Optional[bytes] = Field(default=None, repr=False)
    created_at: datetime

    @property
    def needs_verifier_upgrade(self) -> bool:
        return self.verification_hash is None

    @property
    def rotation_pending(self) -> bool:
        return self.previous_salt is not None


class SessionState(BaseModel):
    """Snapshot of the authentication session."""

    is_unlocked: bool = False
    seconds_since_activity: int = 0
