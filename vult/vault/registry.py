"""
SecretRegistry — encrypted CRUD over the vault's secrets.

Provides the public API for stored secrets:
- ``create(...)`` — encrypt and persist a new secret
- ``get(app_name, key_name)`` / ``get_by_id(id)`` — decrypt and return a secret
- ``list()`` / ``search(query)`` — metadata only, nothing is decrypted
- ``update(id, ...)`` — change fields, re-encrypting when the context changes
- ``delete(id)`` / ``delete_by_name(app_name, key_name)``
- ``reencrypt_all(previous_key)`` — bulk move to the current master key

Every value is encrypted under its own key, derived from the master key,
the secret's (app_name, key_name) pair and a per-secret salt. Renaming a
secret therefore always re-encrypts it.

Security Note:
    Never log plaintext or ciphertext values. Only log ids and key names.
    The master key copy used by an operation is wiped when it finishes.
"""
import asyncio
import logging
import uuid
from typing import List, Optional

from pydantic import ValidationError

from .crypto import (
    LEGACY_SALT,
    EncryptedBlob,
    MasterKey,
    decrypt,
    derive_secret_key,
    encrypt,
    generate_salt,
    is_legacy_salt,
)
from .exceptions import DecryptionFailed, InvalidInput, Locked, NotFound
from .key_rotation import reencrypt_all
from .models import Secret, SecretMetadata, SecretRecord, SecretUpdate, utcnow

logger = logging.getLogger("vult")


def _normalize_app(app_name: Optional[str]) -> Optional[str]:
    if app_name is None or not app_name.strip():
        return None
    return app_name


def _validate_key_name(key_name: str) -> None:
    if not isinstance(key_name, str) or not key_name.strip():
        raise InvalidInput("key_name cannot be empty")


def _validate_value(value: str) -> None:
    """Reject empty values; a value of only whitespace counts as empty."""
    if not isinstance(value, str) or not value.strip():
        raise InvalidInput("key_value cannot be empty")


class SecretRegistry:
    """CRUD over secrets, bound to an AuthSession and an EncryptedStore."""

    def __init__(self, auth, store):
        self._auth = auth
        self._store = store

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_unlocked(self) -> None:
        if not self._auth.is_unlocked:
            raise Locked()
        self._auth.update_activity()

    async def _master_key(self) -> MasterKey:
        key = await self._auth.get_master_key()
        self._auth.update_activity()
        return key

    async def _encrypt_value(
        self,
        master_key: MasterKey,
        app_name: Optional[str],
        key_name: str,
        value: str,
    ) -> tuple[EncryptedBlob, bytes]:
        salt = generate_salt()
        secret_key = await asyncio.to_thread(
            derive_secret_key, master_key, app_name or "", key_name, salt,
        )
        with secret_key:
            blob = encrypt(value.encode("utf-8"), secret_key)
        return blob, salt

    async def _decrypt_record(self, master_key: MasterKey, record: SecretRecord) -> str:
        blob = EncryptedBlob(ciphertext=record.encrypted_value, nonce=record.nonce)
        if is_legacy_salt(record.key_salt):
            plaintext = decrypt(blob, master_key)
        else:
            secret_key = await asyncio.to_thread(
                derive_secret_key,
                master_key, record.app_name or "", record.key_name, record.key_salt,
            )
            with secret_key:
                plaintext = decrypt(blob, secret_key)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as err:
            raise DecryptionFailed("Decrypted value is not valid UTF-8") from err

    async def _load(self, record: Optional[SecretRecord], missing: NotFound) -> Secret:
        if record is None:
            raise missing
        with await self._master_key() as master_key:
            value = await self._decrypt_record(master_key, record)
        return Secret(**record.metadata.model_dump(), value=value)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def create(
        self,
        app_name: Optional[str],
        key_name: str,
        value: str,
        api_url: Optional[str] = None,
        description: Optional[str] = None,
    ) -> str:
        """Encrypt and store a new secret.

        Args:
            app_name: Optional application the secret belongs to.
            key_name: Secret name, unique across the vault.
            value: Secret value.
            api_url: Optional URL the secret is used with.
            description: Optional free text.

        Returns:
            The new secret's id.

        Raises:
            Locked: The vault is locked.
            InvalidInput: Empty key_name or value (whitespace-only counts
                as empty).
            DuplicateKey: key_name already exists.
        """
        self._require_unlocked()
        _validate_key_name(key_name)
        _validate_value(value)
        app_name = _normalize_app(app_name)

        with await self._master_key() as master_key:
            blob, salt = await self._encrypt_value(
                master_key, app_name, key_name, value,
            )

        now = utcnow()
        record = SecretRecord(
            id=str(uuid.uuid4()),
            app_name=app_name,
            key_name=key_name,
            api_url=api_url,
            description=description,
            encrypted_value=blob.ciphertext,
            nonce=blob.nonce,
            key_salt=salt,
            created_at=now,
            updated_at=now,
        )
        await self._store.insert_secret(record)
        logger.debug("Secret created: id=%s key=%s", record.id, key_name)
        return record.id

    async def get(self, app_name: Optional[str], key_name: str) -> Secret:
        """Return a decrypted secret by (app_name, key_name).

        Raises:
            Locked: The vault is locked.
            NotFound: No such secret.
            DecryptionFailed: Stored value does not match the key material.
        """
        self._require_unlocked()
        record = await self._store.fetch_secret_by_name(app_name, key_name)
        return await self._load(record, NotFound.for_key(app_name, key_name))

    async def get_by_id(self, secret_id: str) -> Secret:
        self._require_unlocked()
        record = await self._store.fetch_secret(secret_id)
        return await self._load(record, NotFound(f"Key not found: {secret_id}"))

    async def list(self) -> List[SecretMetadata]:
        """Metadata of every secret, ordered by app and key name."""
        self._require_unlocked()
        return await self._store.fetch_all_metadata()

    async def search(self, query: str) -> List[SecretMetadata]:
        """Case-insensitive substring match over app name, key name and description."""
        self._require_unlocked()
        needle = (query or "").casefold()
        return [
            meta for meta in await self._store.fetch_all_metadata()
            if any(
                needle in (field or "").casefold()
                for field in (meta.app_name, meta.key_name, meta.description)
            )
        ]

    async def update(
        self,
        secret_id: str,
        changes: Optional[SecretUpdate] = None,
        **fields,
    ) -> SecretMetadata:
        """Apply a partial update.

        Only fields that are explicitly given change; passing ``None``
        clears an optional field. The value is re-encrypted under a fresh
        salt whenever app_name, key_name or the value itself changes.

        Example:
            await registry.update(secret_id, key_name="gitlab")
            await registry.update(secret_id, SecretUpdate(api_url=None))

        Returns:
            The updated metadata.
        """
        self._require_unlocked()
        if changes is None:
            try:
                changes = SecretUpdate(**fields)
            except ValidationError as err:
                raise InvalidInput(f"Invalid update: {err}") from err
        elif fields:
            raise InvalidInput("Pass either a SecretUpdate or keyword fields")

        if changes.provided("key_name"):
            _validate_key_name(changes.key_name)
        if changes.provided("value"):
            _validate_value(changes.value)

        existing = await self._store.fetch_secret(secret_id)
        if existing is None:
            raise NotFound(f"Key not found: {secret_id}")

        app_name = (
            _normalize_app(changes.app_name)
            if changes.provided("app_name") else existing.app_name
        )
        key_name = (
            changes.key_name if changes.provided("key_name") else existing.key_name
        )
        api_url = changes.api_url if changes.provided("api_url") else existing.api_url
        description = (
            changes.description
            if changes.provided("description") else existing.description
        )

        context_changed = (
            app_name != existing.app_name or key_name != existing.key_name
        )
        encrypted_value = existing.encrypted_value
        nonce = existing.nonce
        key_salt = existing.key_salt

        if context_changed or changes.provided("value"):
            with await self._master_key() as master_key:
                if changes.provided("value"):
                    value = changes.value
                else:
                    value = await self._decrypt_record(master_key, existing)
                blob, key_salt = await self._encrypt_value(
                    master_key, app_name, key_name, value,
                )
            encrypted_value, nonce = blob.ciphertext, blob.nonce
            logger.debug("Secret re-encrypted: id=%s key=%s", secret_id, key_name)

        record = existing.model_copy(update={
            "app_name": app_name,
            "key_name": key_name,
            "api_url": api_url,
            "description": description,
            "encrypted_value": encrypted_value,
            "nonce": nonce,
            "key_salt": key_salt,
            "updated_at": utcnow(),
        })
        await self._store.update_secret(record)
        logger.debug("Secret updated: id=%s key=%s", secret_id, key_name)
        return record.metadata

    async def delete(self, secret_id: str) -> SecretMetadata:
        """Delete a secret.

        Returns:
            The deleted secret's metadata.

        Raises:
            NotFound: No such secret.
        """
        self._require_unlocked()
        record = await self._store.fetch_secret(secret_id)
        if record is None or not await self._store.delete_secret(secret_id):
            raise NotFound(f"Key not found: {secret_id}")
        logger.debug("Secret deleted: id=%s key=%s", secret_id, record.key_name)
        return record.metadata

    async def delete_by_name(
        self, app_name: Optional[str], key_name: str
    ) -> SecretMetadata:
        self._require_unlocked()
        record = await self._store.fetch_secret_by_name(app_name, key_name)
        if record is None:
            raise NotFound.for_key(app_name, key_name)
        return await self.delete(record.id)

    async def count(self) -> int:
        self._require_unlocked()
        return await self._store.count_secrets()

    async def legacy_count(self) -> int:
        """Number of secrets still encrypted directly under the master key."""
        self._require_unlocked()
        return await self._store.count_with_salt(LEGACY_SALT)

    async def reencrypt_all(
        self,
        previous_key: Optional[MasterKey] = None,
        batch_size: int = 100,
    ) -> dict:
        """Re-encrypt legacy rows and rows under ``previous_key``.

        ``previous_key`` stays owned by the caller.

        Returns:
            Stats dict with keys: total, reencrypted, errors, skipped.
        """
        self._require_unlocked()
        with await self._master_key() as master_key:
            return await reencrypt_all(
                self._store, master_key, previous_key, batch_size=batch_size,
            )
