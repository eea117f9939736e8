"""
Vault Key Rotation — bulk re-encryption of secrets under the current master key.

Brings every row to the current key hierarchy:
- legacy rows (all-zero salt) encrypted directly under a master key
- rows whose per-secret key was derived from a previous master key
  (after a PIN change)

Each row gets a fresh per-secret salt. The operation is idempotent and
resumable: rows that already decrypt under the current master key are
skipped, and each row is swapped with a compare-and-set on its old
ciphertext so a concurrent edit is never overwritten.

Security Note:
    Plaintext exists in memory only during re-encryption of each row.
    Never log plaintext or ciphertext values.
"""
import asyncio
import logging
from typing import Optional

from .crypto import (
    EncryptedBlob,
    MasterKey,
    decrypt,
    derive_secret_key,
    encrypt,
    generate_salt,
    is_legacy_salt,
)
from .exceptions import DecryptionFailed, StorageFailed, VaultError
from .models import SecretRecord

logger = logging.getLogger("vult")


async def _decrypt_with(record: SecretRecord, master_key: MasterKey) -> bytes:
    blob = EncryptedBlob(ciphertext=record.encrypted_value, nonce=record.nonce)
    if is_legacy_salt(record.key_salt):
        return decrypt(blob, master_key)
    secret_key = await asyncio.to_thread(
        derive_secret_key,
        master_key, record.app_name or "", record.key_name, record.key_salt,
    )
    with secret_key:
        return decrypt(blob, secret_key)


async def _recover_plaintext(
    record: SecretRecord,
    master_key: MasterKey,
    previous_key: Optional[MasterKey],
) -> Optional[bytes]:
    """Plaintext of a row that needs re-encryption, or None if it is current."""
    try:
        plaintext = await _decrypt_with(record, master_key)
    except DecryptionFailed:
        if previous_key is None:
            raise
        return await _decrypt_with(record, previous_key)
    if is_legacy_salt(record.key_salt):
        return plaintext
    return None


async def reencrypt_all(
    store,
    master_key: MasterKey,
    previous_key: Optional[MasterKey] = None,
    batch_size: int = 100,
) -> dict:
    """Re-encrypt every secret that is not yet under ``master_key``.

    Args:
        store: Open EncryptedStore.
        master_key: The current master key.
        previous_key: Master key in use before the last PIN change, if any.
        batch_size: Rows per progress log line.

    Returns:
        Stats dict with keys: total, reencrypted, errors, skipped.

    Raises:
        StorageFailed: On database errors; per-row crypto failures are
            counted in ``errors`` instead.
    """
    stats = {"total": 0, "reencrypted": 0, "errors": 0, "skipped": 0}
    records = await store.fetch_all_secrets()

    logger.info(
        "Starting re-encryption of %d secret(s) (batch_size=%d)",
        len(records), batch_size,
    )

    for offset in range(0, len(records), batch_size):
        batch = records[offset:offset + batch_size]
        logger.debug(
            "Processing batch %d (%d rows)", offset // batch_size + 1, len(batch),
        )
        for record in batch:
            stats["total"] += 1
            try:
                plaintext = await _recover_plaintext(
                    record, master_key, previous_key,
                )
                if plaintext is None:
                    stats["skipped"] += 1
                    continue

                salt = generate_salt()
                secret_key = await asyncio.to_thread(
                    derive_secret_key,
                    master_key, record.app_name or "", record.key_name, salt,
                )
                with secret_key:
                    blob = encrypt(plaintext, secret_key)

                swapped = await store.replace_ciphertext(
                    record.id,
                    record.encrypted_value,
                    blob.ciphertext,
                    blob.nonce,
                    salt,
                )
                if swapped:
                    stats["reencrypted"] += 1
                else:
                    logger.debug(
                        "Secret id=%s changed during re-encryption", record.id,
                    )
                    stats["skipped"] += 1
            except StorageFailed:
                raise
            except VaultError as err:
                logger.error(
                    "Error re-encrypting secret id=%s key=%s: %s",
                    record.id, record.key_name, err,
                )
                stats["errors"] += 1

    logger.info("Re-encryption complete: %s", stats)
    return stats
