"""
Vault Exceptions — typed error taxonomy for every vault operation.

Every exception carries a ``category`` so that outer adapters (CLI, GUI)
can map failures to exit codes or dialogs without string matching:

    auth, not_found, conflict, invalid_input, crypto, storage, state

Security Note:
    Messages never include PINs, key material or secret values, and
    PIN failures never reveal which part of the comparison failed.
"""
from typing import Optional


class VaultError(Exception):
    """Base class for all vault errors."""

    category: str = "state"
    message: str = "Vault error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

class PinTooShort(VaultError):
    category = "auth"
    message = "PIN too short (minimum 6 characters required)"


class PinTooLong(VaultError):
    category = "auth"
    message = "PIN too long (maximum 64 characters allowed)"


class InvalidPin(VaultError):
    category = "auth"
    message = "Invalid PIN"


class TooManyAttempts(VaultError):
    category = "auth"
    message = "Too many failed attempts. Please wait before trying again."


class Locked(VaultError):
    category = "auth"
    message = "Vault is locked. Unlock with your PIN first."


class NotInitialized(VaultError):
    category = "state"
    message = "Vault not initialized. Run 'init' first."


class AlreadyInitialized(VaultError):
    category = "state"
    message = "Vault already initialized"


class RotationPending(VaultError):
    """Raised while secrets still need moving to the key of the last PIN change."""

    category = "state"
    message = (
        "A previous PIN change has not finished re-encrypting secrets. "
        "Resume it with the old PIN first."
    )


# ---------------------------------------------------------------------------
# Cryptography
# ---------------------------------------------------------------------------

class KeyDerivationFailed(VaultError):
    category = "crypto"
    message = "Key derivation failed"


class EncryptionFailed(VaultError):
    category = "crypto"
    message = "Encryption failed"


class DecryptionFailed(VaultError):
    category = "crypto"
    message = "Decryption failed"


class InvalidKeyMaterial(VaultError):
    category = "crypto"
    message = "Invalid key material"


KeyDerivationError = KeyDerivationFailed
EncryptionError = EncryptionFailed
DecryptionError = DecryptionFailed


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class StorageFailed(VaultError):
    category = "storage"
    message = "Storage operation failed"


class IncompatibleSchemaVersion(StorageFailed):
    """Raised when the database was written by a newer release."""

    def __init__(self, db_version: int, app_version: int):
        self.db_version = db_version
        self.app_version = app_version
        super().__init__(
            f"Database version {db_version} is newer than application "
            f"version {app_version}. Please update the application."
        )


class NotFound(VaultError):
    category = "not_found"
    message = "Key not found"

    @classmethod
    def for_key(cls, app_name: Optional[str], key_name: str) -> "NotFound":
        return cls(f"Key not found: {app_name or ''}/{key_name}")


class DuplicateKey(VaultError):
    category = "conflict"

    def __init__(self, app_name: Optional[str], key_name: str):
        self.app_name = app_name or ""
        self.key_name = key_name
        super().__init__(
            f"Duplicate key: {self.app_name}/{key_name} already exists"
        )


class InvalidInput(VaultError, ValueError):
    category = "invalid_input"
    message = "Invalid input"


__all__ = [
    "VaultError",
    "PinTooShort",
    "PinTooLong",
    "InvalidPin",
    "TooManyAttempts",
    "Locked",
    "NotInitialized",
    "AlreadyInitialized",
    "RotationPending",
    "KeyDerivationFailed",
    "KeyDerivationError",
    "EncryptionFailed",
    "EncryptionError",
    "DecryptionFailed",
    "DecryptionError",
    "InvalidKeyMaterial",
    "StorageFailed",
    "IncompatibleSchemaVersion",
    "NotFound",
    "DuplicateKey",
    "InvalidInput",
]
