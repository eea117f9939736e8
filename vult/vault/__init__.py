"""Vult Vault — PIN-protected storage for API keys and tokens.

Security Note (Threat Model):
    The master key lives in process memory only while the vault is
    unlocked, and every secret is encrypted under its own derived key.
    Decrypted values and transient key copies exist in process memory
    during use; a memory dump of an unlocked process could expose them.
    This is an accepted limitation. There is no key recovery: a lost PIN
    permanently loses the data.
"""

from .auth import AuthSession, validate_pin
from .config import VaultSettings
from .crypto import EncryptedBlob, MasterKey, SecretKey
from .exceptions import *  # noqa: F401,F403
from .exceptions import __all__ as _exceptions_all
from .manager import VaultManager
from .models import Secret, SecretMetadata, SecretUpdate, SessionState
from .registry import SecretRegistry
from .store import EncryptedStore

__all__ = [
    "AuthSession",
    "validate_pin",
    "VaultSettings",
    "EncryptedBlob",
    "MasterKey",
    "SecretKey",
    "VaultManager",
    "Secret",
    "SecretMetadata",
    "SecretUpdate",
    "SessionState",
    "SecretRegistry",
    "EncryptedStore",
    *_exceptions_all,
]
