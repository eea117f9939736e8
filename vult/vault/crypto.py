"""
Vault Crypto Core — Key derivation, encryption/decryption and PIN verifiers.

Implements the vault key hierarchy:
- Master key: Argon2id(PIN, vault_salt) → 32 bytes, held only while unlocked
- Secret key: Argon2id(master_key || "app|key", per_secret_salt) → 32 bytes
- Values: AES-256-GCM with a fresh random 96-bit nonce per encryption
- Verifier: HKDF(master_key, "vult-pin-verifier") stored to check PINs

Security Note:
    Never log PINs, key material, plaintext or ciphertext values.
    Key buffers are zeroed on ``wipe()``, but Python may keep transient
    copies (e.g. the ``bytes`` handed to the cipher); this is an accepted
    limitation of a managed runtime.
"""
import os
import hmac
import secrets
import logging
from dataclasses import dataclass
from typing import Union

from argon2 import Type
from argon2.exceptions import Argon2Error
from argon2.low_level import hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .config import MIN_PIN_LENGTH
from .exceptions import (
    DecryptionFailed,
    EncryptionFailed,
    InvalidKeyMaterial,
    KeyDerivationFailed,
)

logger = logging.getLogger("vult")

SALT_SIZE = 32  # 256-bit salts
NONCE_SIZE = 12  # 96-bit nonce
KEY_LENGTH = 32  # AES-256
TAG_SIZE = 16  # GCM tag

# Per-secret salt of a row still encrypted directly under the master key.
LEGACY_SALT = bytes(SALT_SIZE)

_VERIFIER_CONTEXT = "vult-pin-verifier-v1"


@dataclass(frozen=True)
class KdfParams:
    """Argon2id cost parameters (memory_cost in KiB)."""

    time_cost: int
    memory_cost: int
    parallelism: int


# Looked up at call time so tests can swap in cheaper parameters.
MASTER_KDF = KdfParams(time_cost=3, memory_cost=65536, parallelism=4)
SECRET_KDF = KdfParams(time_cost=2, memory_cost=32768, parallelism=2)


# ---------------------------------------------------------------------------
# Key containers
# ---------------------------------------------------------------------------

class _KeyMaterial:
    """Mutable 32-byte key buffer that can be overwritten with zeros."""

    __slots__ = ("_buf",)

    def __init__(self, data: Union[bytes, bytearray]):
        if not isinstance(data, (bytes, bytearray)) or len(data) != KEY_LENGTH:
            raise InvalidKeyMaterial(
                f"Key material must be exactly {KEY_LENGTH} bytes"
            )
        self._buf = bytearray(data)

    def __bytes__(self) -> bytes:
        if self.wiped:
            raise InvalidKeyMaterial("Key material has been wiped")
        return bytes(self._buf)

    def __len__(self) -> int:
        return len(self._buf)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, _KeyMaterial):
            return NotImplemented
        return hmac.compare_digest(self._buf, other._buf)

    __hash__ = None  # mutable

    def __repr__(self) -> str:
        state = "wiped" if self.wiped else "set"
        return f"<{type(self).__name__} [{state}]>"

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        self.wipe()

    def __del__(self) -> None:
        try:
            self.wipe()
        except AttributeError:
            pass

    @property
    def wiped(self) -> bool:
        return not any(self._buf)

    def copy(self):
        """Return an independently owned copy of this key."""
        return type(self)(bytes(self._buf))

    def wipe(self) -> None:
        """Overwrite the key buffer with zeros."""
        for i in range(len(self._buf)):
            self._buf[i] = 0


class MasterKey(_KeyMaterial):
    """Vault master key derived from the user's PIN."""

    __slots__ = ()


class SecretKey(_KeyMaterial):
    """Encryption key for exactly one stored secret."""

    __slots__ = ()


KeyLike = Union[_KeyMaterial, bytes]


@dataclass(frozen=True)
class EncryptedBlob:
    """AEAD output: ciphertext (with appended GCM tag) plus its nonce."""

    ciphertext: bytes
    nonce: bytes


def _key_bytes(key: KeyLike) -> bytes:
    if isinstance(key, _KeyMaterial):
        return bytes(key)
    if isinstance(key, (bytes, bytearray)) and len(key) == KEY_LENGTH:
        return bytes(key)
    raise InvalidKeyMaterial(f"Key material must be exactly {KEY_LENGTH} bytes")


# ---------------------------------------------------------------------------
# Random material
# ---------------------------------------------------------------------------

def generate_salt() -> bytes:
    """Generate a cryptographically secure random 32-byte salt."""
    return secrets.token_bytes(SALT_SIZE)


def generate_nonce() -> bytes:
    """Generate a random 96-bit AES-GCM nonce."""
    return os.urandom(NONCE_SIZE)


def is_legacy_salt(salt: bytes) -> bool:
    """True if ``salt`` marks a row encrypted directly under the master key."""
    return salt == LEGACY_SALT


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def _argon2id(secret: bytes, salt: bytes, params: KdfParams) -> bytes:
    if not isinstance(salt, (bytes, bytearray)) or len(salt) != SALT_SIZE:
        raise KeyDerivationFailed(f"Salt must be exactly {SALT_SIZE} bytes")
    try:
        return hash_secret_raw(
            secret=secret,
            salt=bytes(salt),
            time_cost=params.time_cost,
            memory_cost=params.memory_cost,
            parallelism=params.parallelism,
            hash_len=KEY_LENGTH,
            type=Type.ID,
        )
    except Argon2Error as err:
        raise KeyDerivationFailed(f"Key derivation failed: {err}") from err


def derive_master_key(pin: str, salt: bytes) -> MasterKey:
    """Derive the 32-byte master key from a PIN using Argon2id.

    Args:
        pin: The user's PIN (at least 6 characters).
        salt: The 32-byte vault salt.

    Returns:
        MasterKey; identical (pin, salt) always yields an identical key.

    Raises:
        KeyDerivationFailed: If the PIN is too short or Argon2 fails.
    """
    if not isinstance(pin, str) or len(pin) < MIN_PIN_LENGTH:
        raise KeyDerivationFailed(
            f"PIN must be at least {MIN_PIN_LENGTH} characters"
        )
    raw = _argon2id(pin.encode("utf-8"), salt, MASTER_KDF)
    return MasterKey(raw)


def secret_context(app_name: str, key_name: str) -> bytes:
    """Encryption context binding a secret key to its (app, key) identity."""
    return f"{app_name or ''}|{key_name}".encode("utf-8")


def derive_secret_key(
    master_key: MasterKey,
    app_name: str,
    key_name: str,
    salt: bytes,
) -> SecretKey:
    """Derive the per-secret encryption key.

    Uses a lighter Argon2id configuration than the master key since this
    runs on every read and write of a secret.

    Args:
        master_key: The vault master key.
        app_name: Application name ('' when the secret has none).
        key_name: Secret name.
        salt: The secret's own 32-byte salt.

    Returns:
        SecretKey unique to (master_key, app_name, key_name, salt).
    """
    password = bytearray(_key_bytes(master_key))
    password += secret_context(app_name, key_name)
    try:
        raw = _argon2id(bytes(password), salt, SECRET_KDF)
    finally:
        for i in range(len(password)):
            password[i] = 0
    return SecretKey(raw)


def derive_verifier(master_key: MasterKey) -> bytes:
    """Derive the 32-byte PIN verifier stored in the vault configuration.

    HKDF-SHA256 over the full master key with a dedicated context, so the
    stored value is useless for decrypting anything.
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=None,  # master key is already uniformly random
        info=_VERIFIER_CONTEXT.encode("utf-8"),
    )
    return hkdf.derive(_key_bytes(master_key))


def verify_master_key(master_key: MasterKey, verifier: bytes) -> bool:
    """Constant-time check of a derived master key against a stored verifier."""
    expected = derive_verifier(master_key)
    return hmac.compare_digest(expected, bytes(verifier or b""))


def legacy_pin_hash_matches(master_key: MasterKey, pin_hash: str) -> bool:
    """Check a legacy ``"$<salt-hex>:<first-byte>"`` PIN hash.

    Only the first key byte was recorded by older vaults; callers must
    upgrade to a full verifier right after a successful check.
    """
    try:
        expected = int(pin_hash.rsplit(":", 1)[1])
    except (IndexError, ValueError, AttributeError):
        return False
    return _key_bytes(master_key)[0] == expected


# ---------------------------------------------------------------------------
# Authenticated encryption
# ---------------------------------------------------------------------------

def encrypt(plaintext: bytes, key: KeyLike) -> EncryptedBlob:
    """Encrypt plaintext with AES-256-GCM under a fresh random nonce.

    Args:
        plaintext: Data to encrypt (may be empty).
        key: 32-byte key.

    Returns:
        EncryptedBlob whose ciphertext is ``len(plaintext) + 16`` bytes.
    """
    try:
        cipher = AESGCM(_key_bytes(key))
        nonce = generate_nonce()
        ct = cipher.encrypt(nonce, bytes(plaintext), None)
    except InvalidKeyMaterial as err:
        raise EncryptionFailed(f"Encryption failed: {err}") from err
    except (ValueError, TypeError, OverflowError) as err:
        raise EncryptionFailed(f"Encryption failed: {err}") from err
    return EncryptedBlob(ciphertext=ct, nonce=nonce)


def decrypt(blob: EncryptedBlob, key: KeyLike) -> bytes:
    """Decrypt an EncryptedBlob.

    Never raises anything but DecryptionFailed, whatever the input bytes.

    Raises:
        DecryptionFailed: Wrong nonce length, wrong key, or tampered data.
    """
    nonce = getattr(blob, "nonce", None)
    ciphertext = getattr(blob, "ciphertext", None)
    if not isinstance(nonce, (bytes, bytearray)) or len(nonce) != NONCE_SIZE:
        raise DecryptionFailed("Decryption failed: invalid nonce length")
    if not isinstance(ciphertext, (bytes, bytearray)) or len(ciphertext) < TAG_SIZE:
        raise DecryptionFailed("Decryption failed: ciphertext too short")
    try:
        cipher = AESGCM(_key_bytes(key))
        return cipher.decrypt(bytes(nonce), bytes(ciphertext), None)
    except InvalidTag as err:
        raise DecryptionFailed("Decryption failed: authentication error") from err
    except (InvalidKeyMaterial, ValueError, TypeError, OverflowError) as err:
        raise DecryptionFailed(f"Decryption failed: {err}") from err
