"""
AuthSession — PIN authentication and the lock/unlock state machine.

States: Uninitialized (no vault configuration), Locked, Unlocked.
The session is the only owner of the master key. It hands out independent
copies through ``get_master_key()`` and wipes its own copy on lock.

Security Note:
    Failed unlocks are rate limited with an exponential delay and refused
    outright after ``max_failed_attempts``. Error messages never say which
    part of a PIN check failed.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .config import MAX_PIN_LENGTH, MIN_PIN_LENGTH, VaultSettings
from .crypto import (
    MasterKey,
    derive_master_key,
    derive_verifier,
    generate_salt,
    legacy_pin_hash_matches,
    verify_master_key,
)
from .exceptions import (
    AlreadyInitialized,
    InvalidInput,
    InvalidPin,
    Locked,
    NotInitialized,
    PinTooLong,
    PinTooShort,
    RotationPending,
    StorageFailed,
    TooManyAttempts,
)
from .models import SessionState, VaultConfig, utcnow

logger = logging.getLogger("vult")

# Exponent cap for the unlock backoff (2^5 = 32 units).
_MAX_BACKOFF_EXPONENT = 5


def validate_pin(pin: str) -> None:
    """Validate PIN format.

    Raises:
        PinTooShort: Fewer than 6 characters.
        PinTooLong: More than 64 characters.
        InvalidInput: Not a string, or not printable ASCII (space allowed).
    """
    if not isinstance(pin, str):
        raise InvalidInput("PIN must be a string")
    if len(pin) < MIN_PIN_LENGTH:
        raise PinTooShort()
    if len(pin) > MAX_PIN_LENGTH:
        raise PinTooLong()
    if not all(" " <= ch <= "~" for ch in pin):
        raise InvalidInput("PIN must contain only printable ASCII characters")


def backoff_delay(failed_attempts: int, unit: float = 1.0) -> float:
    """Seconds to wait before the next unlock attempt."""
    if failed_attempts <= 0:
        return 0.0
    return unit * (2 ** min(failed_attempts, _MAX_BACKOFF_EXPONENT))


class AuthSession:
    """Owns the master key and the session state of one vault.

    Two locks are used. ``_attempt_lock`` serialises PIN attempts, the
    failure counter and vault configuration writes; unlock backoff and
    Argon2 derivation happen under it. ``_lock`` guards the in-memory key
    and is only held long enough to read or swap it, so a pending unlock
    never stalls secret access or ``lock()``.

    Args:
        store: Open EncryptedStore.
        settings: Timeouts and rate-limit settings.
        sleep: Coroutine used for the unlock backoff.
    """

    def __init__(
        self,
        store,
        settings: Optional[VaultSettings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._store = store
        self._settings = settings or VaultSettings()
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._attempt_lock = asyncio.Lock()
        self._key: Optional[MasterKey] = None
        self._idle: float = 0.0
        self._failed_attempts = 0
        self._tasks: list[asyncio.Task] = []

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_unlocked(self) -> bool:
        return self._key is not None

    @property
    def failed_attempts(self) -> int:
        return self._failed_attempts

    @property
    def seconds_since_activity(self) -> int:
        return int(self._idle)

    def session_state(self) -> SessionState:
        return SessionState(
            is_unlocked=self.is_unlocked,
            seconds_since_activity=self.seconds_since_activity,
        )

    async def is_initialized(self) -> bool:
        return await self._store.read_config() is not None

    async def rotation_pending(self) -> bool:
        """True while a PIN change still has secrets under the old key."""
        config = await self._store.read_config()
        return config is not None and config.rotation_pending

    async def reset_failed_attempts(self) -> None:
        async with self._attempt_lock:
            self._failed_attempts = 0

    def _set_key(self, key: MasterKey) -> None:
        if self._key is not None:
            self._key.wipe()
        self._key = key
        self._idle = 0.0

    def _clear_key(self) -> None:
        if self._key is not None:
            self._key.wipe()
        self._key = None
        self._idle = 0.0

    async def _install_key(self, key: MasterKey) -> None:
        async with self._lock:
            self._set_key(key)

    # ------------------------------------------------------------------
    # Initialization and unlocking
    # ------------------------------------------------------------------

    async def initialize(self, pin: str) -> None:
        """Create the vault configuration and unlock the new vault.

        Raises:
            PinTooShort, PinTooLong, InvalidInput: Bad PIN format.
            AlreadyInitialized: A vault configuration already exists.
        """
        validate_pin(pin)
        async with self._attempt_lock:
            if await self._store.read_config() is not None:
                raise AlreadyInitialized()
            salt = generate_salt()
            key = await asyncio.to_thread(derive_master_key, pin, salt)
            config = VaultConfig(
                salt=salt,
                verification_hash=derive_verifier(key),
                created_at=utcnow(),
            )
            try:
                await self._store.insert_config(config)
            except BaseException:
                key.wipe()
                raise
            self._failed_attempts = 0
            await self._install_key(key)
        logger.info("Vault initialized")

    async def _read_config(self) -> VaultConfig:
        config = await self._store.read_config()
        if config is None:
            raise NotInitialized()
        return config

    async def _check_pin(
        self,
        pin: str,
        salt: bytes,
        verification_hash: Optional[bytes],
        legacy_pin_hash: Optional[str] = None,
    ) -> Optional[MasterKey]:
        """Derive the master key for ``salt`` and check it; None on mismatch."""
        try:
            validate_pin(pin)
        except (InvalidInput, PinTooShort, PinTooLong):
            return None
        key = await asyncio.to_thread(derive_master_key, pin, salt)
        if verification_hash is not None:
            ok = verify_master_key(key, verification_hash)
        elif legacy_pin_hash:
            ok = legacy_pin_hash_matches(key, legacy_pin_hash)
        else:
            key.wipe()
            raise StorageFailed("Vault configuration has no PIN verifier")
        if not ok:
            key.wipe()
            return None
        return key

    async def _attempt(
        self,
        pin: str,
        salt: bytes,
        verification_hash: Optional[bytes],
        legacy_pin_hash: Optional[str] = None,
    ) -> MasterKey:
        """One rate-limited PIN check; caller holds ``_attempt_lock``."""
        if self._failed_attempts >= self._settings.max_failed_attempts:
            raise TooManyAttempts()
        if self._failed_attempts > 0:
            delay = backoff_delay(
                self._failed_attempts, self._settings.backoff_unit,
            )
            logger.debug("Unlock backoff: %.1fs", delay)
            await self._sleep(delay)

        key = await self._check_pin(pin, salt, verification_hash, legacy_pin_hash)
        if key is None:
            self._failed_attempts += 1
            logger.warning(
                "Failed unlock attempt (%d so far)", self._failed_attempts,
            )
            raise InvalidPin()
        self._failed_attempts = 0
        return key

    async def _unlock(self, pin: str, config: VaultConfig) -> MasterKey:
        """Verify ``pin`` against the current vault key."""
        key = await self._attempt(
            pin, config.salt, config.verification_hash, config.legacy_pin_hash,
        )
        if config.needs_verifier_upgrade:
            try:
                await self._store.update_config(config.salt, derive_verifier(key))
            except BaseException:
                key.wipe()
                raise
            logger.warning("Upgraded legacy PIN verifier to full verifier")
        return key

    async def unlock(self, pin: str) -> None:
        """Unlock the vault with ``pin``.

        Raises:
            NotInitialized: No vault configuration exists.
            TooManyAttempts: Too many consecutive failures.
            InvalidPin: Wrong PIN.
        """
        async with self._attempt_lock:
            config = await self._read_config()
            key = await self._unlock(pin, config)
            await self._install_key(key)
        logger.info("Vault unlocked")
        if config.rotation_pending:
            logger.warning(
                "A PIN change has not finished re-encrypting secrets; "
                "resume it with the previous PIN",
            )

    async def lock(self) -> None:
        """Wipe the master key. Always succeeds."""
        async with self._lock:
            was_unlocked = self.is_unlocked
            self._clear_key()
        if was_unlocked:
            logger.info("Vault locked")

    async def change_pin(self, old_pin: str, new_pin: str) -> MasterKey:
        """Replace the PIN, the vault salt and the master key.

        Secrets are not re-encrypted here. The old salt and verifier stay in
        the vault configuration until ``complete_rotation()``, so secrets
        not yet moved can still be reached with ``previous_master_key()``.

        Returns:
            The previous master key, owned by the caller, for
            ``SecretRegistry.reencrypt_all(previous_key=...)``.

        Raises:
            RotationPending: An earlier PIN change is unfinished.
            InvalidPin: Wrong ``old_pin``.
        """
        validate_pin(new_pin)
        async with self._attempt_lock:
            config = await self._read_config()
            if config.rotation_pending:
                raise RotationPending()
            previous = await self._unlock(old_pin, config)
            salt = generate_salt()
            new_key = None
            try:
                new_key = await asyncio.to_thread(derive_master_key, new_pin, salt)
                await self._store.rotate_config(
                    salt,
                    derive_verifier(new_key),
                    config.salt,
                    derive_verifier(previous),
                )
            except BaseException:
                previous.wipe()
                if new_key is not None:
                    new_key.wipe()
                raise
            await self._install_key(new_key)
        logger.info("Vault PIN changed")
        return previous

    async def previous_master_key(self, old_pin: str) -> MasterKey:
        """Re-derive the master key of an unfinished PIN change.

        The returned key is owned by the caller. The attempt counts toward
        the same rate limit as ``unlock``.

        Raises:
            Locked: The vault is locked.
            InvalidInput: No PIN change is pending.
            InvalidPin: ``old_pin`` is not the PIN before the last change.
        """
        if not self.is_unlocked:
            raise Locked()
        async with self._attempt_lock:
            config = await self._read_config()
            if not config.rotation_pending:
                raise InvalidInput("No PIN change is pending")
            return await self._attempt(
                old_pin, config.previous_salt, config.previous_verification_hash,
            )

    async def complete_rotation(self) -> None:
        """Forget the key of the last PIN change.

        Secrets still encrypted under it become unreadable.
        """
        if not self.is_unlocked:
            raise Locked()
        async with self._attempt_lock:
            await self._store.clear_previous_key()
        logger.info("PIN change completed")

    # ------------------------------------------------------------------
    # Key access and activity
    # ------------------------------------------------------------------

    async def get_master_key(self) -> MasterKey:
        """Return an independent copy of the master key.

        Raises:
            Locked: If the vault is locked.
        """
        async with self._lock:
            if self._key is None:
                raise Locked()
            return self._key.copy()

    def update_activity(self) -> None:
        self._idle = 0.0

    def tick(self, seconds: float = 1.0) -> None:
        """Advance the inactivity counter while unlocked."""
        if self.is_unlocked:
            self._idle += seconds

    def should_auto_lock(
        self,
        elapsed: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> bool:
        if not self.is_unlocked:
            return False
        if timeout is None:
            if not self._settings.auto_lock_enabled:
                return False
            timeout = self._settings.auto_lock_timeout
        if elapsed is None:
            elapsed = self._idle
        return elapsed >= timeout

    async def check_auto_lock(self) -> bool:
        """Lock the vault if it has been idle too long."""
        if not self.should_auto_lock():
            return False
        logger.info(
            "Auto-locking vault after %ds of inactivity", self.seconds_since_activity,
        )
        await self.lock()
        return True

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    async def _activity_loop(self) -> None:
        interval = self._settings.activity_tick
        while True:
            await asyncio.sleep(interval)
            try:
                self.tick(interval)
            except Exception as err:
                logger.error("Activity tick failed: %s", err)

    async def _auto_lock_loop(self) -> None:
        interval = self._settings.auto_lock_check_interval
        while True:
            await asyncio.sleep(interval)
            try:
                await self.check_auto_lock()
            except Exception as err:
                logger.error("Auto-lock check failed: %s", err)

    @property
    def background_tasks_running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start_background_tasks(self) -> None:
        """Start the activity tick and the auto-lock checker."""
        if self.background_tasks_running:
            return
        self._tasks = [
            asyncio.create_task(self._activity_loop(), name="vult-activity-tick"),
            asyncio.create_task(self._auto_lock_loop(), name="vult-auto-lock"),
        ]
        logger.debug("Background tasks started")

    async def stop_background_tasks(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.debug("Background tasks stopped")
