from __future__ import annotations

import math
from typing import Optional

from tenantguard.logging import get_logger, mask_identity
from tenantguard.storage.common import KeyValueStore, with_timeout
from tenantguard.storage.models import LockStatus

logger = get_logger(__name__)


def lock_message(remaining_seconds: int) -> str:
    minutes = max(1, math.ceil(remaining_seconds / 60))
    unit = "minute" if minutes == 1 else "minutes"
    return f"account locked, try again in {minutes} {unit}"


def attempts_message(remaining_attempts: int) -> str:
    unit = "attempt" if remaining_attempts == 1 else "attempts"
    return f"invalid credentials, {remaining_attempts} {unit} remaining"


class LoginSecurityGuard:
    """Brute-force lockout per login identity.

    Failures are counted inside a sliding window; reaching the threshold sets a
    lock marker for a fixed duration and drops the counter. Expiry of the
    marker is the only way back to normal apart from an explicit ``unlock``.
    While the marker exists further failures record nothing.
    """

    def __init__(
        self,
        cache: KeyValueStore,
        *,
        max_attempts: int = 5,
        lock_seconds: int = 15 * 60,
        window_seconds: int = 15 * 60,
        timeout: Optional[float] = None,
    ) -> None:
        self.cache = cache
        self.max_attempts = max_attempts
        self.lock_seconds = lock_seconds
        self.window_seconds = window_seconds
        self.timeout = timeout

    async def check_before_attempt(self, identity: str) -> LockStatus:
        remaining = await with_timeout(self.cache.login_lock_ttl(identity), self.timeout)
        if remaining > 0:
            return LockStatus(
                locked=True,
                remaining_lock_seconds=remaining,
                message=lock_message(remaining),
            )
        return LockStatus(locked=False)

    async def record_failure(self, identity: str) -> LockStatus:
        locked, attempts = await with_timeout(
            self.cache.record_login_failure(
                identity,
                max_attempts=self.max_attempts,
                window_seconds=self.window_seconds,
                lock_seconds=self.lock_seconds,
            ),
            self.timeout,
        )
        if locked:
            remaining = await with_timeout(self.cache.login_lock_ttl(identity), self.timeout)
            if attempts >= 0:
                logger.warning(
                    "login_identity_locked",
                    identity=mask_identity(identity),
                    attempts=attempts,
                    lock_seconds=self.lock_seconds,
                )
            return LockStatus(
                locked=True,
                failed_attempts=max(attempts, self.max_attempts),
                remaining_attempts=0,
                remaining_lock_seconds=remaining or self.lock_seconds,
                message=lock_message(remaining or self.lock_seconds),
            )
        remaining_attempts = max(0, self.max_attempts - attempts)
        logger.info(
            "login_failure_recorded",
            identity=mask_identity(identity),
            attempts=attempts,
            max_attempts=self.max_attempts,
        )
        return LockStatus(
            locked=False,
            failed_attempts=attempts,
            remaining_attempts=remaining_attempts,
            message=attempts_message(remaining_attempts),
        )

    async def clear(self, identity: str) -> None:
        await with_timeout(self.cache.clear_login_failures(identity), self.timeout)

    async def unlock(self, identity: str) -> None:
        await with_timeout(self.cache.unlock_login(identity), self.timeout)
        logger.info("login_identity_unlocked", identity=mask_identity(identity))

    async def status(self, identity: str) -> LockStatus:
        remaining = await with_timeout(self.cache.login_lock_ttl(identity), self.timeout)
        attempts = await with_timeout(self.cache.login_failure_count(identity), self.timeout)
        locked = remaining > 0
        return LockStatus(
            locked=locked,
            failed_attempts=attempts,
            remaining_attempts=0 if locked else max(0, self.max_attempts - attempts),
            remaining_lock_seconds=remaining,
            message=lock_message(remaining) if locked else "",
        )
