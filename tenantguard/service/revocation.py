from __future__ import annotations

from typing import Dict, Iterable, Optional

from tenantguard.logging import get_logger
from tenantguard.storage.common import KeyValueStore, dedupe, with_timeout

logger = get_logger(__name__)


class RevocationService:
    """Per-principal token versions and a per-session deny-list.

    Bumping a version invalidates every token minted before it without
    enumerating them; the deny-list revokes one session id at a time.
    """

    def __init__(
        self,
        cache: KeyValueStore,
        *,
        deny_ttl_seconds: int = 24 * 60 * 60,
        timeout: Optional[float] = None,
    ) -> None:
        self.cache = cache
        self.deny_ttl_seconds = deny_ttl_seconds
        self.timeout = timeout

    async def current_version(self, principal_id: int) -> int:
        return await with_timeout(self.cache.get_token_version(principal_id), self.timeout)

    async def bump_version(self, principal_id: int, reason: str = "unspecified") -> int:
        version = await with_timeout(self.cache.incr_token_version(principal_id), self.timeout)
        logger.info(
            "token_version_bumped", principal_id=principal_id, version=version, reason=reason
        )
        return version

    async def bump_versions(
        self, principal_ids: Iterable[int], reason: str = "unspecified"
    ) -> Dict[int, int]:
        return {pid: await self.bump_version(pid, reason) for pid in dedupe(principal_ids)}

    async def clear_version(self, principal_id: int) -> None:
        """Forget the version, e.g. after the principal is deleted."""
        await with_timeout(self.cache.clear_token_version(principal_id), self.timeout)

    async def is_version_current(self, principal_id: int, token_version: int) -> bool:
        return token_version == await self.current_version(principal_id)

    async def revoke_session(self, session_id: str, ttl_seconds: Optional[int] = None) -> None:
        ttl = self.deny_ttl_seconds if ttl_seconds is None else ttl_seconds
        await with_timeout(self.cache.deny_session(session_id, ttl), self.timeout)
        logger.info("session_deny_listed", session_id=session_id, ttl_seconds=ttl)

    async def is_session_revoked(self, session_id: str) -> bool:
        return await with_timeout(self.cache.is_session_denied(session_id), self.timeout)

    async def restore_session(self, session_id: str) -> None:
        await with_timeout(self.cache.undeny_session(session_id), self.timeout)
