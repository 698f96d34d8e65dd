from __future__ import annotations

from typing import Iterable, Optional, Sequence, Set

from tenantguard.logging import get_logger
from tenantguard.storage.common import IdentityStore, KeyValueStore, call_store, dedupe, with_timeout
from tenantguard.storage.models import Principal

logger = get_logger(__name__)


class PermissionAggregator:
    """Collects permission strings granted through roles, with a per-principal cache."""

    def __init__(
        self,
        store: IdentityStore,
        cache: KeyValueStore,
        *,
        super_admin_role_id: int = 1,
        wildcard: str = "*:*:*",
        cache_ttl_seconds: int = 30 * 60,
        timeout: Optional[float] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.super_admin_role_id = super_admin_role_id
        self.wildcard = wildcard
        self.cache_ttl_seconds = cache_ttl_seconds
        self.timeout = timeout

    async def aggregate(self, role_ids: Iterable[int]) -> Set[str]:
        role_ids = dedupe(role_ids)
        if self.super_admin_role_id in role_ids:
            return {self.wildcard}
        if not role_ids:
            return set()
        resource_ids = await call_store(
            self.store.find_role_resource_ids, role_ids, timeout=self.timeout
        )
        if not resource_ids:
            return set()
        perms = await call_store(
            self.store.find_resource_permissions, resource_ids, timeout=self.timeout
        )
        return {perm.strip() for perm in perms if perm and perm.strip()}

    async def permissions_for(
        self, principal: Principal, role_ids: Optional[Sequence[int]] = None
    ) -> Set[str]:
        """Cached ``aggregate`` for a principal.

        ``role_ids`` overrides the principal's assignments, e.g. when inactive
        roles were already filtered out by the caller.
        """

        cached = await with_timeout(self.cache.get_permissions(principal.id), self.timeout)
        if cached is not None:
            return set(cached)
        perms = await self.aggregate(principal.role_ids if role_ids is None else role_ids)
        await with_timeout(
            self.cache.set_permissions(principal.id, perms, self.cache_ttl_seconds), self.timeout
        )
        logger.debug("permission_cache_filled", principal_id=principal.id, count=len(perms))
        return perms

    async def evict(self, principal_id: int) -> None:
        await with_timeout(self.cache.evict_permissions(principal_id), self.timeout)
        logger.info("permission_cache_evicted", principal_id=principal_id)

    async def evict_many(self, principal_ids: Iterable[int]) -> None:
        for principal_id in dedupe(principal_ids):
            await self.evict(principal_id)

    def has_permission(self, required: str, granted: Iterable[str]) -> bool:
        """Exact permission match, or this aggregator's wildcard."""
        granted = set(granted)
        return self.wildcard in granted or required in granted

    def has_role(self, required: str, roles: Iterable[str]) -> bool:
        """Exact, case-sensitive role key match."""
        return required in set(roles)
