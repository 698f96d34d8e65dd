from __future__ import annotations

from typing import Optional, Sequence, Set

from tenantguard.logging import get_logger
from tenantguard.storage.common import IdentityStore, call_store
from tenantguard.storage.models import DataScope, Department

logger = get_logger(__name__)


class DepartmentResolver:
    """Expand a department into the set of ids a DEPT-style role can see."""

    def __init__(self, store: IdentityStore, *, timeout: Optional[float] = None) -> None:
        self.store = store
        self.timeout = timeout

    async def load(self, tenant_id: str) -> Sequence[Department]:
        return await call_store(self.store.find_departments, tenant_id, timeout=self.timeout)

    async def resolve(
        self,
        tenant_id: str,
        root_dept_id: Optional[int],
        mode: DataScope,
        departments: Optional[Sequence[Department]] = None,
    ) -> Set[int]:
        """Return the department ids visible from ``root_dept_id`` under ``mode``.

        ``DEPT`` yields the root alone. ``DEPT_AND_CHILD`` adds every
        department of the tenant whose ancestry path contains the root. An
        unknown root, or any other mode, yields an empty set.
        """

        if root_dept_id is None or mode not in (DataScope.DEPT, DataScope.DEPT_AND_CHILD):
            return set()
        if departments is None:
            departments = await self.load(tenant_id)
        if not any(dept.id == root_dept_id for dept in departments):
            return set()
        if mode is DataScope.DEPT:
            return {root_dept_id}
        return expand_descendants(root_dept_id, departments)


def expand_descendants(root_dept_id: int, departments: Sequence[Department]) -> Set[int]:
    """``{root} ∪ {d : root in ancestors(d)}``; corrupt paths are skipped."""

    result = {root_dept_id}
    for dept in departments:
        if dept.ancestors is None:
            logger.warning(
                "department_ancestry_corrupt", dept_id=dept.id, tenant_id=dept.tenant_id
            )
            continue
        if root_dept_id in dept.ancestors:
            result.add(dept.id)
    return result
