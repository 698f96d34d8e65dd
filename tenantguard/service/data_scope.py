"""Data-scope predicate construction.

A principal's roles are folded into a single row filter that CRUD query
builders apply: either no restriction, a department membership test, or an
ownership test. The predicate is a plain value, so callers can evaluate it in
memory (``matches``) or render it into SQL (``to_sql``).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, FrozenSet, List, Optional, Set, Tuple, Union

from tenantguard.logging import get_logger
from tenantguard.service.departments import DepartmentResolver
from tenantguard.storage.common import IdentityStore, call_store
from tenantguard.storage.models import DataScope, Principal

logger = get_logger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")


@dataclass(frozen=True)
class DeptIn:
    dept_ids: FrozenSet[int]


@dataclass(frozen=True)
class OwnerIs:
    owner_id: int


Clause = Union[DeptIn, OwnerIs]


@dataclass(frozen=True)
class DataScopePredicate:
    """Disjunction of clauses; no clauses means no restriction."""

    clauses: Tuple[Clause, ...] = ()

    @property
    def unrestricted(self) -> bool:
        return not self.clauses

    def matches(self, *, dept_id: Optional[int] = None, owner_id: Optional[int] = None) -> bool:
        if self.unrestricted:
            return True
        for clause in self.clauses:
            if isinstance(clause, DeptIn) and dept_id is not None and dept_id in clause.dept_ids:
                return True
            if isinstance(clause, OwnerIs) and owner_id is not None and owner_id == clause.owner_id:
                return True
        return False

    def to_sql(
        self, dept_column: str = "dept_id", owner_column: str = "user_id"
    ) -> Tuple[str, List[Any]]:
        """Render as a psycopg ``(fragment, params)`` pair to AND into a WHERE clause."""

        for column in (dept_column, owner_column):
            if not _IDENTIFIER.match(column):
                raise ValueError(f"invalid column name: {column!r}")
        if self.unrestricted:
            return "TRUE", []
        fragments: List[str] = []
        params: List[Any] = []
        for clause in self.clauses:
            if isinstance(clause, DeptIn):
                fragments.append(f"{dept_column} = ANY(%s)")
                params.append(sorted(clause.dept_ids))
            else:
                fragments.append(f"{owner_column} = %s")
                params.append(clause.owner_id)
        if len(fragments) == 1:
            return fragments[0], params
        return "(" + " OR ".join(fragments) + ")", params


NO_RESTRICTION = DataScopePredicate()


class DataScopeResolver:
    def __init__(
        self,
        store: IdentityStore,
        departments: DepartmentResolver,
        *,
        timeout: Optional[float] = None,
    ) -> None:
        self.store = store
        self.departments = departments
        self.timeout = timeout

    async def resolve(self, principal: Principal) -> DataScopePredicate:
        """Fold the principal's active roles into one predicate.

        An ``ALL`` role wins outright. CUSTOM and DEPT-style grants are unioned
        into one department set, each hierarchy mode resolved once. ``SELF``
        only applies when no department grant exists. Anything else falls
        through to no restriction.
        """

        roles = await call_store(self.store.find_roles, principal.role_ids, timeout=self.timeout)
        roles = [role for role in roles if role.is_active]

        custom_role_ids: List[int] = []
        hierarchy_modes: Set[DataScope] = set()
        self_scope = False
        for role in roles:
            if role.data_scope is DataScope.ALL:
                return NO_RESTRICTION
            if role.data_scope is DataScope.CUSTOM:
                custom_role_ids.append(role.id)
            elif role.data_scope in (DataScope.DEPT, DataScope.DEPT_AND_CHILD):
                hierarchy_modes.add(role.data_scope)
            elif role.data_scope is DataScope.SELF:
                self_scope = True

        dept_ids: Set[int] = set()
        if custom_role_ids:
            dept_ids.update(
                await call_store(
                    self.store.find_role_department_ids, custom_role_ids, timeout=self.timeout
                )
            )
        if hierarchy_modes and principal.dept_id is not None:
            tree = await self.departments.load(principal.tenant_id)
            for mode in sorted(hierarchy_modes, key=lambda m: m.value):
                dept_ids |= await self.departments.resolve(
                    principal.tenant_id, principal.dept_id, mode, departments=tree
                )

        if dept_ids:
            return DataScopePredicate((DeptIn(frozenset(dept_ids)),))
        if self_scope:
            return DataScopePredicate((OwnerIs(principal.id),))

        logger.warning(
            "data_scope_unrestricted_fallthrough",
            principal_id=principal.id,
            tenant_id=principal.tenant_id,
            role_count=len(roles),
        )
        return NO_RESTRICTION
