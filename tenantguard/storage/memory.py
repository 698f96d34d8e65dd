from __future__ import annotations

import dataclasses
import threading
from typing import Dict, Iterable, List, Optional, Sequence, Set

from tenantguard.logging import get_logger
from tenantguard.storage.common import dedupe
from tenantguard.storage.models import (
    DataScope,
    Department,
    Principal,
    Resource,
    Role,
    Status,
    parse_ancestors,
)


class MemoryStore:
    """In-memory identity, role and department store for tests and local development.

    Mirrors the read contract of ``PostgresStore``: soft-deleted rows are hidden
    from every finder unless ``include_deleted`` is passed, and resource
    permissions are only returned for active rows.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[int, Principal] = {}
        self.roles: Dict[int, Role] = {}
        self.departments: Dict[int, Department] = {}
        self.resources: Dict[int, Resource] = {}
        self.role_resources: Dict[int, Set[int]] = {}
        self.role_departments: Dict[int, Set[int]] = {}
        # RLock for all data operations to ensure thread safety; finders run
        # from worker threads via asyncio.to_thread
        self._data_lock = threading.RLock()

    # -- seeding -----------------------------------------------------------

    def add_principal(
        self,
        principal_id: int,
        user_name: str,
        *,
        tenant_id: str = "000000",
        password_hash: Optional[str] = None,
        dept_id: Optional[int] = None,
        role_ids: Iterable[int] = (),
        status: Status = Status.NORMAL,
        deleted: bool = False,
    ) -> Principal:
        principal = Principal(
            id=principal_id,
            tenant_id=tenant_id,
            user_name=user_name,
            password_hash=password_hash,
            dept_id=dept_id,
            status=Status(status),
            deleted=deleted,
            role_ids=list(role_ids),
        )
        with self._data_lock:
            self.principals[principal_id] = principal
        return principal

    def add_role(
        self,
        role_id: int,
        key: str,
        *,
        tenant_id: str = "000000",
        data_scope: DataScope = DataScope.ALL,
        status: Status = Status.NORMAL,
        deleted: bool = False,
        resource_ids: Iterable[int] = (),
        dept_ids: Iterable[int] = (),
    ) -> Role:
        role = Role(
            id=role_id,
            tenant_id=tenant_id,
            key=key,
            data_scope=DataScope(data_scope),
            status=Status(status),
            deleted=deleted,
        )
        with self._data_lock:
            self.roles[role_id] = role
            self.role_resources[role_id] = set(resource_ids)
            self.role_departments[role_id] = set(dept_ids)
        return role

    def add_department(
        self,
        dept_id: int,
        *,
        tenant_id: str = "000000",
        parent_id: Optional[int] = None,
        ancestors: Optional[str] = None,
        status: Status = Status.NORMAL,
        deleted: bool = False,
    ) -> Department:
        """Register a department.

        When ``ancestors`` is omitted the path is derived from the parent's
        stored path, the same way new rows are written upstream.
        """

        with self._data_lock:
            if ancestors is None:
                parent = self.departments.get(parent_id) if parent_id is not None else None
                if parent is not None and parent.ancestors is not None:
                    path: Optional[List[int]] = parent.ancestors + [parent.id]
                else:
                    path = [parent_id if parent_id is not None else 0]
            else:
                path = parse_ancestors(ancestors)
            department = Department(
                id=dept_id,
                tenant_id=tenant_id,
                parent_id=parent_id,
                ancestors=path,
                status=Status(status),
                deleted=deleted,
            )
            self.departments[dept_id] = department
        return department

    def add_resource(
        self,
        resource_id: int,
        perms: Optional[str],
        *,
        status: Status = Status.NORMAL,
        deleted: bool = False,
    ) -> Resource:
        resource = Resource(id=resource_id, perms=perms, status=Status(status), deleted=deleted)
        with self._data_lock:
            self.resources[resource_id] = resource
        return resource

    def assign_roles(self, principal_id: int, role_ids: Iterable[int]) -> None:
        with self._data_lock:
            principal = self.principals[principal_id]
            principal.role_ids = list(role_ids)

    def grant_resources(self, role_id: int, resource_ids: Iterable[int]) -> None:
        with self._data_lock:
            self.role_resources.setdefault(role_id, set()).update(resource_ids)

    def set_principal_status(
        self, principal_id: int, *, status: Optional[Status] = None, deleted: Optional[bool] = None
    ) -> None:
        with self._data_lock:
            principal = self.principals[principal_id]
            if status is not None:
                principal.status = Status(status)
            if deleted is not None:
                principal.deleted = deleted

    def set_password_hash(self, principal_id: int, password_hash: str) -> None:
        with self._data_lock:
            self.principals[principal_id].password_hash = password_hash

    # -- IdentityStore -----------------------------------------------------

    def find_by_identity(
        self, name: str, *, tenant_id: Optional[str] = None, include_deleted: bool = False
    ) -> Optional[Principal]:
        with self._data_lock:
            matches = [
                principal
                for principal in self.principals.values()
                if principal.user_name == name
                and (tenant_id is None or principal.tenant_id == tenant_id)
                and (include_deleted or not principal.deleted)
            ]
            if not matches:
                return None
            # Live rows first, then lowest id, as in PostgresStore's ORDER BY
            best = min(matches, key=lambda p: (p.deleted, p.id))
            return self._copy_principal(best)

    def find_by_id(
        self, principal_id: int, *, include_deleted: bool = False
    ) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if principal is None or (principal.deleted and not include_deleted):
                return None
            return self._copy_principal(principal)

    def find_roles(self, role_ids: Sequence[int]) -> List[Role]:
        with self._data_lock:
            return [
                dataclasses.replace(self.roles[role_id])
                for role_id in dedupe(role_ids)
                if role_id in self.roles and not self.roles[role_id].deleted
            ]

    def find_role_resource_ids(self, role_ids: Sequence[int]) -> List[int]:
        with self._data_lock:
            return dedupe(
                resource_id
                for role_id in role_ids
                for resource_id in sorted(self.role_resources.get(role_id, ()))
            )

    def find_resource_permissions(self, resource_ids: Sequence[int]) -> List[Optional[str]]:
        with self._data_lock:
            perms: List[Optional[str]] = []
            for resource_id in dedupe(resource_ids):
                resource = self.resources.get(resource_id)
                if resource is None or resource.deleted or resource.status != Status.NORMAL:
                    continue
                perms.append(resource.perms)
            return perms

    def find_role_department_ids(self, role_ids: Sequence[int]) -> List[int]:
        with self._data_lock:
            return dedupe(
                dept_id
                for role_id in role_ids
                for dept_id in sorted(self.role_departments.get(role_id, ()))
            )

    def find_departments(self, tenant_id: str) -> List[Department]:
        with self._data_lock:
            return [
                dept
                for dept in self.departments.values()
                if dept.tenant_id == tenant_id and not dept.deleted
            ]

    @staticmethod
    def _copy_principal(principal: Principal) -> Principal:
        return Principal(
            id=principal.id,
            tenant_id=principal.tenant_id,
            user_name=principal.user_name,
            password_hash=principal.password_hash,
            dept_id=principal.dept_id,
            status=principal.status,
            deleted=principal.deleted,
            role_ids=list(principal.role_ids),
        )
