from __future__ import annotations

import contextlib
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from psycopg import OperationalError
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from tenantguard.logging import get_logger
from tenantguard.storage.common import dedupe, safe_row_value
from tenantguard.storage.errors import StoreUnavailableError
from tenantguard.storage.models import (
    DataScope,
    Department,
    Principal,
    Role,
    Status,
    parse_ancestors,
)

# Soft-deleted rows carry del_flag = '1'
_ACTIVE_ROW = "del_flag = '0'"


def build_select(
    table: str,
    columns: Sequence[str],
    conditions: Sequence[str] = (),
    *,
    include_deleted: bool = False,
    order_by: Optional[str] = None,
) -> str:
    """Compose a SELECT that hides soft-deleted rows unless asked not to."""

    clauses = list(conditions)
    if not include_deleted:
        clauses.append(_ACTIVE_ROW)
    sql = f"SELECT {', '.join(columns)} FROM {table}"
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    if order_by:
        sql += f" ORDER BY {order_by}"
    return sql


_PRINCIPAL_COLUMNS = (
    "user_id",
    "tenant_id",
    "user_name",
    "password",
    "dept_id",
    "status",
    "del_flag",
)


class PostgresStore:
    """Read-only identity, role and department store over the ``sys_*`` tables."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": True},
        )

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (OperationalError, PoolTimeout) as exc:
            self.logger.error(
                "postgres_unavailable", error_type=type(exc).__name__, error=str(exc)
            )
            raise StoreUnavailableError(
                "identity store unavailable", backend="postgres", detail={"error": str(exc)}
            ) from exc

    def _fetch(self, sql: str, params: Tuple[Any, ...] = ()) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            return list(conn.execute(sql, params).fetchall())

    def close(self) -> None:
        self.pool.close()

    # -- principals ---------------------------------------------------------

    def _role_ids_for(self, principal_id: int) -> List[int]:
        rows = self._fetch(
            "SELECT role_id FROM sys_user_role WHERE user_id = %s ORDER BY role_id",
            (principal_id,),
        )
        return dedupe(int(row["role_id"]) for row in rows)

    def _principal_from_row(self, row: Dict[str, Any]) -> Principal:
        principal_id = int(row["user_id"])
        dept_id = safe_row_value(row, "dept_id")
        return Principal(
            id=principal_id,
            tenant_id=str(safe_row_value(row, "tenant_id", "")),
            user_name=row["user_name"],
            password_hash=safe_row_value(row, "password"),
            dept_id=int(dept_id) if dept_id is not None else None,
            status=Status(safe_row_value(row, "status", Status.NORMAL.value)),
            deleted=safe_row_value(row, "del_flag", "0") != "0",
            role_ids=self._role_ids_for(principal_id),
        )

    def find_by_identity(
        self, name: str, *, tenant_id: Optional[str] = None, include_deleted: bool = False
    ) -> Optional[Principal]:
        conditions = ["user_name = %s"]
        params: List[Any] = [name]
        if tenant_id is not None:
            conditions.append("tenant_id = %s")
            params.append(tenant_id)
        sql = build_select(
            "sys_user",
            _PRINCIPAL_COLUMNS,
            conditions,
            include_deleted=include_deleted,
            order_by="del_flag, user_id",
        )
        rows = self._fetch(sql + " LIMIT 1", tuple(params))
        return self._principal_from_row(rows[0]) if rows else None

    def find_by_id(
        self, principal_id: int, *, include_deleted: bool = False
    ) -> Optional[Principal]:
        sql = build_select(
            "sys_user", _PRINCIPAL_COLUMNS, ["user_id = %s"], include_deleted=include_deleted
        )
        rows = self._fetch(sql, (principal_id,))
        return self._principal_from_row(rows[0]) if rows else None

    # -- roles and resources ------------------------------------------------

    def find_roles(self, role_ids: Sequence[int]) -> List[Role]:
        ids = dedupe(role_ids)
        if not ids:
            return []
        sql = build_select(
            "sys_role",
            ("role_id", "tenant_id", "role_key", "data_scope", "status", "del_flag"),
            ["role_id = ANY(%s)"],
            order_by="role_id",
        )
        roles = []
        for row in self._fetch(sql, (ids,)):
            try:
                scope = DataScope(safe_row_value(row, "data_scope", DataScope.ALL.value))
            except ValueError:
                self.logger.warning(
                    "role_data_scope_unrecognized",
                    role_id=row["role_id"],
                    data_scope=row.get("data_scope"),
                )
                continue
            roles.append(
                Role(
                    id=int(row["role_id"]),
                    tenant_id=str(safe_row_value(row, "tenant_id", "")),
                    key=row["role_key"],
                    data_scope=scope,
                    status=Status(safe_row_value(row, "status", Status.NORMAL.value)),
                )
            )
        return roles

    def find_role_resource_ids(self, role_ids: Sequence[int]) -> List[int]:
        ids = dedupe(role_ids)
        if not ids:
            return []
        rows = self._fetch(
            "SELECT DISTINCT menu_id FROM sys_role_menu WHERE role_id = ANY(%s) ORDER BY menu_id",
            (ids,),
        )
        return [int(row["menu_id"]) for row in rows]

    def find_resource_permissions(self, resource_ids: Sequence[int]) -> List[Optional[str]]:
        ids = dedupe(resource_ids)
        if not ids:
            return []
        sql = build_select(
            "sys_menu",
            ("menu_id", "perms"),
            ["menu_id = ANY(%s)", "status = %s"],
            order_by="menu_id",
        )
        return [row.get("perms") for row in self._fetch(sql, (ids, Status.NORMAL.value))]

    def find_role_department_ids(self, role_ids: Sequence[int]) -> List[int]:
        ids = dedupe(role_ids)
        if not ids:
            return []
        rows = self._fetch(
            "SELECT DISTINCT dept_id FROM sys_role_dept WHERE role_id = ANY(%s) ORDER BY dept_id",
            (ids,),
        )
        return [int(row["dept_id"]) for row in rows]

    # -- departments --------------------------------------------------------

    def find_departments(self, tenant_id: str) -> List[Department]:
        sql = build_select(
            "sys_dept",
            ("dept_id", "tenant_id", "parent_id", "ancestors", "status", "del_flag"),
            ["tenant_id = %s"],
            order_by="dept_id",
        )
        departments = []
        for row in self._fetch(sql, (tenant_id,)):
            parent_id = safe_row_value(row, "parent_id")
            departments.append(
                Department(
                    id=int(row["dept_id"]),
                    tenant_id=str(row["tenant_id"]),
                    parent_id=int(parent_id) if parent_id is not None else None,
                    ancestors=parse_ancestors(row.get("ancestors")),
                    status=Status(safe_row_value(row, "status", Status.NORMAL.value)),
                )
            )
        return departments
