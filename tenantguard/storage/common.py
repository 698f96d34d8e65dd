"""Common storage utilities shared between the identity and key/value backends.

This module holds the store contracts the engine depends on and the helpers
that run store calls under a deadline, so every service applies the same
timeout and error translation.
"""

from __future__ import annotations

import asyncio
import functools
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    TypeVar,
)

from tenantguard.storage.errors import StoreTimeoutError, StoreUnavailableError
from tenantguard.storage.models import Department, Principal, Role

T = TypeVar("T")


# ============================================================================
# STORE CONTRACTS
# ============================================================================


class IdentityStore(Protocol):
    """Read-only view of principals, roles, resources and departments.

    Implementations exclude soft-deleted rows from every read unless the
    caller opts in with ``include_deleted``.
    """

    def find_by_identity(
        self, name: str, *, tenant_id: Optional[str] = None, include_deleted: bool = False
    ) -> Optional[Principal]: ...

    def find_by_id(
        self, principal_id: int, *, include_deleted: bool = False
    ) -> Optional[Principal]: ...

    def find_roles(self, role_ids: Sequence[int]) -> List[Role]: ...

    def find_role_resource_ids(self, role_ids: Sequence[int]) -> List[int]: ...

    def find_resource_permissions(self, resource_ids: Sequence[int]) -> List[Optional[str]]: ...

    def find_role_department_ids(self, role_ids: Sequence[int]) -> List[int]: ...

    def find_departments(self, tenant_id: str) -> List[Department]: ...


class KeyValueStore(Protocol):
    """Shared TTL store used for sessions, lockouts, revocation and caches."""

    # sessions
    async def put_session(
        self, session_id: str, fields: Dict[str, str], ttl_seconds: int, *, principal_id: int
    ) -> None: ...

    async def get_session(self, session_id: str) -> Optional[Dict[str, str]]: ...

    async def merge_session(
        self, session_id: str, fields: Dict[str, str], *, ttl_seconds: Optional[int] = None
    ) -> bool: ...

    async def delete_session(self, session_id: str, *, principal_id: Optional[int] = None) -> bool: ...

    async def session_ttl(self, session_id: str) -> int: ...

    async def principal_session_ids(self, principal_id: int) -> List[str]: ...

    # login failures
    async def record_login_failure(
        self, identity: str, *, max_attempts: int, window_seconds: int, lock_seconds: int
    ) -> Tuple[bool, int]: ...

    async def login_lock_ttl(self, identity: str) -> int: ...

    async def login_failure_count(self, identity: str) -> int: ...

    async def clear_login_failures(self, identity: str) -> None: ...

    async def unlock_login(self, identity: str) -> None: ...

    # revocation
    async def get_token_version(self, principal_id: int) -> int: ...

    async def incr_token_version(self, principal_id: int) -> int: ...

    async def clear_token_version(self, principal_id: int) -> None: ...

    async def deny_session(self, session_id: str, ttl_seconds: int) -> None: ...

    async def is_session_denied(self, session_id: str) -> bool: ...

    async def undeny_session(self, session_id: str) -> None: ...

    # permission cache
    async def get_permissions(self, principal_id: int) -> Optional[List[str]]: ...

    async def set_permissions(
        self, principal_id: int, permissions: Iterable[str], ttl_seconds: int
    ) -> None: ...

    async def evict_permissions(self, principal_id: int) -> None: ...

    async def close(self) -> None: ...


# ============================================================================
# CALL HELPERS
# ============================================================================


async def with_timeout(
    awaitable: Awaitable[T], timeout: Optional[float], *, backend: str = "kv"
) -> T:
    """Await ``awaitable`` under ``timeout`` seconds.

    A timeout surfaces as ``StoreTimeoutError`` so it is never confused with an
    ordinary miss.
    """

    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as exc:
        raise StoreTimeoutError(
            "store call timed out", backend=backend, detail={"timeout": timeout}
        ) from exc


async def call_store(
    func: Callable[..., T],
    *args: Any,
    timeout: Optional[float] = None,
    **kwargs: Any,
) -> T:
    """Run a synchronous identity-store call off the event loop."""

    call = functools.partial(func, *args, **kwargs)
    return await with_timeout(asyncio.to_thread(call), timeout, backend="identity")


def dedupe(values: Iterable[Optional[T]]) -> List[T]:
    """Drop empty values and duplicates, keeping first-seen order."""

    seen: set = set()
    result: List[T] = []
    for value in values:
        if value is None or value == "":
            continue
        if value in seen:
            continue
        seen.add(value)
        result.append(value)
    return result


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Read ``key`` from a dict-like row, tolerating missing columns."""

    if row is None:
        return default
    try:
        value = row[key]
    except (KeyError, IndexError, TypeError):
        return default
    return default if value is None else value


__all__ = [
    "IdentityStore",
    "KeyValueStore",
    "StoreUnavailableError",
    "StoreTimeoutError",
    "call_store",
    "dedupe",
    "safe_row_value",
    "with_timeout",
]
