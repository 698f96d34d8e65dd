from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Set, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tenantguard.config import Settings
from tenantguard.logging import get_logger, mask_identity
from tenantguard.service.data_scope import DataScopePredicate, DataScopeResolver
from tenantguard.service.departments import DepartmentResolver
from tenantguard.service.errors import (
    AccountDeletedError,
    AccountDisabledError,
    AccountLockedError,
    AuthenticationError,
    InvalidCredentialsError,
    NotFoundError,
    SessionNotFoundError,
    TokenInvalidError,
    TokenRevokedError,
)
from tenantguard.service.login_guard import LoginSecurityGuard
from tenantguard.service.permissions import PermissionAggregator
from tenantguard.service.revocation import RevocationService
from tenantguard.service.sessions import SessionStore
from tenantguard.service.tokens import CredentialIssuer
from tenantguard.storage.common import IdentityStore, KeyValueStore, call_store
from tenantguard.storage.errors import StoreTimeoutError
from tenantguard.storage.models import (
    ClientInfo,
    LoginResult,
    Principal,
    SessionRecord,
    Status,
)

logger = get_logger(__name__)


class AuthService:
    """Login, token verification and session lifecycle for one deployment.

    Wires the engine components over an identity store and a shared key/value
    store. Every authentication outcome is an ``AuthenticationError``
    subclass; store outages surface as ``StoreUnavailableError``.
    """

    def __init__(
        self,
        store: IdentityStore,
        cache: KeyValueStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.logger = logger
        timeout = settings.store_timeout_seconds
        self.timeout = timeout
        self.departments = DepartmentResolver(store, timeout=timeout)
        self.data_scope = DataScopeResolver(store, self.departments, timeout=timeout)
        self.permissions = PermissionAggregator(
            store,
            cache,
            super_admin_role_id=settings.super_admin_role_id,
            wildcard=settings.wildcard_permission,
            cache_ttl_seconds=settings.permission_cache_ttl_seconds,
            timeout=timeout,
        )
        self.guard = LoginSecurityGuard(
            cache,
            max_attempts=settings.login_max_failed_attempts,
            lock_seconds=settings.login_lock_minutes * 60,
            window_seconds=settings.login_failure_window_minutes * 60,
            timeout=timeout,
        )
        self.issuer = CredentialIssuer(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            ttl_seconds=settings.token_ttl_seconds,
            leeway_seconds=settings.jwt_leeway_seconds,
            clock=clock,
        )
        self.revocation = RevocationService(
            cache, deny_ttl_seconds=settings.deny_list_ttl_seconds, timeout=timeout
        )
        self.sessions = SessionStore(
            cache, default_ttl_seconds=settings.session_ttl_seconds, timeout=timeout
        )
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    # -- passwords ----------------------------------------------------------

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_password(self, principal: Principal, password: str) -> bool:
        if not principal.password_hash or not password:
            return False
        try:
            return self._pwd_hasher.verify(principal.password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            self.logger.warning("password_hash_unusable", principal_id=principal.id)
            return False

    @staticmethod
    def _identity_key(user_name: str, tenant_id: Optional[str]) -> str:
        return f"{tenant_id}:{user_name}" if tenant_id else user_name

    # -- role and permission lookups ----------------------------------------

    async def _load_grants(self, principal: Principal) -> Tuple[List[str], Set[str]]:
        roles = await call_store(self.store.find_roles, principal.role_ids, timeout=self.timeout)
        active = [role for role in roles if role.is_active]
        perms = await self.permissions.permissions_for(
            principal, role_ids=[role.id for role in active]
        )
        return sorted({role.key for role in active}), perms

    async def resolve_data_scope(self, principal: Principal) -> DataScopePredicate:
        return await self.data_scope.resolve(principal)

    async def aggregate_permissions(self, role_ids: Iterable[int]) -> Set[str]:
        return await self.permissions.aggregate(role_ids)

    async def evict_permission_cache(self, principal_id: int) -> None:
        await self.permissions.evict(principal_id)

    # -- login --------------------------------------------------------------

    async def login(
        self,
        user_name: str,
        password: str,
        *,
        client: Optional[ClientInfo] = None,
        tenant_id: Optional[str] = None,
    ) -> LoginResult:
        identity = self._identity_key(user_name, tenant_id)
        masked = mask_identity(user_name)

        lock = await self.guard.check_before_attempt(identity)
        if lock.locked:
            self.logger.warning(
                "login_rejected_locked",
                identity=masked,
                remaining_lock_seconds=lock.remaining_lock_seconds,
            )
            raise AccountLockedError(
                lock.message, detail={"remaining_lock_seconds": lock.remaining_lock_seconds}
            )

        principal = await call_store(
            self.store.find_by_identity,
            user_name,
            tenant_id=tenant_id,
            include_deleted=True,
            timeout=self.timeout,
        )
        if principal is None or not self._verify_password(principal, password):
            failure = await self.guard.record_failure(identity)
            self.logger.info(
                "login_failed",
                identity=masked,
                reason="invalid_credentials",
                attempts=failure.failed_attempts,
                locked=failure.locked,
            )
            if failure.locked:
                raise AccountLockedError(
                    failure.message,
                    detail={"remaining_lock_seconds": failure.remaining_lock_seconds},
                )
            raise InvalidCredentialsError(
                failure.message, detail={"remaining_attempts": failure.remaining_attempts}
            )

        await self.guard.clear(identity)

        if principal.deleted:
            self.logger.info("login_failed", identity=masked, reason="account_deleted")
            raise AccountDeletedError("account has been deleted")
        if principal.status != Status.NORMAL:
            self.logger.info("login_failed", identity=masked, reason="account_disabled")
            raise AccountDisabledError("account is disabled")

        session_id = str(uuid.uuid4())
        roles, permissions = await self._load_grants(principal)
        version = await self.revocation.current_version(principal.id)
        token = self.issuer.issue(principal.id, session_id, version)

        record = SessionRecord(
            session_id=session_id,
            principal_id=principal.id,
            tenant_id=principal.tenant_id,
            user_name=principal.user_name,
            dept_id=principal.dept_id,
            issued_at=datetime.now(timezone.utc),
            client=client or ClientInfo(),
            roles=roles,
            permissions=sorted(permissions),
        )
        ttl = self.settings.session_ttl_seconds
        await self.sessions.put(record, ttl)
        self.logger.info(
            "login_succeeded",
            principal_id=principal.id,
            tenant_id=principal.tenant_id,
            session_id=session_id,
            role_count=len(roles),
        )
        return LoginResult(token=token, session=record, expires_in=ttl)

    # -- verification -------------------------------------------------------

    async def verify(self, token: str) -> SessionRecord:
        """Redeem a token against live state.

        Order: signature, deny-list, token version, session lookup. Every
        failure raises an ``AuthenticationError`` with the same public message.
        """

        try:
            claims = self.issuer.verify(token)
            if await self.revocation.is_session_revoked(claims.session_id):
                raise TokenRevokedError(reason="session_deny_listed")
            if not await self.revocation.is_version_current(
                claims.principal_id, claims.token_version
            ):
                raise TokenRevokedError(reason="token_version_stale")
            record = await self.sessions.get(claims.session_id)
            if record is None:
                raise SessionNotFoundError()
            if record.principal_id != claims.principal_id:
                raise SessionNotFoundError(reason="session_principal_mismatch")
        except StoreTimeoutError as exc:
            self.logger.warning("verify_failed", reason="store_timeout", backend=exc.backend)
            raise TokenInvalidError(reason="store_timeout") from exc
        except AuthenticationError as exc:
            self.logger.info("verify_failed", reason=exc.reason)
            raise
        return record

    async def authenticate(self, token: Optional[str]) -> Optional[SessionRecord]:
        """``verify`` that answers None instead of raising on auth failures."""

        if not token:
            return None
        try:
            return await self.verify(token)
        except AuthenticationError:
            return None

    # -- session maintenance ------------------------------------------------

    async def _principal_for_session(self, record: SessionRecord) -> Principal:
        principal = await call_store(
            self.store.find_by_id, record.principal_id, timeout=self.timeout
        )
        if principal is None:
            raise SessionNotFoundError(reason="principal_missing")
        return principal

    async def refresh_permissions(self, session_id: str) -> SessionRecord:
        record = await self.sessions.get(session_id)
        if record is None:
            raise SessionNotFoundError()
        principal = await self._principal_for_session(record)
        await self.permissions.evict(principal.id)
        roles, permissions = await self._load_grants(principal)
        merged = await self.sessions.merge(
            session_id, {"roles": roles, "permissions": sorted(permissions)}
        )
        if not merged:
            raise SessionNotFoundError(reason="session_expired_during_refresh")
        record.roles = roles
        record.permissions = sorted(permissions)
        self.logger.info(
            "session_permissions_refreshed",
            session_id=session_id,
            principal_id=principal.id,
            permission_count=len(permissions),
        )
        return record

    async def refresh_principal_sessions(self, principal_id: int) -> int:
        """Push fresh roles and permissions into every live session of a principal."""

        principal = await call_store(self.store.find_by_id, principal_id, timeout=self.timeout)
        if principal is None:
            raise NotFoundError("principal not found", detail={"principal_id": principal_id})
        await self.permissions.evict(principal_id)
        roles, permissions = await self._load_grants(principal)
        refreshed = 0
        for session_id in await self.sessions.principal_sessions(principal_id):
            if await self.sessions.merge(
                session_id, {"roles": roles, "permissions": sorted(permissions)}
            ):
                refreshed += 1
        self.logger.info(
            "principal_sessions_refreshed", principal_id=principal_id, sessions=refreshed
        )
        return refreshed

    async def logout(self, session_id: str, *, deny: Optional[bool] = None) -> bool:
        removed = await self.sessions.delete(session_id)
        if self.settings.deny_on_logout if deny is None else deny:
            await self.revocation.revoke_session(session_id)
        self.logger.info("logout", session_id=session_id, session_removed=removed)
        return removed

    async def logout_others(self, principal_id: int, keep_session_id: Optional[str] = None) -> int:
        """Log out every session of a principal except ``keep_session_id``."""

        count = 0
        for session_id in await self.sessions.principal_sessions(principal_id):
            if session_id == keep_session_id:
                continue
            await self.logout(session_id, deny=True)
            count += 1
        self.logger.info(
            "logout_others", principal_id=principal_id, kept=keep_session_id, sessions=count
        )
        return count

    async def invalidate_tokens(self, principal_id: int, reason: str = "password_changed") -> int:
        """Invalidate every token minted so far for a principal."""

        version = await self.revocation.bump_version(principal_id, reason)
        await self.permissions.evict(principal_id)
        return version

    async def unlock_account(self, user_name: str, *, tenant_id: Optional[str] = None) -> None:
        await self.guard.unlock(self._identity_key(user_name, tenant_id))
