from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class DataScope(str, Enum):
    """Row visibility granted by a role."""

    ALL = "ALL"
    CUSTOM = "CUSTOM"
    DEPT = "DEPT"
    DEPT_AND_CHILD = "DEPT_AND_CHILD"
    SELF = "SELF"


class Status(str, Enum):
    NORMAL = "0"
    DISABLED = "1"


@dataclass
class Principal:
    id: int
    tenant_id: str
    user_name: str
    password_hash: Optional[str] = None
    dept_id: Optional[int] = None
    status: Status = Status.NORMAL
    deleted: bool = False
    role_ids: List[int] = field(default_factory=list)


@dataclass
class Role:
    id: int
    tenant_id: str
    key: str
    data_scope: DataScope = DataScope.ALL
    status: Status = Status.NORMAL
    deleted: bool = False

    @property
    def is_active(self) -> bool:
        return self.status == Status.NORMAL and not self.deleted


@dataclass
class Department:
    id: int
    tenant_id: str
    parent_id: Optional[int] = None
    # Root-to-parent ids; None when the stored path could not be parsed.
    ancestors: Optional[List[int]] = None
    status: Status = Status.NORMAL
    deleted: bool = False


@dataclass
class Resource:
    """Menu/resource row carrying a permission string."""

    id: int
    perms: Optional[str] = None
    status: Status = Status.NORMAL
    deleted: bool = False


@dataclass
class ClientInfo:
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    device_type: str = "web"
    login_location: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ip_addr": self.ip_addr,
            "user_agent": self.user_agent,
            "device_type": self.device_type,
            "login_location": self.login_location,
        }

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "ClientInfo":
        raw = raw or {}
        return cls(
            ip_addr=raw.get("ip_addr"),
            user_agent=raw.get("user_agent"),
            device_type=raw.get("device_type") or "web",
            login_location=raw.get("login_location"),
        )


# Hash fields holding extension values are stored under this prefix so that a
# partial merge can update one extension key without rewriting the others.
EXTRA_FIELD_PREFIX = "x:"

_RECORD_FIELDS = (
    "principal_id",
    "tenant_id",
    "user_name",
    "dept_id",
    "issued_at",
    "client",
    "roles",
    "permissions",
)


@dataclass
class SessionRecord:
    session_id: str
    principal_id: int
    tenant_id: str
    user_name: str = ""
    dept_id: Optional[int] = None
    issued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    client: ClientInfo = field(default_factory=ClientInfo)
    roles: List[str] = field(default_factory=list)
    permissions: List[str] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_fields(self) -> Dict[str, str]:
        """Flatten into JSON-encoded hash fields."""

        fields = encode_session_fields(
            {
                "principal_id": self.principal_id,
                "tenant_id": self.tenant_id,
                "user_name": self.user_name,
                "dept_id": self.dept_id,
                "issued_at": self.issued_at,
                "client": self.client,
                "roles": self.roles,
                "permissions": self.permissions,
            }
        )
        fields.update(encode_session_fields(self.extra, extra=True))
        return fields

    @classmethod
    def from_fields(cls, session_id: str, fields: Dict[str, str]) -> "SessionRecord":
        decoded: Dict[str, Any] = {}
        extra: Dict[str, Any] = {}
        for key, raw in fields.items():
            try:
                value = json.loads(raw)
            except (TypeError, json.JSONDecodeError):
                value = raw
            if key.startswith(EXTRA_FIELD_PREFIX):
                extra[key[len(EXTRA_FIELD_PREFIX):]] = value
            else:
                decoded[key] = value
        issued_raw = decoded.get("issued_at")
        issued_at = (
            datetime.fromisoformat(issued_raw)
            if isinstance(issued_raw, str)
            else datetime.now(timezone.utc)
        )
        return cls(
            session_id=session_id,
            principal_id=int(decoded["principal_id"]),
            tenant_id=str(decoded.get("tenant_id") or ""),
            user_name=decoded.get("user_name") or "",
            dept_id=decoded.get("dept_id"),
            issued_at=issued_at,
            client=ClientInfo.from_dict(decoded.get("client")),
            roles=list(decoded.get("roles") or []),
            permissions=list(decoded.get("permissions") or []),
            extra=extra,
        )


def _encode_value(value: Any) -> str:
    if isinstance(value, datetime):
        return json.dumps(value.isoformat())
    if isinstance(value, ClientInfo):
        return json.dumps(value.to_dict())
    if isinstance(value, (set, frozenset)):
        return json.dumps(sorted(value))
    return json.dumps(value)


def encode_session_fields(partial: Dict[str, Any], *, extra: bool = False) -> Dict[str, str]:
    """Encode a partial record update into hash fields.

    Keys that are not record attributes are treated as extension fields. The
    ``extra`` key itself, when present, is expanded one level so each of its
    entries lands in its own hash field.
    """

    fields: Dict[str, str] = {}
    for key, value in partial.items():
        if extra:
            fields[f"{EXTRA_FIELD_PREFIX}{key}"] = _encode_value(value)
        elif key == "extra" and isinstance(value, dict):
            fields.update(encode_session_fields(value, extra=True))
        elif key in _RECORD_FIELDS:
            fields[key] = _encode_value(value)
        else:
            fields[f"{EXTRA_FIELD_PREFIX}{key}"] = _encode_value(value)
    return fields


@dataclass
class TokenClaims:
    session_id: str
    principal_id: int
    token_version: int
    issued_at: int
    expires_at: int


@dataclass
class LockStatus:
    locked: bool
    failed_attempts: int = 0
    remaining_attempts: int = 0
    remaining_lock_seconds: int = 0
    message: str = ""


@dataclass
class LoginResult:
    token: str
    session: SessionRecord
    expires_in: int


def parse_ancestors(raw: Any) -> Optional[List[int]]:
    """Parse a stored ancestry path such as ``"0,100,101"``.

    Returns ``None`` when the value is missing or contains anything other than
    integer ids so that callers can treat the department as unreachable.
    """

    if raw is None:
        return None
    if isinstance(raw, (list, tuple)):
        parts = list(raw)
    elif isinstance(raw, str):
        if not raw.strip():
            return None
        parts = raw.split(",")
    else:
        return None
    try:
        return [int(str(part).strip()) for part in parts]
    except ValueError:
        return None
