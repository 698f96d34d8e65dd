from __future__ import annotations

from typing import Any, Dict, List, Optional

from tenantguard.logging import get_logger
from tenantguard.storage.common import KeyValueStore, with_timeout
from tenantguard.storage.models import SessionRecord, encode_session_fields

logger = get_logger(__name__)


class SessionStore:
    """Live session records kept in the shared key/value store under a TTL.

    Each record attribute is its own hash field, so ``merge`` writes only the
    fields it is given in one atomic store call. Two merges touching different
    fields both survive; two merges touching the same field resolve to the
    last writer. A merge never resurrects an expired or deleted session and
    keeps the remaining TTL unless ``ttl`` is passed.
    """

    def __init__(
        self,
        cache: KeyValueStore,
        *,
        default_ttl_seconds: int = 30 * 60,
        timeout: Optional[float] = None,
    ) -> None:
        self.cache = cache
        self.default_ttl_seconds = default_ttl_seconds
        self.timeout = timeout

    async def put(self, record: SessionRecord, ttl: Optional[int] = None) -> None:
        await with_timeout(
            self.cache.put_session(
                record.session_id,
                record.to_fields(),
                ttl or self.default_ttl_seconds,
                principal_id=record.principal_id,
            ),
            self.timeout,
        )

    async def get(self, session_id: str) -> Optional[SessionRecord]:
        fields = await with_timeout(self.cache.get_session(session_id), self.timeout)
        if not fields:
            return None
        try:
            return SessionRecord.from_fields(session_id, fields)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("session_record_corrupt", session_id=session_id, error=str(exc))
            return None

    async def merge(
        self, session_id: str, partial: Dict[str, Any], *, ttl: Optional[int] = None
    ) -> bool:
        """Overlay ``partial`` onto the stored record; False when the session is gone."""

        fields = encode_session_fields({k: v for k, v in partial.items() if k != "session_id"})
        if not fields and ttl is None:
            return await with_timeout(self.cache.get_session(session_id), self.timeout) is not None
        merged = await with_timeout(
            self.cache.merge_session(session_id, fields, ttl_seconds=ttl), self.timeout
        )
        if not merged:
            logger.info("session_merge_missed", session_id=session_id)
        return merged

    async def delete(self, session_id: str) -> bool:
        return await with_timeout(self.cache.delete_session(session_id), self.timeout)

    async def remaining_ttl(self, session_id: str) -> int:
        return await with_timeout(self.cache.session_ttl(session_id), self.timeout)

    async def principal_sessions(self, principal_id: int) -> List[str]:
        return await with_timeout(self.cache.principal_session_ids(principal_id), self.timeout)
