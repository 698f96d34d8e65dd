"""Tests for the TTL session store and its merge semantics."""

import asyncio
from datetime import datetime, timezone

import pytest

from tenantguard.service.sessions import SessionStore
from tenantguard.storage.models import ClientInfo, SessionRecord


@pytest.fixture
def sessions(cache):
    return SessionStore(cache, default_ttl_seconds=1800, timeout=1.0)


def record(session_id="s1", principal_id=7, **kwargs):
    return SessionRecord(
        session_id=session_id,
        principal_id=principal_id,
        tenant_id="T1",
        user_name="alice",
        dept_id=100,
        issued_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        client=ClientInfo(ip_addr="10.0.0.1", user_agent="pytest"),
        roles=["dept_manager"],
        permissions=["system:user:list"],
        **kwargs,
    )


class TestPutGet:
    async def test_put_then_get(self, sessions):
        await sessions.put(record(extra={"theme": "dark"}))
        loaded = await sessions.get("s1")

        assert loaded == record(extra={"theme": "dark"})
        assert loaded.client.ip_addr == "10.0.0.1"

    async def test_missing_session(self, sessions):
        assert await sessions.get("nope") is None

    async def test_expires_after_ttl(self, sessions, clock):
        await sessions.put(record(), ttl=60)
        clock.advance(59)
        assert await sessions.get("s1") is not None
        clock.advance(2)
        assert await sessions.get("s1") is None

    async def test_default_ttl_used(self, sessions):
        await sessions.put(record())
        assert await sessions.remaining_ttl("s1") == 1800

    async def test_put_replaces_previous_fields(self, sessions):
        await sessions.put(record(extra={"theme": "dark"}))
        await sessions.put(record())
        assert (await sessions.get("s1")).extra == {}

    async def test_delete(self, sessions):
        await sessions.put(record())
        assert await sessions.delete("s1")
        assert await sessions.get("s1") is None
        assert not await sessions.delete("s1")


class TestMerge:
    async def test_merge_overlays_fields(self, sessions):
        await sessions.put(record())
        assert await sessions.merge("s1", {"permissions": ["a:b:c"], "locale": "en"})

        loaded = await sessions.get("s1")
        assert loaded.permissions == ["a:b:c"]
        assert loaded.roles == ["dept_manager"]
        assert loaded.extra == {"locale": "en"}

    async def test_merge_keeps_remaining_ttl(self, sessions, clock):
        await sessions.put(record(), ttl=600)
        clock.advance(400)

        await sessions.merge("s1", {"roles": ["x"]})

        assert await sessions.remaining_ttl("s1") == 200

    async def test_explicit_ttl_resets_expiry(self, sessions, clock):
        await sessions.put(record(), ttl=600)
        clock.advance(400)

        await sessions.merge("s1", {"roles": ["x"]}, ttl=900)

        assert await sessions.remaining_ttl("s1") == 900

    async def test_merge_does_not_resurrect_expired_session(self, sessions, clock):
        await sessions.put(record(), ttl=60)
        clock.advance(61)

        assert not await sessions.merge("s1", {"roles": ["x"]})
        assert await sessions.get("s1") is None

    async def test_merge_does_not_resurrect_deleted_session(self, sessions):
        await sessions.put(record())
        await sessions.delete("s1")
        assert not await sessions.merge("s1", {"roles": ["x"]})
        assert await sessions.get("s1") is None

    async def test_extra_keys_merge_individually(self, sessions):
        await sessions.put(record(extra={"theme": "dark", "locale": "de"}))
        await sessions.merge("s1", {"extra": {"locale": "en"}})
        assert (await sessions.get("s1")).extra == {"theme": "dark", "locale": "en"}

    async def test_concurrent_merges_of_different_fields_both_survive(self, sessions):
        await sessions.put(record())

        await asyncio.gather(
            sessions.merge("s1", {"permissions": ["p:1"]}),
            sessions.merge("s1", {"client": ClientInfo(ip_addr="10.9.9.9")}),
            sessions.merge("s1", {"last_seen": "now"}),
        )

        loaded = await sessions.get("s1")
        assert loaded.permissions == ["p:1"]
        assert loaded.client.ip_addr == "10.9.9.9"
        assert loaded.extra == {"last_seen": "now"}

    async def test_same_field_last_writer_wins(self, sessions):
        await sessions.put(record())

        await sessions.merge("s1", {"roles": ["first"]})
        await sessions.merge("s1", {"roles": ["second"]})

        assert (await sessions.get("s1")).roles == ["second"]

    async def test_empty_merge_reports_liveness(self, sessions):
        assert not await sessions.merge("s1", {})
        await sessions.put(record())
        assert await sessions.merge("s1", {})


class TestPrincipalIndex:
    async def test_lists_live_sessions(self, sessions, clock):
        await sessions.put(record("a"), ttl=60)
        await sessions.put(record("b"), ttl=600)
        await sessions.put(record("c", principal_id=8))
        assert await sessions.principal_sessions(7) == ["a", "b"]

        clock.advance(61)
        assert await sessions.principal_sessions(7) == ["b"]

        await sessions.delete("b")
        assert await sessions.principal_sessions(7) == []
        assert await sessions.principal_sessions(8) == ["c"]
