"""Tests for SessionCache using fakeredis."""

from datetime import datetime, timedelta, timezone

import fakeredis.aioredis
import pytest

from errors import CacheCorrupted
from models import CachedSessionRecord
from session_cache import LEGACY_KEYS, SESSION_RECORD_KEY, SessionCache

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
async def cache():
    client = fakeredis.aioredis.FakeRedis()
    c = SessionCache(client=client, namespace="test")
    yield c
    await c.close()


def _record(expires_in: timedelta = timedelta(hours=1)) -> CachedSessionRecord:
    return CachedSessionRecord(
        identity_id="user-1",
        email="ada@example.com",
        role="client",
        expiry=NOW + expires_in,
    )


async def test_get_missing_key(cache):
    assert await cache.get("nothing") is None


async def test_set_and_get(cache):
    await cache.set("k", {"a": 1})
    assert await cache.get("k") == {"a": 1}


async def test_keys_are_namespaced(cache):
    await cache.set("k", {"a": 1})
    assert await cache._redis.exists("test:k") == 1


async def test_corrupted_value_is_purged(cache):
    """An undecodable value raises CacheCorrupted and is removed."""
    await cache._redis.set("test:k", b"{not json")
    with pytest.raises(CacheCorrupted):
        await cache.get("k")
    assert await cache._redis.exists("test:k") == 0


async def test_session_record_round_trip(cache):
    await cache.save_session_record(_record(), now=NOW)
    record = await cache.load_session_record(now=NOW)
    assert record == _record()


async def test_session_record_wire_format(cache):
    await cache.save_session_record(_record(), now=NOW)
    data = await cache.get(SESSION_RECORD_KEY)
    assert data == {
        "identityId": "user-1",
        "email": "ada@example.com",
        "role": "client",
        "expiry": "2026-03-01T13:00:00+00:00",
    }


async def test_ttl_matches_remaining_lifetime(cache):
    await cache.save_session_record(_record(timedelta(minutes=30)), now=NOW)
    ttl = await cache._redis.ttl(f"test:{SESSION_RECORD_KEY}")
    assert 0 < ttl <= 30 * 60


async def test_record_within_buffer_is_stale(cache):
    """A record expiring in less than the buffer window is deleted and ignored."""
    await cache.save_session_record(_record(timedelta(minutes=5)), now=NOW)
    assert await cache.load_session_record(now=NOW, buffer_seconds=600) is None
    assert await cache.get(SESSION_RECORD_KEY) is None


async def test_record_outside_buffer_is_usable(cache):
    await cache.save_session_record(_record(timedelta(minutes=11)), now=NOW)
    assert await cache.load_session_record(now=NOW, buffer_seconds=600) is not None


async def test_expired_record_is_not_written(cache):
    await cache.save_session_record(_record(timedelta(seconds=-1)), now=NOW)
    assert await cache.get(SESSION_RECORD_KEY) is None


async def test_corrupted_record_is_a_miss(cache):
    await cache._redis.set(f"test:{SESSION_RECORD_KEY}", b"garbage")
    assert await cache.load_session_record(now=NOW) is None
    assert await cache._redis.exists(f"test:{SESSION_RECORD_KEY}") == 0


async def test_incomplete_record_is_a_miss(cache):
    await cache.set(SESSION_RECORD_KEY, {"email": "ada@example.com"})
    assert await cache.load_session_record(now=NOW) is None
    assert await cache.get(SESSION_RECORD_KEY) is None


async def test_naive_expiry_is_treated_as_utc(cache):
    await cache.set(
        SESSION_RECORD_KEY,
        {"identityId": "user-1", "email": None, "role": "client", "expiry": "2026-03-01T14:00:00"},
    )
    record = await cache.load_session_record(now=NOW)
    assert record.expiry == datetime(2026, 3, 1, 14, 0, tzinfo=timezone.utc)


async def test_save_replaces_whole_record(cache):
    await cache.save_session_record(_record(), now=NOW)
    replacement = CachedSessionRecord("user-2", None, "clinician", NOW + timedelta(hours=2))
    await cache.save_session_record(replacement, now=NOW)
    assert await cache.load_session_record(now=NOW) == replacement


async def test_clear_session_record(cache):
    await cache.save_session_record(_record(), now=NOW)
    await cache.clear_session_record()
    assert await cache.load_session_record(now=NOW) is None


async def test_purge_legacy_keys(cache):
    for key in LEGACY_KEYS:
        await cache.set(key, {"stale": True})
    await cache.set("keep", {"a": 1})

    assert await cache.purge_legacy_keys() == len(LEGACY_KEYS)
    assert await cache.get("keep") == {"a": 1}
    assert await cache.purge_legacy_keys() == 0
