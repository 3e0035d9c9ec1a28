"""Redis-backed persistent session cache that survives process restarts."""

import json
import logging
import os
from datetime import datetime, timezone

import redis.asyncio as redis
from dateutil import parser as date_parser

from errors import CacheCorrupted
from models import CachedSessionRecord

logger = logging.getLogger("session_cache")

SESSION_RECORD_KEY = "auth_session_cache"
DEFAULT_BUFFER_SECONDS = 10 * 60  # 10 minutes

# Keys written by earlier portal versions
LEGACY_KEYS = (
    "valorwell_auth_state",
    "supabase.auth.token",
    "auth_initialization_forced",
)


class SessionCache:
    """Namespaced key-value store for the session snapshot and provider tokens."""

    def __init__(self, client: redis.Redis | None = None, namespace: str = "portal"):
        if client is not None:
            self._redis = client
        else:
            url = os.getenv("REDIS_URL", "redis://localhost:6379")
            self._redis = redis.from_url(url)
        self._namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    async def get(self, key: str) -> dict | None:
        """Return the decoded value, None on a miss.

        Raises:
            CacheCorrupted: the stored value was not valid JSON (it is purged first).
        """
        raw = await self._redis.get(self._key(key))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            await self._redis.delete(self._key(key))
            raise CacheCorrupted(f"Unparsable cache entry {key!r}: {e}") from e

    async def set(self, key: str, value: dict, ttl: int | None = None) -> None:
        """Replace the whole value stored under ``key``."""
        await self._redis.set(self._key(key), json.dumps(value), ex=ttl)

    async def delete(self, key: str) -> None:
        await self._redis.delete(self._key(key))

    async def load_session_record(
        self,
        now: datetime | None = None,
        buffer_seconds: float = DEFAULT_BUFFER_SECONDS,
    ) -> CachedSessionRecord | None:
        """Load the cached session snapshot if it is still usable.

        A record expiring within ``buffer_seconds`` of ``now`` is treated as a
        miss and removed, as is a corrupted or incomplete record.
        """
        now = now or datetime.now(timezone.utc)
        try:
            data = await self.get(SESSION_RECORD_KEY)
        except CacheCorrupted as e:
            logger.warning(f"Purged corrupted session cache: {e}")
            return None
        if not data:
            return None

        try:
            expiry = date_parser.isoparse(data["expiry"])
            if expiry.tzinfo is None:
                expiry = expiry.replace(tzinfo=timezone.utc)
            record = CachedSessionRecord(
                identity_id=data["identityId"],
                email=data.get("email"),
                role=data.get("role"),
                expiry=expiry,
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Purged malformed session cache record: {e}")
            await self.clear_session_record()
            return None

        if now.timestamp() > record.expiry.timestamp() - buffer_seconds:
            logger.info("Cached session expired or expiring soon, removing")
            await self.clear_session_record()
            return None

        return record

    async def save_session_record(
        self, record: CachedSessionRecord, now: datetime | None = None
    ) -> None:
        """Write the snapshot as a full replace, expiring with the session."""
        now = now or datetime.now(timezone.utc)
        remaining = int(record.expiry.timestamp() - now.timestamp())
        if remaining <= 0:
            await self.clear_session_record()
            return
        await self.set(SESSION_RECORD_KEY, record.to_dict(), ttl=remaining)

    async def clear_session_record(self) -> None:
        await self.delete(SESSION_RECORD_KEY)

    async def purge_legacy_keys(self) -> int:
        """Remove keys left behind by earlier portal versions. Returns count removed."""
        removed = await self._redis.delete(*(self._key(k) for k in LEGACY_KEYS))
        if removed:
            logger.info(f"Removed {removed} legacy session key(s)")
        return removed

    async def close(self) -> None:
        """Close the Redis connection."""
        await self._redis.aclose()
