"""Best-effort Redis mirror of circuit breaker state.

Independent consumer instances of the same feature converge on one
open/closed status: the committed RetryState is stored per operation class
and every change is broadcast on a pub/sub channel. Any Redis failure is
logged and ignored, leaving each instance with its purely local breaker.
"""

import json
import logging
import uuid
from collections.abc import Callable
from dataclasses import asdict

import redis.asyncio as redis

from models import BreakerEvent, RetryState

logger = logging.getLogger("breaker_mirror")

STATE_TTL_SECONDS = 60 * 60  # 1 hour


class BreakerMirror:
    def __init__(self, client: redis.Redis, namespace: str = "portal"):
        self._redis = client
        self._namespace = namespace
        self.instance_id = uuid.uuid4().hex

    @property
    def channel(self) -> str:
        return f"{self._namespace}:breaker:events"

    def _state_key(self, operation_class: str) -> str:
        return f"{self._namespace}:breaker:{operation_class}"

    async def load(self, operation_class: str) -> RetryState | None:
        """Return the shared state for a class, or None if absent/unavailable."""
        try:
            raw = await self._redis.get(self._state_key(operation_class))
        except (redis.RedisError, OSError) as e:
            logger.warning(f"Breaker mirror unavailable on load: {e}")
            return None
        if not raw:
            return None
        try:
            return RetryState(**json.loads(raw))
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Ignoring malformed breaker state for {operation_class}: {e}")
            return None

    async def publish(
        self, operation_class: str, event: BreakerEvent, state: RetryState
    ) -> None:
        """Store the committed state and broadcast the change."""
        message = {
            "source": self.instance_id,
            "operationClass": operation_class,
            "event": event.value,
            "openedAt": state.circuit_opened_at,
        }
        try:
            pipe = self._redis.pipeline()
            if state.circuit_open:
                pipe.set(
                    self._state_key(operation_class),
                    json.dumps(asdict(state)),
                    ex=STATE_TTL_SECONDS,
                )
            else:
                pipe.delete(self._state_key(operation_class))
            pipe.publish(self.channel, json.dumps(message))
            await pipe.execute()
        except (redis.RedisError, OSError) as e:
            logger.warning(f"Breaker mirror unavailable on publish: {e}")

    def handle_message(
        self,
        data: bytes | str,
        apply: Callable[[str, BreakerEvent, float | None], None],
    ) -> bool:
        """Apply one broadcast message from another instance. Returns True if applied."""
        try:
            message = json.loads(data)
            if message.get("source") == self.instance_id:
                return False
            event = BreakerEvent(message["event"])
            operation_class = message["operationClass"]
        except (json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
            logger.warning(f"Ignoring malformed breaker message: {e}")
            return False

        logger.info(f"Breaker '{operation_class}' {event.value} by another instance")
        apply(operation_class, event, message.get("openedAt"))
        return True

    async def run(self, apply: Callable[[str, BreakerEvent, float | None], None]) -> None:
        """Listen for changes from other instances until cancelled."""
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(self.channel)
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                self.handle_message(message["data"], apply)
        except (redis.RedisError, OSError) as e:
            logger.warning(f"Breaker mirror listener stopped: {e}")
        finally:
            await pubsub.aclose()
