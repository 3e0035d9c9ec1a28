"""Resilient fetch pipeline: reachability probe, per-attempt timeout, retry
with exponential backoff and a circuit breaker per operation class.

Usage:
    fetcher = ResilientFetcher(policies=settings.policies, probe=probe.is_reachable)
    record = await fetcher.guard(
        "profile-fetch", lambda: store.fetch_profile("clients", user_id)
    )

While a class is OPEN, ``guard`` raises ``CircuitOpen`` without touching the
network. The breaker closes again once the cooldown elapses or when
``reset()`` is called.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import Any, TypeVar

from errors import Cancelled, CircuitOpen, NetworkUnreachable, PortalError, Timeout
from models import BreakerEvent, GuardPolicy, RetryState

logger = logging.getLogger("resilience")

T = TypeVar("T")


class CancelToken:
    """Cancellation signal carried by a dispatched operation."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled("Operation cancelled")


class GenerationCounter:
    """Monotonic tickets; only the latest ticket's result may be applied."""

    def __init__(self) -> None:
        self._current = 0

    @property
    def current(self) -> int:
        return self._current

    def next(self) -> int:
        self._current += 1
        return self._current

    def is_current(self, ticket: int) -> bool:
        return ticket == self._current


@dataclass(frozen=True)
class BreakerChange:
    operation_class: str
    event: BreakerEvent
    state: RetryState
    remote: bool = False  # Applied from another instance via the mirror


BreakerListener = Callable[[BreakerChange], None]


class CircuitBreaker:
    """Breaker state machine for one operation class.

    CLOSED -> (max_attempts consecutive failures) -> OPEN
    OPEN -> (cooldown elapsed, or explicit reset) -> CLOSED
    """

    def __init__(self, operation_class: str, clock: Callable[[], float] = time.time):
        self.operation_class = operation_class
        self.state = RetryState()
        self._clock = clock
        self._listeners: list[BreakerListener] = []

    def subscribe(self, listener: BreakerListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: BreakerEvent, remote: bool = False) -> None:
        change = BreakerChange(self.operation_class, event, replace(self.state), remote)
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as e:
                logger.warning(f"Breaker listener failed for {self.operation_class}: {e}")

    def retry_after(self, cooldown: float) -> float:
        if not self.state.circuit_open or self.state.circuit_opened_at is None:
            return 0.0
        return max(0.0, self.state.circuit_opened_at + cooldown - self._clock())

    def check_cooldown(self, cooldown: float) -> BreakerEvent | None:
        """Close the breaker if its cooldown has elapsed. Returns the event emitted."""
        if self.state.circuit_open and self.retry_after(cooldown) <= 0:
            self.state.reset()
            logger.info(f"Circuit '{self.operation_class}' CLOSED after cooldown")
            self._emit(BreakerEvent.CLOSED)
            return BreakerEvent.CLOSED
        return None

    @property
    def is_open(self) -> bool:
        return self.state.circuit_open

    def record_success(self) -> None:
        if self.state.attempt_count or self.state.last_failure_reason:
            self.state.reset()

    def record_failure(self, reason: str, max_attempts: int) -> bool:
        """Count a failed attempt. Returns True if this failure opened the circuit."""
        self.state.attempt_count += 1
        self.state.last_failure_reason = reason
        if self.state.attempt_count >= max_attempts and not self.state.circuit_open:
            self.state.circuit_open = True
            self.state.circuit_opened_at = self._clock()
            logger.error(
                f"Circuit '{self.operation_class}' OPEN after "
                f"{self.state.attempt_count} failures (last: {reason})"
            )
            self._emit(BreakerEvent.OPENED)
            return True
        return False

    def reset(self) -> None:
        self.state.reset()
        logger.info(f"Circuit '{self.operation_class}' reset")
        self._emit(BreakerEvent.RESET)

    def apply_remote(self, event: BreakerEvent, opened_at: float | None = None) -> None:
        """Converge on a change committed by another instance."""
        if event == BreakerEvent.OPENED:
            if self.state.circuit_open:
                return
            self.state.circuit_open = True
            self.state.circuit_opened_at = opened_at if opened_at is not None else self._clock()
        else:
            if not self.state.circuit_open and not self.state.attempt_count:
                return
            self.state.reset()
        self._emit(event, remote=True)


class ResilientFetcher:
    """Wraps network calls with probe, timeout, retry/backoff and breaker."""

    def __init__(
        self,
        policies: dict[str, GuardPolicy] | None = None,
        probe: Callable[[], Awaitable[bool]] | None = None,
        mirror: Any = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._policies = dict(policies or {})
        self._probe = probe
        self._mirror = mirror
        self._clock = clock
        self._sleep = sleep
        self._breakers: dict[str, CircuitBreaker] = {}
        self._seeded: set[str] = set()
        self._offline = False

    def policy_for(self, operation_class: str) -> GuardPolicy:
        return self._policies.get(operation_class, GuardPolicy())

    def breaker(self, operation_class: str) -> CircuitBreaker:
        breaker = self._breakers.get(operation_class)
        if breaker is None:
            breaker = CircuitBreaker(operation_class, clock=self._clock)
            self._breakers[operation_class] = breaker
        return breaker

    def retry_state(self, operation_class: str) -> RetryState:
        return replace(self.breaker(operation_class).state)

    async def _seeded_breaker(self, operation_class: str) -> CircuitBreaker:
        breaker = self.breaker(operation_class)
        if self._mirror is not None and operation_class not in self._seeded:
            self._seeded.add(operation_class)
            shared = await self._mirror.load(operation_class)
            if shared is not None and shared.circuit_open:
                breaker.apply_remote(BreakerEvent.OPENED, shared.circuit_opened_at)
        return breaker

    async def _publish(self, breaker: CircuitBreaker, event: BreakerEvent) -> None:
        if self._mirror is not None:
            await self._mirror.publish(breaker.operation_class, event, breaker.state)

    async def guard(
        self,
        operation_class: str,
        fn: Callable[[], Awaitable[T]],
        policy: GuardPolicy | None = None,
        cancel: CancelToken | None = None,
    ) -> T:
        """Run ``fn`` under the retry/breaker policy of ``operation_class``.

        Raises:
            CircuitOpen: the class is open; ``fn`` was not called.
            NetworkUnreachable: the reachability probe failed (not counted).
            Cancelled: ``cancel`` fired; any late result is discarded.
            The last failure of ``fn`` once the attempt budget is exhausted.
        """
        policy = policy or self.policy_for(operation_class)
        breaker = await self._seeded_breaker(operation_class)

        if breaker.check_cooldown(policy.circuit_cooldown) is not None:
            await self._publish(breaker, BreakerEvent.CLOSED)
        if breaker.is_open:
            retry_after = breaker.retry_after(policy.circuit_cooldown)
            logger.warning(
                f"[{operation_class}] circuit open, rejecting call "
                f"(retry in {retry_after:.1f}s)"
            )
            raise CircuitOpen(operation_class, retry_after)

        while True:
            if cancel is not None:
                cancel.raise_if_cancelled()

            if self._probe is not None:
                if not await self._probe():
                    self._offline = True
                    logger.warning(f"[{operation_class}] network unreachable, skipping attempt")
                    raise NetworkUnreachable(offline=True)
                if self._offline:
                    self._offline = False
                    logger.info("Network reachable again, closing all circuits")
                    await self.reset_all()

            try:
                result = await self._attempt(fn, policy.per_attempt_timeout, cancel)
            except PortalError as e:
                if not e.retryable:
                    raise
                failure: Exception = e
            except Exception as e:
                failure = e
            else:
                if cancel is not None and cancel.cancelled:
                    logger.debug(f"[{operation_class}] discarding result of cancelled call")
                    raise Cancelled("Operation cancelled")
                breaker.record_success()
                return result

            reason = f"{type(failure).__name__}: {failure}"
            if breaker.record_failure(reason, policy.max_attempts):
                await self._publish(breaker, BreakerEvent.OPENED)
                raise failure

            attempt = breaker.state.attempt_count
            delay = policy.backoff(attempt)
            logger.warning(
                f"[{operation_class}] attempt {attempt}/{policy.max_attempts} failed "
                f"({reason}), retrying in {delay:.1f}s"
            )
            await self._wait(delay, cancel)

    async def _attempt(
        self,
        fn: Callable[[], Awaitable[T]],
        timeout: float,
        cancel: CancelToken | None,
    ) -> T:
        """Race one call against the per-attempt timer (and the cancel signal)."""
        task = asyncio.ensure_future(fn())
        waiters: set[asyncio.Future] = {task}
        cancel_waiter = None
        if cancel is not None:
            cancel_waiter = asyncio.ensure_future(cancel.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            if not task.done():
                task.cancel()

        if task in done:
            return task.result()
        if cancel is not None and cancel.cancelled:
            raise Cancelled("Operation cancelled")
        raise Timeout(f"Attempt timed out after {timeout:g}s")

    async def _wait(self, delay: float, cancel: CancelToken | None) -> None:
        if delay <= 0:
            return
        if cancel is None:
            await self._sleep(delay)
            return

        sleeper = asyncio.ensure_future(self._sleep(delay))
        cancel_waiter = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait(
                {sleeper, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            sleeper.cancel()
            cancel_waiter.cancel()
        cancel.raise_if_cancelled()

    async def reset(self, operation_class: str) -> None:
        """Force a class back to CLOSED without waiting for its cooldown."""
        breaker = self.breaker(operation_class)
        breaker.reset()
        await self._publish(breaker, BreakerEvent.RESET)

    async def reset_all(self) -> None:
        """Connectivity restored: close every known breaker."""
        for operation_class in list(self._breakers):
            await self.reset(operation_class)

    def apply_remote(
        self, operation_class: str, event: BreakerEvent, opened_at: float | None = None
    ) -> None:
        self.breaker(operation_class).apply_remote(event, opened_at)
