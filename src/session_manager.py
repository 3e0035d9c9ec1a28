"""Session state machine: owns the canonical authentication state.

INITIALIZING -> {AUTHENTICATED, UNAUTHENTICATED, ERROR}
AUTHENTICATED <-> UNAUTHENTICATED (sign in / sign out / refresh)
any -> ERROR on unrecoverable failure, ERROR -> either on a later success

INITIALIZING is never re-entered. The initialization latch flips to True
exactly once, when ``initialize()`` concludes, whatever the outcome.
"""

import asyncio
import logging
from collections.abc import Callable, Coroutine, Iterable
from datetime import datetime, timezone

from errors import Cancelled, CircuitOpen, PortalError, ProviderRejected, Timeout
from identity import IdentityProvider
from models import (
    AuthError,
    AuthEvent,
    AuthState,
    CachedSessionRecord,
    Identity,
    ProfileResult,
    ProviderSession,
    Session,
    SessionSnapshot,
)
from profile_loader import RoleProfileLoader
from resilience import ResilientFetcher
from session_cache import SessionCache

logger = logging.getLogger("session")

INIT_FAILED_MESSAGE = (
    "Authentication check failed after multiple attempts. Please check your "
    "network connection and try refreshing the page."
)

SessionListener = Callable[[SessionSnapshot], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionManager:
    """Explicitly constructed session service owned by the application root.

    Consumers read ``snapshot``, register with ``subscribe`` and issue the
    ``sign_in`` / ``sign_out`` / ``refresh`` commands. Provider events
    (sign-in elsewhere, out-of-band token refresh, user update, sign-out) run
    through the same transitions as the direct commands.
    """

    def __init__(
        self,
        provider: IdentityProvider,
        cache: SessionCache,
        fetcher: ResilientFetcher,
        profile_loader: RoleProfileLoader,
        auth_timeout: float = 30.0,
        session_buffer: float = 600.0,
        fallback_budget: float | None = None,
        now: Callable[[], datetime] = _utcnow,
    ):
        self._provider = provider
        self._cache = cache
        self._fetcher = fetcher
        self._loader = profile_loader
        self._loader.on_change = self._notify
        self._auth_timeout = auth_timeout
        self._session_buffer = session_buffer
        if fallback_budget is None:
            fallback_budget = fetcher.policy_for("session-fallback").per_attempt_timeout
        self._fallback_budget = fallback_budget
        self._now = now

        self._session = Session()
        self._initialized = False
        self._init_task: asyncio.Task | None = None
        self._listeners: list[SessionListener] = []
        self._last_notified: SessionSnapshot | None = None
        self._profile_task: asyncio.Task | None = None
        self._profile_identity: str | None = None  # Identity the current profile load is for
        self._refresh_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()

        self._unsubscribe_provider = provider.on_auth_event(self._on_auth_event)

    # --- read side ---

    @property
    def state(self) -> AuthState:
        return self._session.state

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def snapshot(self) -> SessionSnapshot:
        result = self._loader.result
        return SessionSnapshot(
            state=self._session.state,
            identity=self._session.identity,
            role=self._session.role,
            profile=result.profile if result else None,
            profile_status=result.status if result else None,
            initialization_latch=self._initialized,
            profile_loading=self._loader.loading,
            last_error=self._session.last_error,
            expiry=self._session.expiry,
            provisional=self._session.provisional,
        )

    def has_role(self, role: str | Iterable[str]) -> bool:
        if self._session.state != AuthState.AUTHENTICATED or not self._session.role:
            return False
        if isinstance(role, str):
            return role == self._session.role
        return self._session.role in role

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Call ``listener`` with the new snapshot after every committed change."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        snapshot = self.snapshot
        if snapshot == self._last_notified:
            return
        self._last_notified = snapshot
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.warning(f"Session listener failed: {e}")

    # --- commits (synchronous, so ordering follows the event loop) ---

    def _is_applied(self, provider_session: ProviderSession) -> bool:
        s = self._session
        return (
            s.state == AuthState.AUTHENTICATED
            and not s.provisional
            and s.identity == provider_session.identity
            and s.role == provider_session.role
            and s.expiry == provider_session.expiry
        )

    def _commit_authenticated(
        self, provider_session: ProviderSession, reload_profile: bool = False
    ) -> None:
        if self._is_applied(provider_session) and not reload_profile:
            return

        identity = provider_session.identity
        self._session.state = AuthState.AUTHENTICATED
        self._session.identity = identity
        self._session.role = provider_session.role
        self._session.expiry = provider_session.expiry
        self._session.last_error = None
        self._session.provisional = False
        logger.info(f"User authenticated: {identity.id}, role: {provider_session.role}")

        self._schedule_refresh(provider_session.expiry)
        if reload_profile or self._profile_identity != identity.id:
            self._start_profile_load()
        self._notify()

    def _commit_unauthenticated(self, error: AuthError | None = None) -> None:
        s = self._session
        s.state = AuthState.UNAUTHENTICATED
        s.identity = None
        s.role = None
        s.expiry = None
        s.last_error = error
        s.provisional = False
        self._cancel_refresh()
        self._clear_profile()
        self._notify()

    def _commit_error(self, error: Exception) -> None:
        code = getattr(error, "code", None) or type(error).__name__
        message = (
            CircuitOpen.user_message if isinstance(error, CircuitOpen) else INIT_FAILED_MESSAGE
        )
        s = self._session
        s.state = AuthState.ERROR
        s.identity = None
        s.role = None
        s.expiry = None
        s.last_error = AuthError(code=code, message=message)
        s.provisional = False
        self._cancel_refresh()
        self._clear_profile()
        self._notify()

    async def _persist(self) -> None:
        """Rewrite the cache to match the current (latest) session."""
        s = self._session
        try:
            if s.state == AuthState.AUTHENTICATED and not s.provisional:
                if s.expiry is None:
                    await self._cache.clear_session_record()
                    return
                record = CachedSessionRecord(
                    identity_id=s.identity.id,
                    email=s.identity.email,
                    role=s.role,
                    expiry=s.expiry,
                )
                await self._cache.save_session_record(record, now=self._now())
            elif s.state == AuthState.UNAUTHENTICATED:
                await self._cache.clear_session_record()
        except Exception as e:
            logger.warning(f"Failed to persist session cache: {e}")

    # --- background work ---

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _start_profile_load(self) -> None:
        identity, role = self._session.identity, self._session.role
        if identity is None:
            return
        self._profile_identity = identity.id
        # Visible in snapshots before the load task gets to run
        self._loader.loading = True
        self._profile_task = self._spawn(self._loader.load(identity, role))

    def _clear_profile(self) -> None:
        self._profile_identity = None
        self._loader.clear()

    def _cancel_refresh(self) -> None:
        task = self._refresh_task
        self._refresh_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _schedule_refresh(self, expiry: datetime | None) -> None:
        self._cancel_refresh()
        if expiry is None:
            return
        delay = (expiry - self._now()).total_seconds() - self._session_buffer
        if delay <= 0:
            return
        logger.debug(f"Scheduling session refresh in {delay:.0f}s")
        self._refresh_task = self._spawn(self._refresh_later(delay))

    async def _refresh_later(self, delay: float) -> None:
        await asyncio.sleep(delay)
        await self.refresh()

    async def wait_for_profile(self) -> ProfileResult | None:
        """Wait until the current profile load (if any) has settled."""
        while self._profile_task is not None and not self._profile_task.done():
            await self._profile_task
        return self._loader.result

    # --- provider events ---

    def _on_auth_event(self, event: AuthEvent, provider_session: ProviderSession | None) -> None:
        if event in (AuthEvent.SIGNED_IN, AuthEvent.TOKEN_REFRESHED):
            if provider_session is None or self._is_applied(provider_session):
                return
            self._commit_authenticated(provider_session)
        elif event == AuthEvent.USER_UPDATED:
            if provider_session is None:
                return
            self._commit_authenticated(provider_session, reload_profile=True)
        elif event == AuthEvent.SIGNED_OUT:
            if self._session.state == AuthState.UNAUTHENTICATED:
                return
            self._commit_unauthenticated()
        else:
            logger.debug(f"Unhandled auth event: {event}")
            return
        self._spawn(self._persist())

    # --- commands ---

    async def initialize(self) -> SessionSnapshot:
        """Resolve the identity once per process. Safe to call repeatedly."""
        if self._initialized:
            return self.snapshot
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._run_initialize())
        await self._init_task
        return self.snapshot

    async def _run_initialize(self) -> None:
        try:
            await self._restore_from_cache()
            try:
                provider_session = await asyncio.wait_for(
                    self._resolve_identity(), timeout=self._auth_timeout
                )
            except asyncio.TimeoutError:
                logger.warning(f"Initial session check timed out after {self._auth_timeout:g}s")
                self._commit_error(Timeout("Initial session check timed out"))
            except Exception as e:
                logger.error(f"All session checks failed: {e}")
                self._commit_error(e)
            else:
                if provider_session is not None:
                    self._commit_authenticated(provider_session)
                else:
                    logger.info("Initial session check: no active session")
                    self._commit_unauthenticated()
                await self._persist()
        finally:
            self._initialized = True
            logger.info(f"Initial check complete, state: {self._session.state.value}")
            self._notify()

    async def _restore_from_cache(self) -> None:
        try:
            await self._cache.purge_legacy_keys()
            record = await self._cache.load_session_record(self._now(), self._session_buffer)
        except Exception as e:
            logger.warning(f"Could not read session cache: {e}")
            return
        if record is None:
            return

        s = self._session
        s.state = AuthState.AUTHENTICATED
        s.identity = Identity(id=record.identity_id, email=record.email)
        s.role = record.role
        s.expiry = record.expiry
        s.provisional = True
        logger.info(f"Restored provisional session for {record.identity_id}")
        self._notify()

    def _primary_budget(self) -> float:
        """Time left for the primary check once the fallback is reserved its share."""
        return max(self._auth_timeout - self._fallback_budget, self._auth_timeout / 2)

    async def _resolve_identity(self) -> ProviderSession | None:
        """Primary check, then one fallback check. Raises if both fail."""
        try:
            return await asyncio.wait_for(
                self._fetcher.guard("session-check", self._provider.get_session),
                timeout=self._primary_budget(),
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Primary session check ran past {self._primary_budget():g}s, attempting fallback"
            )
        except Exception as e:
            logger.warning(f"Primary session check failed ({e}), attempting fallback")
        return await self._fetcher.guard("session-fallback", self._provider.refresh_session)

    async def sign_in(self, email: str, password: str) -> SessionSnapshot:
        """Sign in with email and password.

        Raises:
            ProviderRejected: bad credentials or rate limited (never retried).
            CircuitOpen: too many recent failures for sign-in.
            NetworkUnreachable, Timeout: after the retry budget is spent.
        """
        logger.info(f"Attempting sign in for: {email}")
        try:
            provider_session = await self._fetcher.guard(
                "sign-in", lambda: self._provider.sign_in(email, password)
            )
        except PortalError as e:
            if not isinstance(e, Cancelled):
                logger.warning(f"Sign in failed: {e.code} {e.message}")
                self._session.last_error = AuthError.from_exception(e)
                self._notify()
            raise

        self._commit_authenticated(provider_session)
        await self._persist()
        return self.snapshot

    async def sign_out(self) -> None:
        """Sign out. Local state is cleared even if the provider call fails."""
        try:
            await self._fetcher.guard("sign-out", self._provider.sign_out)
        except Exception as e:
            logger.warning(f"Provider sign out failed, clearing local session anyway: {e}")
        finally:
            try:
                await self._provider.clear_local()
            except Exception as e:
                logger.error(f"Could not clear stored provider tokens: {e}")
            self._commit_unauthenticated()
            await self._persist()
            logger.info("User signed out")

    async def refresh(self) -> bool:
        """Re-validate and renew the session. Returns True if still authenticated."""
        try:
            provider_session = await self._fetcher.guard(
                "session-refresh", self._provider.refresh_session
            )
        except Cancelled:
            return self._session.state == AuthState.AUTHENTICATED
        except Exception as e:
            logger.error(f"Session refresh failed: {e}")
            self._commit_unauthenticated(AuthError.from_exception(e))
            await self._persist()
            return False

        if provider_session is None:
            logger.info("No session after refresh")
            self._commit_unauthenticated()
            await self._persist()
            return False

        self._commit_authenticated(provider_session)
        await self._persist()
        return True

    async def reset_password(self, email: str, redirect_to: str | None = None) -> None:
        await self._fetcher.guard(
            "password-reset",
            lambda: self._provider.reset_password_for_email(email, redirect_to),
        )

    async def reload_profile(self) -> ProfileResult | None:
        if self._session.state != AuthState.AUTHENTICATED:
            return None
        self._start_profile_load()
        return await self.wait_for_profile()

    async def update_profile(self, fields: dict) -> ProfileResult | None:
        """Write profile fields for the signed-in user and reload the profile."""
        if self._session.state != AuthState.AUTHENTICATED:
            raise ProviderRejected("Not signed in", status_code=401)
        return await self._loader.update(self._session.identity, self._session.role, fields)

    async def close(self) -> None:
        self._unsubscribe_provider()
        self._cancel_refresh()
        tasks = [t for t in self._tasks if not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
