"""Identity provider client (Supabase GoTrue REST API)."""

import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import httpx

from errors import CacheCorrupted, NetworkUnreachable, ProviderRejected, Timeout, UpstreamError
from models import AuthEvent, Identity, ProviderSession

logger = logging.getLogger("identity")

TOKEN_STORAGE_KEY = "provider_token"
EXPIRY_MARGIN = timedelta(seconds=60)

# Refresh-token rejections that mean "no session", as opposed to rate limiting
_SESSION_GONE_STATUSES = (400, 401, 403)

AuthListener = Callable[[AuthEvent, ProviderSession | None], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_user(user: dict) -> tuple[Identity, dict]:
    identity = Identity(id=user["id"], email=user.get("email"))
    return identity, user.get("user_metadata") or {}


def _parse_session(data: dict, now: datetime) -> ProviderSession:
    """Build a ProviderSession from a GoTrue token response."""
    identity, metadata = _parse_user(data["user"])
    expiry = None
    if data.get("expires_at"):
        expiry = datetime.fromtimestamp(int(data["expires_at"]), tz=timezone.utc)
    elif data.get("expires_in"):
        expiry = now + timedelta(seconds=int(data["expires_in"]))
    return ProviderSession(
        identity=identity,
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token"),
        expiry=expiry,
        metadata=metadata,
    )


def _error_message(response: httpx.Response) -> tuple[str, str | None]:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}", None
    if not isinstance(body, dict):
        return f"HTTP {response.status_code}", None
    message = (
        body.get("error_description")
        or body.get("msg")
        or body.get("message")
        or f"HTTP {response.status_code}"
    )
    return message, body.get("error_code") or body.get("error")


class IdentityProvider:
    """Async client for sign-in, sign-out, session checks and refresh.

    Tokens are persisted through ``storage`` (any object with async
    ``get``/``set``/``delete``, normally the SessionCache) so a restarted
    process can resume the session.
    """

    def __init__(
        self,
        url: str,
        anon_key: str,
        storage=None,
        client: httpx.AsyncClient | None = None,
        now: Callable[[], datetime] = _utcnow,
    ):
        self._auth_url = f"{url.rstrip('/')}/auth/v1"
        self._anon_key = anon_key
        self._storage = storage
        self._client = client if client is not None else httpx.AsyncClient()
        self._owns_client = client is None
        self._now = now
        self._session: ProviderSession | None = None
        self._loaded = False
        self._listeners: list[AuthListener] = []

    # --- events ---

    def on_auth_event(self, listener: AuthListener) -> Callable[[], None]:
        """Register an auth event listener. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: AuthEvent, session: ProviderSession | None) -> None:
        logger.info(f"Auth event: {event.value}")
        for listener in list(self._listeners):
            try:
                listener(event, session)
            except Exception as e:
                logger.warning(f"Auth listener failed on {event.value}: {e}")

    # --- transport ---

    def _headers(self, access_token: str | None = None) -> dict:
        return {
            "apikey": self._anon_key,
            "Authorization": f"Bearer {access_token or self._anon_key}",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict | None = None,
        params: dict | None = None,
        access_token: str | None = None,
    ) -> dict | None:
        try:
            response = await self._client.request(
                method,
                f"{self._auth_url}{path}",
                json=json,
                params=params,
                headers=self._headers(access_token),
            )
        except httpx.TimeoutException as e:
            raise Timeout(f"Identity provider timed out: {e!r}") from e
        except httpx.TransportError as e:
            raise NetworkUnreachable(f"Identity provider unreachable: {e!r}") from e

        if response.status_code >= 500:
            message, code = _error_message(response)
            raise UpstreamError(message, status_code=response.status_code, code=code)
        if response.status_code >= 400:
            message, code = _error_message(response)
            raise ProviderRejected(message, status_code=response.status_code, code=code)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # --- token storage ---

    async def _current(self) -> ProviderSession | None:
        if self._loaded or self._storage is None:
            return self._session
        self._loaded = True
        try:
            data = await self._storage.get(TOKEN_STORAGE_KEY)
        except CacheCorrupted as e:
            logger.warning(f"Discarding corrupted provider token: {e}")
            return None
        if data:
            try:
                self._session = _parse_session(data, self._now())
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Discarding malformed provider token: {e}")
                await self._storage.delete(TOKEN_STORAGE_KEY)
        return self._session

    async def _store(self, session: ProviderSession) -> None:
        self._session = session
        self._loaded = True
        if self._storage is None:
            return
        await self._storage.set(
            TOKEN_STORAGE_KEY,
            {
                "access_token": session.access_token,
                "refresh_token": session.refresh_token,
                "expires_at": int(session.expiry.timestamp()) if session.expiry else None,
                "user": {
                    "id": session.identity.id,
                    "email": session.identity.email,
                    "user_metadata": session.metadata,
                },
            },
        )

    async def _clear(self) -> None:
        self._session = None
        self._loaded = True
        if self._storage is not None:
            await self._storage.delete(TOKEN_STORAGE_KEY)

    async def clear_local(self) -> None:
        """Drop stored tokens without contacting the server."""
        await self._clear()

    # --- operations ---

    async def sign_in(self, email: str, password: str) -> ProviderSession:
        """Password sign-in.

        Raises:
            ProviderRejected: bad credentials or rate limited.
        """
        data = await self._request(
            "POST",
            "/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        if not data or "access_token" not in data:
            raise ProviderRejected("Sign in successful but no session returned")
        session = _parse_session(data, self._now())
        await self._store(session)
        self._emit(AuthEvent.SIGNED_IN, session)
        return session

    async def sign_out(self) -> None:
        """Revoke the session remotely. Local tokens are dropped even on failure."""
        session = await self._current()
        try:
            if session is not None:
                await self._request("POST", "/logout", access_token=session.access_token)
        finally:
            await self._clear()
            self._emit(AuthEvent.SIGNED_OUT, None)

    async def get_user(self, access_token: str) -> dict:
        """Fetch the user record that belongs to ``access_token``."""
        data = await self._request("GET", "/user", access_token=access_token)
        if not data or "id" not in data:
            raise UpstreamError("Identity provider returned no user")
        return data

    async def get_session(self) -> ProviderSession | None:
        """Authoritative session check.

        Returns the current session validated against the provider, refreshing
        it first if the access token has expired, or None when there is no
        usable session.
        """
        session = await self._current()
        if session is None:
            return None

        if session.expiry is not None and session.expiry <= self._now() + EXPIRY_MARGIN:
            logger.info("Access token expired, refreshing")
            return await self.refresh_session()

        try:
            user = await self.get_user(session.access_token)
        except ProviderRejected as e:
            if e.status_code in _SESSION_GONE_STATUSES:
                logger.info(f"Stored session rejected by provider: {e.message}")
                await self._clear()
                return None
            raise

        identity, metadata = _parse_user(user)
        if identity != session.identity or metadata != session.metadata:
            session = replace(session, identity=identity, metadata=metadata)
            await self._store(session)
        return session

    async def refresh_session(self) -> ProviderSession | None:
        """Exchange the refresh token for a new session. None if there is none."""
        session = await self._current()
        if session is None or not session.refresh_token:
            return None

        try:
            data = await self._request(
                "POST",
                "/token",
                params={"grant_type": "refresh_token"},
                json={"refresh_token": session.refresh_token},
            )
        except ProviderRejected as e:
            if e.status_code in _SESSION_GONE_STATUSES:
                logger.info(f"Refresh token rejected: {e.message}")
                await self._clear()
                self._emit(AuthEvent.SIGNED_OUT, None)
                return None
            raise

        if not data or "access_token" not in data:
            return None
        refreshed = _parse_session(data, self._now())
        await self._store(refreshed)
        self._emit(AuthEvent.TOKEN_REFRESHED, refreshed)
        return refreshed

    async def update_user(self, data: dict) -> ProviderSession:
        """Update user metadata (e.g. role) and emit USER_UPDATED."""
        session = await self._current()
        if session is None:
            raise ProviderRejected("Not signed in", status_code=401)
        user = await self._request(
            "PUT", "/user", json={"data": data}, access_token=session.access_token
        )
        if not user or "id" not in user:
            raise UpstreamError("Identity provider returned no user")
        identity, metadata = _parse_user(user)
        updated = replace(session, identity=identity, metadata=metadata)
        await self._store(updated)
        self._emit(AuthEvent.USER_UPDATED, updated)
        return updated

    async def access_token(self) -> str | None:
        session = await self._current()
        return session.access_token if session else None

    async def reset_password_for_email(self, email: str, redirect_to: str | None = None) -> None:
        params = {"redirect_to": redirect_to} if redirect_to else None
        await self._request("POST", "/recover", json={"email": email}, params=params)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
