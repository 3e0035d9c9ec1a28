import asyncio
import logging
import os
from dataclasses import dataclass

import httpx
import redis.asyncio as redis

from breaker_mirror import BreakerMirror
from config import Settings
from connectivity import ReachabilityProbe
from data_store import DataStore
from identity import IdentityProvider
from profile_loader import RoleProfileLoader
from resilience import ResilientFetcher
from route_guard import target_route_for_user
from session_cache import SessionCache
from session_manager import SessionManager
from therapist_search import TherapistSearch

logger = logging.getLogger("portal")


@dataclass
class Portal:
    """Every service of the portal client, constructed once at the root."""

    settings: Settings
    redis: redis.Redis
    http: httpx.AsyncClient
    cache: SessionCache
    mirror: BreakerMirror
    fetcher: ResilientFetcher
    provider: IdentityProvider
    store: DataStore
    profiles: RoleProfileLoader
    session: SessionManager
    therapists: TherapistSearch
    mirror_task: asyncio.Task | None = None

    def start_mirror(self) -> None:
        """Follow breaker changes made by other instances."""
        if self.mirror_task is None:
            self.mirror_task = asyncio.create_task(self.mirror.run(self.fetcher.apply_remote))

    async def close(self) -> None:
        self.therapists.close()
        await self.session.close()
        if self.mirror_task is not None:
            self.mirror_task.cancel()
            await asyncio.gather(self.mirror_task, return_exceptions=True)
        await self.http.aclose()
        await self.redis.aclose()


def build_portal(settings: Settings, redis_client: redis.Redis | None = None) -> Portal:
    client = redis_client if redis_client is not None else redis.from_url(settings.redis_url)
    http = httpx.AsyncClient()

    cache = SessionCache(client, namespace=settings.cache_namespace)
    mirror = BreakerMirror(client, namespace=settings.cache_namespace)
    probe = None
    if settings.reachability_url:
        probe = ReachabilityProbe(
            settings.reachability_url, timeout=settings.reachability_timeout, client=http
        ).is_reachable
    fetcher = ResilientFetcher(policies=settings.policies, probe=probe, mirror=mirror)
    fallback_budget = settings.policy("session-fallback").per_attempt_timeout
    if probe is not None:
        fallback_budget += settings.reachability_timeout

    provider = IdentityProvider(
        settings.supabase_url, settings.supabase_anon_key, storage=cache, client=http
    )
    store = DataStore(
        settings.supabase_url,
        settings.supabase_anon_key,
        client=http,
        token_provider=provider.access_token,
    )
    profiles = RoleProfileLoader(store, fetcher)
    session = SessionManager(
        provider,
        cache,
        fetcher,
        profiles,
        auth_timeout=settings.auth_timeout,
        session_buffer=settings.session_buffer,
        fallback_budget=fallback_budget,
    )
    return Portal(
        settings=settings,
        redis=client,
        http=http,
        cache=cache,
        mirror=mirror,
        fetcher=fetcher,
        provider=provider,
        store=store,
        profiles=profiles,
        session=session,
        therapists=TherapistSearch(store, fetcher),
    )


async def main() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    portal = build_portal(Settings.from_env())
    portal.start_mirror()
    try:
        snapshot = await portal.session.initialize()

        email = os.getenv("PORTAL_EMAIL")
        password = os.getenv("PORTAL_PASSWORD")
        if snapshot.identity is None and email and password:
            snapshot = await portal.session.sign_in(email, password)

        result = await portal.session.wait_for_profile()
        status = result.status if result else None
        logger.info(
            f"Session {snapshot.state.value}, user: "
            f"{snapshot.identity.id if snapshot.identity else None}, "
            f"landing route: {target_route_for_user(snapshot.role, status)}"
        )
    finally:
        await portal.close()


if __name__ == "__main__":
    asyncio.run(main())
