"""Profile/data store client (Supabase PostgREST API)."""

import logging
from collections.abc import Awaitable, Callable

import httpx

from errors import NetworkUnreachable, ProviderRejected, Timeout, UpstreamError

logger = logging.getLogger("data_store")


class DataStore:
    """Async PostgREST client for profile records and feature-level queries.

    ``token_provider`` returns the signed-in user's access token so row level
    security applies; the anon key is used when it returns None.
    """

    def __init__(
        self,
        url: str,
        anon_key: str,
        client: httpx.AsyncClient | None = None,
        token_provider: Callable[[], Awaitable[str | None]] | None = None,
    ):
        self._rest_url = f"{url.rstrip('/')}/rest/v1"
        self._anon_key = anon_key
        self._client = client if client is not None else httpx.AsyncClient()
        self._owns_client = client is None
        self._token_provider = token_provider

    async def _headers(self, extra: dict | None = None) -> dict:
        token = await self._token_provider() if self._token_provider else None
        headers = {
            "apikey": self._anon_key,
            "Authorization": f"Bearer {token or self._anon_key}",
        }
        if extra:
            headers.update(extra)
        return headers

    async def _request(
        self,
        method: str,
        collection: str,
        *,
        params: dict | None = None,
        json: dict | None = None,
        headers: dict | None = None,
    ) -> httpx.Response:
        try:
            response = await self._client.request(
                method,
                f"{self._rest_url}/{collection}",
                params=params,
                json=json,
                headers=await self._headers(headers),
            )
        except httpx.TimeoutException as e:
            raise Timeout(f"Data store timed out: {e!r}") from e
        except httpx.TransportError as e:
            raise NetworkUnreachable(f"Data store unreachable: {e!r}") from e

        if response.status_code in (401, 403):
            raise ProviderRejected(
                f"Data store denied access to {collection}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            try:
                message = response.json().get("message") or response.text
            except (ValueError, AttributeError):
                message = response.text
            raise UpstreamError(
                f"{collection}: {message}",
                status_code=response.status_code,
                # 4xx from PostgREST is a bad query, retrying will not help
                retryable=response.status_code >= 500,
            )
        return response

    async def fetch_profile(self, table: str, identity_id: str) -> dict | None:
        """Return the profile row keyed by ``identity_id``, or None if absent."""
        response = await self._request(
            "GET", table, params={"select": "*", "id": f"eq.{identity_id}", "limit": "1"}
        )
        rows = response.json()
        return rows[0] if rows else None

    async def update_profile(self, table: str, identity_id: str, fields: dict) -> None:
        """Patch a subset of columns on the row keyed by ``identity_id``."""
        await self._request(
            "PATCH",
            table,
            params={"id": f"eq.{identity_id}"},
            json=fields,
            headers={"Prefer": "return=minimal"},
        )

    async def query(
        self, collection: str, filter_spec: dict | None = None, select: str = "*"
    ) -> list[dict]:
        """Run a filtered select.

        ``filter_spec`` maps PostgREST query parameters to their expressions,
        e.g. ``{"clinician_status": "ilike.active"}`` or
        ``{"or": "(a.eq.1,b.eq.2)"}``.
        """
        params = {"select": select}
        params.update(filter_spec or {})
        response = await self._request("GET", collection, params=params)
        rows = response.json()
        logger.debug(f"Query on {collection} returned {len(rows)} rows")
        return rows

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
