import logging

import httpx

from config import DEFAULT_REACHABILITY_URL

logger = logging.getLogger("connectivity")


class ReachabilityProbe:
    """Cheap short-timeout check for basic network connectivity.

    Any HTTP answer counts as reachable; only transport failures
    (DNS, refused connection, timeout) count as offline.
    """

    def __init__(
        self,
        url: str = DEFAULT_REACHABILITY_URL,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ):
        self._url = url
        self._timeout = timeout
        self._client = client

    async def is_reachable(self) -> bool:
        try:
            if self._client is not None:
                await self._client.head(self._url, timeout=self._timeout)
            else:
                async with httpx.AsyncClient() as client:
                    await client.head(self._url, timeout=self._timeout)
        except httpx.TransportError as e:
            logger.info(f"Reachability probe failed: {e!r}")
            return False
        return True
