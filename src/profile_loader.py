"""Role Profile Loader: augments an authenticated identity with its profile status."""

import logging
from collections.abc import Callable
from dataclasses import dataclass

from data_store import DataStore
from errors import Cancelled, ProfileFetchFailed
from models import (
    PROFILE_STATUS_ERROR,
    PROFILE_STATUS_NEW,
    Identity,
    Profile,
    ProfileKind,
    ProfileResult,
)
from resilience import CancelToken, GenerationCounter, ResilientFetcher

logger = logging.getLogger("profile_loader")


@dataclass(frozen=True)
class ProfileTable:
    name: str
    status_column: str
    complete_column: str | None = None


# Roles without an entry (e.g. admin) have no profile record
PROFILE_TABLES = {
    "client": ProfileTable("clients", "client_status", "client_is_profile_complete"),
    "clinician": ProfileTable("clinicians", "clinician_status"),
}


class RoleProfileLoader:
    """Fetches and normalizes the role-specific profile for the current identity.

    Only one fetch is in flight at a time: dispatching a load for a new
    identity cancels the previous one, and any result whose generation is no
    longer current is discarded instead of applied.
    """

    def __init__(
        self,
        store: DataStore,
        fetcher: ResilientFetcher,
        on_change: Callable[[], None] | None = None,
    ):
        self._store = store
        self._fetcher = fetcher
        self.on_change = on_change
        self._generation = GenerationCounter()
        self._cancel: CancelToken | None = None
        self.identity_id: str | None = None
        self.result: ProfileResult | None = None
        self.loading = False
        self.last_error: ProfileFetchFailed | None = None

    def _notify(self) -> None:
        if self.on_change is not None:
            self.on_change()

    def _dispatch(self) -> tuple[int, CancelToken]:
        if self._cancel is not None:
            self._cancel.cancel()
        self._cancel = CancelToken()
        return self._generation.next(), self._cancel

    def _apply(self, ticket: int, result: ProfileResult) -> ProfileResult | None:
        if not self._generation.is_current(ticket):
            logger.info("Discarding stale profile result")
            return None
        self.result = result
        self.loading = False
        self._notify()
        return result

    async def load(self, identity: Identity, role: str | None) -> ProfileResult | None:
        """Load the profile for ``identity``.

        Returns the applied result, or None if this load was superseded by a
        newer one (or by ``clear()``) before it finished.
        """
        ticket, cancel = self._dispatch()
        self.identity_id = identity.id
        self.last_error = None

        table = PROFILE_TABLES.get(role or "")
        if table is None:
            return self._apply(ticket, ProfileResult(kind=ProfileKind.NOT_APPLICABLE))

        self.loading = True
        self._notify()
        logger.info(f"Loading {role} profile for user: {identity.id}")

        try:
            record = await self._fetcher.guard(
                "profile-fetch",
                lambda: self._store.fetch_profile(table.name, identity.id),
                cancel=cancel,
            )
        except Cancelled:
            logger.debug(f"Profile load for {identity.id} cancelled")
            return None
        except Exception as e:
            if not self._generation.is_current(ticket):
                return None
            logger.error(f"Error loading profile for {identity.id}: {e}")
            self.last_error = ProfileFetchFailed(str(e))
            return self._apply(
                ticket, ProfileResult(kind=ProfileKind.ERROR, status=PROFILE_STATUS_ERROR)
            )

        return self._apply(ticket, self._to_result(table, identity.id, record))

    @staticmethod
    def _to_result(table: ProfileTable, identity_id: str, record: dict | None) -> ProfileResult:
        if record is None:
            logger.info(f"No profile found for {identity_id}, setting status to New")
            return ProfileResult(kind=ProfileKind.NEW, status=PROFILE_STATUS_NEW)

        status = record.get(table.status_column) or PROFILE_STATUS_NEW
        complete = bool(record.get(table.complete_column)) if table.complete_column else False
        profile = Profile(
            identity_id=identity_id,
            status=status,
            completeness_flag=complete,
            fields=dict(record),
        )
        return ProfileResult(kind=ProfileKind.FOUND, status=status, profile=profile)

    async def update(
        self, identity: Identity, role: str | None, fields: dict
    ) -> ProfileResult | None:
        """Write a partial update to the profile record, then reload it."""
        table = PROFILE_TABLES.get(role or "")
        if table is None:
            raise ValueError(f"Role {role!r} has no profile record")
        await self._fetcher.guard(
            "profile-update",
            lambda: self._store.update_profile(table.name, identity.id, fields),
        )
        return await self.load(identity, role)

    def clear(self) -> None:
        """Forget the current profile and discard any in-flight fetch."""
        self._dispatch()
        self.identity_id = None
        self.result = None
        self.loading = False
        self.last_error = None
        self._notify()
