"""Therapist list loading and selection for the client onboarding flow."""

import logging
from dataclasses import dataclass, field

from data_store import DataStore
from errors import Cancelled, CircuitOpen, NetworkUnreachable, PortalError, UpstreamError
from resilience import CancelToken, GenerationCounter, ResilientFetcher

logger = logging.getLogger("therapist_search")

CLINICIANS_TABLE = "clinicians"
CLIENTS_TABLE = "clients"
ACTIVE_STATUS_FILTER = {
    "or": "(clinician_status.eq.Active,clinician_status.eq.active,clinician_status.ilike.active)"
}
STATUS_THERAPIST_SELECTED = "Therapist Selected"

CIRCUIT_OPEN_MESSAGE = "Too many failed attempts. Please try again by clicking the refresh button."


@dataclass
class Therapist:
    id: str
    first_name: str | None = None
    last_name: str | None = None
    professional_name: str | None = None
    clinician_type: str | None = None
    bio: str | None = None
    licensed_states: list[str] = field(default_factory=list)
    min_client_age: int | None = None
    image_url: str | None = None

    @classmethod
    def from_record(cls, record: dict) -> "Therapist":
        # Older rows carry clinician_title / clinician_profile_image instead
        clinician_type = record.get("clinician_type")
        if clinician_type is None:
            clinician_type = record.get("clinician_title")
        image_url = record.get("clinician_image_url") or record.get("clinician_profile_image")
        min_age = record.get("clinician_min_client_age")
        return cls(
            id=record["id"],
            first_name=record.get("clinician_first_name"),
            last_name=record.get("clinician_last_name"),
            professional_name=record.get("clinician_professional_name"),
            clinician_type=clinician_type,
            bio=record.get("clinician_bio"),
            licensed_states=[s for s in record.get("clinician_licensed_states") or [] if s],
            min_client_age=int(min_age) if min_age is not None else None,
            image_url=image_url,
        )

    @property
    def display_name(self) -> str:
        if self.professional_name:
            return self.professional_name
        name = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return name or "the selected therapist"

    def matches(self, client_state: str | None, client_age: int) -> bool:
        if client_state:
            wanted = client_state.strip().lower()
            states = [s.strip().lower() for s in self.licensed_states]
            if not any(s in wanted or wanted in s for s in states):
                return False
        if client_age > 0 and self.min_client_age is not None:
            return client_age >= self.min_client_age
        return True


@dataclass(frozen=True)
class SearchCriteria:
    client_state: str | None = None
    client_age: int = 0
    enable_filtering: bool = True

    @property
    def filters(self) -> bool:
        return self.enable_filtering and bool(self.client_state or self.client_age > 0)


@dataclass
class SearchResult:
    therapists: list[Therapist] = field(default_factory=list)
    all_therapists: list[Therapist] = field(default_factory=list)
    filtering_applied: bool = False
    error: str | None = None


def error_message(error: Exception) -> str:
    """Turn a load failure into something the user can act on."""
    if isinstance(error, CircuitOpen):
        return CIRCUIT_OPEN_MESSAGE
    if isinstance(error, NetworkUnreachable):
        return NetworkUnreachable.user_message
    if isinstance(error, PortalError):
        return f"Error loading therapists: {error.message}"
    return f"Unexpected error: {error}"


class TherapistSearch:
    """Latest-wins loader for the list of active, matching therapists.

    Every ``load`` supersedes the previous one; ``close`` cancels whatever is
    still in flight and nothing late is applied afterwards.
    """

    def __init__(self, store: DataStore, fetcher: ResilientFetcher):
        self._store = store
        self._fetcher = fetcher
        self._generation = GenerationCounter()
        self._cancel: CancelToken | None = None
        self.loading = False
        self.result: SearchResult | None = None
        self.selecting_id: str | None = None

    async def _fetch_active(self) -> list[dict]:
        try:
            rows = await self._store.query(CLINICIANS_TABLE, ACTIVE_STATUS_FILTER)
        except UpstreamError as e:
            logger.warning(f"Status-filtered clinician query failed: {e.message}")
            rows = []
        if rows:
            return rows

        # Status column may not accept the filter; filter in memory instead
        logger.info("No active clinicians from filtered query, retrying unfiltered")
        rows = await self._store.query(CLINICIANS_TABLE)
        return [r for r in rows if (r.get("clinician_status") or "").lower() == "active"]

    async def load(
        self, criteria: SearchCriteria | None = None, cancel: CancelToken | None = None
    ) -> SearchResult | None:
        """Load therapists. Returns None if this load was superseded or cancelled."""
        criteria = criteria or SearchCriteria()
        if self._cancel is not None:
            self._cancel.cancel()
        self._cancel = cancel or CancelToken()
        token = self._cancel
        ticket = self._generation.next()
        self.loading = True

        try:
            rows = await self._fetcher.guard("therapist-list", self._fetch_active, cancel=token)
        except Cancelled:
            return None
        except Exception as e:
            if not self._generation.is_current(ticket) or token.cancelled:
                return None
            logger.error(f"All therapist fetch strategies failed: {e}")
            self.result = SearchResult(error=error_message(e))
            self.loading = False
            return self.result

        if not self._generation.is_current(ticket) or token.cancelled:
            logger.debug("Discarding superseded therapist list")
            return None

        therapists = [Therapist.from_record(r) for r in rows]
        if criteria.filters:
            matching = [
                t for t in therapists if t.matches(criteria.client_state, criteria.client_age)
            ]
            logger.info(f"{len(matching)} of {len(therapists)} therapists match criteria")
        else:
            matching = list(therapists)

        self.result = SearchResult(
            therapists=matching,
            all_therapists=therapists,
            filtering_applied=criteria.filters,
        )
        self.loading = False
        return self.result

    async def retry(self, criteria: SearchCriteria | None = None) -> SearchResult | None:
        """Manual retry: closes the breaker first so the load is attempted."""
        await self._fetcher.reset("therapist-list")
        return await self.load(criteria)

    async def select_therapist(self, client_id: str, therapist_id: str) -> Therapist | None:
        """Assign ``therapist_id`` to the client. Returns the therapist if it is listed."""
        self.selecting_id = therapist_id
        try:
            await self._fetcher.guard(
                "therapist-select",
                lambda: self._store.update_profile(
                    CLIENTS_TABLE,
                    client_id,
                    {
                        "client_assigned_therapist": therapist_id,
                        "client_status": STATUS_THERAPIST_SELECTED,
                    },
                ),
            )
        finally:
            self.selecting_id = None

        listed = self.result.all_therapists if self.result else []
        therapist = next((t for t in listed if t.id == therapist_id), None)
        name = therapist.display_name if therapist else "the selected therapist"
        logger.info(f"Client {client_id} selected {name}")
        return therapist

    def close(self) -> None:
        """Cancel in-flight work; later results are discarded."""
        if self._cancel is not None:
            self._cancel.cancel()
        self._generation.next()
        self.loading = False
