from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class AuthState(str, Enum):
    INITIALIZING = "initializing"
    AUTHENTICATED = "authenticated"
    UNAUTHENTICATED = "unauthenticated"
    ERROR = "error"


class AuthEvent(str, Enum):
    """Events delivered by the identity provider."""

    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"


class BreakerEvent(str, Enum):
    OPENED = "opened"
    CLOSED = "closed"  # Cooldown elapsed
    RESET = "reset"  # Explicit reset signal


class ProfileKind(str, Enum):
    FOUND = "found"
    NEW = "new"  # No record yet for this identity
    ERROR = "error"
    NOT_APPLICABLE = "not_applicable"  # Role has no profile table


PROFILE_STATUS_NEW = "New"
PROFILE_STATUS_ERROR = "ErrorFetchingStatus"


@dataclass(frozen=True)
class Identity:
    id: str
    email: str | None = None


@dataclass(frozen=True)
class ProviderSession:
    """Session payload returned by the identity provider."""

    identity: Identity
    access_token: str
    refresh_token: str | None
    expiry: datetime | None
    metadata: dict = field(default_factory=dict)  # user_metadata from the provider

    @property
    def role(self) -> str:
        return self.metadata.get("role") or "client"


@dataclass(frozen=True)
class AuthError:
    """Structured error kept on the session for consumers to render."""

    code: str
    message: str

    @classmethod
    def from_exception(cls, exc: Exception) -> "AuthError":
        code = getattr(exc, "code", None) or type(exc).__name__
        message = getattr(exc, "message", None) or str(exc) or code
        return cls(code=code, message=message)


@dataclass
class Session:
    """Authoritative in-memory session record owned by the session manager."""

    state: AuthState = AuthState.INITIALIZING
    identity: Identity | None = None
    role: str | None = None
    expiry: datetime | None = None
    last_error: AuthError | None = None
    provisional: bool = False  # True while restored from cache only


@dataclass(frozen=True)
class Profile:
    identity_id: str
    status: str
    completeness_flag: bool = False
    fields: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ProfileResult:
    kind: ProfileKind
    status: str | None = None
    profile: Profile | None = None


@dataclass(frozen=True)
class CachedSessionRecord:
    identity_id: str
    email: str | None
    role: str | None
    expiry: datetime

    def to_dict(self) -> dict:
        return {
            "identityId": self.identity_id,
            "email": self.email,
            "role": self.role,
            "expiry": self.expiry.isoformat(),
        }


@dataclass
class RetryState:
    attempt_count: int = 0
    circuit_open: bool = False
    circuit_opened_at: float | None = None  # Wall-clock seconds
    last_failure_reason: str | None = None

    def reset(self) -> None:
        self.attempt_count = 0
        self.circuit_open = False
        self.circuit_opened_at = None
        self.last_failure_reason = None


@dataclass(frozen=True)
class GuardPolicy:
    max_attempts: int = 3
    initial_delay: float = 1.0  # Seconds
    backoff_multiplier: float = 2.0
    per_attempt_timeout: float = 10.0  # Seconds
    circuit_cooldown: float = 30.0  # Seconds

    def backoff(self, attempt: int) -> float:
        """Delay before the retry that follows failed attempt number ``attempt``."""
        return self.initial_delay * self.backoff_multiplier ** (attempt - 1)


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only view handed to subscribers and route guards."""

    state: AuthState
    identity: Identity | None
    role: str | None
    profile: Profile | None
    profile_status: str | None
    initialization_latch: bool
    profile_loading: bool
    last_error: AuthError | None
    expiry: datetime | None = None
    provisional: bool = False
