"""Error taxonomy shared by the session manager and the fetch pipeline."""


class PortalError(Exception):
    """Base class for every error the portal client raises on purpose.

    ``retryable`` tells the fetch pipeline whether a failure counts against
    the retry budget of its operation class.
    """

    code = "PORTAL_ERROR"
    retryable = True
    user_message = "Something went wrong. Please try again."

    def __init__(self, message: str | None = None, *, code: str | None = None):
        super().__init__(message or self.user_message)
        self.message = message or self.user_message
        if code is not None:
            self.code = code


class NetworkUnreachable(PortalError):
    """The network (or the backend host) could not be reached."""

    code = "NETWORK_UNREACHABLE"
    user_message = (
        "Network connectivity issue. Please check your internet connection "
        "and try again."
    )

    def __init__(self, message: str | None = None, *, offline: bool = False):
        super().__init__(message)
        # Raised by the reachability probe rather than by the call itself
        self.offline = offline


class Timeout(PortalError):
    code = "TIMEOUT"
    user_message = "The request timed out. Please try again."


class UpstreamError(PortalError):
    """The backend answered, but with a failure status."""

    code = "UPSTREAM_ERROR"

    def __init__(
        self,
        message: str | None = None,
        *,
        status_code: int | None = None,
        retryable: bool = True,
        code: str | None = None,
    ):
        super().__init__(message, code=code)
        self.status_code = status_code
        self.retryable = retryable


class ProviderRejected(PortalError):
    """Bad credentials, expired refresh token, rate limiting and the like."""

    code = "PROVIDER_REJECTED"
    retryable = False
    user_message = "The sign-in request was rejected."

    def __init__(
        self,
        message: str | None = None,
        *,
        status_code: int | None = None,
        code: str | None = None,
    ):
        super().__init__(message, code=code)
        self.status_code = status_code


class ProfileFetchFailed(PortalError):
    code = "PROFILE_FETCH_FAILED"
    user_message = "We couldn't load your profile status."


class CacheCorrupted(PortalError):
    code = "CACHE_CORRUPTED"
    retryable = False


class CircuitOpen(PortalError):
    code = "CIRCUIT_OPEN"
    retryable = False
    user_message = "Too many failed attempts, try again shortly."

    def __init__(self, operation_class: str, retry_after: float = 0.0):
        super().__init__(self.user_message)
        self.operation_class = operation_class
        self.retry_after = retry_after


class Cancelled(PortalError):
    """The owning consumer went away; never shown to the user."""

    code = "CANCELLED"
    retryable = False
