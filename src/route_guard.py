"""Route access decisions derived from a session snapshot."""

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from models import PROFILE_STATUS_NEW, AuthState, SessionSnapshot

logger = logging.getLogger("route_guard")


class RouteAction(str, Enum):
    LOADING = "loading"
    ERROR = "error"
    REDIRECT = "redirect"
    FORBIDDEN = "forbidden"
    PROFILE_SETUP = "profile_setup"
    ALLOW = "allow"


@dataclass(frozen=True)
class RouteDecision:
    action: RouteAction
    target: str | None = None
    message: str | None = None


LANDING_ROUTES = {
    "admin": "/settings",
    "clinician": "/clinician-dashboard",
    "client": "/patient-dashboard",
}


def target_route_for_user(role: str | None, status: str | None = None) -> str:
    """Where a user lands after sign-in."""
    if role == "client" and status == PROFILE_STATUS_NEW:
        return "/profile-setup"
    return LANDING_ROUTES.get(role or "", "/login")


def route_decision(
    snapshot: SessionSnapshot,
    allowed_roles: Iterable[str],
    block_new_clients: bool = False,
    redirect_path: str = "/login",
) -> RouteDecision:
    if (
        not snapshot.initialization_latch
        or snapshot.state == AuthState.INITIALIZING
        or snapshot.profile_loading
    ):
        message = (
            "Loading user data..."
            if snapshot.initialization_latch and snapshot.state != AuthState.INITIALIZING
            else "Initializing authentication..."
        )
        return RouteDecision(RouteAction.LOADING, message=message)

    if snapshot.state == AuthState.ERROR:
        message = (
            snapshot.last_error.message
            if snapshot.last_error
            else "There was a problem verifying your access"
        )
        return RouteDecision(RouteAction.ERROR, message=message)

    if snapshot.state == AuthState.UNAUTHENTICATED:
        return RouteDecision(RouteAction.REDIRECT, target=redirect_path)

    role = snapshot.role
    if not role or role not in set(allowed_roles):
        logger.info(f"Role '{role}' not permitted for this route")
        return RouteDecision(
            RouteAction.FORBIDDEN,
            target=target_route_for_user(role) if role == "client" else "/login",
            message="You don't have permission to access this page",
        )

    if role == "client" and block_new_clients and snapshot.profile_status == PROFILE_STATUS_NEW:
        return RouteDecision(
            RouteAction.PROFILE_SETUP,
            target="/profile-setup",
            message="Please complete your profile first",
        )

    return RouteDecision(RouteAction.ALLOW)
