"""Tests for route access decisions."""

import pytest

from models import AuthError, AuthState, Identity, SessionSnapshot
from route_guard import RouteAction, route_decision, target_route_for_user

ADA = Identity("user-1", "ada@example.com")


def _snapshot(**overrides) -> SessionSnapshot:
    values = dict(
        state=AuthState.AUTHENTICATED,
        identity=ADA,
        role="client",
        profile=None,
        profile_status="Active",
        initialization_latch=True,
        profile_loading=False,
        last_error=None,
    )
    values.update(overrides)
    return SessionSnapshot(**values)


def test_loading_until_initialized():
    decision = route_decision(
        _snapshot(state=AuthState.INITIALIZING, identity=None, initialization_latch=False),
        ["client"],
    )
    assert decision.action == RouteAction.LOADING
    assert decision.message == "Initializing authentication..."


def test_provisional_session_waits_for_latch():
    """A cached session alone is not enough to grant access."""
    decision = route_decision(_snapshot(initialization_latch=False, provisional=True), ["client"])
    assert decision.action == RouteAction.LOADING


def test_loading_while_profile_loads():
    decision = route_decision(_snapshot(profile_loading=True), ["client"])
    assert decision.action == RouteAction.LOADING
    assert decision.message == "Loading user data..."


def test_error_state_carries_message():
    error = AuthError("TIMEOUT", "Check your network connection")
    decision = route_decision(
        _snapshot(state=AuthState.ERROR, identity=None, role=None, last_error=error), ["client"]
    )
    assert decision.action == RouteAction.ERROR
    assert decision.message == "Check your network connection"


def test_unauthenticated_redirects():
    decision = route_decision(
        _snapshot(state=AuthState.UNAUTHENTICATED, identity=None, role=None),
        ["client"],
        redirect_path="/signin",
    )
    assert decision.action == RouteAction.REDIRECT
    assert decision.target == "/signin"


def test_client_on_forbidden_route_goes_to_dashboard():
    decision = route_decision(_snapshot(), ["clinician", "admin"])
    assert decision.action == RouteAction.FORBIDDEN
    assert decision.target == "/patient-dashboard"


def test_other_roles_on_forbidden_route_go_to_login():
    decision = route_decision(_snapshot(role="clinician"), ["admin"])
    assert decision.action == RouteAction.FORBIDDEN
    assert decision.target == "/login"


def test_new_client_is_sent_to_profile_setup():
    decision = route_decision(
        _snapshot(profile_status="New"), ["client"], block_new_clients=True
    )
    assert decision.action == RouteAction.PROFILE_SETUP
    assert decision.target == "/profile-setup"


def test_new_client_allowed_when_not_blocking():
    assert route_decision(_snapshot(profile_status="New"), ["client"]).action == RouteAction.ALLOW


def test_allowed():
    assert route_decision(_snapshot(), ["client"]).action == RouteAction.ALLOW


@pytest.mark.parametrize(
    "role,status,expected",
    [
        ("admin", None, "/settings"),
        ("clinician", "Active", "/clinician-dashboard"),
        ("client", "New", "/profile-setup"),
        ("client", "Active", "/patient-dashboard"),
        (None, None, "/login"),
    ],
)
def test_target_route_for_user(role, status, expected):
    assert target_route_for_user(role, status) == expected
