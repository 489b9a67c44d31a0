# tests/test_gate.py

import pytest

from omtii.gate import (
    Decision,
    RouteRequirement,
    SessionState,
    authorize,
    login_redirect,
)
from omtii.models import Role

VENDOR_ROUTE = RouteRequirement.of(Role.VENDOR, Role.ADMIN, Role.SUPER_ADMIN)
ADMIN_ROUTE = RouteRequirement.of(Role.ADMIN, Role.SUPER_ADMIN)
SIGNED_IN_ONLY = RouteRequirement()


def signed_in(*roles):
    roles = frozenset(roles)
    return SessionState(
        loading=False,
        has_identity=True,
        roles=roles,
        is_super_admin=Role.SUPER_ADMIN in roles,
    )


def test_loading_makes_no_decision():
    state = SessionState(loading=True, has_identity=False)
    result = authorize(state, ADMIN_ROUTE, "/admin/dashboard")
    assert result.decision == Decision.WAIT
    assert result.redirect_to is None
    assert not result.allowed


def test_logged_out_goes_to_login_with_return_path():
    state = SessionState(loading=False, has_identity=False)
    result = authorize(state, VENDOR_ROUTE, "/vendor/dashboard")
    assert result.decision == Decision.LOGIN
    assert result.redirect_to == "/login?next=/vendor/dashboard"


def test_login_redirect_quotes_query():
    assert login_redirect("/admin/users?search=a b") == "/login?next=/admin/users%3Fsearch%3Da%20b"


def test_super_admin_passes_every_role_check():
    state = SessionState(loading=False, has_identity=True, roles=frozenset(), is_super_admin=True)
    assert authorize(state, ADMIN_ROUTE).allowed
    assert authorize(state, VENDOR_ROUTE).allowed


def test_buyer_is_sent_home_from_vendor_routes():
    result = authorize(signed_in(Role.BUYER), VENDOR_ROUTE, "/vendor/dashboard")
    assert result.decision == Decision.FALLBACK
    assert result.redirect_to == "/"


def test_buyer_allowed_when_no_roles_required():
    assert authorize(signed_in(Role.BUYER), SIGNED_IN_ONLY).allowed


def test_public_route_allows_anonymous():
    state = SessionState(loading=False, has_identity=False)
    assert authorize(state, RouteRequirement(require_auth=False)).allowed


@pytest.mark.parametrize(
    "roles,requirement,expected",
    [
        ((Role.VENDOR,), VENDOR_ROUTE, Decision.ALLOW),
        ((Role.ADMIN,), VENDOR_ROUTE, Decision.ALLOW),
        ((Role.VENDOR,), ADMIN_ROUTE, Decision.FALLBACK),
        ((), ADMIN_ROUTE, Decision.FALLBACK),
        ((Role.BUYER, Role.ADMIN), ADMIN_ROUTE, Decision.ALLOW),
    ],
)
def test_role_intersection(roles, requirement, expected):
    assert authorize(signed_in(*roles), requirement).decision == expected


def test_same_inputs_same_decision():
    state = signed_in(Role.BUYER)
    first = authorize(state, ADMIN_ROUTE, "/admin/dashboard")
    second = authorize(state, ADMIN_ROUTE, "/admin/dashboard")
    assert first == second
