# omtii/gate.py

from dataclasses import dataclass
from enum import Enum
from urllib.parse import quote

from omtii.models import Role

LOGIN_PATH = "/login"
HOME_PATH = "/"


class Decision(str, Enum):
    WAIT = "wait"
    LOGIN = "login"
    FALLBACK = "fallback"
    ALLOW = "allow"


@dataclass(frozen=True)
class SessionState:
    loading: bool
    has_identity: bool
    roles: frozenset = frozenset()
    is_super_admin: bool = False


@dataclass(frozen=True)
class RouteRequirement:
    require_auth: bool = True
    required_roles: frozenset = frozenset()

    @classmethod
    def of(cls, *roles: Role | str, require_auth: bool = True) -> "RouteRequirement":
        return cls(require_auth=require_auth, required_roles=frozenset(Role(r) for r in roles))


@dataclass(frozen=True)
class GateResult:
    decision: Decision
    redirect_to: str | None = None

    @property
    def allowed(self) -> bool:
        return self.decision == Decision.ALLOW


def login_redirect(location: str) -> str:
    return f"{LOGIN_PATH}?next={quote(location, safe='/')}"


def authorize(state: SessionState, requirement: RouteRequirement, location: str = HOME_PATH) -> GateResult:
    """
    Decide whether a protected view may be shown.

    Pure function of the session state and the view's requirement. While
    the session is loading no decision is made. A super admin passes every
    role check.
    """
    if state.loading:
        return GateResult(Decision.WAIT)

    if requirement.require_auth and not state.has_identity:
        return GateResult(Decision.LOGIN, login_redirect(location))

    if state.is_super_admin:
        return GateResult(Decision.ALLOW)

    if requirement.required_roles and not (requirement.required_roles & state.roles):
        return GateResult(Decision.FALLBACK, HOME_PATH)

    return GateResult(Decision.ALLOW)
