# omtii/utils.py

import logging
import re
from urllib.parse import urlsplit

from fastapi import HTTPException, Request, status

from omtii.errors import RemoteRejected, ValidationFailed
from omtii.gate import Decision, RouteRequirement, authorize
from omtii.models import Role
from omtii.session_store import SessionStore

logger = logging.getLogger(__name__)

# Seconds a client should wait before retrying while the session is loading
RETRY_AFTER_SECONDS = 1

LOGIN_ERRORS = {
    "Invalid login credentials": "Invalid email or password. Please try again.",
    "Email not confirmed": "Please verify your email before signing in.",
}
ALREADY_REGISTERED = "This email is already registered. Please sign in instead."


def get_session_store(request: Request) -> SessionStore:
    return request.app.state.session_store


def get_backend(request: Request):
    return request.app.state.backend


class ProtectedRoute:
    """
    Dependency guarding a view with the authorization gate.

    Returns the session store when access is allowed. Otherwise it answers
    503 with ``Retry-After`` while the session is still loading, or a 307
    redirect to the login page (or home) as the gate decides.
    """

    def __init__(self, *required_roles: Role | str, require_auth: bool = True):
        self.requirement = RouteRequirement.of(*required_roles, require_auth=require_auth)

    async def __call__(self, request: Request) -> SessionStore:
        store = get_session_store(request)
        location = request.url.path
        if request.url.query:
            location = f"{location}?{request.url.query}"

        result = authorize(store.state(), self.requirement, location)
        if result.decision == Decision.WAIT:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Session is loading.",
                headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
            )
        if not result.allowed:
            logger.info(f"Gate decided {result.decision.value} for {location}.")
            raise HTTPException(
                status_code=status.HTTP_307_TEMPORARY_REDIRECT,
                detail=f"Redirecting to {result.redirect_to}",
                headers={"Location": result.redirect_to},
            )
        return store


# Route requirements, as in the page router
require_login = ProtectedRoute()
require_client = ProtectedRoute(Role.BUYER, Role.ADMIN, Role.SUPER_ADMIN)
require_vendor = ProtectedRoute(Role.VENDOR, Role.ADMIN, Role.SUPER_ADMIN)
require_admin = ProtectedRoute(Role.ADMIN, Role.SUPER_ADMIN)


class Confirmation:
    """
    Dependency for destructive views: the caller must pass ``confirm=true``,
    otherwise the view answers 428 with the question to put to the user.
    """

    def __init__(self, prompt: str):
        self.prompt = prompt

    async def __call__(self, confirm: bool = False) -> bool:
        if not confirm:
            raise HTTPException(status_code=status.HTTP_428_PRECONDITION_REQUIRED, detail=self.prompt)
        return True


confirm_service_delete = Confirmation("Are you sure you want to delete this service?")
confirm_category_delete = Confirmation("Are you sure you want to delete this category?")
confirm_user_delete = Confirmation("Are you sure you want to delete this user? This action cannot be undone.")


def validate_password(password: str) -> None:
    """
    Check the registration password policy.

    Raises:
        ValidationFailed: With the first rule the password breaks.
    """
    if len(password) < 8:
        raise ValidationFailed("Password must be at least 8 characters")
    if not re.search(r"[A-Z]", password):
        raise ValidationFailed("Password must contain at least one uppercase letter")
    if not re.search(r"\d", password):
        raise ValidationFailed("Password must contain at least one number")


def login_error_message(error: RemoteRejected) -> str:
    for fragment, friendly in LOGIN_ERRORS.items():
        if fragment in (error.message or ""):
            return friendly
    return error.detail


def safe_next(next_path: str | None) -> str | None:
    """Only same-site paths are followed after login."""
    if not next_path:
        return None
    parts = urlsplit(next_path)
    if parts.scheme or parts.netloc or not next_path.startswith("/"):
        return None
    return next_path


def post_login_path(store: SessionStore, next_path: str | None = None) -> str:
    """Where to go once signed in: ``next``, else the role's dashboard, else home."""
    target = safe_next(next_path)
    if target:
        return target
    if store.is_admin:
        return "/admin/dashboard"
    if store.is_vendor:
        return "/vendor/dashboard"
    return "/"
