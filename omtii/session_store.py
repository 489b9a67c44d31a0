# omtii/session_store.py

import asyncio
import logging
from typing import Callable

from omtii.auth import AuthEvent, AuthSession, AuthUser
from omtii.errors import MarketplaceError
from omtii.gate import SessionState
from omtii.models import Role

logger = logging.getLogger(__name__)

PROFILE_COLUMNS = ("id", "full_name", "email", "account_type", "avatar_url", "phone", "bio")


class SessionStore:
    """
    Who is signed in to this client process, with which roles and profile.

    One instance is created at startup, handed to the views that need it
    and closed at shutdown. ``loading`` stays true until the first session
    check has finished and again while a scheduled profile/role fetch is in
    flight, so an empty role set on its own never means "still loading".
    """

    def __init__(self, backend):
        self.backend = backend
        self.session: AuthSession | None = None
        self.user: AuthUser | None = None
        self.roles: frozenset[Role] = frozenset()
        self.profile: dict | None = None
        self._initializing = True
        self._pending: asyncio.Task | None = None
        self._auth_subscription = None
        self._listeners: list[Callable] = []

    # ----------------------------
    # Lifecycle
    # ----------------------------

    async def initialize(self) -> None:
        # Listen first so no session change slips in while the existing
        # session is being looked up.
        self._auth_subscription = self.backend.auth.on_auth_state_change(self.on_session_changed)
        try:
            existing = await self.backend.auth.get_session()
            self._set_session(existing)
            if existing is not None:
                await self._load_user_data(existing.user.id)
        finally:
            self._initializing = False
        logger.info(f"Session store initialized (signed in: {self.user is not None}).")

    async def close(self) -> None:
        if self._auth_subscription is not None:
            self._auth_subscription.unsubscribe()
            self._auth_subscription = None
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
            await asyncio.wait({self._pending})
        self._listeners.clear()

    def on_session_changed(self, event: AuthEvent, session: AuthSession | None) -> None:
        previous_id = self.user_id
        self._set_session(session)

        if session is not None:
            if self._pending is not None and not self._pending.done():
                self._pending.cancel()
            # Runs on the next loop iteration, outside the auth callback.
            self._pending = asyncio.get_running_loop().create_task(
                self._load_user_data(session.user.id)
            )
        else:
            self.roles = frozenset()
            self.profile = None

        logger.info(f"Auth event {event.value} for identity {self.user_id}.")
        if previous_id != self.user_id:
            self._notify_listeners()

    # ----------------------------
    # Queries
    # ----------------------------

    @property
    def loading(self) -> bool:
        return self._initializing or (self._pending is not None and not self._pending.done())

    @property
    def user_id(self) -> int | None:
        return self.user.id if self.user is not None else None

    def has_role(self, role: Role | str) -> bool:
        return Role(role) in self.roles

    @property
    def is_super_admin(self) -> bool:
        return self.has_role(Role.SUPER_ADMIN)

    @property
    def is_admin(self) -> bool:
        return self.has_role(Role.ADMIN) or self.is_super_admin

    @property
    def is_vendor(self) -> bool:
        return self.has_role(Role.VENDOR)

    @property
    def is_buyer(self) -> bool:
        return self.has_role(Role.BUYER)

    def state(self) -> SessionState:
        return SessionState(
            loading=self.loading,
            has_identity=self.user is not None,
            roles=self.roles,
            is_super_admin=self.is_super_admin,
        )

    def dashboard_path(self) -> str:
        if self.is_admin:
            return "/admin/dashboard"
        if self.is_vendor:
            return "/vendor/dashboard"
        return "/client/dashboard"

    def snapshot(self) -> dict:
        return {
            "user": None if self.user is None else {
                "id": self.user.id,
                "email": self.user.email,
                "email_confirmed": self.user.email_confirmed,
            },
            "roles": sorted(role.value for role in self.roles),
            "profile": self.profile,
            "loading": self.loading,
            "dashboard": self.dashboard_path() if self.user is not None else None,
        }

    # ----------------------------
    # Actions
    # ----------------------------

    async def wait_ready(self) -> None:
        while self._pending is not None and not self._pending.done():
            await asyncio.wait({self._pending})

    async def sign_out(self) -> None:
        try:
            await self.backend.auth.sign_out()
        finally:
            self._clear()

    async def refresh(self) -> None:
        current = await self.backend.auth.get_session()
        if current is not None:
            await self._load_user_data(current.user.id)

    def add_listener(self, listener: Callable[[AuthUser | None], None]) -> Callable[[], None]:
        """
        Call ``listener`` on the next loop tick whenever the signed-in
        identity changes. Returns a function that removes it.
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # ----------------------------
    # Internals
    # ----------------------------

    def _set_session(self, session: AuthSession | None) -> None:
        self.session = session
        self.user = session.user if session is not None else None

    def _clear(self) -> None:
        previous_id = self.user_id
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._set_session(None)
        self.roles = frozenset()
        self.profile = None
        if previous_id is not None:
            self._notify_listeners()

    def _notify_listeners(self) -> None:
        loop = asyncio.get_running_loop()
        for listener in list(self._listeners):
            loop.call_soon(listener, self.user)

    async def _load_user_data(self, user_id: int) -> None:
        try:
            profile = await (
                self.backend.table("profiles")
                .select(*PROFILE_COLUMNS)
                .eq("id", user_id)
                .maybe_single()
                .execute()
            )
        except MarketplaceError as e:
            logger.error(f"Error fetching profile for identity {user_id}: {e.detail}")
        else:
            if profile is not None and self.user_id == user_id:
                self.profile = profile

        try:
            rows = await self.backend.table("user_roles").select("role").eq("user_id", user_id).execute()
        except MarketplaceError as e:
            logger.error(f"Error fetching roles for identity {user_id}: {e.detail}")
        else:
            if self.user_id == user_id:
                self.roles = frozenset(Role(row["role"]) for row in rows)
