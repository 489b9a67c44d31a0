# omtii/dashboards.py

import logging
from typing import Callable

from omtii import catalog, moderation
from omtii.realtime import ChangeEvent, EventType
from omtii.service_requests import Party, list_requests, request_stats

logger = logging.getLogger(__name__)


class Dashboard:
    """
    Base for the per-role dashboard view models.

    ``load()`` builds a fresh snapshot. While the dashboard is open (inside
    ``async with`` or between ``watch()`` and ``close()``) every change to one
    of its scoped tables calls ``on_change``; the caller decides when to
    reload. Given a session store, the dashboard closes itself as soon as the
    signed-in identity is no longer ``identity_id``.
    """

    name = "dashboard"

    def __init__(
        self,
        backend,
        identity_id: int,
        on_change: Callable[[ChangeEvent], None] | None = None,
        on_close: Callable[[], None] | None = None,
        session_store=None,
    ):
        self.backend = backend
        self.identity_id = identity_id
        self.on_change = on_change
        self.on_close = on_close
        self.session_store = session_store
        self._subscriptions = []
        self._remove_listener = None

    def scopes(self) -> list[tuple[str, dict | None]]:
        """(table, filter) pairs whose changes should refresh the dashboard."""
        return []

    async def load(self) -> dict:
        raise NotImplementedError

    def watch(self) -> None:
        if self._subscriptions:
            return
        for table, row_filter in self.scopes():
            self._subscriptions.append(
                self.backend.realtime.subscribe(table, EventType.ALL, self._changed, filter=row_filter)
            )
        if self.session_store is not None:
            self._remove_listener = self.session_store.add_listener(self._on_identity_changed)
        logger.info(f"Watching {len(self._subscriptions)} table(s) for the {self.name} dashboard of {self.identity_id}.")

    def close(self) -> None:
        if not self._subscriptions:
            return
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None
        if self.on_close is not None:
            self.on_close()

    @property
    def watching(self) -> bool:
        return bool(self._subscriptions)

    async def __aenter__(self) -> "Dashboard":
        self.watch()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _changed(self, change: ChangeEvent) -> None:
        if self.on_change is not None:
            self.on_change(change)

    def _on_identity_changed(self, user) -> None:
        if user is None or user.id != self.identity_id:
            logger.info(f"Identity changed, closing the {self.name} dashboard of {self.identity_id}.")
            self.close()


class ClientDashboard(Dashboard):
    name = "client"

    def scopes(self):
        return [("service_requests", {"client_id": self.identity_id})]

    async def load(self) -> dict:
        requests = await list_requests(self.backend, self.identity_id, Party.CLIENT)
        return {"requests": requests, "stats": request_stats(requests)}


class VendorDashboard(Dashboard):
    name = "vendor"

    def scopes(self):
        return [
            ("service_requests", {"vendor_id": self.identity_id}),
            ("services", {"user_id": self.identity_id}),
        ]

    async def load(self) -> dict:
        services = await catalog.list_vendor_services(self.backend, self.identity_id)
        requests = await list_requests(self.backend, self.identity_id, Party.VENDOR)
        stats = catalog.service_stats(services)
        stats["requests"] = len(requests)
        stats["pending_requests"] = request_stats(requests)["pending"]
        return {"services": services, "requests": requests, "stats": stats}


class AdminDashboard(Dashboard):
    name = "admin"

    def scopes(self):
        return [
            ("profiles", None),
            ("user_roles", None),
            ("services", None),
            ("categories", None),
        ]

    async def load(self) -> dict:
        users = await moderation.list_users(self.backend)
        services = await moderation.list_all_services(self.backend)
        categories = await moderation.list_categories(self.backend)
        stats = moderation.user_stats(users)
        stats["pending_services"] = catalog.service_stats(services)["pending"]
        return {"users": users, "services": services, "categories": categories, "stats": stats}


DASHBOARDS = {
    "client": ClientDashboard,
    "vendor": VendorDashboard,
    "admin": AdminDashboard,
}


def dashboard_for(store, on_change=None, on_close=None) -> Dashboard:
    """The dashboard the signed-in identity lands on, as in the navbar link."""
    if store.is_admin:
        kind = "admin"
    elif store.is_vendor:
        kind = "vendor"
    else:
        kind = "client"
    return DASHBOARDS[kind](store.backend, store.user_id, on_change, on_close=on_close, session_store=store)
