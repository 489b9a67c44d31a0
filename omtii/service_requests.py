# omtii/service_requests.py

import logging
from enum import Enum

from omtii.errors import RemoteRejected
from omtii.models import RequestStatus

logger = logging.getLogger(__name__)

COUNTERPART_COLUMNS = ("full_name", "email", "avatar_url")

# accepted and rejected are terminal
TRANSITIONS = {
    RequestStatus.PENDING: {RequestStatus.ACCEPTED, RequestStatus.REJECTED},
    RequestStatus.ACCEPTED: set(),
    RequestStatus.REJECTED: set(),
}

ACTIONS = {
    "accept": RequestStatus.ACCEPTED,
    "reject": RequestStatus.REJECTED,
}


class Party(str, Enum):
    CLIENT = "client"
    VENDOR = "vendor"

    @property
    def counterpart(self) -> "Party":
        return Party.VENDOR if self == Party.CLIENT else Party.CLIENT


def available_actions(status: RequestStatus | str) -> list[str]:
    """The status actions a vendor is offered for a request in ``status``."""
    targets = TRANSITIONS[RequestStatus(status)]
    return [action for action, target in ACTIONS.items() if target in targets]


async def create_request(backend, service_id: int, client_id: int, message: str | None = None) -> dict:
    """
    Open a new pending request from ``client_id`` against a service.

    The vendor is copied from the service's current owner. Callers only
    offer approved services; the status is not checked again here. Repeat
    requests for the same service are allowed.
    """
    service = await (
        backend.table("services").select("id", "user_id").eq("id", service_id).maybe_single().execute()
    )
    if service is None:
        raise RemoteRejected("Service not found", code="not_found")

    request = await backend.table("service_requests").insert({
        "service_id": service["id"],
        "client_id": client_id,
        "vendor_id": service["user_id"],
        "message": message or None,
        "status": RequestStatus.PENDING,
    }).execute()
    logger.info(f"Service request {request['id']} created for service {service_id} by client {client_id}.")
    return request


async def list_requests(backend, identity_id: int, as_party: Party | str) -> list[dict]:
    """
    Requests where ``identity_id`` is the client (or the vendor), newest
    first, with the service title and the other party's profile summary.
    """
    party = Party(as_party)
    counterpart = party.counterpart
    rows = await (
        backend.table("service_requests")
        .select("*")
        .join("service", "services", on="service_id", columns=("title",))
        .join(counterpart.value, "profiles", on=f"{counterpart.value}_id", columns=COUNTERPART_COLUMNS)
        .eq(f"{party.value}_id", identity_id)
        .order("created_at", desc=True)
        .order("id", desc=True)
        .execute()
    )
    for row in rows:
        row["actions"] = available_actions(row["status"]) if party == Party.VENDOR else []
    return rows


async def get_request(backend, request_id: int, identity_id: int, as_party: Party | str) -> dict | None:
    """The request with ``request_id`` if ``identity_id`` is its client (or vendor)."""
    party = Party(as_party)
    return await (
        backend.table("service_requests")
        .select("*")
        .eq("id", request_id)
        .eq(f"{party.value}_id", identity_id)
        .maybe_single()
        .execute()
    )


async def set_status(backend, request_id: int, new_status: RequestStatus | str) -> dict:
    """
    Move a request to ``new_status``.

    Transitions out of a terminal state are refused by the data store, not
    here.
    """
    rows = await (
        backend.table("service_requests")
        .update({"status": RequestStatus(new_status)})
        .eq("id", request_id)
        .execute()
    )
    if not rows:
        raise RemoteRejected("Service request not found", code="not_found")
    logger.info(f"Service request {request_id} is now {RequestStatus(new_status).value}.")
    return rows[0]


def request_stats(requests: list[dict]) -> dict:
    return {
        "total": len(requests),
        "pending": sum(1 for r in requests if r["status"] == RequestStatus.PENDING),
        "accepted": sum(1 for r in requests if r["status"] == RequestStatus.ACCEPTED),
        "rejected": sum(1 for r in requests if r["status"] == RequestStatus.REJECTED),
    }
