# omtii/catalog.py

import logging

from omtii.errors import RemoteRejected
from omtii.models import ServiceStatus

logger = logging.getLogger(__name__)

OWNER_COLUMNS = ("full_name", "email", "avatar_url")

SORTS = ("recommended", "newest", "price-low", "price-high")

# fields a vendor may change on their own listing; status is not one of them
VENDOR_FIELDS = ("title", "description", "price", "images")


def _approved(backend):
    return (
        backend.table("services")
        .select("*")
        .join("profile", "profiles", on="user_id", columns=OWNER_COLUMNS)
        .eq("status", ServiceStatus.APPROVED)
        .order("created_at", desc=True)
        .order("id", desc=True)
    )


async def featured_services(backend, limit: int = 4) -> list[dict]:
    return await _approved(backend).limit(limit).execute()


async def list_categories(backend) -> list[dict]:
    return await backend.table("categories").select("*").order("name").execute()


async def get_approved_service(backend, service_id: int) -> dict:
    service = await _approved(backend).eq("id", service_id).maybe_single().execute()
    if service is None:
        raise RemoteRejected("Service not found", code="not_found")
    return service


def filter_services(
    services: list[dict],
    query: str | None = None,
    price_min: float | None = None,
    price_max: float | None = None,
    sort: str = "recommended",
) -> list[dict]:
    """Search, price-range and sort a list of services the way the explore page does."""
    result = list(services)

    if query:
        needle = query.lower()

        def matches(service: dict) -> bool:
            owner = (service.get("profile") or {}).get("full_name") or ""
            return (
                needle in service["title"].lower()
                or needle in owner.lower()
                or needle in (service.get("description") or "").lower()
            )

        result = [s for s in result if matches(s)]

    # a service without a price counts as 0
    if price_min is not None:
        result = [s for s in result if (s.get("price") or 0) >= price_min]
    if price_max is not None:
        result = [s for s in result if (s.get("price") or 0) <= price_max]

    if sort == "newest":
        result.sort(key=lambda s: s["created_at"], reverse=True)
    elif sort == "price-low":
        result.sort(key=lambda s: s.get("price") or 0)
    elif sort == "price-high":
        result.sort(key=lambda s: s.get("price") or 0, reverse=True)
    return result


async def explore(backend, query=None, price_min=None, price_max=None, sort="recommended") -> list[dict]:
    services = await _approved(backend).execute()
    return filter_services(services, query, price_min, price_max, sort)


# ----------------------------
# Vendor listings
# ----------------------------

async def list_vendor_services(backend, owner_id: int) -> list[dict]:
    return await (
        backend.table("services")
        .select("*")
        .eq("user_id", owner_id)
        .order("created_at", desc=True)
        .order("id", desc=True)
        .execute()
    )


async def create_service(backend, owner_id: int, title: str, description=None, price=None, images=None) -> dict:
    """New listings always start out pending admin approval."""
    service = await backend.table("services").insert({
        "user_id": owner_id,
        "title": title,
        "description": description,
        "price": price,
        "status": ServiceStatus.PENDING,
        "images": list(images) if images else None,
    }).execute()
    logger.info(f"Service {service['id']} submitted for approval by vendor {owner_id}.")
    return service


async def update_service(backend, owner_id: int, service_id: int, fields: dict) -> dict:
    values = {key: value for key, value in fields.items() if key in VENDOR_FIELDS}
    if "images" in values:
        values["images"] = values["images"] or None
    rows = await (
        backend.table("services")
        .update(values)
        .eq("id", service_id)
        .eq("user_id", owner_id)
        .execute()
    )
    if not rows:
        raise RemoteRejected("Service not found", code="not_found")
    return rows[0]


async def delete_service(backend, owner_id: int, service_id: int) -> None:
    rows = await (
        backend.table("services")
        .delete()
        .eq("id", service_id)
        .eq("user_id", owner_id)
        .execute()
    )
    if not rows:
        raise RemoteRejected("Service not found", code="not_found")
    logger.info(f"Service {service_id} deleted by vendor {owner_id}.")


def service_stats(services: list[dict]) -> dict:
    return {
        "total": len(services),
        "approved": sum(1 for s in services if s["status"] == ServiceStatus.APPROVED),
        "pending": sum(1 for s in services if s["status"] == ServiceStatus.PENDING),
    }
