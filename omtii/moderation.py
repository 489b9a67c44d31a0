# omtii/moderation.py

import logging

from omtii.errors import PermissionDenied, RemoteRejected
from omtii.models import Role, ServiceStatus

logger = logging.getLogger(__name__)

PROFILE_SUMMARY = ("full_name", "email")
ROLE_ORDER = (Role.BUYER, Role.VENDOR, Role.ADMIN, Role.SUPER_ADMIN)
ADMIN_SERVICE_FIELDS = ("title", "description", "price", "images", "status")


def _search(text: str | None, *values) -> bool:
    if not text:
        return True
    needle = text.lower()
    return any(needle in (value or "").lower() for value in values)


# ----------------------------
# Services
# ----------------------------

async def list_all_services(backend) -> list[dict]:
    return await (
        backend.table("services")
        .select("*")
        .join("profile", "profiles", on="user_id", columns=PROFILE_SUMMARY)
        .order("created_at", desc=True)
        .order("id", desc=True)
        .execute()
    )


def filter_by_status(services: list[dict], status: ServiceStatus | str | None, search: str | None = None) -> list[dict]:
    """Services in ``status`` (any status when None) whose title or owner matches ``search``."""
    wanted = ServiceStatus(status) if status is not None else None
    return [
        s for s in services
        if (wanted is None or s["status"] == wanted)
        and _search(search, s["title"], (s.get("profile") or {}).get("full_name"))
    ]


async def update_service(backend, service_id: int, fields: dict) -> dict:
    """Admins may change any listing field, status included."""
    values = {key: value for key, value in fields.items() if key in ADMIN_SERVICE_FIELDS}
    rows = await backend.table("services").update(values).eq("id", service_id).execute()
    if not rows:
        raise RemoteRejected("Service not found", code="not_found")
    return rows[0]


async def approve_service(backend, service_id: int) -> dict:
    service = await update_service(backend, service_id, {"status": ServiceStatus.APPROVED})
    logger.info(f"Service {service_id} approved.")
    return service


async def reject_service(backend, service_id: int) -> dict:
    service = await update_service(backend, service_id, {"status": ServiceStatus.REJECTED})
    logger.info(f"Service {service_id} rejected.")
    return service


async def delete_service(backend, actor, service_id: int) -> None:
    if not actor.is_super_admin:
        raise PermissionDenied("Only super admins can delete other vendors' services")
    rows = await backend.table("services").delete().eq("id", service_id).execute()
    if not rows:
        raise RemoteRejected("Service not found", code="not_found")
    logger.info(f"Service {service_id} deleted by identity {actor.user_id}.")


# ----------------------------
# Categories
# ----------------------------

async def list_categories(backend) -> list[dict]:
    return await (
        backend.table("categories")
        .select("*")
        .join("profile", "profiles", on="user_id", columns=PROFILE_SUMMARY)
        .order("created_at", desc=True)
        .order("id", desc=True)
        .execute()
    )


def filter_categories(categories: list[dict], search: str | None) -> list[dict]:
    return [c for c in categories if _search(search, c["name"], c.get("description"))]


async def create_category(backend, creator_id: int, name: str, description=None, icon=None) -> dict:
    return await backend.table("categories").insert({
        "name": name,
        "description": description,
        "icon": icon,
        "user_id": creator_id,
    }).execute()


async def update_category(backend, category_id: int, fields: dict) -> dict:
    values = {key: fields[key] for key in ("name", "description", "icon") if key in fields}
    rows = await backend.table("categories").update(values).eq("id", category_id).execute()
    if not rows:
        raise RemoteRejected("Category not found", code="not_found")
    return rows[0]


async def delete_category(backend, category_id: int) -> None:
    rows = await backend.table("categories").delete().eq("id", category_id).execute()
    if not rows:
        raise RemoteRejected("Category not found", code="not_found")


# ----------------------------
# Users
# ----------------------------

async def list_users(backend) -> list[dict]:
    """Every profile, newest first, with the set of roles it holds."""
    profiles = await backend.table("profiles").select("*").order("created_at", desc=True).execute()
    assignments = await backend.table("user_roles").select("user_id", "role").execute()

    roles_by_user: dict[int, set] = {}
    for assignment in assignments:
        roles_by_user.setdefault(assignment["user_id"], set()).add(Role(assignment["role"]))
    for profile in profiles:
        held = roles_by_user.get(profile["id"], set())
        profile["roles"] = [role for role in ROLE_ORDER if role in held]
    return profiles


def filter_users(users: list[dict], search: str | None) -> list[dict]:
    return [u for u in users if _search(search, u.get("full_name"), u.get("email"))]


def user_stats(users: list[dict]) -> dict:
    return {
        "total_users": len(users),
        "active_vendors": sum(1 for u in users if Role.VENDOR in u["roles"]),
    }


def can_manage_user(actor, target_roles) -> bool:
    """Admins manage everyone except super admins; super admins manage everyone."""
    if actor.is_super_admin:
        return True
    return actor.is_admin and Role.SUPER_ADMIN not in set(target_roles)


async def update_user(backend, actor, user_id: int, fields: dict, target_roles=()) -> dict:
    if not can_manage_user(actor, target_roles):
        raise PermissionDenied("You cannot edit this user")
    values = {key: fields[key] for key in ("full_name", "phone", "bio") if key in fields}
    rows = await backend.table("profiles").update(values).eq("id", user_id).execute()
    if not rows:
        raise RemoteRejected("User not found", code="not_found")
    return rows[0]


async def delete_user(backend, actor, user_id: int, target_roles=()) -> None:
    if not can_manage_user(actor, target_roles):
        raise PermissionDenied("You cannot delete this user")
    rows = await backend.table("profiles").delete().eq("id", user_id).execute()
    if not rows:
        raise RemoteRejected("User not found", code="not_found")
    logger.info(f"User {user_id} deleted by identity {actor.user_id}.")


# ----------------------------
# Roles
# ----------------------------

def assignable_roles(actor, current_roles) -> list[Role]:
    """
    Roles the actor may add to a user: those not held yet, and never
    super_admin unless the actor is one.
    """
    held = {Role(r) for r in current_roles}
    offered = ROLE_ORDER if actor.is_super_admin else ROLE_ORDER[:-1]
    return [role for role in offered if role not in held]


def _check_super_admin_rule(actor, role: Role, action: str) -> None:
    if role == Role.SUPER_ADMIN and not actor.is_super_admin:
        raise PermissionDenied(f"Only super admins can {action} the super_admin role")


async def grant_role(backend, actor, user_id: int, role: Role | str) -> dict:
    role = Role(role)
    _check_super_admin_rule(actor, role, "assign")
    assignment = await backend.table("user_roles").insert({"user_id": user_id, "role": role}).execute()
    logger.info(f"Added {role.value} role to user {user_id}.")
    return assignment


async def revoke_role(backend, actor, user_id: int, role: Role | str) -> None:
    role = Role(role)
    _check_super_admin_rule(actor, role, "remove")
    await (
        backend.table("user_roles")
        .delete()
        .eq("user_id", user_id)
        .eq("role", role)
        .execute()
    )
    logger.info(f"Removed {role.value} role from user {user_id}.")
