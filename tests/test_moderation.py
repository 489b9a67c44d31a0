# tests/test_moderation.py

import asyncio
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from omtii import catalog, moderation
from omtii.errors import PermissionDenied, RemoteRejected
from omtii.models import Role, ServiceStatus

ADMIN = SimpleNamespace(user_id=1, is_admin=True, is_super_admin=False)
SUPER_ADMIN = SimpleNamespace(user_id=2, is_admin=True, is_super_admin=True)


def test_assignable_roles_hide_held_roles_and_super_admin():
    assert moderation.assignable_roles(ADMIN, ["buyer"]) == [Role.VENDOR, Role.ADMIN]
    assert moderation.assignable_roles(SUPER_ADMIN, ["buyer", "vendor"]) == [Role.ADMIN, Role.SUPER_ADMIN]


def test_can_manage_user():
    assert moderation.can_manage_user(ADMIN, [Role.BUYER])
    assert not moderation.can_manage_user(ADMIN, [Role.ADMIN, Role.SUPER_ADMIN])
    assert moderation.can_manage_user(SUPER_ADMIN, [Role.SUPER_ADMIN])


@pytest.mark.parametrize("operation", [moderation.grant_role, moderation.revoke_role])
def test_admin_cannot_touch_super_admin_role(operation):
    backend = MagicMock()

    with pytest.raises(PermissionDenied):
        asyncio.run(operation(backend, ADMIN, 7, Role.SUPER_ADMIN))

    backend.table.assert_not_called()


def test_super_admin_grants_and_revokes(backend, signup):
    async def scenario():
        user_id = await signup("cara@example.com")
        await moderation.grant_role(backend, SUPER_ADMIN, user_id, "super_admin")
        [user] = await moderation.list_users(backend)
        assert user["roles"] == [Role.BUYER, Role.SUPER_ADMIN]

        await moderation.revoke_role(backend, SUPER_ADMIN, user_id, Role.SUPER_ADMIN)
        [user] = await moderation.list_users(backend)
        assert user["roles"] == [Role.BUYER]

    asyncio.run(scenario())


def test_duplicate_role_is_rejected(backend, signup):
    async def scenario():
        user_id = await signup("cara@example.com")
        with pytest.raises(RemoteRejected) as excinfo:
            await moderation.grant_role(backend, ADMIN, user_id, Role.BUYER)
        assert excinfo.value.status_code == 409

    asyncio.run(scenario())


def test_users_search_and_stats(backend, signup):
    async def scenario():
        await signup("vera@example.com", "vendor", "Vera Vendor")
        await signup("cara@example.com", "buyer", "Cara Client")
        users = await moderation.list_users(backend)

        assert [u["email"] for u in moderation.filter_users(users, "VENDOR")] == ["vera@example.com"]
        assert moderation.user_stats(users) == {"total_users": 2, "active_vendors": 1}

    asyncio.run(scenario())


def test_admin_edits_and_deletes_users(backend, signup):
    async def scenario():
        user_id = await signup("cara@example.com")
        updated = await moderation.update_user(
            backend, ADMIN, user_id, {"full_name": "Cara C", "phone": "555", "email": "ignored@example.com"}
        )
        assert updated["full_name"] == "Cara C"
        assert updated["email"] == "cara@example.com"

        with pytest.raises(PermissionDenied):
            await moderation.delete_user(backend, ADMIN, user_id, [Role.SUPER_ADMIN])

        await moderation.delete_user(backend, ADMIN, user_id, [Role.BUYER])
        assert await moderation.list_users(backend) == []

    asyncio.run(scenario())


def test_service_moderation(backend, signup):
    async def scenario():
        vendor_id = await signup("vera@example.com", "vendor", "Vera Vendor")
        logo = await catalog.create_service(backend, vendor_id, "Logo design", price=40)
        copy = await catalog.create_service(backend, vendor_id, "Copywriting", price=15)

        await moderation.approve_service(backend, logo["id"])
        await moderation.reject_service(backend, copy["id"])
        services = await moderation.list_all_services(backend)

        assert [s["title"] for s in moderation.filter_by_status(services, "approved")] == ["Logo design"]
        assert [s["title"] for s in moderation.filter_by_status(services, ServiceStatus.REJECTED)] == ["Copywriting"]
        assert len(moderation.filter_by_status(services, None, "vera")) == 2
        assert services[0]["profile"] == {"full_name": "Vera Vendor", "email": "vera@example.com"}

        edited = await moderation.update_service(backend, copy["id"], {"status": "pending", "price": 25})
        assert edited["status"] == ServiceStatus.PENDING
        assert edited["price"] == 25

    asyncio.run(scenario())


def test_only_super_admin_deletes_services(backend, signup):
    async def scenario():
        vendor_id = await signup("vera@example.com", "vendor")
        service = await catalog.create_service(backend, vendor_id, "Logo design")

        with pytest.raises(PermissionDenied):
            await moderation.delete_service(backend, ADMIN, service["id"])
        await moderation.delete_service(backend, SUPER_ADMIN, service["id"])

        with pytest.raises(RemoteRejected) as excinfo:
            await moderation.delete_service(backend, SUPER_ADMIN, service["id"])
        assert excinfo.value.status_code == 404

    asyncio.run(scenario())


def test_category_crud(backend, signup):
    async def scenario():
        admin_id = await signup("ada@example.com", name="Ada Admin")
        category = await moderation.create_category(backend, admin_id, "Design", "Logos and more", "palette")

        updated = await moderation.update_category(backend, category["id"], {"name": "Graphic design"})
        assert updated["name"] == "Graphic design"
        assert updated["icon"] == "palette"

        [listed] = await moderation.list_categories(backend)
        assert listed["profile"]["full_name"] == "Ada Admin"
        assert moderation.filter_categories([listed], "logos") == [listed]
        assert moderation.filter_categories([listed], "music") == []

        await moderation.delete_category(backend, category["id"])
        assert await moderation.list_categories(backend) == []
        with pytest.raises(RemoteRejected):
            await moderation.delete_category(backend, category["id"])

    asyncio.run(scenario())
