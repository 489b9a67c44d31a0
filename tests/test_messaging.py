# tests/test_messaging.py

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from omtii import catalog, messaging, moderation
from omtii.errors import RemoteRejected, ValidationFailed
from omtii.messaging import MessageThread, counterpart_id, fetch_thread, send_message
from omtii.models import utcnow
from omtii.service_requests import create_request
from omtii.session_store import SessionStore


async def open_request(backend, signup):
    vendor_id = await signup("vera@example.com", "vendor")
    client_id = await signup("cara@example.com")
    service = await catalog.create_service(backend, vendor_id, "Copywriting", price=20)
    await moderation.approve_service(backend, service["id"])
    request = await create_request(backend, service["id"], client_id, "hello")
    return request, vendor_id, client_id


def test_blank_message_is_rejected_before_any_write(backend, signup):
    async def scenario():
        request, vendor_id, client_id = await open_request(backend, signup)
        with pytest.raises(ValidationFailed) as excinfo:
            await send_message(backend, request["id"], client_id, vendor_id, "   ")
        assert excinfo.value.detail == "Message cannot be empty"
        assert await backend.table("messages").select("*").execute() == []

    asyncio.run(scenario())


def test_content_is_trimmed(backend, signup):
    async def scenario():
        request, vendor_id, client_id = await open_request(backend, signup)
        message = await send_message(backend, request["id"], client_id, vendor_id, "  hi there \n")
        assert message["content"] == "hi there"
        assert message["is_read"] is False

    asyncio.run(scenario())


def test_thread_is_ordered_by_creation_time(backend, signup):
    async def scenario():
        request, vendor_id, client_id = await open_request(backend, signup)
        t1 = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
        for offset, text in [(2, "third"), (0, "first"), (1, "second")]:
            await backend.table("messages").insert({
                "service_request_id": request["id"],
                "sender_id": client_id,
                "receiver_id": vendor_id,
                "content": text,
                "created_at": t1 + timedelta(minutes=offset),
            }).execute()

        thread = await fetch_thread(backend, request["id"], vendor_id)
        assert [m["content"] for m in thread] == ["first", "second", "third"]

    asyncio.run(scenario())


def test_thread_order_treats_stored_times_as_utc():
    stored = {"id": 2, "created_at": datetime(2024, 1, 1, 9, 0)}
    live = {"id": 1, "created_at": datetime(2024, 1, 1, 9, 0, 30, tzinfo=timezone.utc)}
    assert sorted([live, stored], key=messaging.thread_order) == [stored, live]


def test_default_timestamps_carry_a_zone():
    assert utcnow().tzinfo is timezone.utc


def test_fetch_thread_marks_only_own_unread_messages(backend, signup):
    async def scenario():
        request, vendor_id, client_id = await open_request(backend, signup)
        await send_message(backend, request["id"], client_id, vendor_id, "to vendor")
        await send_message(backend, request["id"], vendor_id, client_id, "to client")

        first = await fetch_thread(backend, request["id"], vendor_id)
        second = await fetch_thread(backend, request["id"], vendor_id)
        assert [m["id"] for m in first] == [m["id"] for m in second]

        rows = await backend.table("messages").select("content", "is_read").order("id").execute()
        assert rows == [
            {"content": "to vendor", "is_read": True},
            {"content": "to client", "is_read": False},
        ]

    asyncio.run(scenario())


def test_messages_are_append_only(backend, signup):
    async def scenario():
        request, vendor_id, client_id = await open_request(backend, signup)
        message = await send_message(backend, request["id"], client_id, vendor_id, "original")
        with pytest.raises(RemoteRejected):
            await backend.table("messages").update({"content": "edited"}).eq("id", message["id"]).execute()

    asyncio.run(scenario())


def test_counterpart_id():
    request = {"client_id": 1, "vendor_id": 2}
    assert counterpart_id(request, 1) == 2
    assert counterpart_id(request, 2) == 1


def test_live_thread_appends_each_message_once(backend, signup, settle):
    async def scenario():
        request, vendor_id, client_id = await open_request(backend, signup)
        await send_message(backend, request["id"], vendor_id, client_id, "welcome")
        received = []

        async with MessageThread(backend, request, client_id, on_message=received.append) as thread:
            assert [m["content"] for m in thread.messages] == ["welcome"]
            assert backend.realtime.subscription_count("messages") == 1

            await thread.send("thanks")
            await send_message(backend, request["id"], vendor_id, client_id, "you're welcome")
            await settle()

            assert [m["content"] for m in thread.messages] == ["welcome", "thanks", "you're welcome"]
            assert [m["content"] for m in received] == ["thanks", "you're welcome"]

        assert not thread.is_open
        assert backend.realtime.subscription_count("messages") == 0

    asyncio.run(scenario())


def test_live_thread_ignores_other_requests(backend, signup, settle):
    async def scenario():
        request, vendor_id, client_id = await open_request(backend, signup)
        other = await create_request(backend, request["service_id"], client_id, "another")

        async with MessageThread(backend, request, client_id) as thread:
            await send_message(backend, other["id"], vendor_id, client_id, "elsewhere")
            await settle()
            assert thread.messages == []

    asyncio.run(scenario())


def test_events_during_history_load_are_merged(backend, signup, settle):
    async def scenario():
        request, vendor_id, client_id = await open_request(backend, signup)
        await send_message(backend, request["id"], vendor_id, client_id, "before")
        real_fetch = messaging.fetch_thread

        async def fetch_while_messages_arrive(backend_, request_id, identity_id):
            # one lands before the history query and one after it
            await send_message(backend, request_id, vendor_id, client_id, "during")
            history = await real_fetch(backend_, request_id, identity_id)
            await send_message(backend, request_id, vendor_id, client_id, "after")
            await settle()
            return history

        received = []
        with patch("omtii.messaging.fetch_thread", fetch_while_messages_arrive):
            thread = await MessageThread(backend, request, client_id, on_message=received.append).open()

        assert [m["content"] for m in thread.messages] == ["before", "during", "after"]
        assert received == []
        thread.close()

    asyncio.run(scenario())


def test_thread_closes_when_identity_changes(backend, signup, settle):
    async def scenario():
        request, vendor_id, client_id = await open_request(backend, signup)
        await backend.auth.sign_in_with_password("cara@example.com", "Passw0rdX")
        store = SessionStore(backend)
        await store.initialize()
        closed = []

        thread = await MessageThread(
            backend, request, client_id, on_close=lambda: closed.append(True), session_store=store
        ).open()
        await store.sign_out()
        await settle()

        assert closed == [True]
        assert not thread.is_open
        assert backend.realtime.subscription_count("messages") == 0
        await store.close()

    asyncio.run(scenario())
