# omtii/messaging.py

import logging
from datetime import timezone
from typing import Callable

from omtii.errors import ValidationFailed
from omtii.realtime import ChangeEvent, EventType

logger = logging.getLogger(__name__)


def thread_order(message: dict):
    created_at = message["created_at"]
    # rows read back from SQLite carry no zone; they are stored as UTC
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return (created_at, message["id"])


async def fetch_thread(backend, request_id: int, identity_id: int) -> list[dict]:
    """
    All messages of a request, oldest first.

    Afterwards every unread message addressed to ``identity_id`` is marked
    read in one batch update.
    """
    messages = await (
        backend.table("messages")
        .select("*")
        .eq("service_request_id", request_id)
        .order("created_at")
        .order("id")
        .execute()
    )
    await (
        backend.table("messages")
        .update({"is_read": True})
        .eq("service_request_id", request_id)
        .eq("receiver_id", identity_id)
        .eq("is_read", False)
        .execute()
    )
    return messages


async def send_message(backend, request_id: int, sender_id: int, receiver_id: int, content: str) -> dict:
    text = (content or "").strip()
    if not text:
        raise ValidationFailed("Message cannot be empty")
    message = await backend.table("messages").insert({
        "service_request_id": request_id,
        "sender_id": sender_id,
        "receiver_id": receiver_id,
        "content": text,
    }).execute()
    logger.info(f"Message {message['id']} sent on request {request_id}.")
    return message


def counterpart_id(request: dict, identity_id: int) -> int:
    return request["vendor_id"] if request["client_id"] == identity_id else request["client_id"]


class MessageThread:
    """
    The open conversation of one service request, kept live.

    The insert subscription is taken before history is loaded; events that
    arrive meanwhile are held back and merged by id once the history is in.
    After that, live messages to or from the identity are appended in
    arrival order. The subscription is released on ``close()``, on leaving
    an ``async with`` block, and when the signed-in identity changes.
    """

    def __init__(
        self,
        backend,
        request: dict,
        identity_id: int,
        on_message: Callable[[dict], None] | None = None,
        on_close: Callable[[], None] | None = None,
        session_store=None,
    ):
        self.backend = backend
        self.request = request
        self.identity_id = identity_id
        self.on_message = on_message
        self.on_close = on_close
        self.session_store = session_store
        self.messages: list[dict] = []
        self._seen: set[int] = set()
        self._buffer: list[dict] | None = None
        self._subscription = None
        self._remove_listener = None

    @property
    def request_id(self) -> int:
        return self.request["id"]

    @property
    def receiver_id(self) -> int:
        return counterpart_id(self.request, self.identity_id)

    @property
    def is_open(self) -> bool:
        return self._subscription is not None

    async def open(self) -> "MessageThread":
        self._buffer = []
        self._subscription = self.backend.realtime.subscribe(
            "messages",
            EventType.INSERT,
            self._on_insert,
            filter={"service_request_id": self.request_id},
        )
        if self.session_store is not None:
            self._remove_listener = self.session_store.add_listener(self._on_identity_changed)
        try:
            history = await fetch_thread(self.backend, self.request_id, self.identity_id)
        except BaseException:
            self.close()
            raise

        held, self._buffer = self._buffer, None
        self.messages = []
        self._seen = set()
        for message in sorted(history + held, key=thread_order):
            if message["id"] not in self._seen:
                self._seen.add(message["id"])
                self.messages.append(message)
        return self

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
            if self._remove_listener is not None:
                self._remove_listener()
                self._remove_listener = None
            if self.on_close is not None:
                self.on_close()

    async def __aenter__(self) -> "MessageThread":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()

    async def send(self, content: str) -> dict:
        message = await send_message(
            self.backend, self.request_id, self.identity_id, self.receiver_id, content
        )
        # the realtime echo of this insert is dropped as a duplicate
        self._accept(message)
        return message

    def _involves_identity(self, message: dict) -> bool:
        return self.identity_id in (message["sender_id"], message["receiver_id"])

    def _on_insert(self, change: ChangeEvent) -> None:
        message = change.new
        if message is None or message["service_request_id"] != self.request_id:
            return
        if not self._involves_identity(message):
            return
        if self._buffer is not None:
            self._buffer.append(message)
            return
        self._accept(message)

    def _accept(self, message: dict) -> None:
        if message["id"] in self._seen:
            return
        self._seen.add(message["id"])
        self.messages.append(message)
        if self.on_message is not None:
            self.on_message(message)

    def _on_identity_changed(self, user) -> None:
        if user is None or user.id != self.identity_id:
            logger.info(f"Identity changed, closing thread for request {self.request_id}.")
            self.close()
