# omtii/realtime.py

import asyncio
import inspect
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from aiokafka import AIOKafkaProducer
from fastapi.encoders import jsonable_encoder

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    ALL = "*"


@dataclass
class ChangeEvent:
    table: str
    event_type: EventType
    new: dict | None = None
    old: dict | None = None

    @property
    def record(self) -> dict:
        """The row the event is about: the new row, or the old one for deletes."""
        return self.new if self.new is not None else (self.old or {})

    def to_json(self) -> bytes:
        payload = {
            "table": self.table,
            "event_type": self.event_type.value,
            "new": self.new,
            "old": self.old,
        }
        return json.dumps(jsonable_encoder(payload)).encode("utf-8")


@dataclass(eq=False)
class Subscription:
    hub: "RealtimeHub"
    table: str
    event: EventType
    handler: Callable[[ChangeEvent], Any]
    filter: dict = field(default_factory=dict)
    active: bool = True

    def matches(self, change: ChangeEvent) -> bool:
        if change.table != self.table:
            return False
        if self.event != EventType.ALL and change.event_type != self.event:
            return False
        record = change.record
        return all(record.get(key) == value for key, value in self.filter.items())

    def unsubscribe(self) -> None:
        self.hub.remove(self)


class RealtimeHub:
    """
    In-process change stream for the backend tables.

    Handlers are never run inline with the write that produced the event:
    every delivery is scheduled on the running event loop, and a handler
    removed before its turn comes is skipped.
    """

    def __init__(self):
        self._subscriptions: list[Subscription] = []
        self._relays: list = []
        self._tasks: set[asyncio.Task] = set()

    def subscribe(
        self,
        table: str,
        event: EventType | str,
        handler: Callable[[ChangeEvent], Any],
        filter: dict | None = None,
    ) -> Subscription:
        subscription = Subscription(self, table, EventType(event), handler, dict(filter or {}))
        self._subscriptions.append(subscription)
        logger.debug(f"Subscribed to {subscription.event.value} on {table} with filter {subscription.filter}")
        return subscription

    def remove(self, subscription: Subscription) -> None:
        subscription.active = False
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    @asynccontextmanager
    async def listen(self, table, event, handler, filter=None):
        """Subscription scoped to the body of an ``async with`` block."""
        subscription = self.subscribe(table, event, handler, filter)
        try:
            yield subscription
        finally:
            subscription.unsubscribe()

    def subscription_count(self, table: str | None = None) -> int:
        return sum(1 for s in self._subscriptions if table is None or s.table == table)

    def add_relay(self, relay) -> None:
        self._relays.append(relay)

    def remove_relay(self, relay) -> None:
        if relay in self._relays:
            self._relays.remove(relay)

    def publish(self, change: ChangeEvent) -> None:
        loop = asyncio.get_running_loop()
        for subscription in list(self._subscriptions):
            if subscription.matches(change):
                loop.call_soon(self._dispatch, subscription, change)
        for relay in self._relays:
            relay.forward(change)

    def _dispatch(self, subscription: Subscription, change: ChangeEvent) -> None:
        if not subscription.active:
            return
        try:
            result = subscription.handler(change)
        except Exception as e:
            logger.error(f"Realtime handler for {change.table} failed: {e}")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._handler_done)

    def _handler_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Realtime handler failed: {task.exception()}")


class KafkaChangeRelay:
    """Forwards every backend change event to a Kafka topic as JSON."""

    def __init__(self, bootstrap_servers: str, topic: str):
        self.bootstrap_servers = bootstrap_servers
        self.topic = topic
        self.producer: AIOKafkaProducer | None = None
        self._tasks: set[asyncio.Task] = set()

    async def start(self) -> None:
        self.producer = AIOKafkaProducer(bootstrap_servers=self.bootstrap_servers)
        await self.producer.start()
        logger.info("Kafka producer started.")

    async def stop(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self.producer is not None:
            # Wait for all pending messages to be delivered or expire.
            await self.producer.stop()
            logger.info("Kafka producer stopped.")

    def forward(self, change: ChangeEvent) -> None:
        task = asyncio.get_running_loop().create_task(self.send(change))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def send(self, change: ChangeEvent) -> None:
        try:
            await self.producer.send_and_wait(self.topic, change.to_json())
            logger.info(f"Published {change.event_type.value} event for {change.table} to Kafka.")
        except Exception as e:
            logger.error(f"Failed to publish change event: {e}")
