# tests/test_realtime.py

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest
from aiokafka.errors import KafkaConnectionError, TopicAlreadyExistsError

from omtii.realtime import ChangeEvent, EventType, KafkaChangeRelay, RealtimeHub
from topic_generator.create_topic import TopicCreationFailed, create_kafka_topic


def insert(table, **row):
    return ChangeEvent(table, EventType.INSERT, new=row)


def test_handlers_run_after_publish_returns(settle):
    async def scenario():
        hub = RealtimeHub()
        seen = []
        hub.subscribe("messages", "INSERT", seen.append)

        hub.publish(insert("messages", id=1))
        assert seen == []
        await settle()
        assert [c.new["id"] for c in seen] == [1]

    asyncio.run(scenario())


def test_filters_and_event_types(settle):
    async def scenario():
        hub = RealtimeHub()
        scoped, everything = [], []
        hub.subscribe("service_requests", EventType.ALL, scoped.append, filter={"vendor_id": 5})
        hub.subscribe("service_requests", EventType.UPDATE, everything.append)

        hub.publish(insert("service_requests", id=1, vendor_id=5))
        hub.publish(insert("service_requests", id=2, vendor_id=6))
        hub.publish(ChangeEvent("service_requests", EventType.DELETE, old={"id": 3, "vendor_id": 5}))
        hub.publish(ChangeEvent("service_requests", EventType.UPDATE, new={"id": 1, "vendor_id": 5}))
        await settle()

        assert [c.record["id"] for c in scoped] == [1, 3, 1]
        assert [c.record["id"] for c in everything] == [1]

    asyncio.run(scenario())


def test_unsubscribed_handler_is_skipped(settle):
    async def scenario():
        hub = RealtimeHub()
        seen = []
        subscription = hub.subscribe("messages", "INSERT", seen.append)

        hub.publish(insert("messages", id=1))
        subscription.unsubscribe()
        await settle()

        assert seen == []
        assert not subscription.active
        assert hub.subscription_count() == 0

    asyncio.run(scenario())


def test_listen_releases_on_error():
    async def scenario():
        hub = RealtimeHub()
        with pytest.raises(RuntimeError):
            async with hub.listen("messages", "INSERT", lambda change: None):
                assert hub.subscription_count("messages") == 1
                raise RuntimeError("view crashed")
        assert hub.subscription_count("messages") == 0

    asyncio.run(scenario())


def test_async_and_failing_handlers(settle):
    async def scenario():
        hub = RealtimeHub()
        seen = []

        async def async_handler(change):
            seen.append(change.new["id"])

        def broken(change):
            raise ValueError("boom")

        hub.subscribe("messages", "INSERT", broken)
        hub.subscribe("messages", "INSERT", async_handler)
        hub.publish(insert("messages", id=9))
        await settle()

        assert seen == [9]

    asyncio.run(scenario())


def test_change_event_json():
    change = ChangeEvent("services", EventType.DELETE, old={"id": 4, "status": "approved"})
    payload = json.loads(change.to_json())
    assert payload == {"table": "services", "event_type": "DELETE", "new": None, "old": {"id": 4, "status": "approved"}}
    assert change.record == {"id": 4, "status": "approved"}


# Fixture to mock the Kafka producer
@pytest.fixture
def mock_kafka_producer():
    with patch("omtii.realtime.AIOKafkaProducer") as producer_class:
        producer = producer_class.return_value
        producer.start = AsyncMock(return_value=None)
        producer.stop = AsyncMock(return_value=None)
        producer.send_and_wait = AsyncMock(return_value=None)
        yield producer


def test_kafka_relay_forwards_changes(mock_kafka_producer):
    async def scenario():
        hub = RealtimeHub()
        relay = KafkaChangeRelay("broker:19092", "marketplace_changes")
        await relay.start()
        hub.add_relay(relay)

        hub.publish(insert("messages", id=1, content="hi"))
        await relay.stop()

        mock_kafka_producer.start.assert_awaited_once()
        mock_kafka_producer.stop.assert_awaited_once()
        topic, value = mock_kafka_producer.send_and_wait.call_args.args
        assert topic == "marketplace_changes"
        assert json.loads(value)["new"] == {"id": 1, "content": "hi"}

    asyncio.run(scenario())


def test_kafka_relay_logs_send_failures(mock_kafka_producer):
    mock_kafka_producer.send_and_wait.side_effect = KafkaConnectionError()

    async def scenario():
        relay = KafkaChangeRelay("broker:19092", "marketplace_changes")
        await relay.start()
        await relay.send(insert("messages", id=1))

    asyncio.run(scenario())
    mock_kafka_producer.send_and_wait.assert_awaited_once()


@pytest.fixture
def mock_admin_client():
    with patch("topic_generator.create_topic.AIOKafkaAdminClient") as admin_class:
        admin = admin_class.return_value
        admin.start = AsyncMock(return_value=None)
        admin.close = AsyncMock(return_value=None)
        admin.create_topics = AsyncMock(return_value=None)
        yield admin


def test_create_topic(mock_admin_client):
    assert asyncio.run(create_kafka_topic("marketplace_changes")) is True
    mock_admin_client.close.assert_awaited_once()


def test_create_existing_topic(mock_admin_client):
    mock_admin_client.create_topics.side_effect = TopicAlreadyExistsError()
    assert asyncio.run(create_kafka_topic("marketplace_changes")) is False


def test_create_topic_retries_transient_errors(mock_admin_client):
    mock_admin_client.create_topics.side_effect = [KafkaConnectionError(), None]
    assert asyncio.run(create_kafka_topic("marketplace_changes", retry_interval=0)) is True
    assert mock_admin_client.create_topics.await_count == 2


def test_create_topic_gives_up(mock_admin_client):
    mock_admin_client.create_topics.side_effect = KafkaConnectionError()
    with pytest.raises(TopicCreationFailed):
        asyncio.run(create_kafka_topic("marketplace_changes", max_retries=2, retry_interval=0))
    mock_admin_client.close.assert_awaited_once()
