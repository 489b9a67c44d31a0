# topic_generator/create_topic.py

import asyncio
import logging
from aiokafka.admin import AIOKafkaAdminClient, NewTopic
from aiokafka.errors import (
    KafkaConnectionError,
    TopicAlreadyExistsError,
    NotControllerError,
    LeaderNotAvailableError,
)


logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (NotControllerError, LeaderNotAvailableError, KafkaConnectionError)


class TopicCreationFailed(Exception):
    """The topic could not be created within the allowed retries."""


async def create_kafka_topic(
    topic_name: str,
    num_partitions: int = 1,
    replication_factor: int = 1,
    bootstrap_servers: str = "broker:19092",
    max_retries: int = 5,
    retry_interval: int = 10
) -> bool:
    """
    Ensure the Kafka topic the change relay publishes to exists.

    Args:
        topic_name (str): The name of the Kafka topic to create.
        num_partitions (int): Number of partitions for the topic.
        replication_factor (int): Replication factor for the topic.
        bootstrap_servers (str): Kafka broker address.
        max_retries (int): Maximum number of retries for transient errors.
        retry_interval (int): Seconds to wait between retries.

    Returns:
        bool: True if the topic was created, False if it already existed.

    Raises:
        TopicCreationFailed: If the topic cannot be created after max_retries.
    """
    admin_client = AIOKafkaAdminClient(bootstrap_servers=bootstrap_servers)
    topic = NewTopic(name=topic_name, num_partitions=num_partitions, replication_factor=replication_factor)

    try:
        await admin_client.start()
        for attempt in range(1, max_retries + 1):
            try:
                await admin_client.create_topics(new_topics=[topic], validate_only=False)
                logger.info(f"Topic '{topic_name}' created successfully.")
                return True
            except TopicAlreadyExistsError:
                logger.info(f"Topic '{topic_name}' already exists.")
                return False
            except TRANSIENT_ERRORS as e:
                logger.warning(f"Transient error ({e}), retrying {attempt}/{max_retries} after {retry_interval} seconds...")
                await asyncio.sleep(retry_interval)
        raise TopicCreationFailed(f"Failed to create Kafka topic '{topic_name}' after {max_retries} retries.")
    finally:
        await admin_client.close()
