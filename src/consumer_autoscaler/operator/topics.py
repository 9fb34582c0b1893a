"""
Topic state reader.

Reads the KafkaTopic a ConsumerScaler consumes. Nothing is cached: a stale
partition count would produce wrong autoscaler bounds, so every call goes to
the store.
"""

import logging

from .errors import DependencyMissingError
from .models import ResourceKey, ResourceKind, TopicState
from .store import ResourceStore

logger = logging.getLogger(__name__)


class TopicStateReader:
    """Read-through accessor for KafkaTopic partition counts."""

    def __init__(self, store: ResourceStore):
        self.store = store

    async def get_partition_count(self, namespace: str, topic_name: str) -> TopicState:
        """Return the topic's partition count and readiness.

        Raises:
            DependencyMissingError: if the topic does not exist
            StoreUnavailableError: if the store cannot be reached
        """
        key = ResourceKey(namespace, topic_name)
        obj = await self.store.get(ResourceKind.KAFKA_TOPIC, key)
        if obj is None:
            raise DependencyMissingError(f"KafkaTopic {key} not found")

        state = TopicState.from_object(obj)
        logger.debug(f"Topic {key}: partitions={state.partition_count} ready={state.ready}")
        return state
