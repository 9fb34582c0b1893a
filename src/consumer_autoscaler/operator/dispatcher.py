"""
Watch dispatcher.

Maps change notifications for every watched kind back to the ConsumerScaler
keys that have to be reconciled:

- ConsumerScaler events map to their own key, except MODIFIED events that
  leave metadata.generation unchanged (status writes, including our own).
- KafkaTopic events map to every ConsumerScaler consuming that topic, through
  a reverse index kept up to date from ConsumerScaler events.
- Child events map to the owner named in ownerReferences.

Events that resolve to nothing are dropped; a topic nobody consumes is not an
error.
"""

import logging
from collections import defaultdict
from collections.abc import AsyncIterator, Iterable
from typing import Any

from ..observability.metrics import OperatorMetrics
from .models import ChangeType, ResourceKey, ResourceKind, WatchEvent, controller_owner_key
from .workqueue import WorkQueue

logger = logging.getLogger(__name__)

CHILD_KINDS = frozenset(
    {ResourceKind.DEPLOYMENT, ResourceKind.PROMETHEUS_RULE, ResourceKind.HORIZONTAL_POD_AUTOSCALER}
)

WATCHED_KINDS: tuple[ResourceKind, ...] = (
    ResourceKind.CONSUMER_SCALER,
    ResourceKind.KAFKA_TOPIC,
    ResourceKind.DEPLOYMENT,
    ResourceKind.PROMETHEUS_RULE,
    ResourceKind.HORIZONTAL_POD_AUTOSCALER,
)


def referenced_topic(primary: dict[str, Any]) -> str | None:
    """consumerSpec.topicName of a ConsumerScaler object, if set."""
    consumer = (primary.get("spec") or {}).get("consumerSpec") or {}
    topic = consumer.get("topicName")
    return topic if isinstance(topic, str) and topic else None


def _generation(obj: dict[str, Any]) -> int | None:
    generation = (obj.get("metadata") or {}).get("generation")
    return generation if isinstance(generation, int) else None


class WatchDispatcher:
    """Routes watch events to the work queue."""

    def __init__(self, queue: WorkQueue, metrics: OperatorMetrics | None = None):
        self.queue = queue
        self.metrics = metrics
        self._consumers: dict[tuple[str, str], set[ResourceKey]] = defaultdict(set)
        self._topic_of: dict[ResourceKey, tuple[str, str]] = {}
        self._generation_of: dict[ResourceKey, int] = {}

    def consumers_of(self, namespace: str, topic_name: str) -> set[ResourceKey]:
        """ConsumerScaler keys currently referencing a topic."""
        return set(self._consumers.get((namespace, topic_name), ()))

    def dispatch(self, event: WatchEvent) -> list[ResourceKey]:
        """Enqueue the keys event resolves to and return them."""
        if self.metrics:
            self.metrics.watch_events.labels(kind=event.kind.value, change_type=event.change_type.value).inc()

        if event.kind == ResourceKind.CONSUMER_SCALER:
            keys = self._primary_keys(event)
        elif event.kind == ResourceKind.KAFKA_TOPIC:
            topic = event.key
            keys = sorted(self.consumers_of(topic.namespace, topic.name))
            if not keys:
                logger.debug(f"No ConsumerScaler consumes KafkaTopic {topic}; dropping event")
        elif event.kind in CHILD_KINDS:
            owner = controller_owner_key(event.object)
            keys = [owner] if owner else []
            if not keys:
                logger.debug(f"{event.kind.value} {event.key} has no ConsumerScaler owner; dropping event")
        else:
            keys = []

        for key in keys:
            self.queue.add(key)
        return keys

    def _primary_keys(self, event: WatchEvent) -> list[ResourceKey]:
        key = self._index_primary(event)
        if event.change_type == ChangeType.DELETED:
            self._generation_of.pop(key, None)
            return [key]

        generation = _generation(event.object)
        seen = self._generation_of.get(key)
        if generation is not None:
            self._generation_of[key] = generation
        if event.change_type == ChangeType.MODIFIED and generation is not None and generation == seen:
            logger.debug(f"ConsumerScaler {key} changed without a new generation; not enqueued")
            return []
        return [key]

    def _index_primary(self, event: WatchEvent) -> ResourceKey:
        key = event.key
        self._unindex(key)
        if event.change_type != ChangeType.DELETED:
            topic = referenced_topic(event.object)
            if topic:
                self._topic_of[key] = (key.namespace, topic)
                self._consumers[(key.namespace, topic)].add(key)
        return key

    def _unindex(self, key: ResourceKey) -> None:
        previous = self._topic_of.pop(key, None)
        if previous is None:
            return
        consumers = self._consumers.get(previous)
        if consumers is not None:
            consumers.discard(key)
            if not consumers:
                del self._consumers[previous]

    def resync(self, primaries: Iterable[dict[str, Any]]) -> list[ResourceKey]:
        """Rebuild the topic index from a full list of ConsumerScalers."""
        self._consumers.clear()
        self._topic_of.clear()
        self._generation_of.clear()
        keys = []
        for primary in primaries:
            key = ResourceKey.from_object(primary)
            generation = _generation(primary)
            if generation is not None:
                self._generation_of[key] = generation
            topic = referenced_topic(primary)
            if topic:
                self._topic_of[key] = (key.namespace, topic)
                self._consumers[(key.namespace, topic)].add(key)
            keys.append(key)
        return keys

    async def run(self, events: AsyncIterator[WatchEvent]) -> None:
        """Dispatch events until the stream ends."""
        async for event in events:
            self.dispatch(event)
