"""
Global pytest configuration and fixtures.

Provides an in-memory resource store that behaves like the API server where
the operator cares: resourceVersion based optimistic concurrency, key
collisions on create, a status subresource that leaves metadata.generation
alone, label-selected pods and a watch
stream fed by the test.
"""

from __future__ import annotations

import asyncio
import copy
import itertools
from collections.abc import AsyncIterator, Callable, Iterable
from typing import Any

import pytest
from prometheus_client import CollectorRegistry

from consumer_autoscaler.observability.metrics import OperatorMetrics
from consumer_autoscaler.operator.errors import AlreadyExistsError, ConflictError
from consumer_autoscaler.operator.models import ChangeType, ResourceKey, ResourceKind, WatchEvent
from consumer_autoscaler.operator.reconciler import Reconciler
from consumer_autoscaler.operator.store import ResourceStore
from consumer_autoscaler.operator.workqueue import WorkQueue
from consumer_autoscaler.resilience.retry import BackoffConfig, BackoffPolicy

SCALER_KEY = ResourceKey("default", "consumer")


class FakeResourceStore(ResourceStore):
    """In-memory ResourceStore for tests."""

    def __init__(self):
        self.objects: dict[tuple[ResourceKind, ResourceKey], dict[str, Any]] = {}
        self.writes: list[tuple[str, ResourceKind, str]] = []
        self.failures: dict[tuple[str, ResourceKind], Exception] = {}
        self.delays: dict[tuple[str, ResourceKind], float] = {}
        self.pods: list[tuple[str, str, dict[str, str], bool]] = []
        self.events: asyncio.Queue = asyncio.Queue()
        self._versions = itertools.count(1)
        self._uids = itertools.count(1)

    # test helpers

    def put(self, kind: ResourceKind, obj: dict[str, Any]) -> dict[str, Any]:
        """Store obj as if an external actor wrote it; not recorded as a write."""
        stored = copy.deepcopy(obj)
        metadata = stored.setdefault("metadata", {})
        metadata.setdefault("namespace", "default")
        metadata.setdefault("uid", f"uid-{next(self._uids)}")
        metadata["resourceVersion"] = str(next(self._versions))
        key = ResourceKey.from_object(stored)
        # generation only moves when spec changes, as on the API server
        previous = self.objects.get((kind, key))
        if previous is None:
            metadata["generation"] = 1
        elif previous.get("spec") != stored.get("spec"):
            metadata["generation"] = previous["metadata"]["generation"] + 1
        else:
            metadata["generation"] = previous["metadata"]["generation"]
        self.objects[(kind, key)] = stored
        return copy.deepcopy(stored)

    def remove(self, kind: ResourceKind, key: ResourceKey) -> None:
        self.objects.pop((kind, key), None)

    def object(self, kind: ResourceKind, key: ResourceKey) -> dict[str, Any] | None:
        obj = self.objects.get((kind, key))
        return copy.deepcopy(obj) if obj is not None else None

    def fail(self, operation: str, kind: ResourceKind, error: Exception) -> None:
        """Make every ``operation`` on ``kind`` raise error until cleared."""
        self.failures[(operation, kind)] = error

    def add_pod(self, namespace: str, name: str, labels: dict[str, str], terminating: bool = False) -> None:
        self.pods.append((namespace, name, labels, terminating))

    def emit(self, kind: ResourceKind, change_type: ChangeType, obj: dict[str, Any]) -> None:
        self.events.put_nowait(WatchEvent(kind, change_type, copy.deepcopy(obj)))

    async def _enter(self, operation: str, kind: ResourceKind) -> None:
        delay = self.delays.get((operation, kind))
        if delay:
            await asyncio.sleep(delay)
        error = self.failures.get((operation, kind))
        if error is not None:
            raise error

    def _record(self, operation: str, kind: ResourceKind, key: ResourceKey) -> None:
        self.writes.append((operation, kind, key.name))

    # ResourceStore

    async def get(self, kind: ResourceKind, key: ResourceKey) -> dict[str, Any] | None:
        await self._enter("get", kind)
        return self.object(kind, key)

    async def list(self, kind: ResourceKind, namespace: str | None = None) -> list[dict[str, Any]]:
        await self._enter("list", kind)
        return [
            copy.deepcopy(obj)
            for (stored_kind, key), obj in sorted(self.objects.items(), key=lambda item: item[0][1])
            if stored_kind == kind and (namespace is None or key.namespace == namespace)
        ]

    async def create(self, kind: ResourceKind, body: dict[str, Any]) -> dict[str, Any]:
        await self._enter("create", kind)
        key = ResourceKey.from_object(body)
        if (kind, key) in self.objects:
            raise AlreadyExistsError(f"{kind.value} {key} already exists")
        self._record("create", kind, key)
        return self.put(kind, body)

    async def update(self, kind: ResourceKind, body: dict[str, Any]) -> dict[str, Any]:
        await self._enter("update", kind)
        key = ResourceKey.from_object(body)
        current = self.objects.get((kind, key))
        if current is None:
            raise ConflictError(f"{kind.value} {key} no longer exists")
        if body["metadata"].get("resourceVersion") != current["metadata"]["resourceVersion"]:
            raise ConflictError(f"{kind.value} {key} was modified")

        stored = copy.deepcopy(body)
        if "status" in current:
            stored["status"] = copy.deepcopy(current["status"])
        else:
            stored.pop("status", None)
        self._record("update", kind, key)
        return self.put(kind, stored)

    async def update_status(self, kind: ResourceKind, body: dict[str, Any]) -> dict[str, Any]:
        await self._enter("update_status", kind)
        key = ResourceKey.from_object(body)
        current = self.objects.get((kind, key))
        if current is None:
            raise ConflictError(f"{kind.value} {key} no longer exists")
        if body["metadata"].get("resourceVersion") != current["metadata"]["resourceVersion"]:
            raise ConflictError(f"{kind.value} {key} was modified")

        stored = copy.deepcopy(current)
        stored["status"] = copy.deepcopy(body.get("status"))
        self._record("update_status", kind, key)
        return self.put(kind, stored)

    async def list_pod_names(self, namespace: str, labels: dict[str, str]) -> list[str]:
        await self._enter("list_pods", ResourceKind.DEPLOYMENT)
        return sorted(
            name
            for pod_namespace, name, pod_labels, terminating in self.pods
            if pod_namespace == namespace
            and not terminating
            and all(pod_labels.get(label) == value for label, value in labels.items())
        )

    async def watch(self, kinds: Iterable[ResourceKind], namespace: str | None = None) -> AsyncIterator[WatchEvent]:
        wanted = set(kinds)
        while True:
            event = await self.events.get()
            if event.kind in wanted and (namespace is None or event.key.namespace == namespace):
                yield event


def scaler_object(
    name: str = "consumer",
    namespace: str = "default",
    min_replicas: Any = 1,
    lag_threshold: Any = 1000,
    topic: str = "fast-data-topic",
    image: str = "registry.local/consumer:1.0",
    container: str = "consumer",
) -> dict[str, Any]:
    return {
        "apiVersion": "autoscaling.kafka.io/v1alpha1",
        "kind": "ConsumerScaler",
        "metadata": {"name": name, "namespace": namespace, "uid": f"uid-{namespace}-{name}"},
        "spec": {
            "minReplicas": min_replicas,
            "lagThreshold": lag_threshold,
            "consumerSpec": {"image": image, "topicName": topic, "containerName": container},
        },
    }


def topic_object(
    name: str = "fast-data-topic",
    namespace: str = "default",
    partitions: Any = 1,
    ready: bool = True,
) -> dict[str, Any]:
    return {
        "apiVersion": "kafka.strimzi.io/v1beta2",
        "kind": "KafkaTopic",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {"partitions": partitions, "replicas": 1},
        "status": {"conditions": [{"type": "Ready", "status": "True" if ready else "False"}]},
    }


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll predicate on the event loop until it holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def store() -> FakeResourceStore:
    return FakeResourceStore()


@pytest.fixture
def make_scaler() -> Callable[..., dict[str, Any]]:
    """Factory for ConsumerScaler objects."""
    return scaler_object


@pytest.fixture
def make_topic() -> Callable[..., dict[str, Any]]:
    """Factory for KafkaTopic objects."""
    return topic_object


@pytest.fixture
def metrics() -> OperatorMetrics:
    """Operator metrics on a private registry."""
    return OperatorMetrics(CollectorRegistry())


@pytest.fixture
def backoff() -> BackoffPolicy:
    """Short, deterministic backoff so retries can be observed in tests."""
    return BackoffPolicy(BackoffConfig(base_delay=0.05, max_delay=0.4, jitter=False))


@pytest.fixture
def queue(backoff, metrics) -> WorkQueue:
    return WorkQueue(backoff, metrics)


@pytest.fixture
def reconciler(store, queue, metrics) -> Reconciler:
    return Reconciler(store, queue, cycle_timeout=2.0, metrics=metrics)
