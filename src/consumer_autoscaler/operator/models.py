"""
Resource model for the consumer autoscaler operator.

Objects travel through the operator as plain Kubernetes JSON dictionaries;
the dataclasses here are the typed views the reconciler works with.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import InvalidSpecError

GROUP = "autoscaling.kafka.io"
VERSION = "v1alpha1"
MANAGED_BY = "consumer-autoscaler"


@dataclass(frozen=True)
class ApiCoordinates:
    """Where a kind lives in the Kubernetes API."""

    group: str
    version: str
    plural: str
    kind: str

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"


class ResourceKind(Enum):
    """Kinds the operator reads, writes or watches."""

    CONSUMER_SCALER = "ConsumerScaler"
    KAFKA_TOPIC = "KafkaTopic"
    DEPLOYMENT = "Deployment"
    PROMETHEUS_RULE = "PrometheusRule"
    HORIZONTAL_POD_AUTOSCALER = "HorizontalPodAutoscaler"

    @property
    def coordinates(self) -> ApiCoordinates:
        return KIND_COORDINATES[self]


KIND_COORDINATES: dict[ResourceKind, ApiCoordinates] = {
    ResourceKind.CONSUMER_SCALER: ApiCoordinates(GROUP, VERSION, "consumerscalers", "ConsumerScaler"),
    ResourceKind.KAFKA_TOPIC: ApiCoordinates("kafka.strimzi.io", "v1beta2", "kafkatopics", "KafkaTopic"),
    ResourceKind.DEPLOYMENT: ApiCoordinates("apps", "v1", "deployments", "Deployment"),
    ResourceKind.PROMETHEUS_RULE: ApiCoordinates(
        "monitoring.coreos.com", "v1", "prometheusrules", "PrometheusRule"
    ),
    ResourceKind.HORIZONTAL_POD_AUTOSCALER: ApiCoordinates(
        "autoscaling", "v2", "horizontalpodautoscalers", "HorizontalPodAutoscaler"
    ),
}


@dataclass(frozen=True, order=True)
class ResourceKey:
    """Namespace-qualified name of an object."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> "ResourceKey":
        metadata = obj.get("metadata") or {}
        return cls(namespace=metadata.get("namespace", "default"), name=metadata["name"])


class ChangeType(Enum):
    """Watch notification types."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class WatchEvent:
    """A change notification from the resource store."""

    kind: ResourceKind
    change_type: ChangeType
    object: dict[str, Any] = field(compare=False)

    @property
    def key(self) -> ResourceKey:
        return ResourceKey.from_object(self.object)


@dataclass(frozen=True)
class ConsumerSpec:
    """The consumer workload a ConsumerScaler manages."""

    image: str
    topic_name: str
    container_name: str


@dataclass(frozen=True)
class ConsumerScalerStatus:
    """Observed state written back to ConsumerScaler.status."""

    replicas: int
    active_pods: tuple[str, ...] = ()
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "replicas": self.replicas,
            "activePods": list(self.active_pods),
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ConsumerScalerStatus | None":
        if not data:
            return None
        return cls(
            replicas=data.get("replicas", 0),
            active_pods=tuple(data.get("activePods") or ()),
            message=data.get("message", ""),
        )


@dataclass(frozen=True)
class ConsumerScaler:
    """Typed view of a ConsumerScaler custom resource."""

    key: ResourceKey
    uid: str
    min_replicas: int
    lag_threshold: int
    consumer: ConsumerSpec
    status: ConsumerScalerStatus | None = None

    @property
    def name(self) -> str:
        return self.key.name

    @property
    def namespace(self) -> str:
        return self.key.namespace

    @property
    def topic_key(self) -> ResourceKey:
        return ResourceKey(self.namespace, self.consumer.topic_name)

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> "ConsumerScaler":
        """Parse and validate a ConsumerScaler object.

        Raises:
            InvalidSpecError: if any spec field is missing or out of range
        """
        key = ResourceKey.from_object(obj)
        spec = obj.get("spec")
        if not isinstance(spec, dict):
            raise InvalidSpecError(f"{key}: spec is missing")

        consumer = spec.get("consumerSpec")
        if not isinstance(consumer, dict):
            raise InvalidSpecError(f"{key}: spec.consumerSpec is missing")

        return cls(
            key=key,
            uid=obj.get("metadata", {}).get("uid", ""),
            min_replicas=_require_int(spec, "minReplicas", key, minimum=1),
            lag_threshold=_require_int(spec, "lagThreshold", key, minimum=0),
            consumer=ConsumerSpec(
                image=_require_str(consumer, "image", key),
                topic_name=_require_str(consumer, "topicName", key),
                container_name=_require_str(consumer, "containerName", key),
            ),
            status=ConsumerScalerStatus.from_dict(obj.get("status")),
        )


def _require_int(data: dict[str, Any], name: str, key: ResourceKey, minimum: int) -> int:
    value = data.get(name)
    # bool is an int subclass
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidSpecError(f"{key}: spec.{name} must be an integer, got {value!r}")
    if value < minimum:
        raise InvalidSpecError(f"{key}: spec.{name} must be >= {minimum}, got {value}")
    return value


def _require_str(data: dict[str, Any], name: str, key: ResourceKey) -> str:
    value = data.get(name)
    if not isinstance(value, str) or not value.strip():
        raise InvalidSpecError(f"{key}: spec.consumerSpec.{name} must be a non-empty string")
    return value


@dataclass(frozen=True)
class TopicState:
    """Partition count and readiness of a KafkaTopic."""

    key: ResourceKey
    partition_count: int | None
    ready: bool

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> "TopicState":
        partitions = (obj.get("spec") or {}).get("partitions")
        if isinstance(partitions, bool) or not isinstance(partitions, int) or partitions < 1:
            partitions = None

        conditions = (obj.get("status") or {}).get("conditions") or []
        ready = any(
            condition.get("type") == "Ready" and condition.get("status") == "True"
            for condition in conditions
        )
        return cls(key=ResourceKey.from_object(obj), partition_count=partitions, ready=ready)


def owner_reference(scaler: ConsumerScaler) -> dict[str, Any]:
    """Controller ownerReference pointing at a ConsumerScaler."""
    coordinates = ResourceKind.CONSUMER_SCALER.coordinates
    return {
        "apiVersion": coordinates.api_version,
        "kind": coordinates.kind,
        "name": scaler.name,
        "uid": scaler.uid,
        "controller": True,
        "blockOwnerDeletion": True,
    }


def controller_owner_key(obj: dict[str, Any]) -> ResourceKey | None:
    """Resolve the ConsumerScaler that owns obj, if any."""
    metadata = obj.get("metadata") or {}
    coordinates = ResourceKind.CONSUMER_SCALER.coordinates
    for ref in metadata.get("ownerReferences") or []:
        if ref.get("kind") != coordinates.kind:
            continue
        if str(ref.get("apiVersion", "")).split("/")[0] != coordinates.group:
            continue
        return ResourceKey(metadata.get("namespace", "default"), ref["name"])
    return None
