"""
Child resource handlers.

The set of children is fixed: a consumer Deployment, a PrometheusRule that
records the consumer group's lag (the metrics binding) and a
HorizontalPodAutoscaler (the scaling policy). Each kind has one handler with
the same four capabilities:

- ``desired``: pick this kind's spec out of a DesiredState
- ``render``: full manifest for a create
- ``extract``: the comparable spec of a live object
- ``merge``: the live object with the desired fields written in, for an update

Specs are compared as dataclasses, so store bookkeeping such as
``resourceVersion`` or the live replica count never takes part in a diff.
"""

import copy
import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from enum import Enum
from typing import Any

from kubernetes.utils import parse_quantity

from .calculator import DeploymentSpec, DesiredState, MetricsBindingSpec, ScalingPolicySpec
from .models import MANAGED_BY, ConsumerScaler, ResourceKey, ResourceKind, owner_reference

logger = logging.getLogger(__name__)

TOPIC_ENV = "KAFKA_TOPIC"
CONSUMER_GROUP_ENV = "KAFKA_CONSUMER_GROUP"


class ChildKind(Enum):
    """Children a ConsumerScaler owns."""

    DEPLOYMENT = "Deployment"
    METRICS_BINDING = "MetricsBinding"
    SCALING_POLICY = "ScalingPolicy"


def child_labels(scaler: ConsumerScaler) -> dict[str, str]:
    return {"app": scaler.name, "app.kubernetes.io/managed-by": MANAGED_BY}


class ChildHandler(ABC):
    """Uniform operations over one child kind."""

    kind: ChildKind
    resource_kind: ResourceKind
    suffix: str = ""

    def name_for(self, scaler: ConsumerScaler) -> str:
        return f"{scaler.name}{self.suffix}"

    def key_for(self, scaler: ConsumerScaler) -> ResourceKey:
        return ResourceKey(scaler.namespace, self.name_for(scaler))

    @abstractmethod
    def desired(self, state: DesiredState) -> Any:
        """This kind's spec out of the full desired state."""

    @abstractmethod
    def render_spec(self, spec: Any) -> dict[str, Any]:
        """The manifest ``spec`` section for a desired spec."""

    @abstractmethod
    def extract(self, live: dict[str, Any]) -> Any:
        """Comparable spec of a live object."""

    def render(self, spec: Any, scaler: ConsumerScaler) -> dict[str, Any]:
        """Full manifest used to create the child."""
        coordinates = self.resource_kind.coordinates
        return {
            "apiVersion": coordinates.api_version,
            "kind": coordinates.kind,
            "metadata": {
                "name": self.name_for(scaler),
                "namespace": scaler.namespace,
                "labels": child_labels(scaler),
                "ownerReferences": [owner_reference(scaler)],
            },
            "spec": self.render_spec(spec),
        }

    def merge(self, live: dict[str, Any], spec: Any, scaler: ConsumerScaler) -> dict[str, Any]:
        """Copy of live carrying the desired spec, ready for an update."""
        merged = copy.deepcopy(live)
        merged["spec"] = self.render_spec(spec)
        _merge_metadata(merged, scaler)
        return merged


def _merge_metadata(obj: dict[str, Any], scaler: ConsumerScaler) -> None:
    metadata = obj.setdefault("metadata", {})
    labels = metadata.get("labels") or {}
    labels.update(child_labels(scaler))
    metadata["labels"] = labels

    references = metadata.get("ownerReferences") or []
    if not any(ref.get("uid") == scaler.uid for ref in references):
        references.append(owner_reference(scaler))
    metadata["ownerReferences"] = references


class DeploymentHandler(ChildHandler):
    kind = ChildKind.DEPLOYMENT
    resource_kind = ResourceKind.DEPLOYMENT

    def desired(self, state: DesiredState) -> DeploymentSpec:
        return state.deployment

    def render_spec(self, spec: DeploymentSpec) -> dict[str, Any]:
        return {
            "replicas": spec.seed_replicas,
            "selector": {"matchLabels": {"app": spec.name}},
            "template": {
                "metadata": {"labels": {"app": spec.name}},
                "spec": {"containers": [self._container(spec)]},
            },
        }

    @staticmethod
    def _container(spec: DeploymentSpec) -> dict[str, Any]:
        return {
            "name": spec.container_name,
            "image": spec.image,
            "env": [
                {"name": TOPIC_ENV, "value": spec.topic},
                {"name": CONSUMER_GROUP_ENV, "value": spec.consumer_group},
            ],
        }

    def extract(self, live: dict[str, Any]) -> DeploymentSpec:
        spec = live.get("spec") or {}
        pod_spec = (spec.get("template") or {}).get("spec") or {}
        containers = pod_spec.get("containers") or [{}]
        container = containers[0]
        env = {item.get("name"): item.get("value") for item in container.get("env") or []}
        return DeploymentSpec(
            name=live["metadata"]["name"],
            image=container.get("image"),
            container_name=container.get("name"),
            topic=env.get(TOPIC_ENV),
            consumer_group=env.get(CONSUMER_GROUP_ENV),
            seed_replicas=spec.get("replicas") or 0,
        )

    def merge(self, live: dict[str, Any], spec: DeploymentSpec, scaler: ConsumerScaler) -> dict[str, Any]:
        # spec.replicas belongs to the autoscaler and the selector is immutable,
        # so only the pod template is rewritten.
        merged = copy.deepcopy(live)
        template = merged.setdefault("spec", {}).setdefault("template", {})
        template_labels = template.setdefault("metadata", {}).setdefault("labels", {})
        template_labels["app"] = spec.name

        pod_spec = template.setdefault("spec", {})
        containers = pod_spec.get("containers") or [{}]
        container = containers[0]
        container["name"] = spec.container_name
        container["image"] = spec.image

        env = [
            item for item in container.get("env") or [] if item.get("name") not in (TOPIC_ENV, CONSUMER_GROUP_ENV)
        ]
        container["env"] = self._container(spec)["env"] + env
        pod_spec["containers"] = containers

        _merge_metadata(merged, scaler)
        return merged


class MetricsBindingHandler(ChildHandler):
    kind = ChildKind.METRICS_BINDING
    resource_kind = ResourceKind.PROMETHEUS_RULE
    suffix = "-lag"

    def desired(self, state: DesiredState) -> MetricsBindingSpec:
        return state.metrics_binding

    def render_spec(self, spec: MetricsBindingSpec) -> dict[str, Any]:
        return {
            "groups": [
                {
                    "name": spec.name,
                    "rules": [
                        {
                            "record": spec.record,
                            "expr": spec.expr,
                            "labels": {"topic": spec.topic, "consumergroup": spec.consumer_group},
                        }
                    ],
                }
            ]
        }

    def extract(self, live: dict[str, Any]) -> MetricsBindingSpec:
        groups = (live.get("spec") or {}).get("groups") or [{}]
        rules = groups[0].get("rules") or [{}]
        rule = rules[0]
        labels = rule.get("labels") or {}
        return MetricsBindingSpec(
            name=live["metadata"]["name"],
            record=rule.get("record"),
            expr=rule.get("expr"),
            topic=labels.get("topic"),
            consumer_group=labels.get("consumergroup"),
        )


class ScalingPolicyHandler(ChildHandler):
    kind = ChildKind.SCALING_POLICY
    resource_kind = ResourceKind.HORIZONTAL_POD_AUTOSCALER
    suffix = "-hpa"

    def desired(self, state: DesiredState) -> ScalingPolicySpec:
        return state.scaling_policy

    def render_spec(self, spec: ScalingPolicySpec) -> dict[str, Any]:
        return {
            "scaleTargetRef": {
                "apiVersion": ResourceKind.DEPLOYMENT.coordinates.api_version,
                "kind": ResourceKind.DEPLOYMENT.coordinates.kind,
                "name": spec.scale_target_name,
            },
            "minReplicas": spec.min_replicas,
            "maxReplicas": spec.max_replicas,
            "metrics": [
                {
                    "type": "External",
                    "external": {
                        "metric": {
                            "name": spec.target_metric_name,
                            "selector": {
                                "matchLabels": {"topic": spec.topic, "consumergroup": spec.consumer_group}
                            },
                        },
                        "target": {"type": "AverageValue", "averageValue": str(spec.target_value)},
                    },
                }
            ],
        }

    def extract(self, live: dict[str, Any]) -> ScalingPolicySpec:
        spec = live.get("spec") or {}
        metrics = spec.get("metrics") or [{}]
        external = metrics[0].get("external") or {}
        metric = external.get("metric") or {}
        match_labels = (metric.get("selector") or {}).get("matchLabels") or {}
        target = external.get("target") or {}
        return ScalingPolicySpec(
            name=live["metadata"]["name"],
            min_replicas=spec.get("minReplicas"),
            max_replicas=spec.get("maxReplicas"),
            target_metric_name=metric.get("name"),
            target_value=_quantity_value(target.get("averageValue")),
            scale_target_name=(spec.get("scaleTargetRef") or {}).get("name"),
            topic=match_labels.get("topic"),
            consumer_group=match_labels.get("consumergroup"),
        )


def _quantity_value(raw: Any) -> int | Decimal | None:
    """Normalise a quantity the API server may have rewritten (1000 -> "1k")."""
    if raw is None:
        return None
    try:
        value = parse_quantity(raw)
    except ValueError:
        logger.debug(f"Unparseable quantity {raw!r}")
        return None
    if value == value.to_integral_value():
        return int(value)
    return value


HANDLERS: dict[ChildKind, ChildHandler] = {
    ChildKind.DEPLOYMENT: DeploymentHandler(),
    ChildKind.METRICS_BINDING: MetricsBindingHandler(),
    ChildKind.SCALING_POLICY: ScalingPolicyHandler(),
}

# The autoscaler's scale target must exist before the autoscaler does.
APPLY_ORDER: tuple[ChildKind, ...] = (
    ChildKind.DEPLOYMENT,
    ChildKind.METRICS_BINDING,
    ChildKind.SCALING_POLICY,
)
