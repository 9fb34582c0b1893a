"""
Desired-state calculator.

Pure mapping from a ConsumerScaler and the current partition count of its
topic to the desired spec of each child. No I/O; identical inputs always give
identical (equal) outputs, which is what makes the diff step meaningful.
"""

from dataclasses import dataclass, field

from .models import ConsumerScaler

DEFAULT_METRIC_NAME = "kafka_consumergroup_lag_sum"
DEFAULT_SOURCE_METRIC = "kafka_consumergroup_lag"


@dataclass(frozen=True)
class DeploymentSpec:
    """Desired consumer Deployment.

    ``seed_replicas`` is only written when the Deployment is created; after
    that the replica count belongs to the HorizontalPodAutoscaler.
    """

    name: str
    image: str
    container_name: str
    topic: str
    consumer_group: str
    seed_replicas: int = field(default=1, compare=False)


@dataclass(frozen=True)
class MetricsBindingSpec:
    """Recording rule that publishes the consumer group's lag."""

    name: str
    record: str
    expr: str
    topic: str
    consumer_group: str


@dataclass(frozen=True)
class ScalingPolicySpec:
    """Desired HorizontalPodAutoscaler bounds and target."""

    name: str
    min_replicas: int
    max_replicas: int
    target_metric_name: str
    target_value: int
    scale_target_name: str
    topic: str
    consumer_group: str


@dataclass(frozen=True)
class DesiredState:
    deployment: DeploymentSpec
    metrics_binding: MetricsBindingSpec
    scaling_policy: ScalingPolicySpec


def clamp_max_replicas(partition_count: int, min_replicas: int) -> int:
    """Upper bound that follows the partition count but never drops below min."""
    return max(partition_count, min_replicas)


def lag_expression(source_metric: str, topic: str, consumer_group: str) -> str:
    return (
        f"sum by (topic, consumergroup) "
        f'({source_metric}{{topic="{topic}", consumergroup="{consumer_group}"}})'
    )


def compute_desired_state(
    scaler: ConsumerScaler,
    partition_count: int,
    *,
    metric_name: str = DEFAULT_METRIC_NAME,
    source_metric: str = DEFAULT_SOURCE_METRIC,
) -> DesiredState:
    """Compute every child spec for a ConsumerScaler.

    Args:
        scaler: Validated ConsumerScaler
        partition_count: Current partition count of the consumed topic
        metric_name: External metric the autoscaler targets
        source_metric: Exporter series the recording rule aggregates
    """
    topic = scaler.consumer.topic_name
    consumer_group = scaler.name

    deployment = DeploymentSpec(
        name=scaler.name,
        image=scaler.consumer.image,
        container_name=scaler.consumer.container_name,
        topic=topic,
        consumer_group=consumer_group,
        seed_replicas=scaler.min_replicas,
    )

    metrics_binding = MetricsBindingSpec(
        name=f"{scaler.name}-lag",
        record=metric_name,
        expr=lag_expression(source_metric, topic, consumer_group),
        topic=topic,
        consumer_group=consumer_group,
    )

    scaling_policy = ScalingPolicySpec(
        name=f"{scaler.name}-hpa",
        min_replicas=scaler.min_replicas,
        max_replicas=clamp_max_replicas(partition_count, scaler.min_replicas),
        target_metric_name=metric_name,
        target_value=scaler.lag_threshold,
        scale_target_name=deployment.name,
        topic=topic,
        consumer_group=consumer_group,
    )

    return DesiredState(deployment=deployment, metrics_binding=metrics_binding, scaling_policy=scaling_policy)
