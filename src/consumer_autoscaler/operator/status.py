"""
Status reporter.

Derives ConsumerScaler.status from the cycle's snapshot and writes it only
when it differs from the status observed on the fetched object, so repeating
a cycle with nothing new to say costs no store write.
"""

import copy
import logging
from collections.abc import Sequence
from typing import Any

from ..observability.metrics import OperatorMetrics
from .models import ConsumerScalerStatus, ResourceKey, ResourceKind
from .store import ResourceStore

logger = logging.getLogger(__name__)

COMPLETED_MESSAGE = "Reconciliation completed"


def build_status(
    fallback_replicas: int,
    deployment: dict[str, Any] | None,
    pods: Sequence[str],
    message: str,
) -> ConsumerScalerStatus:
    """Status from the live Deployment, falling back to minReplicas."""
    replicas = None
    if deployment is not None:
        replicas = (deployment.get("status") or {}).get("replicas")
    if replicas is None:
        replicas = fallback_replicas
    return ConsumerScalerStatus(replicas=replicas, active_pods=tuple(pods), message=message)


def carry_over_status(previous: ConsumerScalerStatus | None, fallback_replicas: int, message: str) -> ConsumerScalerStatus:
    """Status for a cycle that failed before children were read."""
    if previous is None:
        return ConsumerScalerStatus(replicas=fallback_replicas, message=message)
    return ConsumerScalerStatus(replicas=previous.replicas, active_pods=previous.active_pods, message=message)


class StatusReporter:
    """Writes ConsumerScaler.status, skipping redundant writes."""

    def __init__(self, store: ResourceStore, metrics: OperatorMetrics | None = None):
        self.store = store
        self.metrics = metrics

    async def report(self, primary: dict[str, Any], status: ConsumerScalerStatus) -> bool:
        """Write status onto primary; returns False when it was already current."""
        key = ResourceKey.from_object(primary)
        observed = ConsumerScalerStatus.from_dict(primary.get("status"))
        if observed == status:
            logger.debug(f"Status of {key} unchanged")
            return False

        body = copy.deepcopy(primary)
        body["status"] = status.to_dict()
        await self.store.update_status(ResourceKind.CONSUMER_SCALER, body)

        if self.metrics:
            self.metrics.store_writes.labels(kind=ResourceKind.CONSUMER_SCALER.value, operation="update_status").inc()
        logger.debug(f"Status of {key} set to {status.message!r}")
        return True
