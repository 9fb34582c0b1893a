"""
ConsumerScaler operator.

Keeps a Kafka consumer Deployment, its lag recording rule and its
HorizontalPodAutoscaler in line with a ConsumerScaler resource and the
partition count of the KafkaTopic it consumes.
"""

from .calculator import DesiredState, compute_desired_state
from .children import APPLY_ORDER, HANDLERS, ChildKind
from .crd import consumer_scaler_crd, install_crd
from .dispatcher import WATCHED_KINDS, WatchDispatcher
from .errors import (
    AlreadyExistsError,
    ConflictError,
    DependencyMissingError,
    DependencyNotReadyError,
    ErrorKind,
    InvalidSpecError,
    PartialApplyFailureError,
    ReconcileError,
    ReconcileTimeoutError,
    StoreUnavailableError,
)
from .manager import ConsumerScalerOperator
from .models import ChangeType, ConsumerScaler, ResourceKey, ResourceKind, WatchEvent
from .reconciler import CycleResult, CycleState, Reconciler
from .status import StatusReporter
from .store import KubernetesResourceStore, ResourceStore
from .topics import TopicStateReader
from .workqueue import WorkQueue

__all__ = [
    "APPLY_ORDER",
    "HANDLERS",
    "WATCHED_KINDS",
    "AlreadyExistsError",
    "ChangeType",
    "ChildKind",
    "ConflictError",
    "ConsumerScaler",
    "ConsumerScalerOperator",
    "CycleResult",
    "CycleState",
    "DependencyMissingError",
    "DependencyNotReadyError",
    "DesiredState",
    "ErrorKind",
    "InvalidSpecError",
    "KubernetesResourceStore",
    "PartialApplyFailureError",
    "ReconcileError",
    "ReconcileTimeoutError",
    "Reconciler",
    "ResourceKey",
    "ResourceKind",
    "ResourceStore",
    "StatusReporter",
    "StoreUnavailableError",
    "TopicStateReader",
    "WatchDispatcher",
    "WatchEvent",
    "WorkQueue",
    "compute_desired_state",
    "consumer_scaler_crd",
    "install_crd",
]
