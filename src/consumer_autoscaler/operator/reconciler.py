"""
Reconciler.

One reconcile cycle drives a single ConsumerScaler key through

    Fetching -> Calculating -> Diffing -> Applying -> ReportingStatus -> Done

with Failed reachable from any state. The cycle reads a snapshot (primary,
topic, children, pods) up front, computes the desired children, writes only
the children that differ, and reports status. Every error is caught at the
cycle boundary and turned into a status message plus a retry decision:
transient kinds are requeued with per-key backoff, InvalidSpec waits for the
next edit of the ConsumerScaler.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from opentelemetry import trace

from ..observability.metrics import OperatorMetrics
from .calculator import DEFAULT_METRIC_NAME, DEFAULT_SOURCE_METRIC, DesiredState, compute_desired_state
from .children import APPLY_ORDER, HANDLERS, ChildKind
from .errors import (
    DependencyNotReadyError,
    PartialApplyFailureError,
    ReconcileError,
    ReconcileTimeoutError,
    StoreUnavailableError,
)
from .models import ConsumerScaler, ConsumerScalerStatus, ResourceKey, ResourceKind
from .status import COMPLETED_MESSAGE, StatusReporter, build_status, carry_over_status
from .store import ResourceStore
from .topics import TopicStateReader
from .workqueue import WorkQueue

logger = logging.getLogger(__name__)


class CycleState(Enum):
    """States of one reconcile cycle."""

    FETCHING = "Fetching"
    CALCULATING = "Calculating"
    DIFFING = "Diffing"
    APPLYING = "Applying"
    REPORTING_STATUS = "ReportingStatus"
    DONE = "Done"
    FAILED = "Failed"


@dataclass
class CycleResult:
    """Outcome of one reconcile cycle."""

    key: ResourceKey
    state: CycleState = CycleState.FETCHING
    error: ReconcileError | None = None
    writes: int = 0
    requeue_after: float | None = None
    transitions: list[CycleState] = field(default_factory=list)

    def transition(self, state: CycleState) -> None:
        self.state = state
        self.transitions.append(state)

    @property
    def succeeded(self) -> bool:
        return self.state == CycleState.DONE


@dataclass(frozen=True)
class ChildChange:
    """A create or update the cycle has to issue for one child."""

    kind: ChildKind
    operation: str
    body: dict[str, Any]

    @property
    def resource_kind(self) -> ResourceKind:
        return HANDLERS[self.kind].resource_kind


@dataclass
class _Snapshot:
    primary: dict[str, Any] | None = None
    previous_status: ConsumerScalerStatus | None = None
    scaler: ConsumerScaler | None = None
    children_fetched: bool = False
    deployment: dict[str, Any] | None = None
    pods: list[str] = field(default_factory=list)
    status_reported: bool = False


def plan_changes(
    scaler: ConsumerScaler,
    desired: DesiredState,
    live: dict[ChildKind, dict[str, Any] | None],
) -> list[ChildChange]:
    """Creates and updates needed to move live children to desired, in apply order."""
    changes = []
    for kind in APPLY_ORDER:
        handler = HANDLERS[kind]
        want = handler.desired(desired)
        current = live.get(kind)

        if current is None:
            changes.append(ChildChange(kind, "create", handler.render(want, scaler)))
        elif handler.extract(current) != want:
            changes.append(ChildChange(kind, "update", handler.merge(current, want, scaler)))

    return changes


class Reconciler:
    """Runs reconcile cycles for keys pulled from the work queue."""

    def __init__(
        self,
        store: ResourceStore,
        queue: WorkQueue,
        topics: TopicStateReader | None = None,
        reporter: StatusReporter | None = None,
        cycle_timeout: float = 30.0,
        metric_name: str = DEFAULT_METRIC_NAME,
        source_metric: str = DEFAULT_SOURCE_METRIC,
        metrics: OperatorMetrics | None = None,
        tracer: trace.Tracer | None = None,
    ):
        self.store = store
        self.queue = queue
        self.topics = topics or TopicStateReader(store)
        self.reporter = reporter or StatusReporter(store, metrics)
        self.cycle_timeout = cycle_timeout
        self.metric_name = metric_name
        self.source_metric = source_metric
        self.metrics = metrics
        self.tracer = tracer or trace.get_tracer(__name__)

    async def run_worker(self, worker_id: int = 0) -> None:
        """Pull keys until the queue shuts down."""
        logger.debug(f"Reconcile worker {worker_id} started")
        while True:
            key = await self.queue.get()
            if key is None:
                break
            try:
                await self.reconcile(key)
            finally:
                self.queue.done(key)
        logger.debug(f"Reconcile worker {worker_id} stopped")

    async def reconcile(self, key: ResourceKey) -> CycleResult:
        """Run one cycle for key and schedule its retry if it failed.

        Never raises for reconcile failures; they are reported on the
        ConsumerScaler status and in the returned CycleResult.
        """
        result = CycleResult(key)
        snapshot = _Snapshot()
        started = time.perf_counter()

        with self.tracer.start_as_current_span("reconcile") as span:
            span.set_attribute("consumerscaler.key", str(key))
            try:
                await asyncio.wait_for(self._run_cycle(key, result, snapshot), timeout=self.cycle_timeout)
            except asyncio.TimeoutError:
                error = ReconcileTimeoutError(
                    f"reconcile of {key} exceeded {self.cycle_timeout}s deadline", self.cycle_timeout
                )
                await self._fail(result, snapshot, error)
            except ReconcileError as e:
                await self._fail(result, snapshot, e)
            except Exception as e:
                logger.exception(f"Unexpected error reconciling {key}")
                await self._fail(result, snapshot, StoreUnavailableError(f"unexpected error: {e}"))

            self._schedule(result)
            span.set_attribute("reconcile.outcome", result.state.value)
            if result.error:
                span.set_attribute("reconcile.error_kind", result.error.kind.value)

        self._record(result, time.perf_counter() - started)
        return result

    async def _run_cycle(self, key: ResourceKey, result: CycleResult, snapshot: _Snapshot) -> None:
        result.transition(CycleState.FETCHING)
        primary = await self.store.get(ResourceKind.CONSUMER_SCALER, key)
        if primary is None:
            # deleted; owned children go with it through the store's cascade
            logger.info(f"ConsumerScaler {key} not found; nothing to reconcile")
            result.transition(CycleState.DONE)
            return

        snapshot.primary = primary
        snapshot.previous_status = ConsumerScalerStatus.from_dict(primary.get("status"))
        scaler = ConsumerScaler.from_object(primary)
        snapshot.scaler = scaler

        topic = await self.topics.get_partition_count(scaler.namespace, scaler.consumer.topic_name)
        if not topic.ready:
            raise DependencyNotReadyError(f"KafkaTopic {topic.key} is not ready")
        if topic.partition_count is None:
            raise DependencyNotReadyError(f"KafkaTopic {topic.key} reports no partition count")

        live: dict[ChildKind, dict[str, Any] | None] = {}
        for kind in APPLY_ORDER:
            handler = HANDLERS[kind]
            live[kind] = await self.store.get(handler.resource_kind, handler.key_for(scaler))
        snapshot.deployment = live[ChildKind.DEPLOYMENT]
        snapshot.pods = await self._active_pods(scaler, snapshot.deployment)
        snapshot.children_fetched = True

        result.transition(CycleState.CALCULATING)
        desired = compute_desired_state(
            scaler,
            topic.partition_count,
            metric_name=self.metric_name,
            source_metric=self.source_metric,
        )

        result.transition(CycleState.DIFFING)
        changes = plan_changes(scaler, desired, live)

        result.transition(CycleState.APPLYING)
        failures: list[tuple[str, ReconcileError]] = []
        for change in changes:
            try:
                await self._apply(change)
                result.writes += 1
            except ReconcileError as e:
                logger.warning(f"Failed to {change.operation} {change.kind.value} for {key}: {e.message}")
                failures.append((change.kind.value, e))
        error = self._aggregate(failures, len(changes))

        result.transition(CycleState.REPORTING_STATUS)
        message = error.status_message() if error else COMPLETED_MESSAGE
        status = build_status(scaler.min_replicas, snapshot.deployment, snapshot.pods, message)
        if await self.reporter.report(primary, status):
            result.writes += 1
        snapshot.status_reported = True

        if error:
            raise error
        result.transition(CycleState.DONE)
        logger.debug(f"Reconciled {key} with {result.writes} writes")

    async def _active_pods(self, scaler: ConsumerScaler, deployment: dict[str, Any] | None) -> list[str]:
        if deployment is None:
            return []
        selector = ((deployment.get("spec") or {}).get("selector") or {}).get("matchLabels") or {"app": scaler.name}
        return await self.store.list_pod_names(scaler.namespace, selector)

    async def _apply(self, change: ChildChange) -> None:
        if change.operation == "create":
            await self.store.create(change.resource_kind, change.body)
        else:
            await self.store.update(change.resource_kind, change.body)

        if self.metrics:
            self.metrics.store_writes.labels(kind=change.resource_kind.value, operation=change.operation).inc()

    @staticmethod
    def _aggregate(failures: list[tuple[str, ReconcileError]], attempted: int) -> ReconcileError | None:
        if not failures:
            return None
        first = failures[0][1]
        if len(failures) == attempted:
            return first
        failed = ", ".join(kind for kind, _ in failures)
        return PartialApplyFailureError(
            f"{len(failures)} of {attempted} child applies failed ({failed}): {first.message}",
            failures,
        )

    async def _fail(self, result: CycleResult, snapshot: _Snapshot, error: ReconcileError) -> None:
        result.transition(CycleState.FAILED)
        result.error = error
        log = logger.warning if error.transient else logger.error
        log(f"Reconcile of {result.key} failed: {error.status_message()}")

        if snapshot.primary is None or snapshot.status_reported:
            return

        fallback = snapshot.scaler.min_replicas if snapshot.scaler else 0
        if snapshot.children_fetched:
            status = build_status(fallback, snapshot.deployment, snapshot.pods, error.status_message())
        else:
            status = carry_over_status(snapshot.previous_status, fallback, error.status_message())

        try:
            if await asyncio.wait_for(self.reporter.report(snapshot.primary, status), timeout=self.cycle_timeout):
                result.writes += 1
        except (ReconcileError, asyncio.TimeoutError) as e:
            logger.warning(f"Could not write failure status for {result.key}: {e}")

    def _schedule(self, result: CycleResult) -> None:
        if result.error is not None and result.error.transient:
            result.requeue_after = self.queue.add_rate_limited(result.key)
        else:
            self.queue.forget(result.key)

    def _record(self, result: CycleResult, duration: float) -> None:
        if not self.metrics:
            return
        error_kind = result.error.kind.value if result.error else ""
        self.metrics.reconcile_total.labels(outcome=result.state.value, error_kind=error_kind).inc()
        self.metrics.reconcile_duration.observe(duration)
