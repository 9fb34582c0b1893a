"""
Operator runtime.

Wires the resource store, work queue, watch dispatcher and reconciler
together and runs them as asyncio tasks: one watch loop, one periodic
resync loop and a fixed pool of reconcile workers.
"""

import asyncio
import logging
from contextlib import aclosing

from ..config import OperatorConfig
from ..observability.metrics import OperatorMetrics, get_operator_metrics, start_metrics_server
from ..resilience.retry import BackoffPolicy
from .crd import install_crd
from .dispatcher import WATCHED_KINDS, WatchDispatcher
from .errors import ReconcileError
from .models import ResourceKind
from .reconciler import Reconciler
from .store import KubernetesResourceStore, ResourceStore
from .workqueue import WorkQueue

logger = logging.getLogger(__name__)

WATCH_RESTART_DELAY = 5.0


class ConsumerScalerOperator:
    """Kubernetes operator for ConsumerScaler resources."""

    def __init__(
        self,
        config: OperatorConfig,
        store: ResourceStore | None = None,
        metrics: OperatorMetrics | None = None,
    ):
        self.config = config
        self.namespace = config.kubernetes.namespace or None
        self.metrics = metrics or get_operator_metrics()

        self.store = store or KubernetesResourceStore(
            kubeconfig_path=config.kubernetes.kubeconfig_path,
            in_cluster=config.kubernetes.in_cluster,
            watch_timeout_seconds=config.kubernetes.watch_timeout_seconds,
        )
        self.queue = WorkQueue(BackoffPolicy(config.backoff.to_backoff_config()), self.metrics)
        self.dispatcher = WatchDispatcher(self.queue, self.metrics)
        self.reconciler = Reconciler(
            self.store,
            self.queue,
            cycle_timeout=config.reconciler.cycle_timeout_seconds,
            metric_name=config.reconciler.metric_name,
            source_metric=config.reconciler.source_metric,
            metrics=self.metrics,
        )

        self.running = False
        self._tasks: list[asyncio.Task] = []

    async def setup(self) -> None:
        """Install the CRD when configured to."""
        if self.config.kubernetes.install_crd:
            await install_crd()

    async def start(self) -> None:
        """Start the operator and run until stopped."""
        self.running = True
        scope = self.namespace or "all namespaces"
        logger.info(f"Starting consumer autoscaler operator ({scope}, {self.config.reconciler.workers} workers)")

        if self.config.monitoring.enabled:
            start_metrics_server(self.config.monitoring.metrics_port, self.metrics.registry)

        self._tasks = [
            asyncio.create_task(self._watch_loop(), name="watch"),
            asyncio.create_task(self._resync_loop(), name="resync"),
        ]
        self._tasks.extend(
            asyncio.create_task(self.reconciler.run_worker(worker_id), name=f"worker-{worker_id}")
            for worker_id in range(self.config.reconciler.workers)
        )

        await asyncio.gather(*self._tasks, return_exceptions=True)

    async def stop(self) -> None:
        """Stop the operator."""
        if not self.running:
            return
        self.running = False
        logger.info("Stopping consumer autoscaler operator")

        self.queue.shutdown()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def resync(self) -> int:
        """List every ConsumerScaler, rebuild the topic index and enqueue them all."""
        primaries = await self.store.list(ResourceKind.CONSUMER_SCALER, self.namespace)
        keys = self.dispatcher.resync(primaries)
        for key in keys:
            self.queue.add(key)
        logger.debug(f"Resync queued {len(keys)} ConsumerScalers")
        return len(keys)

    async def _watch_loop(self) -> None:
        """Feed watch events to the dispatcher, restarting the stream after errors."""
        while self.running:
            try:
                async with aclosing(self.store.watch(WATCHED_KINDS, self.namespace)) as events:
                    await self.dispatcher.run(events)
            except Exception as e:
                logger.error(f"Watch error: {e}")

            if self.running:
                await asyncio.sleep(WATCH_RESTART_DELAY)

    async def _resync_loop(self) -> None:
        """Periodic full resync; the watch is only a latency optimisation."""
        interval = self.config.reconciler.resync_interval_seconds
        while self.running:
            try:
                await self.resync()
            except ReconcileError as e:
                logger.error(f"Resync failed: {e.status_message()}")
                await asyncio.sleep(min(interval, WATCH_RESTART_DELAY))
                continue
            except Exception:
                logger.exception("Unexpected error during resync")
                await asyncio.sleep(min(interval, WATCH_RESTART_DELAY))
                continue

            await asyncio.sleep(interval)
