"""
Unit tests for the reconcile cycle.

Drives the Reconciler against the in-memory store and checks the state
machine, the writes it issues, the status it reports and the retry it
schedules.
"""

import asyncio

import pytest
from kubernetes.client.rest import ApiException

from consumer_autoscaler.operator.errors import (
    ConflictError,
    ErrorKind,
    StoreUnavailableError,
)
from consumer_autoscaler.operator.models import ResourceKey, ResourceKind
from consumer_autoscaler.operator.reconciler import CycleState, Reconciler
from consumer_autoscaler.operator.store import translate_api_exception

KEY = ResourceKey("default", "consumer")
DEPLOYMENT_KEY = ResourceKey("default", "consumer")
RULE_KEY = ResourceKey("default", "consumer-lag")
HPA_KEY = ResourceKey("default", "consumer-hpa")


def writes_since(store, mark):
    return [(operation, kind) for operation, kind, _ in store.writes[mark:]]


@pytest.fixture
def seeded(store, make_scaler, make_topic):
    """Scenario A inputs: minReplicas=1, lagThreshold=1000, one ready partition."""
    store.put(ResourceKind.KAFKA_TOPIC, make_topic(partitions=1))
    store.put(ResourceKind.CONSUMER_SCALER, make_scaler(min_replicas=1, lag_threshold=1000))
    return store


@pytest.mark.unit
class TestReconcileCycle:
    """Happy-path cycles."""

    @pytest.mark.asyncio
    async def test_first_cycle_creates_children_in_order(self, seeded, reconciler):
        """Scenario A: children are created and the autoscaler follows the topic."""
        result = await reconciler.reconcile(KEY)

        assert result.state == CycleState.DONE
        assert result.error is None
        assert result.transitions == [
            CycleState.FETCHING,
            CycleState.CALCULATING,
            CycleState.DIFFING,
            CycleState.APPLYING,
            CycleState.REPORTING_STATUS,
            CycleState.DONE,
        ]
        assert writes_since(seeded, 0) == [
            ("create", ResourceKind.DEPLOYMENT),
            ("create", ResourceKind.PROMETHEUS_RULE),
            ("create", ResourceKind.HORIZONTAL_POD_AUTOSCALER),
            ("update_status", ResourceKind.CONSUMER_SCALER),
        ]
        assert result.writes == 4

        hpa = seeded.object(ResourceKind.HORIZONTAL_POD_AUTOSCALER, HPA_KEY)
        assert hpa["spec"]["minReplicas"] == 1
        assert hpa["spec"]["maxReplicas"] == 1
        assert hpa["spec"]["metrics"][0]["external"]["target"]["averageValue"] == "1000"
        assert hpa["spec"]["scaleTargetRef"]["name"] == "consumer"

        deployment = seeded.object(ResourceKind.DEPLOYMENT, DEPLOYMENT_KEY)
        assert deployment["spec"]["replicas"] == 1
        owner = deployment["metadata"]["ownerReferences"][0]
        assert owner["kind"] == "ConsumerScaler"
        assert owner["controller"] is True

        status = seeded.object(ResourceKind.CONSUMER_SCALER, KEY)["status"]
        assert status == {"replicas": 1, "activePods": [], "message": "Reconciliation completed"}

    @pytest.mark.asyncio
    async def test_second_cycle_without_changes_writes_nothing(self, seeded, reconciler):
        """Reconciling twice in a row is idempotent."""
        await reconciler.reconcile(KEY)
        mark = len(seeded.writes)

        result = await reconciler.reconcile(KEY)

        assert result.state == CycleState.DONE
        assert result.writes == 0
        assert writes_since(seeded, mark) == []

    @pytest.mark.asyncio
    async def test_partition_increase_updates_only_scaling_policy(self, seeded, reconciler, make_topic):
        """Scenario B: one update, for the autoscaler only."""
        await reconciler.reconcile(KEY)
        mark = len(seeded.writes)
        seeded.put(ResourceKind.KAFKA_TOPIC, make_topic(partitions=3))

        result = await reconciler.reconcile(KEY)

        assert result.state == CycleState.DONE
        assert writes_since(seeded, mark) == [("update", ResourceKind.HORIZONTAL_POD_AUTOSCALER)]
        hpa = seeded.object(ResourceKind.HORIZONTAL_POD_AUTOSCALER, HPA_KEY)
        assert hpa["spec"]["maxReplicas"] == 3
        assert hpa["spec"]["minReplicas"] == 1

    @pytest.mark.asyncio
    async def test_partition_decrease_lowers_bound_without_scaling_down(self, store, reconciler, make_scaler, make_topic):
        """Running replicas are left to the autoscaler when partitions shrink."""
        store.put(ResourceKind.KAFKA_TOPIC, make_topic(partitions=3))
        store.put(ResourceKind.CONSUMER_SCALER, make_scaler(min_replicas=1))
        await reconciler.reconcile(KEY)

        # the autoscaler scaled the consumer out to three replicas
        deployment = store.object(ResourceKind.DEPLOYMENT, DEPLOYMENT_KEY)
        deployment["spec"]["replicas"] = 3
        deployment["status"] = {"replicas": 3}
        store.put(ResourceKind.DEPLOYMENT, deployment)
        store.put(ResourceKind.KAFKA_TOPIC, make_topic(partitions=1))
        mark = len(store.writes)

        result = await reconciler.reconcile(KEY)

        assert result.state == CycleState.DONE
        hpa = store.object(ResourceKind.HORIZONTAL_POD_AUTOSCALER, HPA_KEY)
        assert hpa["spec"]["maxReplicas"] == 1
        assert store.object(ResourceKind.DEPLOYMENT, DEPLOYMENT_KEY)["spec"]["replicas"] == 3
        assert ("update", ResourceKind.DEPLOYMENT) not in writes_since(store, mark)

    @pytest.mark.asyncio
    async def test_partition_count_below_min_replicas_is_clamped(self, store, reconciler, make_scaler, make_topic):
        store.put(ResourceKind.KAFKA_TOPIC, make_topic(partitions=1))
        store.put(ResourceKind.CONSUMER_SCALER, make_scaler(min_replicas=3))

        await reconciler.reconcile(KEY)

        hpa = store.object(ResourceKind.HORIZONTAL_POD_AUTOSCALER, HPA_KEY)
        assert hpa["spec"]["minReplicas"] == 3
        assert hpa["spec"]["maxReplicas"] == 3

    @pytest.mark.asyncio
    async def test_drifted_child_is_restored(self, seeded, reconciler):
        await reconciler.reconcile(KEY)
        hpa = seeded.object(ResourceKind.HORIZONTAL_POD_AUTOSCALER, HPA_KEY)
        hpa["spec"]["maxReplicas"] = 10
        seeded.put(ResourceKind.HORIZONTAL_POD_AUTOSCALER, hpa)

        await reconciler.reconcile(KEY)

        assert seeded.object(ResourceKind.HORIZONTAL_POD_AUTOSCALER, HPA_KEY)["spec"]["maxReplicas"] == 1

    @pytest.mark.asyncio
    async def test_status_reports_live_replicas_and_pods(self, seeded, reconciler):
        await reconciler.reconcile(KEY)
        deployment = seeded.object(ResourceKind.DEPLOYMENT, DEPLOYMENT_KEY)
        deployment["status"] = {"replicas": 2}
        seeded.put(ResourceKind.DEPLOYMENT, deployment)
        seeded.add_pod("default", "consumer-b", {"app": "consumer"})
        seeded.add_pod("default", "consumer-a", {"app": "consumer"})
        seeded.add_pod("default", "consumer-old", {"app": "consumer"}, terminating=True)
        seeded.add_pod("default", "other", {"app": "other"})

        await reconciler.reconcile(KEY)

        status = seeded.object(ResourceKind.CONSUMER_SCALER, KEY)["status"]
        assert status["replicas"] == 2
        assert status["activePods"] == ["consumer-a", "consumer-b"]

    @pytest.mark.asyncio
    async def test_success_forgets_previous_failures(self, seeded, reconciler, queue):
        queue.add_rate_limited(KEY)
        assert queue.num_requeues(KEY) == 1

        await reconciler.reconcile(KEY)

        assert queue.num_requeues(KEY) == 0


@pytest.mark.unit
class TestReconcileFailures:
    """Failed cycles, their status and their retry."""

    @pytest.mark.asyncio
    async def test_deleted_primary_ends_done_without_writes(self, store, reconciler, queue):
        """Scenario D: nothing to do once the ConsumerScaler is gone."""
        queue.add(KEY)

        result = await reconciler.reconcile(KEY)

        assert result.state == CycleState.DONE
        assert result.transitions == [CycleState.FETCHING, CycleState.DONE]
        assert result.writes == 0
        assert store.writes == []
        assert result.requeue_after is None

    @pytest.mark.asyncio
    async def test_missing_topic_fails_and_retries_after_backoff(self, store, reconciler, queue, make_scaler):
        """Scenario C: DependencyMissing is reported and retried later, not now."""
        store.put(ResourceKind.CONSUMER_SCALER, make_scaler())

        result = await reconciler.reconcile(KEY)

        assert result.state == CycleState.FAILED
        assert result.error.kind == ErrorKind.DEPENDENCY_MISSING
        status = store.object(ResourceKind.CONSUMER_SCALER, KEY)["status"]
        assert status["message"].startswith("[DependencyMissing]")
        assert [op for op, _, _ in store.writes] == ["update_status"]

        assert result.requeue_after == pytest.approx(0.05)
        assert KEY not in queue
        assert queue.is_waiting(KEY)

        await asyncio.sleep(result.requeue_after + 0.05)
        assert KEY in queue

    @pytest.mark.asyncio
    async def test_consecutive_failures_back_off_further(self, store, reconciler, make_scaler):
        store.put(ResourceKind.CONSUMER_SCALER, make_scaler())

        first = await reconciler.reconcile(KEY)
        second = await reconciler.reconcile(KEY)

        assert second.requeue_after > first.requeue_after

    @pytest.mark.asyncio
    async def test_topic_not_ready_is_transient(self, store, reconciler, make_scaler, make_topic):
        store.put(ResourceKind.KAFKA_TOPIC, make_topic(ready=False))
        store.put(ResourceKind.CONSUMER_SCALER, make_scaler())

        result = await reconciler.reconcile(KEY)

        assert result.error.kind == ErrorKind.DEPENDENCY_NOT_READY
        assert result.requeue_after is not None
        assert store.object(ResourceKind.DEPLOYMENT, DEPLOYMENT_KEY) is None

    @pytest.mark.asyncio
    async def test_ready_topic_without_partitions_is_not_ready(self, store, reconciler, make_scaler, make_topic):
        store.put(ResourceKind.KAFKA_TOPIC, make_topic(partitions=None))
        store.put(ResourceKind.CONSUMER_SCALER, make_scaler())

        result = await reconciler.reconcile(KEY)

        assert result.error.kind == ErrorKind.DEPENDENCY_NOT_READY

    @pytest.mark.asyncio
    async def test_invalid_spec_is_terminal(self, store, reconciler, queue, make_scaler, make_topic):
        store.put(ResourceKind.KAFKA_TOPIC, make_topic())
        store.put(ResourceKind.CONSUMER_SCALER, make_scaler(min_replicas=0))
        queue.add_rate_limited(KEY)

        result = await reconciler.reconcile(KEY)

        assert result.state == CycleState.FAILED
        assert result.error.kind == ErrorKind.INVALID_SPEC
        assert result.requeue_after is None
        assert queue.num_requeues(KEY) == 0
        assert [kind for _, kind, _ in store.writes] == [ResourceKind.CONSUMER_SCALER]
        status = store.object(ResourceKind.CONSUMER_SCALER, KEY)["status"]
        assert status["message"].startswith("[InvalidSpec]")
        assert "minReplicas" in status["message"]

    @pytest.mark.asyncio
    async def test_failed_child_does_not_block_the_others(self, seeded, reconciler):
        seeded.fail("create", ResourceKind.PROMETHEUS_RULE, StoreUnavailableError("rules API down"))

        result = await reconciler.reconcile(KEY)

        assert result.state == CycleState.FAILED
        assert result.error.kind == ErrorKind.PARTIAL_APPLY_FAILURE
        assert [kind for kind, _ in result.error.failures] == ["MetricsBinding"]
        assert seeded.object(ResourceKind.DEPLOYMENT, DEPLOYMENT_KEY) is not None
        assert seeded.object(ResourceKind.HORIZONTAL_POD_AUTOSCALER, HPA_KEY) is not None
        assert result.requeue_after is not None

        status = seeded.object(ResourceKind.CONSUMER_SCALER, KEY)["status"]
        assert status["message"].startswith("[PartialApplyFailure]")
        assert "rules API down" in status["message"]

    @pytest.mark.asyncio
    async def test_partial_failure_converges_on_retry(self, seeded, reconciler):
        seeded.fail("create", ResourceKind.PROMETHEUS_RULE, StoreUnavailableError("rules API down"))
        await reconciler.reconcile(KEY)
        seeded.failures.clear()
        mark = len(seeded.writes)

        result = await reconciler.reconcile(KEY)

        assert result.state == CycleState.DONE
        assert writes_since(seeded, mark) == [
            ("create", ResourceKind.PROMETHEUS_RULE),
            ("update_status", ResourceKind.CONSUMER_SCALER),
        ]
        status = seeded.object(ResourceKind.CONSUMER_SCALER, KEY)["status"]
        assert status["message"] == "Reconciliation completed"

    @pytest.mark.asyncio
    async def test_zero_lag_threshold_rejected_by_api_server_is_retried(
        self, store, reconciler, make_scaler, make_topic
    ):
        store.put(ResourceKind.KAFKA_TOPIC, make_topic(partitions=2))
        store.put(ResourceKind.CONSUMER_SCALER, make_scaler(lag_threshold=0))
        rejected = translate_api_exception(
            ApiException(status=422, reason="Unprocessable Entity"),
            "create",
            ResourceKind.HORIZONTAL_POD_AUTOSCALER,
            HPA_KEY,
        )
        store.fail("create", ResourceKind.HORIZONTAL_POD_AUTOSCALER, rejected)

        result = await reconciler.reconcile(KEY)

        assert result.error.kind == ErrorKind.PARTIAL_APPLY_FAILURE
        assert result.requeue_after is not None
        assert store.object(ResourceKind.DEPLOYMENT, DEPLOYMENT_KEY) is not None
        assert store.object(ResourceKind.HORIZONTAL_POD_AUTOSCALER, HPA_KEY) is None
        message = store.object(ResourceKind.CONSUMER_SCALER, KEY)["status"]["message"]
        assert message.startswith("[PartialApplyFailure]")
        assert "422" in message

    @pytest.mark.asyncio
    async def test_conflict_on_only_write_is_reported_as_conflict(self, seeded, reconciler, make_topic):
        await reconciler.reconcile(KEY)
        seeded.put(ResourceKind.KAFKA_TOPIC, make_topic(partitions=3))
        seeded.fail("update", ResourceKind.HORIZONTAL_POD_AUTOSCALER, ConflictError("stale resourceVersion"))

        result = await reconciler.reconcile(KEY)

        assert result.error.kind == ErrorKind.CONFLICT
        assert result.error.transient
        assert result.requeue_after is not None

    @pytest.mark.asyncio
    async def test_deadline_fails_cycle_with_timeout(self, seeded, queue, metrics):
        seeded.delays[("get", ResourceKind.KAFKA_TOPIC)] = 1.0
        reconciler = Reconciler(seeded, queue, cycle_timeout=0.1, metrics=metrics)

        result = await reconciler.reconcile(KEY)

        assert result.state == CycleState.FAILED
        assert result.error.kind == ErrorKind.TIMEOUT
        assert result.requeue_after is not None
        status = seeded.object(ResourceKind.CONSUMER_SCALER, KEY)["status"]
        assert status["message"].startswith("[Timeout]")

    @pytest.mark.asyncio
    async def test_store_outage_on_fetch_is_retried_without_status(self, seeded, reconciler):
        seeded.fail("get", ResourceKind.CONSUMER_SCALER, StoreUnavailableError("connection refused"))

        result = await reconciler.reconcile(KEY)

        assert result.error.kind == ErrorKind.STORE_UNAVAILABLE
        assert result.requeue_after is not None
        assert seeded.writes == []

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_treated_as_store_unavailable(self, seeded, reconciler):
        seeded.fail("get", ResourceKind.KAFKA_TOPIC, RuntimeError("boom"))

        result = await reconciler.reconcile(KEY)

        assert result.error.kind == ErrorKind.STORE_UNAVAILABLE
        assert "boom" in result.error.message
        assert result.requeue_after is not None

    @pytest.mark.asyncio
    async def test_failed_status_write_still_schedules_retry(self, store, reconciler, make_scaler):
        store.put(ResourceKind.CONSUMER_SCALER, make_scaler())
        store.fail("update_status", ResourceKind.CONSUMER_SCALER, StoreUnavailableError("status API down"))

        result = await reconciler.reconcile(KEY)

        assert result.error.kind == ErrorKind.DEPENDENCY_MISSING
        assert result.requeue_after is not None

    @pytest.mark.asyncio
    async def test_early_failure_keeps_previous_status_fields(self, seeded, reconciler):
        await reconciler.reconcile(KEY)
        deployment = seeded.object(ResourceKind.DEPLOYMENT, DEPLOYMENT_KEY)
        deployment["status"] = {"replicas": 2}
        seeded.put(ResourceKind.DEPLOYMENT, deployment)
        seeded.add_pod("default", "consumer-a", {"app": "consumer"})
        await reconciler.reconcile(KEY)
        seeded.remove(ResourceKind.KAFKA_TOPIC, ResourceKey("default", "fast-data-topic"))

        await reconciler.reconcile(KEY)

        status = seeded.object(ResourceKind.CONSUMER_SCALER, KEY)["status"]
        assert status["replicas"] == 2
        assert status["activePods"] == ["consumer-a"]
        assert status["message"].startswith("[DependencyMissing]")

    @pytest.mark.asyncio
    async def test_repeated_failure_does_not_rewrite_status(self, store, reconciler, make_scaler):
        store.put(ResourceKind.CONSUMER_SCALER, make_scaler())
        await reconciler.reconcile(KEY)
        mark = len(store.writes)

        await reconciler.reconcile(KEY)

        assert writes_since(store, mark) == []


@pytest.mark.unit
class TestReconcileMetrics:
    @pytest.mark.asyncio
    async def test_cycle_outcomes_and_writes_are_counted(self, seeded, reconciler, metrics):
        await reconciler.reconcile(KEY)
        await reconciler.reconcile(ResourceKey("default", "missing"))

        registry = metrics.registry
        assert registry.get_sample_value(
            "consumer_autoscaler_reconcile_total", {"outcome": "Done", "error_kind": ""}
        ) == 2
        assert registry.get_sample_value(
            "consumer_autoscaler_store_writes_total",
            {"kind": "HorizontalPodAutoscaler", "operation": "create"},
        ) == 1
        assert registry.get_sample_value(
            "consumer_autoscaler_store_writes_total",
            {"kind": "ConsumerScaler", "operation": "update_status"},
        ) == 1
        assert registry.get_sample_value("consumer_autoscaler_reconcile_duration_seconds_count") == 2


@pytest.mark.unit
class TestWorkers:
    @pytest.mark.asyncio
    async def test_follow_up_requests_coalesce_into_one_cycle(self, reconciler, queue):
        """N enqueues during an in-flight cycle give exactly one follow-up."""
        calls = []
        in_flight = set()
        started = asyncio.Event()
        release = asyncio.Event()

        async def fake_reconcile(key):
            assert key not in in_flight
            in_flight.add(key)
            calls.append(key)
            started.set()
            await release.wait()
            in_flight.discard(key)

        reconciler.reconcile = fake_reconcile
        workers = [asyncio.create_task(reconciler.run_worker(worker_id)) for worker_id in range(2)]

        queue.add(KEY)
        await started.wait()
        for _ in range(5):
            queue.add(KEY)
        await asyncio.sleep(0.02)
        assert calls == [KEY]

        release.set()
        await asyncio.sleep(0.05)
        assert calls == [KEY, KEY]

        queue.shutdown()
        await asyncio.wait_for(asyncio.gather(*workers), timeout=1.0)

    @pytest.mark.asyncio
    async def test_distinct_keys_run_in_parallel(self, reconciler, queue):
        other = ResourceKey("default", "other")
        running = set()
        both_running = asyncio.Event()
        release = asyncio.Event()

        async def fake_reconcile(key):
            running.add(key)
            if len(running) == 2:
                both_running.set()
            await release.wait()

        reconciler.reconcile = fake_reconcile
        workers = [asyncio.create_task(reconciler.run_worker(worker_id)) for worker_id in range(2)]

        queue.add(KEY)
        queue.add(other)
        await asyncio.wait_for(both_running.wait(), timeout=1.0)

        release.set()
        queue.shutdown()
        await asyncio.wait_for(asyncio.gather(*workers), timeout=1.0)
