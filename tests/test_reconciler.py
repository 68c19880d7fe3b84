"""
Tests for the PodRightSizing reconciler
"""
import asyncio
from datetime import timedelta

import pytest
from kubernetes import client

from rightsizer.controller.reconciler import (
    PolicyReconciler,
    analysis_interval,
    analysis_window,
    requeue_interval,
)
from rightsizer.core.exceptions import ReconcileError
from rightsizer.models.resource_models import RightSizingPolicy

from conftest import build_deployment, build_pod, build_pod_metrics, build_policy, build_replica_set


def _policy(**spec_overrides) -> RightSizingPolicy:
    spec = {"target": {"namespace": "default"}}
    spec.update(spec_overrides)
    return RightSizingPolicy.from_k8s(build_policy(spec=spec))


@pytest.fixture
def reconciler(k8s_client, metrics_factory, clock):
    return PolicyReconciler(k8s_client, metrics_factory, clock=clock)


class TestIntervals:
    """Tests for analysis timing helpers"""

    def test_long_window_runs_every_window_over_24(self):
        """A 7d window is analyzed every 7 hours"""
        assert analysis_interval(_policy(analysisWindow="7d")) == timedelta(hours=7)

    def test_short_window_runs_hourly(self):
        assert analysis_interval(_policy(analysisWindow="6h")) == timedelta(hours=1)

    def test_unparseable_window_falls_back_to_daily(self):
        assert analysis_interval(_policy(analysisWindow="soon")) == timedelta(hours=24)

    def test_requeue_interval(self):
        assert requeue_interval(_policy(analysisWindow="7d")) == timedelta(hours=24)
        assert requeue_interval(_policy(analysisWindow="2h")) == timedelta(hours=1)

    def test_analysis_window_default(self):
        assert analysis_window(_policy(analysisWindow="bogus")) == timedelta(days=7)
        assert analysis_window(_policy(analysisWindow="36h")) == timedelta(hours=36)


class TestDryRun:
    """Dry-run policies record recommendations without touching workloads"""

    @pytest.mark.asyncio
    async def test_dry_run_records_recommendations(self, reconciler, k8s_client):
        spec = build_policy()["spec"]
        spec["dryRun"] = True
        k8s_client.add_policy(build_policy(spec=spec))

        result = await reconciler.reconcile("default", "web-rightsizing")

        status = k8s_client.policy("default", "web-rightsizing")["status"]
        assert status["phase"] == "Completed"
        assert status["message"].endswith("(dry-run mode)")
        assert status["targetedPods"] == 3
        assert status["updatedPods"] == 0
        assert len(status["recommendations"]) == 3
        assert all(r["applied"] is False for r in status["recommendations"])
        assert "lastAnalysisTime" in status
        assert k8s_client.deployment_writes == []
        assert result.requeue_after == timedelta(hours=24).total_seconds()

    @pytest.mark.asyncio
    async def test_dry_run_twice_never_updates(self, reconciler, k8s_client, clock):
        """A second pass after the interval is still dry-run"""
        spec = build_policy()["spec"]
        spec["dryRun"] = True
        k8s_client.add_policy(build_policy(spec=spec))

        await reconciler.reconcile("default", "web-rightsizing")
        clock.advance(timedelta(hours=2))
        await reconciler.reconcile("default", "web-rightsizing")

        status = k8s_client.policy("default", "web-rightsizing")["status"]
        assert status["updatedPods"] == 0
        assert k8s_client.deployment_writes == []
        assert k8s_client.deployments["default/web"].spec.template.spec.containers[0].resources.requests == {
            "cpu": "500m", "memory": "512Mi"
        }


class TestSchedule:
    """Tests for the analysis interval gate"""

    @pytest.mark.asyncio
    async def test_second_pass_within_interval_is_noop(self, reconciler, k8s_client):
        spec = build_policy()["spec"]
        spec["dryRun"] = True
        k8s_client.add_policy(build_policy(spec=spec))

        await reconciler.reconcile("default", "web-rightsizing")
        writes = len(k8s_client.status_writes)

        result = await reconciler.reconcile("default", "web-rightsizing")

        assert len(k8s_client.status_writes) == writes
        # 24h window: interval is 1h, nothing has elapsed
        assert result.requeue_after == pytest.approx(3600)

    @pytest.mark.asyncio
    async def test_due_after_interval(self, reconciler, k8s_client, clock):
        spec = build_policy()["spec"]
        spec["dryRun"] = True
        k8s_client.add_policy(build_policy(spec=spec))

        await reconciler.reconcile("default", "web-rightsizing")
        writes = len(k8s_client.status_writes)
        clock.advance(timedelta(hours=1))
        await reconciler.reconcile("default", "web-rightsizing")

        assert len(k8s_client.status_writes) > writes

    @pytest.mark.asyncio
    async def test_not_due_requeue_uses_remaining_time(self, reconciler, k8s_client, clock):
        spec = build_policy()["spec"]
        spec["dryRun"] = True
        k8s_client.add_policy(build_policy(spec=spec))

        await reconciler.reconcile("default", "web-rightsizing")
        clock.advance(timedelta(minutes=45))
        result = await reconciler.reconcile("default", "web-rightsizing")

        assert result.requeue_after == pytest.approx(15 * 60)


class TestApply:
    """Tests for writing recommendations back to workloads"""

    @pytest.mark.asyncio
    async def test_gradual_updates_deployment(self, reconciler, k8s_client):
        k8s_client.add_policy(build_policy())

        await reconciler.reconcile("default", "web-rightsizing")

        status = k8s_client.policy("default", "web-rightsizing")["status"]
        assert status["phase"] == "Completed"
        assert status["updatedPods"] == 1
        assert "lastUpdateTime" in status
        assert len(k8s_client.deployment_writes) == 1

        resources = k8s_client.deployments["default/web"].spec.template.spec.containers[0].resources
        assert resources.requests == status["recommendations"][0]["recommendedResources"]["requests"]
        assert resources.limits == status["recommendations"][0]["recommendedResources"]["limits"]

    @pytest.mark.asyncio
    async def test_gradual_passes_rollout_parameters(self, reconciler, k8s_client):
        spec = build_policy()["spec"]
        spec["updatePolicy"] = {"strategy": "gradual", "maxUnavailable": 1, "maxSurge": "25%"}
        k8s_client.add_policy(build_policy(spec=spec))

        await reconciler.reconcile("default", "web-rightsizing")

        strategy = k8s_client.deployments["default/web"].spec.strategy
        assert strategy.type == "RollingUpdate"
        assert strategy.rolling_update.max_unavailable == 1
        assert strategy.rolling_update.max_surge == "25%"

    @pytest.mark.asyncio
    async def test_manual_strategy_leaves_workloads(self, reconciler, k8s_client):
        spec = build_policy()["spec"]
        spec["updatePolicy"] = {"strategy": "manual"}
        k8s_client.add_policy(build_policy(spec=spec))

        await reconciler.reconcile("default", "web-rightsizing")

        status = k8s_client.policy("default", "web-rightsizing")["status"]
        assert status["phase"] == "Completed"
        assert status["updatedPods"] == 0
        assert len(status["recommendations"]) == 3
        assert k8s_client.deployment_writes == []

    @pytest.mark.asyncio
    async def test_update_failure_sets_error_phase(self, reconciler, k8s_client):
        k8s_client.add_policy(build_policy())
        k8s_client.replace_deployment_error = client.ApiException(status=422, reason="Unprocessable Entity")

        with pytest.raises(ReconcileError) as exc_info:
            await reconciler.reconcile("default", "web-rightsizing")

        assert exc_info.value.requeue_after == 300
        status = k8s_client.policy("default", "web-rightsizing")["status"]
        assert status["phase"] == "Error"
        assert "Unprocessable Entity" in status["message"]
        ready = [c for c in status["conditions"] if c["type"] == "Ready"]
        assert ready[0]["status"] == "False"

    @pytest.mark.asyncio
    async def test_error_is_retried_after_backoff(self, reconciler, k8s_client, metrics_provider, clock):
        """A failed apply is redone on the retry even though the analysis interval has not passed"""
        k8s_client.add_policy(build_policy())
        k8s_client.replace_deployment_error = client.ApiException(status=409, reason="Conflict")

        with pytest.raises(ReconcileError) as exc_info:
            await reconciler.reconcile("default", "web-rightsizing")

        k8s_client.replace_deployment_error = None
        clock.advance(timedelta(seconds=exc_info.value.requeue_after))
        calls = len(metrics_provider.calls)
        await reconciler.reconcile("default", "web-rightsizing")

        status = k8s_client.policy("default", "web-rightsizing")["status"]
        assert status["phase"] == "Completed"
        assert len(k8s_client.deployment_writes) == 1
        assert len(metrics_provider.calls) > calls


class TestFailures:
    """Tests for error handling during a pass"""

    @pytest.mark.asyncio
    async def test_missing_policy_is_noop(self, reconciler, k8s_client):
        result = await reconciler.reconcile("default", "gone")

        assert result.requeue_after is None
        assert k8s_client.status_writes == []

    @pytest.mark.asyncio
    async def test_invalid_policy(self, reconciler, k8s_client):
        k8s_client.add_policy(build_policy(spec={"target": {}}))

        with pytest.raises(ReconcileError) as exc_info:
            await reconciler.reconcile("default", "web-rightsizing")

        assert exc_info.value.requeue_after == 300
        status = k8s_client.policy("default", "web-rightsizing")["status"]
        assert status["phase"] == "Error"
        assert status["message"].startswith("Invalid policy")

    @pytest.mark.asyncio
    async def test_bad_selector_fails_discovery(self, reconciler, k8s_client):
        spec = {
            "target": {
                "namespace": "default",
                "labelSelector": {"matchExpressions": [{"key": "app", "operator": "Like", "values": ["web"]}]},
            }
        }
        k8s_client.add_policy(build_policy(spec=spec))

        with pytest.raises(ReconcileError):
            await reconciler.reconcile("default", "web-rightsizing")

        status = k8s_client.policy("default", "web-rightsizing")["status"]
        assert status["phase"] == "Error"
        assert status["message"].startswith("Failed to discover pods")

    @pytest.mark.asyncio
    async def test_list_failure_fails_discovery(self, reconciler, k8s_client):
        k8s_client.add_policy(build_policy())
        k8s_client.list_pods_error = client.ApiException(status=500, reason="Internal Server Error")

        with pytest.raises(ReconcileError):
            await reconciler.reconcile("default", "web-rightsizing")

        assert k8s_client.policy("default", "web-rightsizing")["status"]["phase"] == "Error"

    @pytest.mark.asyncio
    async def test_no_matching_pods(self, reconciler, k8s_client):
        k8s_client.pods = []
        k8s_client.add_policy(build_policy())

        result = await reconciler.reconcile("default", "web-rightsizing")

        status = k8s_client.policy("default", "web-rightsizing")["status"]
        assert status["phase"] == "Completed"
        assert status["message"] == "No matching pods found"
        assert status["targetedPods"] == 0
        assert status.get("recommendations", []) == []
        assert "lastAnalysisTime" not in status
        assert result.requeue_after == timedelta(hours=24).total_seconds()

    @pytest.mark.asyncio
    async def test_metrics_failure_is_isolated_per_workload(self, reconciler, k8s_client, metrics_provider):
        """One unreachable workload does not stop the others"""
        k8s_client.replica_sets["default/api-5f6c8d"] = build_replica_set("api-5f6c8d", deployment="api")
        k8s_client.deployments["default/api"] = build_deployment("api", labels={"app": "web"})
        k8s_client.pods.append(build_pod("api-5f6c8d-x9", owner_name="api-5f6c8d"))
        metrics_provider.workloads["api"] = [build_pod_metrics("api-5f6c8d-x9")]
        metrics_provider.failing.add("api")
        spec = build_policy()["spec"]
        spec["dryRun"] = True
        k8s_client.add_policy(build_policy(spec=spec))

        await reconciler.reconcile("default", "web-rightsizing")

        status = k8s_client.policy("default", "web-rightsizing")["status"]
        assert status["phase"] == "Completed"
        assert status["targetedPods"] == 4
        workloads = {r["podReference"]["workloadName"] for r in status["recommendations"]}
        assert workloads == {"web"}

    @pytest.mark.asyncio
    async def test_metrics_timeout_is_isolated_per_workload(self, reconciler, k8s_client, metrics_provider):
        k8s_client.replica_sets["default/api-5f6c8d"] = build_replica_set("api-5f6c8d", deployment="api")
        k8s_client.deployments["default/api"] = build_deployment("api", labels={"app": "web"})
        k8s_client.pods.append(build_pod("api-5f6c8d-x9", owner_name="api-5f6c8d"))
        metrics_provider.errors["api"] = asyncio.TimeoutError()
        spec = build_policy()["spec"]
        spec["dryRun"] = True
        k8s_client.add_policy(build_policy(spec=spec))

        await reconciler.reconcile("default", "web-rightsizing")

        status = k8s_client.policy("default", "web-rightsizing")["status"]
        assert status["phase"] == "Completed"
        workloads = {r["podReference"]["workloadName"] for r in status["recommendations"]}
        assert workloads == {"web"}

    @pytest.mark.asyncio
    async def test_unexpected_failure_moves_to_error(self, reconciler, k8s_client):
        k8s_client.add_policy(build_policy())
        k8s_client.list_pods_error = RuntimeError("connection reset by peer")

        with pytest.raises(ReconcileError) as exc_info:
            await reconciler.reconcile("default", "web-rightsizing")

        assert exc_info.value.requeue_after == 300
        status = k8s_client.policy("default", "web-rightsizing")["status"]
        assert status["phase"] == "Error"
        assert status["message"] == "Reconciliation failed: connection reset by peer"
        ready = [c for c in status["conditions"] if c["type"] == "Ready"]
        assert ready[0]["status"] == "False"

    @pytest.mark.asyncio
    async def test_status_conflict_is_retried(self, reconciler, k8s_client):
        spec = build_policy()["spec"]
        spec["dryRun"] = True
        k8s_client.add_policy(build_policy(spec=spec))
        k8s_client.pending_conflicts = 2

        await reconciler.reconcile("default", "web-rightsizing")

        status = k8s_client.policy("default", "web-rightsizing")["status"]
        assert status["phase"] == "Completed"
        assert len(status["recommendations"]) == 3


class TestDiscovery:
    """Tests for target pod discovery"""

    @pytest.mark.asyncio
    async def test_skips_pods_without_owner_or_not_running(self, reconciler, k8s_client):
        from rightsizer.controller.workloads import OwnerResolver

        k8s_client.pods.append(build_pod("bare", owner_kind=None))
        k8s_client.pods.append(build_pod("pending", phase="Pending"))
        k8s_client.pods.append(build_pod("no-resources", requests={}, limits={}))
        policy = RightSizingPolicy.from_k8s(build_policy())

        targets = await reconciler.discover_target_pods(policy, OwnerResolver(k8s_client))

        assert sorted(pod.metadata.name for pod, _ in targets) == ["web-7d4b9c-a1", "web-7d4b9c-b2", "web-7d4b9c-c3"]
        assert {workload.key for _, workload in targets} == {"default/Deployment/web"}

    @pytest.mark.asyncio
    async def test_include_workload_types_filters(self, reconciler, k8s_client):
        from rightsizer.controller.workloads import OwnerResolver

        k8s_client.pods.append(build_pod("agent-q1", owner_kind="DaemonSet", owner_name="agent"))
        spec = {"target": {"namespace": "default", "includeWorkloadTypes": ["DaemonSet"]}}
        policy = RightSizingPolicy.from_k8s(build_policy(spec=spec))

        targets = await reconciler.discover_target_pods(policy, OwnerResolver(k8s_client))

        assert [workload.key for _, workload in targets] == ["default/DaemonSet/agent"]

    @pytest.mark.asyncio
    async def test_namespace_selector_and_exclusions(self, reconciler, k8s_client):
        from rightsizer.controller.workloads import OwnerResolver

        k8s_client.namespaces = {"default": {"team": "a"}, "staging": {"team": "a"}, "other": {"team": "b"}}
        k8s_client.pods.append(build_pod("s1", namespace="staging", owner_kind="StatefulSet", owner_name="db"))
        k8s_client.pods.append(build_pod("o1", namespace="other", owner_kind="StatefulSet", owner_name="db"))
        spec = {
            "target": {
                "namespaceSelector": {"matchLabels": {"team": "a"}},
                "excludeNamespaces": ["default"],
            }
        }
        policy = RightSizingPolicy.from_k8s(build_policy(spec=spec))

        targets = await reconciler.discover_target_pods(policy, OwnerResolver(k8s_client))

        assert [pod.metadata.name for pod, _ in targets] == ["s1"]

    def test_group_by_workload_keeps_order(self):
        from rightsizer.controller.workloads import WorkloadRef

        a = WorkloadRef("default", "Deployment", "a")
        b = WorkloadRef("default", "Deployment", "b")
        pods = [build_pod("a-1"), build_pod("b-1"), build_pod("a-2")]

        groups = PolicyReconciler.group_by_workload([(pods[0], a), (pods[1], b), (pods[2], a)])

        assert list(groups) == [a, b]
        assert [p.metadata.name for p in groups[a]] == ["a-1", "a-2"]
