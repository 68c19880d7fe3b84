"""
Test fixtures and configuration for pytest
"""
import copy
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
from kubernetes import client

from rightsizer.core.exceptions import MetricsUnavailableError, StatusConflictError
from rightsizer.models.resource_models import PodMetrics, ResourceUsage, WorkloadMetrics

NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


def build_pod(
    name: str,
    namespace: str = "default",
    labels: Optional[Dict[str, str]] = None,
    owner_kind: Optional[str] = "ReplicaSet",
    owner_name: str = "web-7d4b9c",
    phase: str = "Running",
    requests: Optional[Dict[str, str]] = None,
    limits: Optional[Dict[str, str]] = None,
    containers: int = 1,
) -> client.V1Pod:
    owners = None
    if owner_kind:
        owners = [client.V1OwnerReference(
            api_version="apps/v1", kind=owner_kind, name=owner_name, uid=f"uid-{owner_name}", controller=True
        )]
    if requests is None and limits is None:
        requests = {"cpu": "500m", "memory": "512Mi"}
        limits = {"cpu": "1", "memory": "1Gi"}
    return client.V1Pod(
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels=labels if labels is not None else {"app": "web"},
            uid=f"uid-{namespace}-{name}",
            owner_references=owners,
        ),
        spec=client.V1PodSpec(containers=[
            client.V1Container(
                name=f"app-{i}" if i else "app",
                image="nginx",
                resources=client.V1ResourceRequirements(
                    requests=dict(requests) if requests else None,
                    limits=dict(limits) if limits else None,
                ),
            )
            for i in range(containers)
        ]),
        status=client.V1PodStatus(phase=phase),
    )


def build_replica_set(name: str, namespace: str = "default", deployment: Optional[str] = "web") -> client.V1ReplicaSet:
    owners = None
    if deployment:
        owners = [client.V1OwnerReference(
            api_version="apps/v1", kind="Deployment", name=deployment, uid=f"uid-{deployment}", controller=True
        )]
    return client.V1ReplicaSet(
        metadata=client.V1ObjectMeta(name=name, namespace=namespace, owner_references=owners)
    )


def build_deployment(
    name: str = "web",
    namespace: str = "default",
    labels: Optional[Dict[str, str]] = None,
    requests: Optional[Dict[str, str]] = None,
    limits: Optional[Dict[str, str]] = None,
) -> client.V1Deployment:
    labels = labels or {"app": name}
    return client.V1Deployment(
        metadata=client.V1ObjectMeta(name=name, namespace=namespace, uid=f"uid-{name}", labels=labels),
        spec=client.V1DeploymentSpec(
            selector=client.V1LabelSelector(match_labels=labels),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=labels),
                spec=client.V1PodSpec(containers=[
                    client.V1Container(
                        name="app",
                        image="nginx",
                        resources=client.V1ResourceRequirements(
                            requests=dict(requests or {"cpu": "500m", "memory": "512Mi"}),
                            limits=dict(limits or {"cpu": "1", "memory": "1Gi"}),
                        ),
                    )
                ]),
            ),
        ),
    )


def build_policy(
    name: str = "web-rightsizing",
    namespace: str = "default",
    spec: Optional[Dict[str, Any]] = None,
    status: Optional[Dict[str, Any]] = None,
    generation: int = 1,
) -> Dict[str, Any]:
    body = {
        "apiVersion": "rightsizing.k8s-rightsizer.io/v1alpha1",
        "kind": "PodRightSizing",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "generation": generation,
            "resourceVersion": "1",
            "uid": f"uid-policy-{name}",
        },
        "spec": spec if spec is not None else {
            "target": {"namespace": namespace, "labelSelector": {"matchLabels": {"app": "web"}}},
            "analysisWindow": "24h",
        },
    }
    if status is not None:
        body["status"] = status
    return body


def linear_series(low: float, high: float, count: int = 100, unit: str = "cores") -> List[ResourceUsage]:
    """Evenly spaced samples between low and high"""
    step = (high - low) / (count - 1) if count > 1 else 0
    return [
        ResourceUsage(timestamp=NOW - timedelta(minutes=5 * (count - i)), value=low + step * i, unit=unit)
        for i in range(count)
    ]


def build_pod_metrics(
    pod_name: str,
    namespace: str = "default",
    cpu: tuple = (0.08, 0.12),
    memory: tuple = (100 * 1024 ** 2, 140 * 1024 ** 2),
    count: int = 100,
) -> PodMetrics:
    return PodMetrics(
        pod_name=pod_name,
        namespace=namespace,
        cpu_usage=linear_series(cpu[0], cpu[1], count, "cores"),
        memory_usage=linear_series(memory[0], memory[1], count, "bytes"),
        start_time=NOW - timedelta(hours=24),
        end_time=NOW,
    )


class FakeK8sClient:
    """In-memory stand-in for K8sClient"""

    def __init__(self):
        self.initialized = True
        self.policies: Dict[str, Dict[str, Any]] = {}
        self.namespaces: Dict[str, Dict[str, str]] = {"default": {}}
        self.pods: List[client.V1Pod] = []
        self.replica_sets: Dict[str, client.V1ReplicaSet] = {}
        self.jobs: Dict[str, client.V1Job] = {}
        self.deployments: Dict[str, client.V1Deployment] = {}
        self.secrets: Dict[str, Dict[str, str]] = {}
        self.status_writes: List[Dict[str, Any]] = []
        self.deployment_writes: List[client.V1Deployment] = []
        self.pending_conflicts = 0
        self.list_pods_error: Optional[Exception] = None
        self.replace_deployment_error: Optional[Exception] = None

    def add_policy(self, body: Dict[str, Any]):
        metadata = body["metadata"]
        self.policies[f"{metadata['namespace']}/{metadata['name']}"] = copy.deepcopy(body)

    def policy(self, namespace: str, name: str) -> Dict[str, Any]:
        return self.policies[f"{namespace}/{name}"]

    async def list_namespaces(self, label_selector: Optional[str] = None):
        wanted = dict(part.split("=", 1) for part in label_selector.split(",")) if label_selector else {}
        return [
            client.V1Namespace(metadata=client.V1ObjectMeta(name=name, labels=labels))
            for name, labels in self.namespaces.items()
            if all(labels.get(k) == v for k, v in wanted.items())
        ]

    async def get_namespace(self, name: str):
        if name not in self.namespaces:
            return None
        return client.V1Namespace(metadata=client.V1ObjectMeta(name=name, labels=self.namespaces[name]))

    async def list_pods(self, namespace: Optional[str] = None, label_selector: Optional[str] = None):
        if self.list_pods_error is not None:
            raise self.list_pods_error
        wanted = dict(part.split("=", 1) for part in label_selector.split(",")) if label_selector else {}
        return [
            pod for pod in self.pods
            if (namespace is None or pod.metadata.namespace == namespace)
            and all((pod.metadata.labels or {}).get(k) == v for k, v in wanted.items())
        ]

    async def get_replica_set(self, namespace: str, name: str):
        return self.replica_sets.get(f"{namespace}/{name}")

    async def get_job(self, namespace: str, name: str):
        return self.jobs.get(f"{namespace}/{name}")

    async def get_deployment(self, namespace: str, name: str):
        key = f"{namespace}/{name}"
        if key not in self.deployments:
            raise client.ApiException(status=404, reason="Not Found")
        return copy.deepcopy(self.deployments[key])

    async def replace_deployment(self, namespace: str, name: str, body: client.V1Deployment):
        if self.replace_deployment_error is not None:
            raise self.replace_deployment_error
        self.deployments[f"{namespace}/{name}"] = copy.deepcopy(body)
        self.deployment_writes.append(copy.deepcopy(body))
        return body

    async def get_policy(self, namespace: str, name: str):
        body = self.policies.get(f"{namespace}/{name}")
        return copy.deepcopy(body) if body is not None else None

    async def list_policies(self, namespace: Optional[str] = None):
        return [
            copy.deepcopy(body) for body in self.policies.values()
            if namespace is None or body["metadata"]["namespace"] == namespace
        ]

    async def replace_policy_status(self, body: Dict[str, Any]):
        metadata = body["metadata"]
        key = f"{metadata['namespace']}/{metadata['name']}"
        stored = self.policies[key]
        if self.pending_conflicts:
            self.pending_conflicts -= 1
            # someone else wrote the object in between
            stored["metadata"]["resourceVersion"] = str(int(stored["metadata"]["resourceVersion"]) + 1)
            raise StatusConflictError(f"conflict updating {key}")
        if metadata.get("resourceVersion") != stored["metadata"]["resourceVersion"]:
            raise StatusConflictError(f"conflict updating {key}")

        stored["status"] = copy.deepcopy(body.get("status"))
        stored["metadata"]["resourceVersion"] = str(int(stored["metadata"]["resourceVersion"]) + 1)
        self.status_writes.append(copy.deepcopy(stored["status"]))
        return copy.deepcopy(stored)

    async def read_secret_data(self, namespace: str, name: str):
        key = f"{namespace}/{name}"
        if key not in self.secrets:
            raise client.ApiException(status=404, reason="Not Found")
        return dict(self.secrets[key])


class FakeMetricsProvider:
    """Serves canned WorkloadMetrics keyed by workload name"""

    def __init__(self):
        self.workloads: Dict[str, List[PodMetrics]] = {}
        self.failing: set = set()
        self.errors: Dict[str, Exception] = {}
        self.calls: List[tuple] = []

    async def get_workload_metrics(self, namespace, workload_name, workload_type, window):
        self.calls.append((namespace, workload_name, workload_type, window))
        if workload_name in self.failing:
            raise MetricsUnavailableError(f"Prometheus unreachable for {workload_name}")
        if workload_name in self.errors:
            raise self.errors[workload_name]
        return WorkloadMetrics(
            workload_name=workload_name,
            workload_type=workload_type,
            namespace=namespace,
            pods=list(self.workloads.get(workload_name, [])),
            start_time=NOW - window,
            end_time=NOW,
        )

    async def get_pod_metrics(self, namespace, pod_name, window):
        return build_pod_metrics(pod_name, namespace)


class FakeMetricsFactory:
    def __init__(self, provider):
        self.provider = provider

    async def for_policy(self, policy):
        return self.provider

    def get_cache_stats(self):
        return {"hit_count": 0, "miss_count": 0, "hit_rate_percent": 0, "cached_queries": 0, "ttl_seconds": 300}

    async def close(self):
        pass


class Clock:
    """Settable clock for reconcile timing"""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta):
        self.now = self.now + delta


@pytest.fixture
def k8s_client():
    """Fake cluster with one Deployment 'web' running three pods"""
    fake = FakeK8sClient()
    fake.replica_sets["default/web-7d4b9c"] = build_replica_set("web-7d4b9c")
    fake.deployments["default/web"] = build_deployment("web")
    fake.pods = [build_pod(f"web-7d4b9c-{suffix}") for suffix in ("a1", "b2", "c3")]
    return fake


@pytest.fixture
def metrics_provider():
    provider = FakeMetricsProvider()
    provider.workloads["web"] = [build_pod_metrics(f"web-7d4b9c-{suffix}") for suffix in ("a1", "b2", "c3")]
    return provider


@pytest.fixture
def metrics_factory(metrics_provider):
    return FakeMetricsFactory(metrics_provider)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def policy_factory():
    return build_policy


@pytest.fixture
def pod_factory():
    return build_pod


@pytest.fixture
def deployment_factory():
    return build_deployment


@pytest.fixture
def pod_metrics_factory():
    return build_pod_metrics
