"""
Workload resolution and per-kind update handlers
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from rightsizer.core.exceptions import WorkloadUpdateError
from rightsizer.core.kubernetes_client import K8sClient
from rightsizer.core.quantity import cpu_to_millicores, format_cpu, format_memory, memory_to_bytes, quantities_equal
from rightsizer.models.resource_models import ResourceRequirements, UpdatePolicy, UpdateStrategy, WorkloadKind

logger = logging.getLogger(__name__)

MAX_OWNER_DEPTH = 2
MANAGED_RESOURCES = ("cpu", "memory")


@dataclass(frozen=True)
class WorkloadRef:
    """Top-level controller of a pod"""
    namespace: str
    kind: str
    name: str

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.kind}/{self.name}"


def controller_owner(obj: Any) -> Optional[client.V1OwnerReference]:
    """The managing owner reference, or the first one if none is flagged as controller"""
    owners = obj.metadata.owner_references or []
    for owner in owners:
        if owner.controller:
            return owner
    return owners[0] if owners else None


def candidate_kinds(pod: client.V1Pod) -> List[str]:
    """Workload kinds a pod may resolve to, judged from its direct owner alone"""
    owner = controller_owner(pod)
    if owner is None:
        return []
    if owner.kind == "ReplicaSet":
        return [WorkloadKind.DEPLOYMENT.value, "ReplicaSet"]
    if owner.kind == "Job":
        return [WorkloadKind.JOB.value, WorkloadKind.CRON_JOB.value]
    return [owner.kind]


class OwnerResolver:
    """Follows owner references up to the workload that manages a pod.

    ReplicaSets resolve one further hop to their Deployment and Jobs one further
    hop to their CronJob. Lookups are cached for the lifetime of the resolver, so
    create one per reconcile pass.
    """

    def __init__(self, k8s_client: K8sClient):
        self.k8s_client = k8s_client
        self._replica_sets: Dict[str, Optional[client.V1ReplicaSet]] = {}
        self._jobs: Dict[str, Optional[client.V1Job]] = {}

    async def _replica_set(self, namespace: str, name: str) -> Optional[client.V1ReplicaSet]:
        key = f"{namespace}/{name}"
        if key not in self._replica_sets:
            self._replica_sets[key] = await self.k8s_client.get_replica_set(namespace, name)
        return self._replica_sets[key]

    async def _job(self, namespace: str, name: str) -> Optional[client.V1Job]:
        key = f"{namespace}/{name}"
        if key not in self._jobs:
            self._jobs[key] = await self.k8s_client.get_job(namespace, name)
        return self._jobs[key]

    async def resolve(self, pod: client.V1Pod) -> Optional[WorkloadRef]:
        namespace = pod.metadata.namespace
        owner = controller_owner(pod)
        if owner is None:
            return None

        kind, name = owner.kind, owner.name
        for _ in range(MAX_OWNER_DEPTH - 1):
            if kind == "ReplicaSet":
                parent = await self._replica_set(namespace, name)
                expected = WorkloadKind.DEPLOYMENT.value
            elif kind == WorkloadKind.JOB.value:
                parent = await self._job(namespace, name)
                expected = WorkloadKind.CRON_JOB.value
            else:
                break

            grand_owner = controller_owner(parent) if parent is not None else None
            if grand_owner is None or grand_owner.kind != expected:
                break
            kind, name = grand_owner.kind, grand_owner.name

        return WorkloadRef(namespace=namespace, kind=kind, name=name)


def has_declared_resources(containers: Optional[List[client.V1Container]]) -> bool:
    for container in containers or []:
        resources = container.resources
        if resources is not None and (resources.requests or resources.limits):
            return True
    return False


def pod_resources(pod: client.V1Pod) -> ResourceRequirements:
    """Sum of cpu and memory requests and limits over a pod's containers"""
    totals: Dict[str, Dict[str, int]] = {"requests": {}, "limits": {}}
    for container in pod.spec.containers or []:
        resources = container.resources
        if resources is None:
            continue
        for section in ("requests", "limits"):
            values = getattr(resources, section) or {}
            if "cpu" in values:
                totals[section]["cpu"] = totals[section].get("cpu", 0) + cpu_to_millicores(values["cpu"])
            if "memory" in values:
                totals[section]["memory"] = totals[section].get("memory", 0) + memory_to_bytes(values["memory"])

    def render(section: Dict[str, int]) -> Dict[str, str]:
        rendered = {}
        if "cpu" in section:
            rendered["cpu"] = format_cpu(section["cpu"])
        if "memory" in section:
            rendered["memory"] = format_memory(section["memory"])
        return rendered

    return ResourceRequirements(requests=render(totals["requests"]), limits=render(totals["limits"]))


def _resource_lists_equal(a: Optional[Dict[str, str]], b: Optional[Dict[str, str]]) -> bool:
    a = a or {}
    b = b or {}
    if set(a) != set(b):
        return False
    return all(quantities_equal(str(a[name]), str(b[name])) for name in a)


def resources_equal(current: Optional[client.V1ResourceRequirements], desired: ResourceRequirements) -> bool:
    """Compare a container's resources with desired requirements by quantity value"""
    requests = current.requests if current is not None else None
    limits = current.limits if current is not None else None
    return _resource_lists_equal(requests, desired.requests) and _resource_lists_equal(limits, desired.limits)


def _merge_resource_list(current: Optional[Dict[str, str]], desired: Dict[str, str]) -> Dict[str, str]:
    merged = {name: value for name, value in (current or {}).items() if name not in MANAGED_RESOURCES}
    merged.update(desired)
    return merged


def update_container_resources(containers: List[client.V1Container], desired: ResourceRequirements) -> bool:
    """Set cpu and memory of every container to desired; returns whether anything changed.

    Other resource names (ephemeral-storage, extended resources) are left as they are.
    """
    updated = False
    for container in containers:
        current = container.resources
        merged = ResourceRequirements(
            requests=_merge_resource_list(current.requests if current else None, desired.requests),
            limits=_merge_resource_list(current.limits if current else None, desired.limits),
        )
        if resources_equal(current, merged):
            continue

        logger.info(f"Updating resources of container {container.name}")
        if current is None:
            container.resources = client.V1ResourceRequirements(
                requests=merged.requests,
                limits=merged.limits,
            )
        else:
            current.requests = merged.requests
            current.limits = merged.limits
        updated = True
    return updated


class WorkloadHandler:
    """Read and write access to one workload kind"""

    kind: str = ""

    async def read(self, k8s_client: K8sClient, namespace: str, name: str) -> Any:
        raise NotImplementedError

    async def replace(self, k8s_client: K8sClient, namespace: str, name: str, body: Any) -> Any:
        raise NotImplementedError

    def containers(self, obj: Any) -> List[client.V1Container]:
        return obj.spec.template.spec.containers

    def template_labels(self, obj: Any) -> Dict[str, str]:
        metadata = obj.spec.template.metadata
        return (metadata.labels if metadata else None) or {}

    def apply_rollout(self, obj: Any, update_policy: UpdatePolicy):
        """Pass maxUnavailable/maxSurge through to the native rolling update"""


class DeploymentHandler(WorkloadHandler):
    kind = WorkloadKind.DEPLOYMENT.value

    async def read(self, k8s_client, namespace, name):
        return await k8s_client.get_deployment(namespace, name)

    async def replace(self, k8s_client, namespace, name, body):
        return await k8s_client.replace_deployment(namespace, name, body)

    def apply_rollout(self, obj, update_policy):
        if update_policy.max_unavailable is None and update_policy.max_surge is None:
            return
        strategy = obj.spec.strategy or client.V1DeploymentStrategy()
        if strategy.type not in (None, "RollingUpdate"):
            return
        strategy.type = "RollingUpdate"
        rolling = strategy.rolling_update or client.V1RollingUpdateDeployment()
        if update_policy.max_unavailable is not None:
            rolling.max_unavailable = update_policy.max_unavailable
        if update_policy.max_surge is not None:
            rolling.max_surge = update_policy.max_surge
        strategy.rolling_update = rolling
        obj.spec.strategy = strategy


class StatefulSetHandler(WorkloadHandler):
    kind = WorkloadKind.STATEFUL_SET.value

    async def read(self, k8s_client, namespace, name):
        return await k8s_client.get_stateful_set(namespace, name)

    async def replace(self, k8s_client, namespace, name, body):
        return await k8s_client.replace_stateful_set(namespace, name, body)

    def apply_rollout(self, obj, update_policy):
        # StatefulSets have no surge
        if update_policy.max_unavailable is None:
            return
        strategy = obj.spec.update_strategy or client.V1StatefulSetUpdateStrategy()
        if strategy.type not in (None, "RollingUpdate"):
            return
        strategy.type = "RollingUpdate"
        rolling = strategy.rolling_update or client.V1RollingUpdateStatefulSetStrategy()
        rolling.max_unavailable = update_policy.max_unavailable
        strategy.rolling_update = rolling
        obj.spec.update_strategy = strategy


class DaemonSetHandler(WorkloadHandler):
    kind = WorkloadKind.DAEMON_SET.value

    async def read(self, k8s_client, namespace, name):
        return await k8s_client.get_daemon_set(namespace, name)

    async def replace(self, k8s_client, namespace, name, body):
        return await k8s_client.replace_daemon_set(namespace, name, body)

    def apply_rollout(self, obj, update_policy):
        if update_policy.max_unavailable is None and update_policy.max_surge is None:
            return
        strategy = obj.spec.update_strategy or client.V1DaemonSetUpdateStrategy()
        if strategy.type not in (None, "RollingUpdate"):
            return
        strategy.type = "RollingUpdate"
        rolling = strategy.rolling_update or client.V1RollingUpdateDaemonSet()
        if update_policy.max_unavailable is not None:
            rolling.max_unavailable = update_policy.max_unavailable
        if update_policy.max_surge is not None:
            rolling.max_surge = update_policy.max_surge
        strategy.rolling_update = rolling
        obj.spec.update_strategy = strategy


WORKLOAD_HANDLERS: Dict[str, WorkloadHandler] = {
    handler.kind: handler for handler in (DeploymentHandler(), StatefulSetHandler(), DaemonSetHandler())
}


async def apply_recommendation(
    k8s_client: K8sClient,
    workload: WorkloadRef,
    desired: ResourceRequirements,
    update_policy: UpdatePolicy,
) -> int:
    """Write desired resources into a workload's pod template.

    Returns 1 when the workload was updated and 0 when it already matched or its
    kind has no handler. Raises WorkloadUpdateError when the API rejects the read
    or write.
    """
    handler = WORKLOAD_HANDLERS.get(workload.kind)
    if handler is None:
        logger.info(f"Workload type {workload.kind} not supported for automatic updates ({workload.key})")
        return 0

    try:
        obj = await handler.read(k8s_client, workload.namespace, workload.name)
    except ApiException as e:
        raise WorkloadUpdateError(f"failed to get {workload.kind} {workload.namespace}/{workload.name}: {e.reason}") from e

    if not update_container_resources(handler.containers(obj), desired):
        logger.info(f"No resource changes needed for {workload.kind} {workload.namespace}/{workload.name}")
        return 0

    if update_policy.strategy == UpdateStrategy.GRADUAL.value:
        handler.apply_rollout(obj, update_policy)

    try:
        await handler.replace(k8s_client, workload.namespace, workload.name, obj)
    except ApiException as e:
        raise WorkloadUpdateError(
            f"failed to update {workload.kind} {workload.namespace}/{workload.name}: {e.reason}"
        ) from e

    logger.info(f"Successfully updated {workload.kind} {workload.namespace}/{workload.name}")
    return 1
