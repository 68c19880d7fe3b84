"""
Kubernetes client for the right-sizing controller
"""
import asyncio
import base64
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple
from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException
from kubernetes.client import CustomObjectsApi

from rightsizer.core.config import settings
from rightsizer.core.exceptions import StatusConflictError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PolicyResource:
    """Coordinates of the PodRightSizing custom resource"""
    group: str
    version: str
    plural: str
    kind: str = "PodRightSizing"

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"

    @classmethod
    def from_settings(cls) -> "PolicyResource":
        return cls(
            group=settings.policy_group,
            version=settings.policy_version,
            plural=settings.policy_plural,
        )


class K8sClient:
    """Client for interaction with Kubernetes"""

    def __init__(self):
        self.v1 = None
        self.apps_v1 = None
        self.batch_v1 = None
        self.custom_api = None
        self.policy_resource: Optional[PolicyResource] = None
        self.initialized = False

    async def initialize(self, policy_resource: Optional[PolicyResource] = None):
        """Load cluster credentials and register the policy resource coordinates"""
        try:
            if settings.kubeconfig_path:
                config.load_kube_config(config_file=settings.kubeconfig_path)
            else:
                try:
                    config.load_incluster_config()
                except config.ConfigException:
                    config.load_kube_config()

            self.v1 = client.CoreV1Api()
            self.apps_v1 = client.AppsV1Api()
            self.batch_v1 = client.BatchV1Api()
            self.custom_api = CustomObjectsApi()
            self.policy_resource = policy_resource or PolicyResource.from_settings()

            self.initialized = True
            logger.info(
                f"Kubernetes client initialized successfully (policy resource {self.policy_resource.plural}."
                f"{self.policy_resource.api_version})"
            )

        except Exception as e:
            logger.error(f"Error initializing Kubernetes client: {e}")
            raise

    def _check_initialized(self):
        if not self.initialized:
            raise RuntimeError("Kubernetes client not initialized")

    # Namespaces and pods

    async def list_namespaces(self, label_selector: Optional[str] = None) -> List[client.V1Namespace]:
        """List namespaces, optionally filtered by label selector"""
        self._check_initialized()
        try:
            kwargs = {"label_selector": label_selector} if label_selector else {}
            result = await asyncio.to_thread(self.v1.list_namespace, **kwargs)
            return result.items
        except ApiException as e:
            logger.error(f"Error listing namespaces: {e}")
            raise

    async def get_namespace(self, name: str) -> Optional[client.V1Namespace]:
        """Read a namespace, None if it does not exist"""
        self._check_initialized()
        try:
            return await asyncio.to_thread(self.v1.read_namespace, name)
        except ApiException as e:
            if e.status == 404:
                return None
            logger.error(f"Error reading namespace {name}: {e}")
            raise

    async def list_pods(
        self, namespace: Optional[str] = None, label_selector: Optional[str] = None
    ) -> List[client.V1Pod]:
        """List pods in one namespace or across the cluster"""
        self._check_initialized()
        kwargs = {"label_selector": label_selector} if label_selector else {}
        try:
            if namespace:
                result = await asyncio.to_thread(self.v1.list_namespaced_pod, namespace, **kwargs)
            else:
                result = await asyncio.to_thread(self.v1.list_pod_for_all_namespaces, **kwargs)
            return result.items
        except ApiException as e:
            logger.error(f"Error listing pods in {namespace or 'all namespaces'}: {e}")
            raise

    # Owners

    async def get_replica_set(self, namespace: str, name: str) -> Optional[client.V1ReplicaSet]:
        self._check_initialized()
        try:
            return await asyncio.to_thread(self.apps_v1.read_namespaced_replica_set, name, namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            logger.error(f"Error reading ReplicaSet {namespace}/{name}: {e}")
            raise

    async def get_job(self, namespace: str, name: str) -> Optional[client.V1Job]:
        self._check_initialized()
        try:
            return await asyncio.to_thread(self.batch_v1.read_namespaced_job, name, namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            logger.error(f"Error reading Job {namespace}/{name}: {e}")
            raise

    # Workloads

    async def get_deployment(self, namespace: str, name: str) -> client.V1Deployment:
        self._check_initialized()
        return await asyncio.to_thread(self.apps_v1.read_namespaced_deployment, name, namespace)

    async def replace_deployment(self, namespace: str, name: str, body: client.V1Deployment) -> client.V1Deployment:
        self._check_initialized()
        return await asyncio.to_thread(self.apps_v1.replace_namespaced_deployment, name, namespace, body)

    async def get_stateful_set(self, namespace: str, name: str) -> client.V1StatefulSet:
        self._check_initialized()
        return await asyncio.to_thread(self.apps_v1.read_namespaced_stateful_set, name, namespace)

    async def replace_stateful_set(self, namespace: str, name: str, body: client.V1StatefulSet) -> client.V1StatefulSet:
        self._check_initialized()
        return await asyncio.to_thread(self.apps_v1.replace_namespaced_stateful_set, name, namespace, body)

    async def get_daemon_set(self, namespace: str, name: str) -> client.V1DaemonSet:
        self._check_initialized()
        return await asyncio.to_thread(self.apps_v1.read_namespaced_daemon_set, name, namespace)

    async def replace_daemon_set(self, namespace: str, name: str, body: client.V1DaemonSet) -> client.V1DaemonSet:
        self._check_initialized()
        return await asyncio.to_thread(self.apps_v1.replace_namespaced_daemon_set, name, namespace, body)

    # PodRightSizing policies

    def _policy_kwargs(self) -> Dict[str, str]:
        resource = self.policy_resource
        return {"group": resource.group, "version": resource.version, "plural": resource.plural}

    async def get_policy(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        """Read a policy object, None if it does not exist"""
        self._check_initialized()
        try:
            return await asyncio.to_thread(
                self.custom_api.get_namespaced_custom_object,
                namespace=namespace,
                name=name,
                **self._policy_kwargs(),
            )
        except ApiException as e:
            if e.status == 404:
                return None
            logger.error(f"Error reading policy {namespace}/{name}: {e}")
            raise

    async def list_policies(self, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        """List policy objects in one namespace or across the cluster"""
        self._check_initialized()
        try:
            if namespace:
                result = await asyncio.to_thread(
                    self.custom_api.list_namespaced_custom_object,
                    namespace=namespace,
                    **self._policy_kwargs(),
                )
            else:
                result = await asyncio.to_thread(
                    self.custom_api.list_cluster_custom_object,
                    **self._policy_kwargs(),
                )
            return result.get("items", [])
        except ApiException as e:
            logger.error(f"Error listing policies: {e}")
            raise

    async def replace_policy_status(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """Write the status subresource, guarded by the body's resourceVersion"""
        self._check_initialized()
        metadata = body.get("metadata", {})
        try:
            return await asyncio.to_thread(
                self.custom_api.replace_namespaced_custom_object_status,
                namespace=metadata.get("namespace"),
                name=metadata.get("name"),
                body=body,
                **self._policy_kwargs(),
            )
        except ApiException as e:
            if e.status == 409:
                raise StatusConflictError(
                    f"Conflict writing status of {metadata.get('namespace')}/{metadata.get('name')}"
                ) from e
            logger.error(f"Error updating policy status: {e}")
            raise

    # Secrets

    async def read_secret_data(self, namespace: str, name: str) -> Dict[str, str]:
        """Read a Secret and return its decoded data"""
        self._check_initialized()
        try:
            secret = await asyncio.to_thread(self.v1.read_namespaced_secret, name, namespace)
        except ApiException as e:
            logger.error(f"Error reading secret {namespace}/{name}: {e}")
            raise
        data = {}
        for key, value in (secret.data or {}).items():
            data[key] = base64.b64decode(value).decode("utf-8")
        for key, value in (secret.string_data or {}).items():
            data[key] = value
        return data

    # Resource metrics API

    async def list_pod_resource_metrics(self, namespace: str) -> List[Dict[str, Any]]:
        """Current pod usage from metrics.k8s.io"""
        self._check_initialized()
        result = await asyncio.to_thread(
            self.custom_api.list_namespaced_custom_object,
            group="metrics.k8s.io",
            version="v1beta1",
            namespace=namespace,
            plural="pods",
        )
        return result.get("items", [])

    async def get_pod_resource_metrics(self, namespace: str, name: str) -> Dict[str, Any]:
        self._check_initialized()
        return await asyncio.to_thread(
            self.custom_api.get_namespaced_custom_object,
            group="metrics.k8s.io",
            version="v1beta1",
            namespace=namespace,
            plural="pods",
            name=name,
        )

    # Watches

    def watch_stream(
        self, resource: str, resource_version: Optional[str] = None, timeout_seconds: Optional[int] = None
    ) -> Tuple[watch.Watch, Iterator[Dict[str, Any]]]:
        """Open a blocking watch on policies, pods, deployments, statefulsets or daemonsets"""
        self._check_initialized()
        kwargs: Dict[str, Any] = {"timeout_seconds": timeout_seconds or settings.watch_timeout_seconds}
        if resource_version:
            kwargs["resource_version"] = resource_version

        if resource == "policies":
            func = self.custom_api.list_cluster_custom_object
            kwargs.update(self._policy_kwargs())
        elif resource == "pods":
            func = self.v1.list_pod_for_all_namespaces
        elif resource == "deployments":
            func = self.apps_v1.list_deployment_for_all_namespaces
        elif resource == "statefulsets":
            func = self.apps_v1.list_stateful_set_for_all_namespaces
        elif resource == "daemonsets":
            func = self.apps_v1.list_daemon_set_for_all_namespaces
        else:
            raise ValueError(f"Unsupported watch resource: {resource}")

        w = watch.Watch()
        return w, w.stream(func, **kwargs)
