"""
Point-in-time metrics provider backed by metrics.k8s.io
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from rightsizer.core.exceptions import MetricsUnavailableError
from rightsizer.core.kubernetes_client import K8sClient
from rightsizer.core.quantity import parse_quantity
from rightsizer.models.resource_models import PodMetrics, ResourceUsage, WorkloadMetrics

logger = logging.getLogger(__name__)


class MetricsServerClient:
    """Reads current usage; every call yields a single sample per pod"""

    def __init__(self, k8s_client: K8sClient):
        self.k8s_client = k8s_client

    @staticmethod
    def _parse_timestamp(value: str) -> datetime:
        if not value:
            return datetime.now(timezone.utc)
        return datetime.fromisoformat(value.replace("Z", "+00:00"))

    def _to_pod_metrics(self, item: Dict[str, Any], window: timedelta) -> PodMetrics:
        metadata = item.get("metadata", {})
        timestamp = self._parse_timestamp(item.get("timestamp", ""))

        cpu = 0.0
        memory = 0.0
        for container in item.get("containers", []):
            usage = container.get("usage", {})
            cpu += parse_quantity(usage.get("cpu", "0"))
            memory += parse_quantity(usage.get("memory", "0"))

        return PodMetrics(
            pod_name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            cpu_usage=[ResourceUsage(timestamp=timestamp, value=cpu, unit="cores")],
            memory_usage=[ResourceUsage(timestamp=timestamp, value=memory, unit="bytes")],
            start_time=timestamp - window,
            end_time=timestamp,
        )

    async def get_pod_metrics(self, namespace: str, pod_name: str, window: timedelta) -> PodMetrics:
        try:
            item = await self.k8s_client.get_pod_resource_metrics(namespace, pod_name)
        except ApiException as e:
            raise MetricsUnavailableError(
                f"metrics.k8s.io unavailable for pod {namespace}/{pod_name}: {e.reason}"
            ) from e
        except (HTTPError, OSError) as e:
            raise MetricsUnavailableError(f"Error reaching metrics.k8s.io: {e}") from e
        return self._to_pod_metrics(item, window)

    async def get_workload_metrics(
        self, namespace: str, workload_name: str, workload_type: str, window: timedelta
    ) -> WorkloadMetrics:
        try:
            items = await self.k8s_client.list_pod_resource_metrics(namespace)
        except ApiException as e:
            raise MetricsUnavailableError(
                f"metrics.k8s.io unavailable for namespace {namespace}: {e.reason}"
            ) from e
        except (HTTPError, OSError) as e:
            raise MetricsUnavailableError(f"Error reaching metrics.k8s.io: {e}") from e

        prefix = f"{workload_name}-"
        pods = [
            self._to_pod_metrics(item, window)
            for item in items
            if item.get("metadata", {}).get("name", "").startswith(prefix)
        ]
        logger.debug(f"metrics.k8s.io returned {len(pods)} pods for {workload_type} {namespace}/{workload_name}")

        end_time = datetime.now(timezone.utc)
        return WorkloadMetrics(
            workload_name=workload_name,
            workload_type=workload_type,
            namespace=namespace,
            pods=pods,
            start_time=end_time - window,
            end_time=end_time,
        )
