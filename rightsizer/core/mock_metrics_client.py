"""
Synthetic metrics provider for local runs and demos
"""
import logging
import random
import string
from datetime import datetime, timedelta, timezone
from typing import Optional

from rightsizer.models.resource_models import PodMetrics, ResourceUsage, WorkloadMetrics

logger = logging.getLogger(__name__)

DEFAULT_BASE_CPU = 0.05  # 50m cores
DEFAULT_BASE_MEMORY = 64 * 1024 * 1024  # 64Mi
DEFAULT_VARIANCE = 0.3
SAMPLE_INTERVAL = timedelta(minutes=5)


class MockMetricsClient:
    """Generates usage around a base value with uniform relative noise"""

    def __init__(
        self,
        base_cpu: float = DEFAULT_BASE_CPU,
        base_memory: float = DEFAULT_BASE_MEMORY,
        variance: float = DEFAULT_VARIANCE,
        pods_per_workload: int = 3,
        seed: Optional[int] = None,
    ):
        self.base_cpu = base_cpu
        self.base_memory = base_memory
        self.variance = variance
        self.pods_per_workload = pods_per_workload
        self._random = random.Random(seed)

    def _jitter(self) -> float:
        return (self._random.random() - 0.5) * 2 * self.variance

    async def get_pod_metrics(self, namespace: str, pod_name: str, window: timedelta) -> PodMetrics:
        end_time = datetime.now(timezone.utc)
        start_time = end_time - window
        data_points = max(int(window / SAMPLE_INTERVAL), 1)

        cpu_usage = []
        memory_usage = []
        for i in range(data_points):
            timestamp = start_time + i * SAMPLE_INTERVAL

            cpu_value = self.base_cpu * (1 + self._jitter())
            if cpu_value < 0:
                cpu_value = 0.001
            memory_value = self.base_memory * (1 + self._jitter())
            if memory_value < 0:
                memory_value = 1024

            cpu_usage.append(ResourceUsage(timestamp=timestamp, value=cpu_value, unit="cores"))
            memory_usage.append(ResourceUsage(timestamp=timestamp, value=memory_value, unit="bytes"))

        return PodMetrics(
            pod_name=pod_name,
            namespace=namespace,
            cpu_usage=cpu_usage,
            memory_usage=memory_usage,
            start_time=start_time,
            end_time=end_time,
        )

    async def get_workload_metrics(
        self, namespace: str, workload_name: str, workload_type: str, window: timedelta
    ) -> WorkloadMetrics:
        end_time = datetime.now(timezone.utc)
        pods = []
        for i in range(self.pods_per_workload):
            suffix = "".join(self._random.choices(string.ascii_lowercase + string.digits, k=5))
            pods.append(await self.get_pod_metrics(namespace, f"{workload_name}-{suffix}-{i}", window))

        logger.debug(f"Generated synthetic metrics for {workload_type} {namespace}/{workload_name}")
        return WorkloadMetrics(
            workload_name=workload_name,
            workload_type=workload_type,
            namespace=namespace,
            pods=pods,
            start_time=end_time - window,
            end_time=end_time,
        )
