"""
Prometheus client for metrics collection
"""
import asyncio
import logging
import math
import aiohttp
from typing import Dict, List, Any, Optional
from datetime import datetime, timedelta, timezone

from rightsizer.core.cache import MetricsCache
from rightsizer.core.config import settings
from rightsizer.core.exceptions import MetricsUnavailableError
from rightsizer.models.resource_models import PodMetrics, ResourceUsage, WorkloadMetrics

logger = logging.getLogger(__name__)

MAX_POINTS_PER_SERIES = 10000

CONTAINER_FILTER = 'container!="POD",container!=""'


class PrometheusClient:
    """Long-range metrics provider backed by the Prometheus HTTP API"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        insecure_skip_tls_verify: Optional[bool] = None,
        cache: Optional[MetricsCache] = None,
    ):
        self.base_url = (base_url or settings.prometheus_url).rstrip("/")
        self.token = token if token is not None else settings.prometheus_token
        self.username = username
        self.password = password
        if insecure_skip_tls_verify is None:
            insecure_skip_tls_verify = settings.prometheus_insecure_skip_tls_verify
        self.insecure_skip_tls_verify = insecure_skip_tls_verify
        self.cache = cache if cache is not None else MetricsCache(ttl_seconds=settings.metrics_cache_ttl)
        self.session: Optional[aiohttp.ClientSession] = None
        self.initialized = False

    async def initialize(self):
        """Initialize Prometheus client"""
        await self._get_session()
        try:
            await self._get_json("/api/v1/query", {"query": "up"})
            self.initialized = True
            logger.info(f"Prometheus client initialized successfully ({self.base_url})")
        except MetricsUnavailableError as e:
            # Prometheus may come up later, queries will retry on demand
            logger.warning(f"Prometheus not reachable at {self.base_url}: {e}")
            self.initialized = False

    async def close(self):
        """Close HTTP session"""
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None
        self.initialized = False

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            headers = {}
            auth = None
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            elif self.username is not None:
                auth = aiohttp.BasicAuth(self.username, self.password or "")

            connector = aiohttp.TCPConnector(ssl=False) if self.insecure_skip_tls_verify else aiohttp.TCPConnector()
            self.session = aiohttp.ClientSession(
                connector=connector,
                headers=headers,
                auth=auth,
                timeout=aiohttp.ClientTimeout(total=settings.metrics_timeout),
            )
        return self.session

    async def _get_json(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """Issue a GET against the Prometheus API and return the decoded body"""
        session = await self._get_session()
        try:
            async with session.get(f"{self.base_url}{path}", params=params) as response:
                if response.status != 200:
                    body = await response.text()
                    raise MetricsUnavailableError(
                        f"Prometheus returned HTTP {response.status}: {body[:200]}"
                    )
                data = await response.json()
        except aiohttp.ClientError as e:
            raise MetricsUnavailableError(f"Error querying Prometheus: {e}") from e
        except asyncio.TimeoutError as e:
            raise MetricsUnavailableError(
                f"Prometheus query timed out after {settings.metrics_timeout}s"
            ) from e

        if data.get("status") != "success":
            raise MetricsUnavailableError(
                f"Prometheus query failed: {data.get('errorType', 'unknown')}: {data.get('error', '')}"
            )
        return data

    @staticmethod
    def step_for_window(window: timedelta) -> int:
        """Step in seconds: one minute, widened to keep each series under the point limit"""
        seconds = int(window.total_seconds())
        return max(60, math.ceil(seconds / MAX_POINTS_PER_SERIES))

    async def query_range(self, query: str, window: timedelta) -> List[Dict[str, Any]]:
        """Execute a Prometheus range query ending now"""
        cache_key = MetricsCache.make_key(self.base_url, query, int(window.total_seconds()))

        async def fetch():
            end_time = datetime.now(timezone.utc)
            start_time = end_time - window
            params = {
                "query": query,
                "start": f"{start_time.timestamp():.3f}",
                "end": f"{end_time.timestamp():.3f}",
                "step": str(self.step_for_window(window)),
            }
            logger.debug(f"Prometheus range query: {query}")
            data = await self._get_json("/api/v1/query_range", params)
            return data.get("data", {}).get("result", [])

        return await self.cache.get_or_fetch(cache_key, fetch)

    @staticmethod
    def _to_usage(values: List[List[Any]], unit: str) -> List[ResourceUsage]:
        history = []
        for timestamp, raw in values:
            value = float(raw)
            if math.isnan(value) or math.isinf(value):
                continue
            history.append(ResourceUsage(
                timestamp=datetime.fromtimestamp(float(timestamp), tz=timezone.utc),
                value=value,
                unit=unit,
            ))
        return history

    @staticmethod
    def _owner_join(namespace: str, workload_name: str, workload_type: str) -> str:
        return (
            f"* on(namespace,pod) group_left(workload, workload_type) "
            f'namespace_workload_pod:kube_pod_owner:relabel{{namespace="{namespace}", '
            f'workload="{workload_name}", workload_type="{workload_type.lower()}"}}'
        )

    def workload_cpu_query(self, namespace: str, workload_name: str, workload_type: str) -> str:
        return (
            f'sum by (pod) (rate(container_cpu_usage_seconds_total{{namespace="{namespace}",{CONTAINER_FILTER}}}[5m]) '
            f"{self._owner_join(namespace, workload_name, workload_type)})"
        )

    def workload_memory_query(self, namespace: str, workload_name: str, workload_type: str) -> str:
        return (
            f'sum by (pod) (container_memory_working_set_bytes{{namespace="{namespace}",{CONTAINER_FILTER}}} '
            f"{self._owner_join(namespace, workload_name, workload_type)})"
        )

    async def get_pod_metrics(self, namespace: str, pod_name: str, window: timedelta) -> PodMetrics:
        """Get CPU and memory history for a single pod"""
        end_time = datetime.now(timezone.utc)
        start_time = end_time - window

        cpu_query = (
            f'sum(rate(container_cpu_usage_seconds_total{{namespace="{namespace}",pod="{pod_name}",{CONTAINER_FILTER}}}[5m]))'
        )
        memory_query = (
            f'sum(container_memory_working_set_bytes{{namespace="{namespace}",pod="{pod_name}",{CONTAINER_FILTER}}})'
        )

        cpu_result = await self.query_range(cpu_query, window)
        memory_result = await self.query_range(memory_query, window)

        return PodMetrics(
            pod_name=pod_name,
            namespace=namespace,
            cpu_usage=[usage for series in cpu_result for usage in self._to_usage(series.get("values", []), "cores")],
            memory_usage=[usage for series in memory_result for usage in self._to_usage(series.get("values", []), "bytes")],
            start_time=start_time,
            end_time=end_time,
        )

    async def get_workload_metrics(
        self, namespace: str, workload_name: str, workload_type: str, window: timedelta
    ) -> WorkloadMetrics:
        """Get per-pod CPU and memory history for every pod owned by a workload"""
        end_time = datetime.now(timezone.utc)
        start_time = end_time - window

        cpu_result = await self.query_range(
            self.workload_cpu_query(namespace, workload_name, workload_type), window
        )
        memory_result = await self.query_range(
            self.workload_memory_query(namespace, workload_name, workload_type), window
        )

        pods: Dict[str, PodMetrics] = {}

        def pod_entry(series: Dict[str, Any]) -> Optional[PodMetrics]:
            pod_name = series.get("metric", {}).get("pod")
            if not pod_name:
                return None
            if pod_name not in pods:
                pods[pod_name] = PodMetrics(
                    pod_name=pod_name,
                    namespace=namespace,
                    start_time=start_time,
                    end_time=end_time,
                )
            return pods[pod_name]

        for series in cpu_result:
            entry = pod_entry(series)
            if entry is not None:
                entry.cpu_usage = self._to_usage(series.get("values", []), "cores")

        for series in memory_result:
            entry = pod_entry(series)
            if entry is not None:
                entry.memory_usage = self._to_usage(series.get("values", []), "bytes")

        logger.info(
            f"Collected Prometheus metrics for {workload_type} {namespace}/{workload_name}: {len(pods)} pods"
        )

        return WorkloadMetrics(
            workload_name=workload_name,
            workload_type=workload_type,
            namespace=namespace,
            pods=list(pods.values()),
            start_time=start_time,
            end_time=end_time,
        )

    def get_cache_stats(self) -> Dict[str, Any]:
        return self.cache.get_stats()
