"""
Metrics provider interface and per-policy provider selection
"""
import logging
from datetime import timedelta
from typing import Any, Dict, Optional, Protocol, Tuple

from kubernetes.client.rest import ApiException

from rightsizer.core.cache import MetricsCache
from rightsizer.core.config import settings
from rightsizer.core.exceptions import MetricsUnavailableError
from rightsizer.core.kubernetes_client import K8sClient
from rightsizer.core.metrics_server_client import MetricsServerClient
from rightsizer.core.mock_metrics_client import MockMetricsClient
from rightsizer.core.prometheus_client import PrometheusClient
from rightsizer.models.resource_models import (
    AuthType,
    MetricsSourceType,
    PodMetrics,
    RightSizingPolicy,
    WorkloadMetrics,
)

logger = logging.getLogger(__name__)


class MetricsProvider(Protocol):
    """Source of historical CPU and memory usage"""

    async def get_workload_metrics(
        self, namespace: str, workload_name: str, workload_type: str, window: timedelta
    ) -> WorkloadMetrics:
        ...

    async def get_pod_metrics(self, namespace: str, pod_name: str, window: timedelta) -> PodMetrics:
        ...


class MetricsProviderFactory:
    """Resolves the metrics provider a policy asks for"""

    def __init__(self, k8s_client: K8sClient, default_provider: Optional[MetricsProvider] = None):
        self.k8s_client = k8s_client
        self.cache = MetricsCache(ttl_seconds=settings.metrics_cache_ttl)
        self._default_provider = default_provider
        self._metrics_server: Optional[MetricsServerClient] = None
        self._prometheus_clients: Dict[Tuple[Any, ...], PrometheusClient] = {}

    @property
    def default_provider(self) -> MetricsProvider:
        if self._default_provider is None:
            if settings.use_mock_metrics:
                logger.info("Using synthetic metrics provider")
                self._default_provider = MockMetricsClient()
            else:
                self._default_provider = PrometheusClient(cache=self.cache)
        return self._default_provider

    async def _read_credentials(self, policy: RightSizingPolicy) -> Dict[str, Optional[str]]:
        auth = policy.spec.metrics_source.prometheus_config.auth_config
        if auth is None or auth.type == AuthType.NONE.value or auth.secret_ref is None:
            return {}

        namespace = auth.secret_ref.namespace or policy.metadata.namespace
        try:
            data = await self.k8s_client.read_secret_data(namespace, auth.secret_ref.name)
        except ApiException as e:
            raise MetricsUnavailableError(
                f"Cannot read metrics credentials from secret {namespace}/{auth.secret_ref.name}: {e}"
            ) from e

        if auth.type == AuthType.BEARER.value:
            return {"token": data.get("token")}
        return {"username": data.get("username"), "password": data.get("password")}

    async def for_policy(self, policy: RightSizingPolicy) -> MetricsProvider:
        """Provider for a policy's metricsSource, falling back to the process default"""
        source = policy.spec.metrics_source

        if source.type == MetricsSourceType.METRICS_SERVER.value:
            if self._metrics_server is None:
                self._metrics_server = MetricsServerClient(self.k8s_client)
            return self._metrics_server

        prometheus = source.prometheus_config
        if prometheus is None or not prometheus.url:
            return self.default_provider

        credentials = await self._read_credentials(policy)
        key = (
            prometheus.url,
            prometheus.insecure_skip_tls_verify,
            credentials.get("token"),
            credentials.get("username"),
            credentials.get("password"),
        )
        if key not in self._prometheus_clients:
            logger.info(f"Creating Prometheus client for {prometheus.url} (policy {policy.key})")
            self._prometheus_clients[key] = PrometheusClient(
                base_url=prometheus.url,
                token=credentials.get("token") or "",
                username=credentials.get("username"),
                password=credentials.get("password"),
                insecure_skip_tls_verify=prometheus.insecure_skip_tls_verify,
                cache=self.cache,
            )
        return self._prometheus_clients[key]

    async def close(self):
        """Close every HTTP session the factory opened"""
        for client in self._prometheus_clients.values():
            await client.close()
        self._prometheus_clients.clear()
        if isinstance(self._default_provider, PrometheusClient):
            await self._default_provider.close()

    def get_cache_stats(self) -> Dict[str, Any]:
        return self.cache.get_stats()
