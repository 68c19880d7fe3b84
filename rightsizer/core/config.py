"""
Application settings
"""
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings"""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Kubernetes settings
    kubeconfig_path: Optional[str] = None

    # PodRightSizing custom resource
    policy_group: str = "rightsizing.k8s-rightsizer.io"
    policy_version: str = "v1alpha1"
    policy_plural: str = "podrightsizings"

    # Default metrics backend, used when a policy does not name its own
    prometheus_url: str = "http://prometheus-server.monitoring.svc.cluster.local:80"
    prometheus_token: Optional[str] = None
    prometheus_insecure_skip_tls_verify: bool = False
    use_mock_metrics: bool = False
    metrics_cache_ttl: int = 300  # seconds
    metrics_timeout: int = 30  # seconds

    # Controller settings
    max_concurrent_reconciles: int = 5
    error_requeue_seconds: int = 300
    watch_timeout_seconds: int = 300
    reconcile_timeout_seconds: Optional[int] = None
    status_update_attempts: int = 5

    # Cost settings (USD per month)
    cpu_cost_per_core_month: float = 20.0
    memory_cost_per_gb_month: float = 2.5

    # Service settings
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"


settings = Settings()
