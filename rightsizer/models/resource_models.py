"""
Data models for the PodRightSizing custom resource and usage metrics
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class UpdateStrategy(str, Enum):
    """How recommendations are applied to workloads"""
    IMMEDIATE = "immediate"
    GRADUAL = "gradual"
    MANUAL = "manual"


class Phase(str, Enum):
    """Lifecycle phase of a right-sizing policy"""
    INITIALIZING = "Initializing"
    ANALYZING = "Analyzing"
    RECOMMENDING = "Recommending"
    UPDATING = "Updating"
    COMPLETED = "Completed"
    ERROR = "Error"


class MetricsSourceType(str, Enum):
    PROMETHEUS = "prometheus"
    METRICS_SERVER = "metrics-server"


class AuthType(str, Enum):
    NONE = "none"
    BASIC = "basic"
    BEARER = "bearer"


class WorkloadKind(str, Enum):
    """Workload kinds a policy can target"""
    DEPLOYMENT = "Deployment"
    STATEFUL_SET = "StatefulSet"
    DAEMON_SET = "DaemonSet"
    JOB = "Job"
    CRON_JOB = "CronJob"


class CamelModel(BaseModel):
    """Base model that reads and writes the camelCase field names used by the API server"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LabelSelectorRequirement(CamelModel):
    key: str
    operator: str
    values: List[str] = Field(default_factory=list)


class LabelSelector(CamelModel):
    """Kubernetes label selector"""
    match_labels: Dict[str, str] = Field(default_factory=dict)
    match_expressions: List[LabelSelectorRequirement] = Field(default_factory=list)


class Target(CamelModel):
    """Which pods a policy analyzes"""
    namespace: Optional[str] = None
    label_selector: Optional[LabelSelector] = None
    namespace_selector: Optional[LabelSelector] = None
    exclude_namespaces: List[str] = Field(default_factory=list)
    include_workload_types: List[str] = Field(default_factory=list)


class UpdatePolicy(CamelModel):
    """How and when recommendations are written back"""
    strategy: str = UpdateStrategy.GRADUAL.value
    max_unavailable: Optional[Union[int, str]] = None
    max_surge: Optional[Union[int, str]] = None
    backoff_limit: int = 3
    min_stability_period: str = "5m"


class ResourceThresholds(CamelModel):
    """Statistical knobs for the recommendation engine"""
    cpu_utilization_percentile: int = 95
    memory_utilization_percentile: int = 95
    min_cpu: Optional[str] = None
    max_cpu: Optional[str] = None
    min_memory: Optional[str] = None
    max_memory: Optional[str] = None
    safety_margin: int = 20
    min_change_threshold: int = 10


class SecretReference(CamelModel):
    name: str
    namespace: Optional[str] = None


class AuthConfig(CamelModel):
    type: str = AuthType.NONE.value
    secret_ref: Optional[SecretReference] = None


class PrometheusConfig(CamelModel):
    url: str = ""
    insecure_skip_tls_verify: bool = Field(default=False, alias="insecureSkipTLSVerify")
    auth_config: Optional[AuthConfig] = None


class MetricsSource(CamelModel):
    type: str = MetricsSourceType.PROMETHEUS.value
    prometheus_config: Optional[PrometheusConfig] = None


class PolicySpec(CamelModel):
    """Desired state of a right-sizing policy"""
    target: Target = Field(default_factory=Target)
    analysis_window: str = "7d"
    update_policy: UpdatePolicy = Field(default_factory=UpdatePolicy)
    thresholds: ResourceThresholds = Field(default_factory=ResourceThresholds)
    metrics_source: MetricsSource = Field(default_factory=MetricsSource)
    schedule: str = "0 2 * * *"
    dry_run: bool = False


class ResourceRequirements(CamelModel):
    """Requests and limits as quantity strings keyed by resource name"""
    requests: Dict[str, str] = Field(default_factory=dict)
    limits: Dict[str, str] = Field(default_factory=dict)


class PodReference(CamelModel):
    name: str
    namespace: str
    workload_type: str
    workload_name: str


class ResourceSavings(CamelModel):
    """Savings if a recommendation were applied"""
    cpu_savings: Optional[str] = None
    memory_savings: Optional[str] = None
    cost_savings: Optional[str] = None


class PodRecommendation(CamelModel):
    """Sizing recommendation for one pod"""
    pod_reference: PodReference
    current_resources: ResourceRequirements = Field(default_factory=ResourceRequirements)
    recommended_resources: ResourceRequirements = Field(default_factory=ResourceRequirements)
    reason: str = ""
    confidence: int = 0
    potential_savings: Optional[ResourceSavings] = None
    applied: bool = False
    applied_time: Optional[datetime] = None


class Condition(CamelModel):
    type: str
    status: str
    reason: str = ""
    message: str = ""
    last_transition_time: Optional[datetime] = None
    observed_generation: Optional[int] = None


class PolicyStatus(CamelModel):
    """Observed state of a right-sizing policy"""
    phase: str = Phase.INITIALIZING.value
    message: str = ""
    last_analysis_time: Optional[datetime] = None
    last_update_time: Optional[datetime] = None
    targeted_pods: int = 0
    updated_pods: int = 0
    recommendations: List[PodRecommendation] = Field(default_factory=list)
    conditions: List[Condition] = Field(default_factory=list)


class ObjectMeta(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    name: str
    namespace: str = "default"
    resource_version: Optional[str] = None
    generation: Optional[int] = None
    uid: Optional[str] = None


class RightSizingPolicy(CamelModel):
    """PodRightSizing custom resource"""
    api_version: str = "rightsizing.k8s-rightsizer.io/v1alpha1"
    kind: str = "PodRightSizing"
    metadata: ObjectMeta
    spec: PolicySpec = Field(default_factory=PolicySpec)
    status: PolicyStatus = Field(default_factory=PolicyStatus)

    @property
    def key(self) -> str:
        return f"{self.metadata.namespace}/{self.metadata.name}"

    @classmethod
    def from_k8s(cls, obj: Dict[str, Any]) -> "RightSizingPolicy":
        """Build a policy from a raw custom object"""
        data = dict(obj)
        if data.get("status") is None:
            data.pop("status", None)
        return cls.model_validate(data)

    def to_k8s(self) -> Dict[str, Any]:
        """Serialize to a custom object body"""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class ResourceUsage(BaseModel):
    """A single usage sample"""
    timestamp: datetime
    value: float
    unit: str


class PodMetrics(BaseModel):
    """Usage history for one pod"""
    pod_name: str
    namespace: str
    cpu_usage: List[ResourceUsage] = Field(default_factory=list)
    memory_usage: List[ResourceUsage] = Field(default_factory=list)
    start_time: datetime
    end_time: datetime


class WorkloadMetrics(BaseModel):
    """Usage history for every pod of a workload"""
    workload_name: str
    workload_type: str
    namespace: str
    pods: List[PodMetrics] = Field(default_factory=list)
    start_time: datetime
    end_time: datetime
