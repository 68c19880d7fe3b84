"""
Recommendation engine: turns usage history into sized requests and limits
"""
import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from rightsizer.core.exceptions import InsufficientDataError
from rightsizer.core.quantity import format_cpu, format_memory, parse_quantity
from rightsizer.models.resource_models import (
    PodMetrics,
    PodRecommendation,
    PodReference,
    ResourceRequirements,
    ResourceThresholds,
    ResourceUsage,
    WorkloadMetrics,
)
from rightsizer.services.cost_estimator import CostEstimator

logger = logging.getLogger(__name__)


@dataclass
class ResourceRecommendation:
    """Sized limit for a single resource"""
    limit: float
    percentile: int
    percentile_value: float
    confidence: int
    data_points: int

    @property
    def reason(self) -> str:
        return f"Based on {self.percentile}th percentile of {self.data_points} data points"


def calculate_percentile(sorted_values: Sequence[float], percentile: float) -> float:
    """Linearly interpolated percentile of an ascending sequence"""
    if not sorted_values:
        return 0.0
    if percentile <= 0:
        return sorted_values[0]
    if percentile >= 100:
        return sorted_values[-1]

    index = percentile / 100.0 * (len(sorted_values) - 1)
    lower = math.floor(index)
    upper = math.ceil(index)
    if lower == upper:
        return sorted_values[lower]

    weight = index - lower
    return sorted_values[lower] * (1 - weight) + sorted_values[upper] * weight


def calculate_confidence(values: Sequence[float]) -> int:
    """Confidence (0-100) from the coefficient of variation, boosted by sample size"""
    n = len(values)
    if n < 2:
        return 50

    mean = sum(values) / n
    std_dev = math.sqrt(sum((v - mean) ** 2 for v in values) / (n - 1))
    cv = std_dev / mean if mean > 0 else 0.0

    if cv > 0.5:
        confidence = 30 + int(20 * (1 - min(cv - 0.5, 0.5) / 0.5))
    elif cv > 0.3:
        confidence = 70 + int(25 * (1 - (cv - 0.3) / 0.2))
    elif cv > 0.1:
        confidence = 95 + int(5 * (1 - (cv - 0.1) / 0.2))
    else:
        confidence = 100

    boost = min(n / 100.0, 0.1)
    confidence = int(min(confidence * (1 + boost), 100))
    return max(0, min(confidence, 100))


class RecommendationEngine:
    """Percentile-based sizing with a confidence gate"""

    def __init__(
        self,
        confidence_threshold: int = 70,
        min_data_points: int = 10,
        cpu_request_multiplier: float = 0.8,
        memory_request_multiplier: float = 0.9,
        cost_estimator: Optional[CostEstimator] = None,
    ):
        self.confidence_threshold = confidence_threshold
        self.min_data_points = min_data_points
        self.cpu_request_multiplier = cpu_request_multiplier
        self.memory_request_multiplier = memory_request_multiplier
        self.cost_estimator = cost_estimator or CostEstimator()

    def analyze_resource(
        self,
        resource: str,
        history: List[ResourceUsage],
        percentile: int,
        thresholds: ResourceThresholds,
        minimum: Optional[str] = None,
        maximum: Optional[str] = None,
    ) -> ResourceRecommendation:
        """Size one resource from its usage history"""
        if len(history) < self.min_data_points:
            raise InsufficientDataError(resource, len(history), self.min_data_points)

        values = sorted(usage.value for usage in history)
        percentile_value = calculate_percentile(values, percentile)
        limit = percentile_value * (1.0 + thresholds.safety_margin / 100.0)

        if minimum:
            limit = max(limit, parse_quantity(minimum))
        if maximum:
            limit = min(limit, parse_quantity(maximum))

        return ResourceRecommendation(
            limit=limit,
            percentile=percentile,
            percentile_value=percentile_value,
            confidence=calculate_confidence(values),
            data_points=len(values),
        )

    def _build_reason(
        self, cpu: ResourceRecommendation, memory: ResourceRecommendation, thresholds: ResourceThresholds
    ) -> str:
        return (
            "Recommendations based on historical usage analysis. "
            f"CPU: {cpu.reason}. "
            f"Memory: {memory.reason}. "
            f"Applied {thresholds.safety_margin}% safety margin."
        )

    def generate_pod_recommendation(
        self,
        pod_metrics: PodMetrics,
        thresholds: ResourceThresholds,
        workload_type: str = "",
        workload_name: str = "",
        current: Optional[ResourceRequirements] = None,
    ) -> Optional[PodRecommendation]:
        """Recommendation for one pod, or None when confidence is below the gate.

        Raises InsufficientDataError when either series is too short.
        """
        cpu = self.analyze_resource(
            "CPU",
            pod_metrics.cpu_usage,
            thresholds.cpu_utilization_percentile,
            thresholds,
            thresholds.min_cpu,
            thresholds.max_cpu,
        )
        memory = self.analyze_resource(
            "memory",
            pod_metrics.memory_usage,
            thresholds.memory_utilization_percentile,
            thresholds,
            thresholds.min_memory,
            thresholds.max_memory,
        )

        confidence = min(cpu.confidence, memory.confidence)
        if confidence < self.confidence_threshold:
            logger.info(
                f"Skipping recommendation for pod {pod_metrics.namespace}/{pod_metrics.pod_name}: "
                f"confidence {confidence} below threshold {self.confidence_threshold}"
            )
            return None

        cpu_limit_millis = int(cpu.limit * 1000)
        cpu_request_millis = int(cpu_limit_millis / 1000 * self.cpu_request_multiplier * 1000)
        memory_limit_bytes = int(memory.limit)
        memory_request_bytes = int(memory_limit_bytes * self.memory_request_multiplier)

        recommended = ResourceRequirements(
            requests={
                "cpu": format_cpu(cpu_request_millis),
                "memory": format_memory(memory_request_bytes),
            },
            limits={
                "cpu": format_cpu(cpu_limit_millis),
                "memory": format_memory(memory_limit_bytes),
            },
        )
        current = current or ResourceRequirements()

        return PodRecommendation(
            pod_reference=PodReference(
                name=pod_metrics.pod_name,
                namespace=pod_metrics.namespace,
                workload_type=workload_type,
                workload_name=workload_name,
            ),
            current_resources=current,
            recommended_resources=recommended,
            reason=self._build_reason(cpu, memory, thresholds),
            confidence=confidence,
            potential_savings=self.cost_estimator.estimate_savings(current, recommended),
            applied=False,
        )

    def generate_recommendations(
        self,
        workload_metrics: WorkloadMetrics,
        thresholds: ResourceThresholds,
        current_resources: Optional[Dict[str, ResourceRequirements]] = None,
        default_current: Optional[ResourceRequirements] = None,
    ) -> List[PodRecommendation]:
        """Recommendations for every pod of a workload.

        ``current_resources`` maps pod name to the pod's declared resources and
        ``default_current`` covers pods absent from that map. Pods with too little
        data are logged and skipped.
        """
        if not workload_metrics.pods:
            raise InsufficientDataError("pod", 0, 1)

        current_resources = current_resources or {}
        recommendations = []
        for pod_metrics in workload_metrics.pods:
            try:
                recommendation = self.generate_pod_recommendation(
                    pod_metrics,
                    thresholds,
                    workload_type=workload_metrics.workload_type,
                    workload_name=workload_metrics.workload_name,
                    current=current_resources.get(pod_metrics.pod_name, default_current),
                )
            except InsufficientDataError as e:
                logger.warning(
                    f"Failed to generate recommendation for pod {pod_metrics.namespace}/{pod_metrics.pod_name}: {e}"
                )
                continue
            if recommendation is not None:
                recommendations.append(recommendation)

        logger.info(
            f"Generated {len(recommendations)} recommendations for "
            f"{workload_metrics.workload_type} {workload_metrics.namespace}/{workload_metrics.workload_name}"
        )
        return recommendations
