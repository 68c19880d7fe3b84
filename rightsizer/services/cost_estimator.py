"""
Cost estimation for resource recommendations
"""
from typing import Any, Dict, List, Optional

from rightsizer.core.config import settings
from rightsizer.core.quantity import format_cpu, format_memory, parse_quantity
from rightsizer.models.resource_models import PodRecommendation, ResourceRequirements, ResourceSavings


GIB = 1024 ** 3

# Approximate list prices, USD per month
PROVIDER_PRICING = {
    "azure": (20.0, 2.5),
    "aws": (25.0, 3.0),
    "gcp": (22.0, 2.8),
}


class CostEstimator:
    """Translates request reductions into monthly cost savings"""

    def __init__(
        self,
        cpu_cost_per_core_month: Optional[float] = None,
        memory_cost_per_gb_month: Optional[float] = None,
        cloud_provider: str = "generic",
    ):
        self.cpu_cost_per_core_month = (
            cpu_cost_per_core_month if cpu_cost_per_core_month is not None else settings.cpu_cost_per_core_month
        )
        self.memory_cost_per_gb_month = (
            memory_cost_per_gb_month if memory_cost_per_gb_month is not None else settings.memory_cost_per_gb_month
        )
        self.cloud_provider = cloud_provider

    @classmethod
    def for_provider(cls, provider: str) -> "CostEstimator":
        """Estimator preloaded with a cloud provider's approximate prices"""
        if provider not in PROVIDER_PRICING:
            raise ValueError(f"Unknown cloud provider: {provider}")
        cpu_cost, memory_cost = PROVIDER_PRICING[provider]
        return cls(cpu_cost, memory_cost, cloud_provider=provider)

    def monthly_cost(self, cpu_cores: float, memory_bytes: float) -> float:
        return cpu_cores * self.cpu_cost_per_core_month + memory_bytes / GIB * self.memory_cost_per_gb_month

    def estimate_savings(
        self, current: ResourceRequirements, recommended: ResourceRequirements
    ) -> ResourceSavings:
        """Savings from moving requests from current to recommended; only reductions count"""
        savings = ResourceSavings()
        cpu_cores = 0.0
        memory_bytes = 0.0

        if "cpu" in current.requests and "cpu" in recommended.requests:
            diff = parse_quantity(current.requests["cpu"]) - parse_quantity(recommended.requests["cpu"])
            if diff > 0:
                millicores = int(diff * 1000)
                savings.cpu_savings = format_cpu(millicores)
                cpu_cores = millicores / 1000

        if "memory" in current.requests and "memory" in recommended.requests:
            diff = parse_quantity(current.requests["memory"]) - parse_quantity(recommended.requests["memory"])
            if diff > 0:
                memory_bytes = int(diff)
                savings.memory_savings = format_memory(int(diff))

        monthly = self.monthly_cost(cpu_cores, memory_bytes)
        if monthly > 0:
            savings.cost_savings = f"${monthly:.2f}/month"

        return savings

    def estimate_cluster_savings(self, recommendations: List[PodRecommendation]) -> Dict[str, Any]:
        """Total the savings across a set of recommendations"""
        total_cpu = 0.0
        total_memory_gib = 0.0

        for recommendation in recommendations:
            savings = recommendation.potential_savings
            if savings is None:
                continue
            if savings.cpu_savings:
                total_cpu += parse_quantity(savings.cpu_savings)
            if savings.memory_savings:
                total_memory_gib += parse_quantity(savings.memory_savings) / GIB

        monthly = total_cpu * self.cpu_cost_per_core_month + total_memory_gib * self.memory_cost_per_gb_month

        return {
            "total_recommendations": len(recommendations),
            "cloud_provider": self.cloud_provider,
            "total_cpu_savings": f"{total_cpu:.3f} cores",
            "total_memory_savings": f"{total_memory_gib:.2f} GiB",
            "estimated_monthly_savings": f"${monthly:.2f}",
            "estimated_annual_savings": f"${monthly * 12:.2f}",
        }
