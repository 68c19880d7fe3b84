"""
API Routes
"""
import logging
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, HTTPException, Depends, Request
from kubernetes.client.rest import ApiException

from rightsizer.models.resource_models import PodRecommendation, RightSizingPolicy
from rightsizer.services.cost_estimator import CostEstimator
from rightsizer.services.validation_service import ValidationService

logger = logging.getLogger(__name__)

# Create router
api_router = APIRouter()

# Initialize services
validation_service = ValidationService()


def get_k8s_client(request: Request):
    """Dependency to get Kubernetes client"""
    return request.app.state.k8s_client


def get_manager(request: Request):
    """Dependency to get the controller manager"""
    return request.app.state.manager


def get_metrics_factory(request: Request):
    """Dependency to get the metrics provider factory"""
    return request.app.state.metrics_factory


def get_cost_estimator(request: Request) -> CostEstimator:
    """Dependency to get the cost estimator"""
    return request.app.state.cost_estimator


async def _load_policy(k8s_client, namespace: str, name: str) -> RightSizingPolicy:
    try:
        raw = await k8s_client.get_policy(namespace, name)
    except ApiException as e:
        logger.error(f"Error reading policy {namespace}/{name}: {e}")
        raise HTTPException(status_code=502, detail=f"Error reading policy: {e.reason}")
    if raw is None:
        raise HTTPException(status_code=404, detail=f"PodRightSizing {namespace}/{name} not found")
    return RightSizingPolicy.from_k8s(raw)


def _summary(policy: RightSizingPolicy) -> Dict[str, Any]:
    status = policy.status
    return {
        "namespace": policy.metadata.namespace,
        "name": policy.metadata.name,
        "phase": status.phase,
        "message": status.message,
        "dry_run": policy.spec.dry_run,
        "strategy": policy.spec.update_policy.strategy,
        "targeted_pods": status.targeted_pods,
        "updated_pods": status.updated_pods,
        "recommendations": len(status.recommendations),
        "last_analysis_time": status.last_analysis_time,
    }


@api_router.get("/policies")
async def list_policies(
    namespace: Optional[str] = None,
    k8s_client=Depends(get_k8s_client),
):
    """List PodRightSizing policies with their current phase"""
    try:
        items = await k8s_client.list_policies(namespace)
    except ApiException as e:
        raise HTTPException(status_code=502, detail=f"Error listing policies: {e.reason}")

    policies = [_summary(RightSizingPolicy.from_k8s(item)) for item in items]
    return {"policies": policies, "total": len(policies)}


@api_router.get("/policies/{namespace}/{name}")
async def get_policy(namespace: str, name: str, k8s_client=Depends(get_k8s_client)):
    """Get a policy with its validation result"""
    policy = await _load_policy(k8s_client, namespace, name)
    return {
        "policy": policy.to_k8s(),
        "validation_errors": validation_service.validate_policy(policy),
    }


@api_router.get("/policies/{namespace}/{name}/recommendations", response_model=List[PodRecommendation])
async def get_recommendations(namespace: str, name: str, k8s_client=Depends(get_k8s_client)):
    """Get the recommendations of the latest analysis"""
    policy = await _load_policy(k8s_client, namespace, name)
    return policy.status.recommendations


@api_router.get("/policies/{namespace}/{name}/savings")
async def get_savings(
    namespace: str,
    name: str,
    k8s_client=Depends(get_k8s_client),
    cost_estimator: CostEstimator = Depends(get_cost_estimator),
):
    """Estimate total savings if every recommendation were applied"""
    policy = await _load_policy(k8s_client, namespace, name)
    return cost_estimator.estimate_cluster_savings(policy.status.recommendations)


@api_router.post("/policies/{namespace}/{name}/reconcile", status_code=202)
async def trigger_reconcile(
    namespace: str,
    name: str,
    k8s_client=Depends(get_k8s_client),
    manager=Depends(get_manager),
):
    """Queue a reconcile pass for a policy"""
    await _load_policy(k8s_client, namespace, name)
    if manager is None or not manager.running:
        raise HTTPException(status_code=503, detail="Controller is not running")
    manager.enqueue(namespace, name)
    logger.info(f"Reconcile of {namespace}/{name} requested via API")
    return {"status": "queued", "policy": f"{namespace}/{name}"}


@api_router.get("/cache/stats")
async def get_cache_stats(metrics_factory=Depends(get_metrics_factory)):
    """Metrics cache statistics"""
    return metrics_factory.get_cache_stats()
