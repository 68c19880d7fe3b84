"""
Kubernetes Pod Right-Sizer
Controller that sizes pod requests and limits from historical usage
"""
import logging
from fastapi import FastAPI, HTTPException
from contextlib import asynccontextmanager

from rightsizer.core.config import settings
from rightsizer.api.routes import api_router
from rightsizer.controller.manager import ControllerManager
from rightsizer.controller.reconciler import PolicyReconciler
from rightsizer.core.kubernetes_client import K8sClient, PolicyResource
from rightsizer.services.cost_estimator import CostEstimator
from rightsizer.services.metrics_provider import MetricsProviderFactory

# Logging configuration
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application initialization and cleanup"""
    logger.info("Starting Pod Right-Sizer")

    # Initialize clients
    app.state.k8s_client = K8sClient()
    app.state.manager = None

    try:
        await app.state.k8s_client.initialize(PolicyResource.from_settings())
        app.state.metrics_factory = MetricsProviderFactory(app.state.k8s_client)
        app.state.cost_estimator = CostEstimator()
        reconciler = PolicyReconciler(app.state.k8s_client, app.state.metrics_factory)
        app.state.manager = ControllerManager(app.state.k8s_client, reconciler)
        await app.state.manager.start()
        logger.info("Controller started successfully")
    except Exception as e:
        logger.error(f"Error starting controller: {e}")
        raise

    yield

    logger.info("Shutting down controller")
    await app.state.manager.stop()
    await app.state.metrics_factory.close()


# Create FastAPI application
app = FastAPI(
    title="Pod Right-Sizer",
    description="Right-sizes Kubernetes pod resources from historical usage",
    version="0.1.0",
    lifespan=lifespan
)

# Include API routes
app.include_router(api_router, prefix="/api/v1")


@app.get("/health")
async def health_check():
    """Liveness probe"""
    return {
        "status": "healthy",
        "service": "pod-rightsizer",
        "version": "0.1.0"
    }


@app.get("/readyz")
async def readiness_check():
    """Readiness probe: ready once the controller is running"""
    manager = getattr(app.state, "manager", None)
    if manager is None or not manager.running:
        raise HTTPException(status_code=503, detail="Controller not running")
    return {"status": "ready", "policies": len(manager.policies), "queued": len(manager.queue)}


def run():
    import uvicorn
    uvicorn.run(
        "rightsizer.main:app",
        host=settings.host,
        port=settings.port,
    )


if __name__ == "__main__":
    run()
