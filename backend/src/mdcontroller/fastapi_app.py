# fastapi_app.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from .adapters import machine_deployment_to_dict, machine_set_to_dict
from .config import settings
from .controller import Controller
from .errors import NotFoundError, VersionConflictError
from .kube_types import KIND_MACHINE_DEPLOYMENT, MachineDeployment
from .reconciler import MachineDeploymentReconciler
from .workqueue import WorkQueue

# Configure logging
logging.basicConfig(level=settings.LOG_LEVEL.upper())
logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Models
# -----------------------------------------------------------------------------
class ScaleBody(BaseModel):
    replicas: int = Field(..., ge=0, description="Target machine count")


class PauseBody(BaseModel):
    paused: bool = Field(default=True, description="Stop or resume scaling")


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def build_controller() -> Controller:
    """Build a controller against the cluster described by settings."""
    from .kube_client import KubeClient

    store = KubeClient(
        namespace=settings.K8S_NAMESPACE,
        in_cluster=settings.K8S_IN_CLUSTER,
        context=settings.K8S_CONTEXT,
        group=settings.API_GROUP,
        version=settings.API_VERSION,
        watch_timeout_s=settings.WATCH_TIMEOUT_SECS,
    )
    reconciler = MachineDeploymentReconciler(store, validation_requeue_secs=settings.VALIDATION_REQUEUE_SECS)
    queue = WorkQueue(base_delay=settings.BACKOFF_BASE_SECS, max_delay=settings.BACKOFF_MAX_SECS)
    return Controller(
        store,
        reconciler,
        namespace=settings.K8S_NAMESPACE,
        queue=queue,
        workers=settings.WORKERS,
        resync_period=settings.RESYNC_PERIOD_SECS,
    )


def _deployment_view(deployment: MachineDeployment, machine_sets: Optional[List[Any]] = None) -> Dict[str, Any]:
    view = machine_deployment_to_dict(deployment)
    if machine_sets is not None:
        view["machineSets"] = [machine_set_to_dict(ms) for ms in machine_sets]
    return view


def create_app(controller: Optional[Controller] = None) -> FastAPI:
    """
    Create the API application.

    Args:
        controller: Controller to serve; built from settings at startup when omitted

    Returns:
        FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.controller is None:
            app.state.controller = build_controller()
        app.state.controller.start()
        try:
            yield
        finally:
            app.state.controller.stop()

    app = FastAPI(title="MachineDeployment Controller", version="1.0.0", lifespan=lifespan)
    app.state.controller = controller

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _controller() -> Controller:
        if app.state.controller is None:
            raise HTTPException(status_code=503, detail="Controller not started")
        return app.state.controller

    def _get_deployment(namespace: str, name: str) -> MachineDeployment:
        try:
            return _controller().store.get(KIND_MACHINE_DEPLOYMENT, namespace, name)
        except NotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))

    # -------------------------------------------------------------------------
    # Routes
    # -------------------------------------------------------------------------
    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    @app.get("/api/health")
    async def api_health():
        ctrl = app.state.controller
        return {"status": "healthy", "queued": len(ctrl.queue) if ctrl else 0}

    @app.get("/api/deployments")
    def list_deployments(ns: str = Query(settings.K8S_NAMESPACE)) -> List[Dict[str, Any]]:
        deployments = _controller().store.list(KIND_MACHINE_DEPLOYMENT, ns)
        logger.info(f"Retrieved {len(deployments)} MachineDeployments from namespace {ns}")
        return [_deployment_view(d) for d in deployments]

    @app.get("/api/deployments/{namespace}/{name}")
    def get_deployment(namespace: str, name: str) -> Dict[str, Any]:
        deployment = _get_deployment(namespace, name)
        machine_sets = _controller().reconciler.owned_machine_sets(deployment)
        return _deployment_view(deployment, machine_sets)

    @app.post("/api/deployments/{namespace}/{name}/reconcile")
    def reconcile_deployment(namespace: str, name: str) -> Dict[str, Any]:
        _get_deployment(namespace, name)
        _controller().enqueue(namespace, name)
        return {"queued": True, "key": f"{namespace}/{name}"}

    @app.post("/api/deployments/{namespace}/{name}/scale")
    def scale_deployment(namespace: str, name: str, body: ScaleBody) -> Dict[str, Any]:
        deployment = _get_deployment(namespace, name)
        deployment.spec.replicas = body.replicas
        try:
            updated = _controller().store.update(deployment)
        except VersionConflictError as e:
            raise HTTPException(status_code=409, detail=str(e))
        logger.info(f"✅ Scaled {namespace}/{name} to {body.replicas} replicas")
        return _deployment_view(updated)

    @app.post("/api/deployments/{namespace}/{name}/pause")
    def pause_deployment(namespace: str, name: str, body: PauseBody) -> Dict[str, Any]:
        deployment = _get_deployment(namespace, name)
        deployment.spec.paused = body.paused
        try:
            updated = _controller().store.update(deployment)
        except VersionConflictError as e:
            raise HTTPException(status_code=409, detail=str(e))
        logger.info(f"{'Paused' if body.paused else 'Resumed'} {namespace}/{name}")
        return _deployment_view(updated)

    return app


app = create_app()


def main() -> None:
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.HTTP_PORT)


if __name__ == "__main__":
    main()
