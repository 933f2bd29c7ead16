"""
Reconcile API Router

Exposes the fleet reconciliation engine over HTTP.

Endpoints:
- POST /reconcile/{namespace}/{name} - Trigger an attempt (optionally wait for it)
- GET /reconcile/status - Latest attempt result for every cluster
- GET /reconcile/status/{namespace}/{name} - Latest attempt result for one cluster
- GET /metrics - Prometheus exposition
- GET /health - Liveness
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from quorum_reconcile.reconciler import InMemoryStatusWriter, ReconciliationStateMachine
from quorum_reconcile.resources import Resources
from quorum_reconcile.scheduler import ReconcileScheduler, periodic_resync
from quorum_reconcile.state import AttemptResult, ReconciliationContext
from quorum_tools.config import OperatorConfig, get_config
from quorum_tools.metrics import metrics_response

logger = logging.getLogger(__name__)

APP_TITLE = "Quorum Operator"
APP_VERSION = "0.1.0"


class AttemptStatus(BaseModel):
    """Outcome of the latest reconciliation attempt of one cluster."""
    namespace: str
    name: str
    trigger: str
    success: bool
    completed_stages: List[str] = []
    failed_stage: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    replicas: Dict[str, int] = {}
    restart_reasons: Dict[str, List[str]] = {}
    migration_actions: List[str] = []
    timestamp: str = ""

    @classmethod
    def from_result(cls, result: AttemptResult) -> "AttemptStatus":
        data = result.to_dict()
        context = data.pop("context")
        return cls(
            namespace=context["namespace"],
            name=context["name"],
            trigger=context["trigger"],
            **data,
        )


class StatusList(BaseModel):
    """Latest results plus the number of attempts currently running."""
    attempts: List[AttemptStatus]
    in_flight: int


class TriggerResponse(BaseModel):
    """Acknowledgement of a reconciliation trigger."""
    namespace: str
    name: str
    coalesced: bool = Field(description="An attempt was already running; this trigger queues behind it")
    result: Optional[AttemptStatus] = None


def create_reconcile_router(
    scheduler: ReconcileScheduler,
    status: InMemoryStatusWriter,
    operation_timeout_ms: int = 300_000,
) -> APIRouter:
    """Create and configure the reconcile API router."""
    router = APIRouter(prefix="/reconcile", tags=["reconcile"])

    @router.post("/{namespace}/{name}", response_model=TriggerResponse, status_code=202)
    async def trigger_reconciliation(
        namespace: str,
        name: str,
        wait: bool = Query(False, description="Wait for the attempt to finish"),
    ):
        """
        Trigger a reconciliation attempt.

        A trigger for a cluster with an attempt already in flight is
        coalesced into one follow-up attempt.
        """
        context = ReconciliationContext(
            namespace=namespace,
            name=name,
            trigger="api",
            operation_timeout_ms=operation_timeout_ms,
        )
        coalesced = scheduler.in_flight(namespace, name)
        task = scheduler.submit(context)

        result = None
        if wait:
            result = AttemptStatus.from_result(await asyncio.shield(task))
        return TriggerResponse(namespace=namespace, name=name, coalesced=coalesced, result=result)

    @router.get("/status", response_model=StatusList)
    async def list_status():
        """Latest attempt result for every cluster."""
        return StatusList(
            attempts=[AttemptStatus.from_result(r) for r in status.all()],
            in_flight=scheduler.active,
        )

    @router.get("/status/{namespace}/{name}", response_model=AttemptStatus)
    async def get_status(namespace: str, name: str):
        """Latest attempt result for one cluster."""
        result = status.get(namespace, name)
        if result is None:
            raise HTTPException(
                status_code=404,
                detail=f"No reconciliation attempt recorded for {namespace}/{name}",
            )
        return AttemptStatus.from_result(result)

    return router


def create_app(
    resources: Resources,
    config: Optional[OperatorConfig] = None,
    resync: bool = True,
) -> FastAPI:
    """
    Build the operator API around a set of resource accessors.

    The periodic resync of every cluster in the watched namespace runs for
    the lifetime of the application when ``resync`` is set.
    """
    config = config or get_config()
    status = InMemoryStatusWriter()
    machine = ReconciliationStateMachine.from_config(resources, config, status_writer=status)
    scheduler = ReconcileScheduler(
        machine.reconcile, max_concurrent=config.max_concurrent_reconciliations
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifecycle handler."""
        logger.info("Quorum operator API starting", extra={
            "version": APP_VERSION,
            "namespace": config.namespace,
            "feature_gates": config.feature_gates,
        })

        resync_task = None
        if resync:
            resync_task = asyncio.create_task(
                periodic_resync(
                    scheduler,
                    resources.clusters,
                    config.namespace,
                    config.resync_interval_s,
                    config.operation_timeout_ms,
                )
            )

        yield

        logger.info("Quorum operator API shutting down")
        if resync_task is not None:
            resync_task.cancel()
            try:
                await resync_task
            except asyncio.CancelledError:
                pass
        await scheduler.shutdown()
        close = getattr(resources, "close", None)
        if close is not None:
            await close()

    app = FastAPI(title=APP_TITLE, version=APP_VERSION, lifespan=lifespan)
    app.state.machine = machine
    app.state.scheduler = scheduler
    app.state.status = status

    app.include_router(
        create_reconcile_router(scheduler, status, config.operation_timeout_ms)
    )

    @app.get("/metrics")
    async def metrics():
        """Prometheus scrape endpoint."""
        return metrics_response()

    @app.get("/health")
    async def health():
        return {"status": "ok", "in_flight": scheduler.active}

    return app
