"""
Resource Scheduler: API Server

FastAPI application serving:
  POST /v1/workflows              start a workflow across execution contexts
  GET  /v1/workflows              list workflow instances (?status=)
  GET  /v1/workflows/{id}         per-step, per-context status snapshot
  POST /v1/workflows/{id}/cancel  cancel outstanding tasks of an instance
  GET  /v1/pools                  pool capacity and allocation
  GET  /v1/stats                  scheduler and workflow statistics
  GET  /health                    liveness
  GET  /ready                     readiness
  GET  /startup                   startup (config parses)

Step handlers are code, so the app is always built around an
orchestrator the host wired itself:

    config = load_config()
    orchestrator = build_orchestrator(config, handlers)
    serve(orchestrator, port=8080, config=config)

Requires: pip install fastapi uvicorn
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Request

from runtime.health import (
    HealthChecker,
    create_config_check,
    create_ledger_check,
    create_scheduler_check,
    create_store_check,
)
from scheduling.errors import (
    InsufficientCapacity,
    UnknownHandler,
    UnknownPool,
    UnknownWorkflow,
    UnknownWorkflowInstance,
)
from scheduling.orchestrator import WorkflowOrchestrator
from scheduling.types import WorkflowStatus

logger = logging.getLogger("resource_scheduler.api")


def default_health_checker(
    orchestrator: WorkflowOrchestrator,
    config: dict[str, Any] | None = None,
) -> HealthChecker:
    checker = HealthChecker()
    checker.register("scheduler", create_scheduler_check(orchestrator.scheduler))
    checker.register("ledger", create_ledger_check(orchestrator.scheduler.ledger))
    if orchestrator.store is not None:
        checker.register("store", create_store_check(orchestrator.store))
    if config is not None:
        checker.register_startup("config", create_config_check(config))
    return checker


def create_app(
    orchestrator: WorkflowOrchestrator,
    health: HealthChecker | None = None,
    manage_scheduler: bool = True,
    config: dict[str, Any] | None = None,
) -> Any:
    """
    Create and configure the FastAPI application.

    With ``manage_scheduler`` the scheduler loop is started when the app
    starts and stopped when it shuts down. ``config`` adds a startup
    check that the pools and workflows it describes still parse.
    """
    from fastapi import FastAPI, HTTPException
    from fastapi.responses import JSONResponse

    from api.models import WorkflowAccepted, WorkflowSubmission, WorkflowSummary

    health = health or default_health_checker(orchestrator, config)
    scheduler = orchestrator.scheduler

    @asynccontextmanager
    async def lifespan(_app):
        if manage_scheduler:
            scheduler.start()
        try:
            yield
        finally:
            if manage_scheduler:
                scheduler.stop()

    app = FastAPI(
        title="Resource Scheduler API",
        version="0.1.0",
        description="Resource-aware task scheduling and workflow orchestration",
        lifespan=lifespan,
    )

    # ── Workflows ─────────────────────────────────────────────

    @app.post("/v1/workflows", response_model=None)
    async def start_workflow(request: Request):
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse(status_code=422, content={"errors": ["body must be valid JSON"]})
        if not isinstance(body, dict):
            return JSONResponse(status_code=422, content={"errors": ["body must be an object"]})

        submission = WorkflowSubmission.from_body(body)
        errors = submission.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})

        try:
            instance_id = orchestrator.start(
                submission.workflow, submission.contexts, submission.input,
            )
        except UnknownWorkflow as e:
            raise HTTPException(status_code=404, detail=str(e))
        except ValueError as e:
            return JSONResponse(status_code=422, content={"errors": [str(e)]})
        except (UnknownHandler, UnknownPool, InsufficientCapacity) as e:
            raise HTTPException(status_code=400, detail=str(e))

        snapshot = orchestrator.get_status(instance_id)
        response = WorkflowAccepted(
            instance_id=instance_id,
            workflow=submission.workflow,
            contexts=snapshot["contexts"],
            status=snapshot["status"],
            message=f"Workflow started across {len(snapshot['contexts'])} context(s)",
        )
        return JSONResponse(status_code=202, content=response.to_dict())

    @app.get("/v1/workflows")
    async def list_workflows(status: str | None = None):
        try:
            wanted = WorkflowStatus(status) if status else None
        except ValueError:
            return JSONResponse(status_code=422, content={"errors": [f"unknown status {status!r}"]})
        items = [
            WorkflowSummary(
                instance_id=i.instance_id,
                workflow=i.definition_id,
                status=i.status.value,
                contexts=list(i.contexts),
                started_at=i.started_at,
                ended_at=i.ended_at,
            ).to_dict()
            for i in orchestrator.instances(wanted)
        ]
        return JSONResponse(content={"count": len(items), "workflows": items})

    @app.get("/v1/workflows/{instance_id}")
    async def get_workflow_status(instance_id: str):
        try:
            return JSONResponse(content=orchestrator.get_status(instance_id))
        except UnknownWorkflowInstance:
            raise HTTPException(status_code=404, detail="Instance not found")

    @app.post("/v1/workflows/{instance_id}/cancel")
    async def cancel_workflow(instance_id: str):
        try:
            orchestrator.cancel(instance_id)
        except UnknownWorkflowInstance:
            raise HTTPException(status_code=404, detail="Instance not found")
        return JSONResponse(content={
            "instance_id": instance_id,
            "status": orchestrator.get_status(instance_id)["status"],
        })

    # ── Pools & Stats ─────────────────────────────────────────

    @app.get("/v1/pools")
    async def list_pools():
        return JSONResponse(content={
            "pools": [p.to_dict() for p in scheduler.ledger.pools],
        })

    @app.get("/v1/stats")
    async def get_stats():
        return JSONResponse(content=orchestrator.stats())

    # ── Health ────────────────────────────────────────────────

    @app.get("/health")
    async def liveness():
        return JSONResponse(content=health.check_health())

    @app.get("/ready")
    async def readiness():
        result = health.check_ready()
        code = 200 if result["status"] == "ok" else 503
        return JSONResponse(status_code=code, content=result)

    @app.get("/startup")
    async def startup():
        result = health.check_startup()
        code = 200 if result["status"] == "ok" else 503
        return JSONResponse(status_code=code, content=result)

    return app


def serve(
    orchestrator: WorkflowOrchestrator,
    host: str = "0.0.0.0",
    port: int = 8080,
    health: HealthChecker | None = None,
    config: dict[str, Any] | None = None,
) -> None:
    """Run the API with uvicorn. Blocks until shutdown."""
    import uvicorn

    app = create_app(orchestrator, health=health, config=config)
    logger.info("Serving resource scheduler API on %s:%d", host, port)
    uvicorn.run(app, host=host, port=port, log_config=None)
