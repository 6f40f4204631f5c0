"""
FastAPI Application — IVR webhooks + management REST API.

Provides:
- Twilio voice webhooks (/ivr/*) that drive live calls
- Workflow CRUD, validation and activation
- Execution queries, force-stop and durable call history
- Captured leads and scheduled callbacks
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

import structlog

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, ValidationError

from api.bootstrap import Services, build_services, get_services
from api.webhooks import router as ivr_router
from config.settings import Settings, get_settings
from database.session import close_db, init_db
from models.schemas import EndReason, Workflow
from workflow.service import WorkflowNotFound, WorkflowValidationFailed

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class WorkflowCreateRequest(BaseModel):
    id: Optional[str] = None
    name: str = ""
    description: str = ""
    prompt_key: Optional[str] = None
    nodes: list[dict[str, Any]] = Field(default_factory=list)
    edges: list[dict[str, Any]] = Field(default_factory=list)
    settings: dict[str, Any] = Field(default_factory=dict)


class WorkflowUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    prompt_key: Optional[str] = None
    nodes: Optional[list[dict[str, Any]]] = None
    edges: Optional[list[dict[str, Any]]] = None
    settings: Optional[dict[str, Any]] = None


class StopExecutionRequest(BaseModel):
    reason: str = EndReason.STOPPED.value
    hangup: bool = True


def _workflow_out(workflow: Workflow) -> dict[str, Any]:
    return workflow.model_dump(mode="json", by_alias=True)


def _errors_out(exc: ValidationError) -> list[dict[str, Any]]:
    return exc.errors(include_url=False, include_context=False, include_input=False)


def _issues_out(exc: WorkflowValidationFailed) -> dict[str, Any]:
    return {
        "message": str(exc),
        "issues": [i.model_dump() for i in exc.issues],
    }


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

def create_app(settings: Settings = None, services: Services = None) -> FastAPI:
    settings = settings or (services.settings if services else get_settings())
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        uses_sql = settings.database.store_backend == "sql"
        if uses_sql:
            await init_db()
        await services.sweeper.start_background()
        await services.audio_jobs.start_background()
        logger.info("ivr_engine_started", environment=settings.environment,
                    store=type(services.store).__name__)
        yield

        await services.sweeper.stop()
        await services.audio_jobs.stop()
        await services.post_call.wait_idle()
        await services.api_executor.close()
        if services.twilio is not None:
            await services.twilio.close()
        flush = getattr(services.store, "flush_all", None)
        if flush is not None:
            flush()
        if uses_sql:
            await close_db()
        logger.info("ivr_engine_stopped")

    app = FastAPI(
        title=settings.app_name,
        description="Graph-driven IVR call flows over Twilio webhooks",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(ivr_router)
    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health(services: Services = Depends(get_services)):
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "active_executions": len(services.manager.table),
            "pending_audio_jobs": services.audio_jobs.pending(),
        }

    # ══════════════════════════════════════════════════════════
    #  WORKFLOWS
    # ══════════════════════════════════════════════════════════

    @app.get("/api/v1/workflows")
    async def list_workflows(status: str = None, services: Services = Depends(get_services)):
        return [_workflow_out(w) for w in await services.workflows.list(status=status)]

    @app.post("/api/v1/workflows", status_code=201)
    async def create_workflow(req: WorkflowCreateRequest, services: Services = Depends(get_services)):
        data = req.model_dump(exclude_none=True)
        try:
            workflow = await services.workflows.create(data)
        except ValidationError as e:
            raise HTTPException(422, _errors_out(e))
        except ValueError as e:
            raise HTTPException(409, str(e))
        return _workflow_out(workflow)

    @app.get("/api/v1/workflows/{workflow_id}")
    async def get_workflow(workflow_id: str, services: Services = Depends(get_services)):
        try:
            return _workflow_out(await services.workflows.get(workflow_id))
        except WorkflowNotFound as e:
            raise HTTPException(404, str(e))

    @app.put("/api/v1/workflows/{workflow_id}")
    async def update_workflow(workflow_id: str, req: WorkflowUpdateRequest,
                              services: Services = Depends(get_services)):
        try:
            workflow = await services.workflows.update(workflow_id, req.model_dump(exclude_unset=True))
        except WorkflowNotFound as e:
            raise HTTPException(404, str(e))
        except ValidationError as e:
            raise HTTPException(422, _errors_out(e))
        except WorkflowValidationFailed as e:
            raise HTTPException(422, _issues_out(e))
        return _workflow_out(workflow)

    @app.delete("/api/v1/workflows/{workflow_id}")
    async def delete_workflow(workflow_id: str, services: Services = Depends(get_services)):
        try:
            await services.workflows.delete(workflow_id)
        except WorkflowNotFound as e:
            raise HTTPException(404, str(e))
        return {"status": "deleted", "id": workflow_id}

    @app.post("/api/v1/workflows/{workflow_id}/activate")
    async def activate_workflow(workflow_id: str, services: Services = Depends(get_services)):
        try:
            return _workflow_out(await services.workflows.activate(workflow_id))
        except WorkflowNotFound as e:
            raise HTTPException(404, str(e))
        except WorkflowValidationFailed as e:
            raise HTTPException(422, _issues_out(e))

    @app.post("/api/v1/workflows/{workflow_id}/deactivate")
    async def deactivate_workflow(workflow_id: str, services: Services = Depends(get_services)):
        try:
            return _workflow_out(await services.workflows.deactivate(workflow_id))
        except WorkflowNotFound as e:
            raise HTTPException(404, str(e))

    @app.post("/api/v1/workflows/{workflow_id}/validate")
    async def validate_workflow(workflow_id: str, services: Services = Depends(get_services)):
        try:
            issues = await services.workflows.validate(workflow_id)
        except WorkflowNotFound as e:
            raise HTTPException(404, str(e))
        return {"valid": not issues, "issues": [i.model_dump() for i in issues]}

    # ══════════════════════════════════════════════════════════
    #  EXECUTIONS
    # ══════════════════════════════════════════════════════════

    @app.get("/api/v1/executions/active")
    async def list_active_executions(services: Services = Depends(get_services)):
        return [
            {
                "call_id": s.call_id,
                "workflow_id": s.workflow_id,
                "workflow_version": s.workflow_version,
                "current_node_id": s.current_node_id,
                "started_at": s.started_at.isoformat(),
                "node_execution_count": s.node_execution_count,
            }
            for s in services.manager.list_active()
        ]

    @app.get("/api/v1/executions/{call_id}")
    async def get_execution(call_id: str, services: Services = Depends(get_services)):
        """Live state while the call runs, the durable log afterwards."""
        log = await services.store.find_execution_log_by_call(call_id)
        state = services.manager.get_state(call_id)
        if state is None and log is None:
            raise HTTPException(404, "Execution not found")
        return {
            "call_id": call_id,
            "active": state is not None,
            "state": state.model_dump(mode="json") if state else None,
            "log": log,
        }

    @app.post("/api/v1/executions/{call_id}/stop")
    async def stop_execution(call_id: str, req: StopExecutionRequest = None,
                             services: Services = Depends(get_services)):
        req = req or StopExecutionRequest()
        try:
            reason = EndReason(req.reason)
        except ValueError:
            raise HTTPException(422, f"Unknown reason '{req.reason}'")

        stopped = await services.engine.stop(call_id, reason)
        if not stopped and await services.store.find_execution_log_by_call(call_id) is None:
            raise HTTPException(404, "Execution not found")

        hung_up = False
        if stopped and req.hangup and services.twilio is not None:
            try:
                await services.twilio.end_call(call_id)
                hung_up = True
            except Exception as e:
                logger.warning("provider_hangup_failed", call_id=call_id, error=str(e))
        return {"call_id": call_id, "stopped": stopped, "reason": reason.value, "hung_up": hung_up}

    @app.get("/api/v1/execution-logs")
    async def list_execution_logs(
        workflow_id: str = None,
        start: datetime = None,
        end: datetime = None,
        status: str = None,
        limit: int = Query(100, ge=1, le=1000),
        services: Services = Depends(get_services),
    ):
        return await services.store.list_execution_logs(
            workflow_id=workflow_id, start=start, end=end, status=status, limit=limit,
        )

    # ══════════════════════════════════════════════════════════
    #  LEADS & CALLBACKS
    # ══════════════════════════════════════════════════════════

    @app.get("/api/v1/leads")
    async def list_leads(limit: int = Query(100, ge=1, le=1000),
                         services: Services = Depends(get_services)):
        return await services.store.list_leads(limit=limit)

    @app.get("/api/v1/callbacks")
    async def list_callbacks(status: str = None, services: Services = Depends(get_services)):
        return await services.store.list_callbacks(status=status)


app = create_app()


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
