"""
FastAPI Admin Service for the Task Orchestrator

REST endpoints for creating and managing tasks and agents. Core error kinds
map to HTTP status codes: validation 400, invalid transition 409, not found
404, gateway 502, store 503.

When ADMIN_API_KEY is set every endpoint except /health requires it, either
in the X-Admin-API-Key header or as a Bearer token.
"""

import logging
import secrets
from contextlib import asynccontextmanager
from datetime import datetime, UTC
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from agents.shared.schemas import (
    Agent,
    AgentCapability,
    AgentConfig,
    AgentStatus,
    SubAgentConfig,
    Task,
    TaskStatus,
    TaskType,
)
from orchestrator.errors import (
    GatewayError,
    InvalidTransitionError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from orchestrator.main import OrchestratorService

logger = logging.getLogger(__name__)


# Request models
class CreateTaskRequest(BaseModel):
    """Body for POST /tasks. Field rules are checked by the orchestrator."""
    title: Optional[str] = None
    description: Optional[str] = None
    type: Optional[str] = None
    priority: Optional[str] = "medium"
    auto_assign: bool = False
    created_by: Optional[str] = None
    repository: Optional[str] = None
    branch: Optional[str] = None
    file_paths: Optional[List[str]] = None
    related_issues: Optional[List[int]] = None
    estimated_hours: Optional[float] = None
    tags: Optional[List[str]] = None
    sub_agent_config: Optional[SubAgentConfig] = None


class AssignTaskRequest(BaseModel):
    agent_id: Optional[str] = None


class CancelTaskRequest(BaseModel):
    reason: Optional[str] = None


class RegisterAgentRequest(BaseModel):
    name: str = ""
    capabilities: List[str] = Field(default_factory=list)
    config: Optional[AgentConfig] = None


class AgentStatusRequest(BaseModel):
    status: str
    current_task_id: Optional[str] = None
    current_session_id: Optional[str] = None


def _parse_enum(enum_cls, value: Optional[str], label: str):
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError([f"Unknown {label}: {value}"])


def _error_response(status_code: int, exc: Exception, errors: Optional[List[str]] = None) -> JSONResponse:
    content: Dict[str, Any] = {"error": type(exc).__name__, "message": str(exc)}
    if errors is not None:
        content["errors"] = errors
    return JSONResponse(status_code=status_code, content=content)


def get_service(request: Request) -> OrchestratorService:
    return request.app.state.service


async def require_admin_key(request: Request) -> None:
    """Reject the request unless it carries the configured admin key"""
    expected = request.app.state.service.settings.admin_api_key
    if not expected:
        return

    provided = request.headers.get("x-admin-api-key")
    if not provided:
        authorization = request.headers.get("authorization", "")
        if authorization.lower().startswith("bearer "):
            provided = authorization[7:].strip()

    if not provided or not secrets.compare_digest(provided.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Invalid or missing admin API key")


router = APIRouter(dependencies=[Depends(require_admin_key)])


# Tasks
@router.get("/tasks", response_model=List[Task])
async def list_tasks(
    status: Optional[str] = None,
    type: Optional[str] = None,
    limit: Optional[int] = None,
    service: OrchestratorService = Depends(get_service)
):
    return await service.orchestrator.list_tasks(
        status=_parse_enum(TaskStatus, status, "task status"),
        task_type=_parse_enum(TaskType, type, "task type"),
        limit=limit
    )


@router.post("/tasks", response_model=Task, status_code=201)
async def create_task(body: CreateTaskRequest, service: OrchestratorService = Depends(get_service)):
    options = body.model_dump(
        exclude={"title", "description", "type", "priority", "auto_assign"},
        exclude_none=True
    )
    return await service.orchestrator.create_task(
        body.title,
        body.description,
        body.type,
        body.priority,
        auto_assign=body.auto_assign,
        **options
    )


@router.post("/tasks/process-next")
async def process_next_task(service: OrchestratorService = Depends(get_service)):
    task = await service.orchestrator.process_next_task()
    return {"assigned": task is not None, "task": task.model_dump(mode="json") if task else None}


@router.get("/tasks/{task_id}", response_model=Task)
async def get_task(task_id: str, service: OrchestratorService = Depends(get_service)):
    return await service.orchestrator.get_task(task_id)


@router.post("/tasks/{task_id}/assign", response_model=Task)
async def assign_task(
    task_id: str,
    body: Optional[AssignTaskRequest] = None,
    service: OrchestratorService = Depends(get_service)
):
    return await service.orchestrator.assign_task(task_id, body.agent_id if body else None)


@router.post("/tasks/{task_id}/cancel", response_model=Task)
async def cancel_task(
    task_id: str,
    body: Optional[CancelTaskRequest] = None,
    service: OrchestratorService = Depends(get_service)
):
    return await service.orchestrator.cancel_task(task_id, body.reason if body else None)


# Agents
@router.get("/agents", response_model=List[Agent])
async def list_agents(status: Optional[str] = None, service: OrchestratorService = Depends(get_service)):
    return await service.registry.list_agents(status=_parse_enum(AgentStatus, status, "agent status"))


@router.post("/agents", response_model=Agent, status_code=201)
async def register_agent(body: RegisterAgentRequest, service: OrchestratorService = Depends(get_service)):
    known = {c.value for c in AgentCapability}
    unknown = [c for c in body.capabilities if c not in known]
    if unknown:
        raise ValidationError([f"Unknown capability: {c}" for c in unknown])
    return await service.registry.register(
        body.name,
        [AgentCapability(c) for c in body.capabilities],
        body.config
    )


@router.post("/agents/health-sweep")
async def health_sweep(service: OrchestratorService = Depends(get_service)):
    offline = await service.run_health_sweep()
    return {"offline": [agent.id for agent in offline], "count": len(offline)}


@router.get("/agents/{agent_id}", response_model=Agent)
async def get_agent(agent_id: str, service: OrchestratorService = Depends(get_service)):
    return await service.registry.get_agent(agent_id)


@router.delete("/agents/{agent_id}", status_code=204)
async def deregister_agent(agent_id: str, service: OrchestratorService = Depends(get_service)):
    await service.registry.deregister(agent_id)


@router.post("/agents/{agent_id}/status", response_model=Agent)
async def set_agent_status(
    agent_id: str,
    body: AgentStatusRequest,
    service: OrchestratorService = Depends(get_service)
):
    return await service.registry.set_status(
        agent_id,
        _parse_enum(AgentStatus, body.status, "agent status"),
        current_task_id=body.current_task_id,
        current_session_id=body.current_session_id
    )


@router.post("/agents/{agent_id}/heartbeat", response_model=Agent)
async def agent_heartbeat(agent_id: str, service: OrchestratorService = Depends(get_service)):
    return await service.registry.heartbeat(agent_id)


@router.get("/agents/{agent_id}/metrics")
async def agent_metrics(agent_id: str, service: OrchestratorService = Depends(get_service)):
    return await service.registry.get_agent_metrics(agent_id)


@router.get("/stats")
async def stats(service: OrchestratorService = Depends(get_service)):
    return await service.orchestrator.get_stats()


def create_app(
    service: Optional[OrchestratorService] = None,
    connect_messaging: bool = True,
    run_jobs: bool = True
) -> FastAPI:
    """
    Build the admin API.

    Args:
        service: Orchestrator service to expose (built from the environment
            at startup if omitted)
        connect_messaging: Connect the service to RabbitMQ on startup
        run_jobs: Run the service's periodic jobs while the app is up
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "service", None) is None:
            app.state.service = OrchestratorService()

        logger.info("Starting admin API...")
        await app.state.service.start(connect_messaging=connect_messaging, run_jobs=run_jobs)

        yield

        logger.info("Shutting down admin API...")
        await app.state.service.shutdown()

    app = FastAPI(
        title="Task Orchestrator Admin API",
        version="1.0.0",
        description="Create, assign and monitor tasks and agents",
        lifespan=lifespan
    )
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(InvalidTransitionError)
    async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
        return _error_response(409, exc, exc.errors)

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return _error_response(400, exc, exc.errors)

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return _error_response(404, exc)

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        logger.error(f"Gateway error on {request.url.path}: {exc}")
        return _error_response(502, exc)

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        logger.error(f"Store error on {request.url.path}: {exc}")
        return _error_response(503, exc)

    @app.get("/")
    async def root():
        return {"message": "Task Orchestrator Admin API", "version": app.version}

    @app.get("/health")
    async def health_check(request: Request):
        current = request.app.state.service
        return {
            "status": "healthy",
            "timestamp": datetime.now(UTC).isoformat(),
            "rabbitmq": "connected" if current.messaging_enabled else "disconnected",
            "gateway": await current.gateway.health_check(),
            "active_sessions": current.monitor.active_count,
        }

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import os

    import uvicorn
    from dotenv import load_dotenv

    from agents.shared.file_logger import setup_file_logger

    load_dotenv()
    setup_file_logger("api", log_level=os.getenv("LOG_LEVEL", "INFO"))
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("API_PORT", "8000")))
