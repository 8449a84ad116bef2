"""FastAPI app entrypoint for task-agent."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import FastAPI, Header, HTTPException, Request
from pydantic import BaseModel, Field

from task_agent.config.settings import Settings, get_settings
from task_agent.graph.checkpoint import Scheduler
from task_agent.graph.engine import EventKindError, EventNotFoundError, TaskAgentEngine
from task_agent.graph.runtime import ModelFactory
from task_agent.llm.client import build_chat_model
from task_agent.storage.base import AgentStorage
from task_agent.storage.models import (
    AiProvider,
    ConnectorProvider,
    ConnectorTokenRecord,
    NotificationRecord,
    Priority,
    SearchProvider,
    SourceType,
    TaskEventRecord,
    TaskRecord,
    UserSettingsRecord,
)
from task_agent.storage.postgres import PostgresAgentStorage
from task_agent.tools import ToolDef, list_tools


class CreateTaskRequest(BaseModel):
    title: str = Field(min_length=1)
    note: str | None = None
    source_type: SourceType = "manual"
    source_id: str | None = None
    due_date: str | None = None
    priority: Priority = "medium"


class AnswerRequest(BaseModel):
    answer: str = Field(min_length=1)


class ApprovalRequest(BaseModel):
    approved: bool


class SettingsRequest(BaseModel):
    ai_provider: AiProvider = "openrouter"
    ai_model: str | None = None
    openrouter_api_key: str | None = None
    google_api_key: str | None = None
    anthropic_api_key: str | None = None
    search_provider: SearchProvider = "jina"
    search_api_key: str | None = None


class ConnectorRequest(BaseModel):
    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    scopes: list[str] = Field(default_factory=list)
    expires_at: datetime | None = None


class StartResponse(BaseModel):
    started: bool
    task: TaskRecord


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    scheduler: Scheduler | None,
    model_factory: ModelFactory,
    storage_override: AgentStorage | None,
) -> None:
    if not hasattr(app.state, "storage"):
        database_url = settings.resolved_database_url()
        if storage_override is None and not database_url:
            raise RuntimeError(
                "Missing database URL. Set TASK_AGENT_DATABASE_URL "
                "or DATABASE_URL before starting the app."
            )
        app.state.storage = storage_override or PostgresAgentStorage(database_url)
        app.state.storage.migrate()

    if not hasattr(app.state, "settings"):
        app.state.settings = settings

    if not hasattr(app.state, "engine"):
        app.state.engine = TaskAgentEngine(
            app.state.storage,
            settings,
            scheduler=scheduler,
            model_factory=model_factory,
        )


def create_app(
    *,
    storage: AgentStorage | None = None,
    settings_override: Settings | None = None,
    scheduler: Scheduler | None = None,
    model_factory: ModelFactory | None = None,
) -> FastAPI:
    settings = settings_override or get_settings()
    factory = model_factory or build_chat_model

    def ensure(app: FastAPI) -> None:
        _ensure_runtime_state(
            app,
            settings=settings,
            scheduler=scheduler,
            model_factory=factory,
            storage_override=storage,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ensure(app)
        yield
        app.state.engine.close()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if storage is not None:
        ensure(app)

    def _get_engine(request: Request) -> TaskAgentEngine:
        if not hasattr(request.app.state, "engine"):
            ensure(request.app)
        return request.app.state.engine

    def _get_task_or_404(engine: TaskAgentEngine, user_id: str, task_id: str) -> TaskRecord:
        record = engine.storage.get_task(user_id, task_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Task not found")
        return record

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.get("/tools")
    def tools() -> dict[str, list[ToolDef]]:
        return {"tools": list_tools()}

    @app.post("/tasks", response_model=TaskRecord)
    def create_task(
        payload: CreateTaskRequest,
        request: Request,
        x_user_id: str = Header(min_length=1),
    ) -> TaskRecord:
        engine = _get_engine(request)
        return engine.storage.create_task(
            x_user_id,
            title=payload.title,
            note=payload.note,
            source_type=payload.source_type,
            source_id=payload.source_id,
            due_date=payload.due_date,
            priority=payload.priority,
        )

    @app.get("/tasks", response_model=list[TaskRecord])
    def list_tasks(
        request: Request,
        x_user_id: str = Header(min_length=1),
        include_done: bool = True,
        limit: int = 50,
    ) -> list[TaskRecord]:
        engine = _get_engine(request)
        return engine.storage.list_tasks(x_user_id, limit=limit, include_done=include_done)

    @app.get("/tasks/{task_id}", response_model=TaskRecord)
    def get_task(
        task_id: str, request: Request, x_user_id: str = Header(min_length=1)
    ) -> TaskRecord:
        return _get_task_or_404(_get_engine(request), x_user_id, task_id)

    @app.post("/tasks/{task_id}/start", response_model=StartResponse)
    def start_task(
        task_id: str, request: Request, x_user_id: str = Header(min_length=1)
    ) -> StartResponse:
        engine = _get_engine(request)
        _get_task_or_404(engine, x_user_id, task_id)
        started = engine.start(x_user_id, task_id)
        return StartResponse(started=started, task=_get_task_or_404(engine, x_user_id, task_id))

    @app.post("/tasks/{task_id}/continue", response_model=TaskRecord)
    def continue_task(
        task_id: str, request: Request, x_user_id: str = Header(min_length=1)
    ) -> TaskRecord:
        engine = _get_engine(request)
        _get_task_or_404(engine, x_user_id, task_id)
        engine.request_continue(x_user_id, task_id)
        return _get_task_or_404(engine, x_user_id, task_id)

    @app.get("/tasks/{task_id}/events", response_model=list[TaskEventRecord])
    def list_events(
        task_id: str, request: Request, x_user_id: str = Header(min_length=1)
    ) -> list[TaskEventRecord]:
        engine = _get_engine(request)
        _get_task_or_404(engine, x_user_id, task_id)
        return engine.storage.list_events(x_user_id, task_id)

    @app.post("/events/{event_id}/answer", response_model=TaskEventRecord)
    def answer_event(
        event_id: str,
        payload: AnswerRequest,
        request: Request,
        x_user_id: str = Header(min_length=1),
    ) -> TaskEventRecord:
        engine = _get_engine(request)
        try:
            return engine.answer_question(x_user_id, event_id, payload.answer)
        except EventNotFoundError as exc:
            raise HTTPException(status_code=404, detail="Event not found") from exc
        except EventKindError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc

    @app.post("/events/{event_id}/approval", response_model=TaskEventRecord)
    def approve_event(
        event_id: str,
        payload: ApprovalRequest,
        request: Request,
        x_user_id: str = Header(min_length=1),
    ) -> TaskEventRecord:
        engine = _get_engine(request)
        try:
            return engine.respond_approval(x_user_id, event_id, payload.approved)
        except EventNotFoundError as exc:
            raise HTTPException(status_code=404, detail="Event not found") from exc
        except EventKindError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc

    @app.get("/notifications", response_model=list[NotificationRecord])
    def list_notifications(
        request: Request, x_user_id: str = Header(min_length=1), limit: int = 50
    ) -> list[NotificationRecord]:
        return _get_engine(request).storage.list_notifications(x_user_id, limit=limit)

    @app.put("/settings", response_model=UserSettingsRecord)
    def save_settings(
        payload: SettingsRequest,
        request: Request,
        x_user_id: str = Header(min_length=1),
    ) -> UserSettingsRecord:
        record = UserSettingsRecord(user_id=x_user_id, **payload.model_dump())
        return _get_engine(request).storage.save_user_settings(record)

    @app.put("/connectors/{provider}", response_model=ConnectorTokenRecord)
    def save_connector(
        provider: ConnectorProvider,
        payload: ConnectorRequest,
        request: Request,
        x_user_id: str = Header(min_length=1),
    ) -> ConnectorTokenRecord:
        record = ConnectorTokenRecord(
            user_id=x_user_id,
            provider=provider,
            updated_at=datetime.now(UTC),
            **payload.model_dump(),
        )
        return _get_engine(request).storage.save_connector_token(record)

    return app


app = create_app()
