"""Storage models shared by API, engine and persistence backends."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

AgentStatus = Literal["idle", "queued", "running", "succeeded", "failed"]
EventKind = Literal[
    "status",
    "progress",
    "tool",
    "question",
    "approval-request",
    "note",
    "result",
    "error",
]
SourceType = Literal["manual", "ai-insight", "chat"]
Priority = Literal["low", "medium", "high"]
AiProvider = Literal["openrouter", "google", "anthropic"]
SearchProvider = Literal["jina", "tavily", "perplexity"]
ConnectorProvider = Literal["github", "gmail", "google-calendar"]

# Fields the engine is allowed to patch on a task record.
AGENT_FIELDS = frozenset(
    {
        "agent_status",
        "agent_progress",
        "agent_phase",
        "agent_plan",
        "agent_summary",
        "agent_result",
        "agent_error",
        "agent_started_at",
        "agent_completed_at",
        "agent_state",
        "agent_run_id",
    }
)
TASK_FIELDS = frozenset({"title", "note", "due_date", "priority", "done"})
# Fields a conditional patch may compare before writing.
GUARD_FIELDS = frozenset({"agent_status", "agent_state", "agent_run_id"})


class TaskRecord(BaseModel):
    """Persisted task with its agent run fields."""

    task_id: str
    user_id: str
    title: str
    note: str | None = None
    source_type: SourceType = "manual"
    source_id: str | None = None
    due_date: str | None = None
    priority: Priority = "medium"
    done: bool = False
    agent_status: AgentStatus = "idle"
    agent_progress: int = 0
    agent_phase: str | None = None
    agent_plan: list[str] | None = None
    agent_summary: str | None = None
    agent_result: str | None = None
    agent_error: str | None = None
    agent_started_at: datetime | None = None
    agent_completed_at: datetime | None = None
    agent_state: str | None = None
    agent_run_id: str | None = None
    created_at: datetime
    updated_at: datetime


class TaskEventRecord(BaseModel):
    """Append-only timeline entry for a task run."""

    event_id: str
    task_id: str
    user_id: str
    kind: EventKind
    title: str
    detail: str | None = None
    progress: int | None = None
    tool_name: str | None = None
    options: list[str] | None = None
    answered: bool | None = None
    answer: str | None = None
    approval_action: str | None = None
    approval_params: str | None = None
    approved: bool | None = None
    created_at: datetime


class NotificationRecord(BaseModel):
    notification_id: str
    user_id: str
    type: str = "agent-task"
    title: str
    body: str
    action_url: str | None = None
    read: bool = False
    created_at: datetime


class AgentFileRecord(BaseModel):
    file_id: str
    user_id: str
    task_id: str | None = None
    title: str
    content: str
    file_type: str = "document"
    created_at: datetime
    updated_at: datetime


class UserSettingsRecord(BaseModel):
    """Per-user model and search configuration."""

    user_id: str
    ai_provider: AiProvider = "openrouter"
    ai_model: str | None = None
    openrouter_api_key: str | None = None
    google_api_key: str | None = None
    anthropic_api_key: str | None = None
    search_provider: SearchProvider = "jina"
    search_api_key: str | None = None


class ConnectorTokenRecord(BaseModel):
    user_id: str
    provider: ConnectorProvider
    access_token: str
    refresh_token: str | None = None
    scopes: list[str] = Field(default_factory=list)
    expires_at: datetime | None = None
    updated_at: datetime


class WorkspaceRecord(BaseModel):
    """Read-only business record (income stream, idea, mentorship session, insight).

    These tables belong to the CRUD side of the product; the agent only reads
    them, so the payload stays an untyped document.
    """

    record_id: str
    user_id: str
    kind: Literal["income_stream", "idea", "mentorship_session", "insight", "profile"]
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
