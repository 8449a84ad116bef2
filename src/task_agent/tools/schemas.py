"""Strict Pydantic schemas for tool inputs and results."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Annotated, Any, Literal

from pydantic import (
    AfterValidator,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    StringConstraints,
    field_validator,
)
from pydantic.alias_generators import to_camel

if TYPE_CHECKING:
    from task_agent.graph.context import AgentContext

PauseReason = Literal["ask_user", "approval"]


class StrictModel(BaseModel):
    """Base model for strict schema validation.

    Models call tools with camelCase argument names, so fields are exposed
    under camelCase aliases while Python code uses snake_case.
    """

    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)


class ToolError(RuntimeError):
    """Expected tool failure whose message is shown to the model as-is."""


def _floor_number(value: Any) -> Any:
    if isinstance(value, float) and math.isfinite(value):
        return math.floor(value)
    return value


def _clamped_int(lo: int, hi: int) -> Any:
    def _bound(value: int) -> int:
        return max(lo, min(hi, value))

    return Annotated[int, BeforeValidator(_floor_number), AfterValidator(_bound)]


Limit20 = _clamped_int(1, 20)
Limit50 = _clamped_int(1, 50)
Limit100 = _clamped_int(1, 100)
Limit200 = _clamped_int(1, 200)
InsightLimit = _clamped_int(1, 12)
SearchResultLimit = _clamped_int(1, 10)
FileReadChars = _clamped_int(1000, 80000)
UrlReadChars = _clamped_int(2000, 80000)

RequiredText = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
OptionalText = Annotated[str, StringConstraints(strip_whitespace=True)] | None


class ReadProfileInput(StrictModel):
    pass


class ListTasksInput(StrictModel):
    limit: Limit100 = 20
    include_done: bool = True


class ListIncomeStreamsInput(StrictModel):
    limit: Limit200 = 50


class ListIdeasInput(StrictModel):
    limit: Limit200 = 50


class ListMentorshipSessionsInput(StrictModel):
    limit: Limit200 = 20


class SearchInsightsInput(StrictModel):
    q: RequiredText
    limit: InsightLimit = 6


class GetTaskResultInput(StrictModel):
    task_id: RequiredText


class AskUserInput(StrictModel):
    question: RequiredText
    options: list[str] | None = None

    @field_validator("options")
    @classmethod
    def _normalize_options(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        cleaned = [item.strip() for item in value if item.strip()][:6]
        return cleaned if len(cleaned) >= 2 else None


class CreateFileInput(StrictModel):
    title: RequiredText
    content: str
    file_type: str = "document"

    @field_validator("content")
    @classmethod
    def _require_content(cls, value: str) -> str:
        if len(value.strip()) < 10:
            raise ValueError("content is required")
        return value


class ListAgentFilesInput(StrictModel):
    limit: Limit100 = 20
    task_only: bool = False


class ReadAgentFileInput(StrictModel):
    file_id: RequiredText
    max_chars: FileReadChars = 20000


class UpdateAgentFileInput(StrictModel):
    file_id: RequiredText
    title: OptionalText = None
    content: str | None = None
    file_type: OptionalText = None


class CreateTaskInput(StrictModel):
    title: RequiredText
    note: str | None = None
    due_date: OptionalText = None
    priority: str | None = None
    start_agent: bool = False


class UpdateTaskInput(StrictModel):
    task_id: RequiredText
    title: OptionalText = None
    note: str | None = None
    append_note: str | None = None
    due_date: OptionalText = None
    priority: str | None = None
    done: bool | None = None


class SendNotificationInput(StrictModel):
    title: RequiredText
    body: RequiredText
    action_url: OptionalText = None
    type: str = "agent-task"


class RequestApprovalInput(StrictModel):
    action: RequiredText
    reason: RequiredText
    params: dict[str, Any] | None = None


class WebSearchInput(StrictModel):
    q: RequiredText
    max_results: SearchResultLimit = 5


class ReadUrlInput(StrictModel):
    url: RequiredText
    max_chars: UrlReadChars = 20000

    @field_validator("url")
    @classmethod
    def _require_http(cls, value: str) -> str:
        if not value.lower().startswith(("http://", "https://")):
            raise ValueError("url must start with http:// or https://")
        return value


class GithubListPullRequestsInput(StrictModel):
    q: OptionalText = None
    limit: Limit20 = 10


class GithubCreateIssueInput(StrictModel):
    repo: RequiredText
    title: RequiredText
    body: str | None = None
    labels: list[str] | None = None


class GmailListRecentInput(StrictModel):
    max_results: Limit50 = 10
    label_ids: list[str] | None = None


class GmailSearchMessagesInput(StrictModel):
    query: RequiredText
    max_results: Limit50 = 10


class GmailComposeInput(StrictModel):
    to: RequiredText
    subject: RequiredText
    body: str
    cc: OptionalText = None


class CalendarListUpcomingInput(StrictModel):
    max_results: Limit50 = 10
    time_min: OptionalText = None
    time_max: OptionalText = None


class CalendarCreateEventInput(StrictModel):
    title: RequiredText
    start_date_time: RequiredText
    end_date_time: RequiredText
    description: str | None = None
    attendees: list[str] | None = None
    location: OptionalText = None


class ToolDef(BaseModel):
    name: str
    description: str
    input_schema: dict[str, Any]


class ToolExecResult(BaseModel):
    """Outcome of one tool invocation: success, success-with-pause, or failure."""

    ok: bool
    result: Any = None
    summary: str | None = None
    error: str | None = None
    pause: bool = False
    pause_reason: PauseReason | None = None
    event_id: str | None = None

    @classmethod
    def success(cls, result: Any, summary: str | None = None) -> ToolExecResult:
        return cls(ok=True, result=result, summary=summary)

    @classmethod
    def paused(
        cls,
        *,
        event_id: str,
        pause_reason: PauseReason,
        result: Any,
        summary: str,
    ) -> ToolExecResult:
        return cls(
            ok=True,
            result=result,
            summary=summary,
            pause=True,
            pause_reason=pause_reason,
            event_id=event_id,
        )

    @classmethod
    def failure(cls, error: str) -> ToolExecResult:
        return cls(ok=False, error=error)

    def for_model(self, *, max_chars: int = 12000) -> str:
        if self.ok:
            payload: dict[str, Any] = {"ok": True, "result": self.result}
            if self.summary:
                payload["summary"] = self.summary
        else:
            payload = {"ok": False, "error": self.error}
        return truncate(json.dumps(payload, default=str, ensure_ascii=False), max_chars)


@dataclass
class ApprovalMaps:
    """Per-task approved and denied action names."""

    approved: dict[str, bool] = field(default_factory=dict)
    denied: dict[str, bool] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolCall:
    ctx: AgentContext
    user_id: str
    task_id: str
    tool_name: str
    approvals: ApprovalMaps


def truncate(value: str, max_chars: int = 4000) -> str:
    if len(value) <= max_chars:
        return value
    return f"{value[: max_chars - 3]}..."


def truncate_soft(value: str, max_chars: int = 60000) -> str:
    return truncate(value, max_chars)
