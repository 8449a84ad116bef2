"""Handlers for workspace lookups, drafts, tasks, notifications and human input."""

from __future__ import annotations

import logging
import re
from typing import Any
from uuid import uuid4

from task_agent.graph.checkpoint import ContinuationMessage
from task_agent.tools.approval import encode_approval_params
from task_agent.tools.schemas import (
    AskUserInput,
    CreateFileInput,
    CreateTaskInput,
    GetTaskResultInput,
    ListAgentFilesInput,
    ListIdeasInput,
    ListIncomeStreamsInput,
    ListMentorshipSessionsInput,
    ListTasksInput,
    ReadAgentFileInput,
    ReadProfileInput,
    RequestApprovalInput,
    SearchInsightsInput,
    SendNotificationInput,
    ToolCall,
    ToolExecResult,
    UpdateAgentFileInput,
    UpdateTaskInput,
    truncate,
    truncate_soft,
)

logger = logging.getLogger(__name__)

NOTIFICATION_TYPES = frozenset(
    {
        "goal-check-in",
        "stale-idea",
        "overdue-action",
        "pattern-detected",
        "milestone",
        "agent-task",
    }
)
_PRIORITIES = frozenset({"low", "medium", "high"})


def profile_text(ctx: Any, user_id: str) -> str:
    records = ctx.workspace.list_workspace_records(user_id, "profile", limit=1)
    if not records:
        return ""
    return str(records[0].data.get("content") or "")


def _head(values: Any, size: int) -> list[Any]:
    return list(values)[:size] if isinstance(values, list) else []


def _priority(raw: str | None) -> str | None:
    value = (raw or "").strip().lower()
    return value if value in _PRIORITIES else None


def read_profile(call: ToolCall, payload: ReadProfileInput) -> ToolExecResult:
    records = call.ctx.workspace.list_workspace_records(call.user_id, "profile", limit=1)
    if not records:
        return ToolExecResult.success(None, "No profile found.")
    data = records[0].data
    version = data.get("version")
    return ToolExecResult.success(
        {
            "version": version,
            "updatedAt": records[0].created_at.isoformat(),
            "content": truncate(str(data.get("content") or ""), 12000),
        },
        f"Loaded profile v{version}." if version is not None else "Loaded profile.",
    )


def list_tasks(call: ToolCall, payload: ListTasksInput) -> ToolExecResult:
    tasks = call.ctx.workspace.list_tasks(
        call.user_id, limit=payload.limit, include_done=payload.include_done
    )
    simplified = [
        {
            "id": task.task_id,
            "title": task.title,
            "dueDate": task.due_date,
            "priority": task.priority,
            "done": task.done,
            "agentStatus": task.agent_status,
        }
        for task in tasks
    ]
    return ToolExecResult.success(simplified, f"Returned {len(simplified)} tasks.")


def list_income_streams(call: ToolCall, payload: ListIncomeStreamsInput) -> ToolExecResult:
    records = call.ctx.workspace.list_workspace_records(
        call.user_id, "income_stream", limit=payload.limit
    )
    simplified = [
        {
            "id": record.record_id,
            "name": record.data.get("name"),
            "category": record.data.get("category"),
            "status": record.data.get("status"),
            "monthlyRevenue": record.data.get("monthlyRevenue"),
            "timeInvestment": record.data.get("timeInvestment"),
            "growthRate": record.data.get("growthRate"),
            "notes": record.data.get("notes"),
        }
        for record in records
    ]
    return ToolExecResult.success(simplified, f"Returned {len(simplified)} income streams.")


def list_ideas(call: ToolCall, payload: ListIdeasInput) -> ToolExecResult:
    records = call.ctx.workspace.list_workspace_records(call.user_id, "idea", limit=payload.limit)
    simplified = [
        {
            "id": record.record_id,
            "title": record.data.get("title"),
            "stage": record.data.get("stage"),
            "category": record.data.get("category"),
            "potentialRevenue": record.data.get("potentialRevenue"),
            "nextSteps": _head(record.data.get("nextSteps"), 5),
            "tags": _head(record.data.get("tags"), 8),
        }
        for record in records
    ]
    return ToolExecResult.success(simplified, f"Returned {len(simplified)} ideas.")


def list_mentorship_sessions(
    call: ToolCall, payload: ListMentorshipSessionsInput
) -> ToolExecResult:
    records = call.ctx.workspace.list_workspace_records(
        call.user_id, "mentorship_session", limit=payload.limit
    )
    simplified = [
        {
            "id": record.record_id,
            "mentorName": record.data.get("mentorName"),
            "date": record.data.get("date"),
            "rating": record.data.get("rating"),
            "topics": _head(record.data.get("topics"), 8),
            "keyInsights": _head(record.data.get("keyInsights"), 6),
            "actionItems": _head(record.data.get("actionItems"), 6),
        }
        for record in records
    ]
    return ToolExecResult.success(simplified, f"Returned {len(simplified)} mentorship sessions.")


def search_insights(call: ToolCall, payload: SearchInsightsInput) -> ToolExecResult:
    terms = [term for term in re.findall(r"\w+", payload.q.lower()) if len(term) > 1]
    records = call.ctx.workspace.list_workspace_records(call.user_id, "insight", limit=500)
    scored: list[tuple[int, Any]] = []
    for record in records:
        haystack = " ".join(
            str(record.data.get(key) or "") for key in ("title", "bodySummary", "body")
        ).lower()
        score = sum(haystack.count(term) for term in terms)
        if score > 0:
            scored.append((score, record))
    scored.sort(key=lambda item: item[0], reverse=True)

    simplified = [
        {
            "id": record.record_id,
            "title": record.data.get("title"),
            "type": record.data.get("type"),
            "priority": record.data.get("priority"),
            "bodySummary": record.data.get("bodySummary") or "",
            "bodyExcerpt": truncate(str(record.data.get("body") or ""), 800),
            "actionItems": _head(record.data.get("actionItems"), 5),
            "score": score,
        }
        for score, record in scored[: payload.limit]
    ]
    return ToolExecResult.success(simplified, f"Found {len(simplified)} insights.")


def get_task_result(call: ToolCall, payload: GetTaskResultInput) -> ToolExecResult:
    task = call.ctx.get_task(call.user_id, payload.task_id)
    if task is None:
        return ToolExecResult.success(None, "Task not found.")
    return ToolExecResult.success(
        {
            "id": task.task_id,
            "title": task.title,
            "done": task.done,
            "agentStatus": task.agent_status,
            "agentSummary": task.agent_summary,
            "agentResult": truncate(task.agent_result or "", 12000),
        },
        f"Loaded result for: {task.title}",
    )


def ask_user(call: ToolCall, payload: AskUserInput) -> ToolExecResult:
    event = call.ctx.append_event(
        call.user_id,
        call.task_id,
        kind="question",
        title=payload.question,
        detail="The agent needs your input to continue.",
        options=payload.options,
        answered=False,
    )
    return ToolExecResult.paused(
        event_id=event.event_id,
        pause_reason="ask_user",
        result={
            "eventId": event.event_id,
            "question": payload.question,
            "options": payload.options,
        },
        summary="Asked user a clarifying question.",
    )


def request_approval(call: ToolCall, payload: RequestApprovalInput) -> ToolExecResult:
    event = call.ctx.append_event(
        call.user_id,
        call.task_id,
        kind="approval-request",
        title=f"Approval requested: {payload.action}",
        detail=payload.reason,
        approval_action=payload.action,
        approval_params=encode_approval_params(payload.params),
    )
    logger.info(
        "approval_requested task_id=%s action=%s event_id=%s",
        call.task_id,
        payload.action,
        event.event_id,
    )
    return ToolExecResult.paused(
        event_id=event.event_id,
        pause_reason="approval",
        result={
            "eventId": event.event_id,
            "action": payload.action,
            "reason": payload.reason,
            "params": payload.params,
        },
        summary="Requested approval from user.",
    )


def create_file(call: ToolCall, payload: CreateFileInput) -> ToolExecResult:
    file_type = payload.file_type.strip() or "document"
    record = call.ctx.workspace.create_agent_file(
        call.user_id,
        task_id=call.task_id,
        title=payload.title,
        content=truncate_soft(payload.content, 80000),
        file_type=file_type,
    )
    return ToolExecResult.success(
        {"id": record.file_id, "title": record.title, "fileType": file_type},
        f"Created file: {record.title}",
    )


def list_agent_files(call: ToolCall, payload: ListAgentFilesInput) -> ToolExecResult:
    files = call.ctx.workspace.list_agent_files(
        call.user_id,
        task_id=call.task_id if payload.task_only else None,
        limit=payload.limit,
    )
    simplified = [
        {
            "id": record.file_id,
            "title": record.title,
            "fileType": record.file_type,
            "taskId": record.task_id,
            "updatedAt": record.updated_at.isoformat(),
        }
        for record in files
    ]
    return ToolExecResult.success(simplified, f"Returned {len(simplified)} files.")


def read_agent_file(call: ToolCall, payload: ReadAgentFileInput) -> ToolExecResult:
    record = call.ctx.workspace.get_agent_file(call.user_id, payload.file_id)
    if record is None:
        return ToolExecResult.failure("File not found")
    return ToolExecResult.success(
        {
            "id": record.file_id,
            "title": record.title,
            "fileType": record.file_type,
            "content": truncate_soft(record.content, payload.max_chars),
            "updatedAt": record.updated_at.isoformat(),
        },
        f"Read file: {record.title}",
    )


def update_agent_file(call: ToolCall, payload: UpdateAgentFileInput) -> ToolExecResult:
    if call.ctx.workspace.get_agent_file(call.user_id, payload.file_id) is None:
        return ToolExecResult.failure("File not found")
    updates: dict[str, Any] = {}
    if payload.title:
        updates["title"] = payload.title
    if payload.content is not None:
        updates["content"] = truncate_soft(payload.content, 80000)
    if payload.file_type:
        updates["file_type"] = payload.file_type
    call.ctx.workspace.update_agent_file(call.user_id, payload.file_id, updates)
    return ToolExecResult.success({"id": payload.file_id}, "Updated file.")


def create_task(call: ToolCall, payload: CreateTaskInput) -> ToolExecResult:
    task = call.ctx.workspace.create_task(
        call.user_id,
        title=payload.title,
        note=payload.note,
        due_date=payload.due_date or None,
        priority=_priority(payload.priority) or "medium",
        source_type="manual",
    )
    if payload.start_agent:
        run_id = uuid4().hex
        call.ctx.patch_task(
            call.user_id,
            task.task_id,
            agent_status="queued",
            agent_progress=3,
            agent_phase="Queued",
            agent_run_id=run_id,
        )
        call.ctx.append_event(
            call.user_id,
            task.task_id,
            kind="status",
            title="Queued",
            detail="Agent is about to start.",
            progress=3,
        )
        call.ctx.schedule_continuation(
            ContinuationMessage(
                kind="run", user_id=call.user_id, task_id=task.task_id, run_id=run_id
            )
        )
    return ToolExecResult.success(
        {"id": task.task_id, "title": task.title, "startAgent": payload.start_agent},
        f"Created and queued task: {task.title}"
        if payload.start_agent
        else f"Created task: {task.title}",
    )


def update_task(call: ToolCall, payload: UpdateTaskInput) -> ToolExecResult:
    existing = call.ctx.get_task(call.user_id, payload.task_id)
    if existing is None:
        return ToolExecResult.failure("Task not found")

    updates: dict[str, Any] = {}
    if payload.title:
        updates["title"] = payload.title
    if payload.note is not None:
        updates["note"] = payload.note
    elif payload.append_note:
        current = (existing.note or "").strip()
        parts = [part for part in (current, payload.append_note.strip()) if part]
        updates["note"] = "\n\n".join(parts)
    if payload.due_date is not None:
        updates["due_date"] = payload.due_date or None
    priority = _priority(payload.priority)
    if priority:
        updates["priority"] = priority
    if payload.done is not None:
        updates["done"] = payload.done

    if updates:
        call.ctx.patch_task(call.user_id, existing.task_id, **updates)
    return ToolExecResult.success({"id": existing.task_id}, f"Updated task: {existing.title}")


def send_notification(call: ToolCall, payload: SendNotificationInput) -> ToolExecResult:
    notification_type = payload.type.strip()
    if notification_type not in NOTIFICATION_TYPES:
        notification_type = "agent-task"
    record = call.ctx.send_notification(
        call.user_id,
        title=payload.title,
        body=payload.body,
        action_url=payload.action_url or None,
        type=notification_type,
    )
    return ToolExecResult.success(
        {"id": record.notification_id, "title": record.title, "type": notification_type},
        "Sent notification.",
    )
