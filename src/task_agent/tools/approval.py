"""Approval gate for tools with external side effects."""

from __future__ import annotations

import json
import logging
from typing import Any

from task_agent.tools.schemas import ToolCall, ToolExecResult

logger = logging.getLogger(__name__)

# Gated tool name -> action name the model uses with request_approval.
APPROVAL_ALIASES: dict[str, str] = {
    "web_search": "web_search",
    "read_url": "read_url",
    "github_create_issue": "create_github_issue",
    "gmail_send_email": "send_email",
    "calendar_create_event": "create_calendar_event",
}

MAX_APPROVAL_PARAMS_CHARS = 8000


def approval_keys(tool_name: str) -> tuple[str, ...]:
    alias = APPROVAL_ALIASES.get(tool_name)
    if alias is None or alias == tool_name:
        return (tool_name,)
    return (tool_name, alias)


def encode_approval_params(params: Any) -> str | None:
    if params is None:
        return None
    return json.dumps(params, default=str, ensure_ascii=False)[:MAX_APPROVAL_PARAMS_CHARS]


def ensure_approved_or_pause(
    call: ToolCall,
    *,
    detail: str,
    params: dict[str, Any],
) -> ToolExecResult | None:
    """Return None when the tool may proceed, otherwise a failure or a pause."""
    keys = approval_keys(call.tool_name)
    if any(call.approvals.denied.get(key) for key in keys):
        return ToolExecResult.failure(f"User denied approval for: {call.tool_name}")
    if any(call.approvals.approved.get(key) for key in keys):
        return None

    event = call.ctx.append_event(
        call.user_id,
        call.task_id,
        kind="approval-request",
        title=f"Approval requested: {call.tool_name}",
        detail=detail,
        approval_action=call.tool_name,
        approval_params=encode_approval_params(params),
    )
    logger.info(
        "approval_requested task_id=%s tool=%s event_id=%s",
        call.task_id,
        call.tool_name,
        event.event_id,
    )
    return ToolExecResult.paused(
        event_id=event.event_id,
        pause_reason="approval",
        result={"eventId": event.event_id, "action": call.tool_name, "params": params},
        summary="Requested approval from user.",
    )
