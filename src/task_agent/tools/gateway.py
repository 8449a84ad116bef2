"""Validated, event-logged tool dispatch."""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from task_agent.http_client import HttpStatusError
from task_agent.tools.registry import TOOL_REGISTRY, ToolSpec
from task_agent.tools.schemas import (
    ApprovalMaps,
    ToolCall,
    ToolDef,
    ToolError,
    ToolExecResult,
    truncate,
)

if TYPE_CHECKING:
    from task_agent.graph.context import AgentContext

logger = logging.getLogger(__name__)

MAX_EVENT_ARGS_CHARS = 1200


def format_validation_error(exc: ValidationError) -> str:
    parts: list[str] = []
    for item in exc.errors():
        location = ".".join(str(part) for part in item.get("loc", ()))
        message = str(item.get("msg") or "invalid value")
        if message.startswith("Value error, "):
            message = message[len("Value error, ") :]
        parts.append(f"{location}: {message}" if location else message)
    return "Invalid input: " + "; ".join(parts)


class ToolExecutor:
    """Run tools by name; every outcome, including crashes, becomes a ``ToolExecResult``."""

    def __init__(self, *, registry: dict[str, ToolSpec] | None = None) -> None:
        self.registry = registry or TOOL_REGISTRY

    def list_tools(self) -> list[ToolDef]:
        return [spec.definition() for spec in self.registry.values()]

    def read_only_tools(self) -> list[str]:
        return [spec.name for spec in self.registry.values() if spec.read_only]

    def execute(
        self,
        ctx: AgentContext,
        user_id: str,
        task_id: str,
        name: str,
        args: Any,
        *,
        approvals: ApprovalMaps | None = None,
    ) -> ToolExecResult:
        raw_args = args if isinstance(args, dict) else {}
        args_json = json.dumps(raw_args, default=str, ensure_ascii=False)
        ctx.append_event(
            user_id,
            task_id,
            kind="tool",
            title=f"Tool: {name}",
            detail=truncate(args_json, MAX_EVENT_ARGS_CHARS),
            tool_name=name,
        )

        started_at = time.perf_counter()
        spec = self.registry.get(name)
        if spec is None:
            logger.warning("tool_unknown task_id=%s tool=%s", task_id, name)
            result = ToolExecResult.failure(f"Unknown tool: {name}")
        else:
            result = self._run(spec, ctx, user_id, task_id, raw_args, approvals or ApprovalMaps())
        duration_ms = round((time.perf_counter() - started_at) * 1000.0, 2)
        logger.info(
            "tool_executed task_id=%s tool=%s ok=%s pause=%s duration_ms=%s",
            task_id,
            name,
            result.ok,
            result.pause,
            duration_ms,
        )

        if result.ok:
            title = f"Tool result: {name}"
            detail = result.summary or "Done."
        else:
            title = f"Tool failed: {name}"
            detail = result.error or "Tool failed."
        ctx.append_event(
            user_id,
            task_id,
            kind="tool",
            title=title,
            detail=truncate(detail, MAX_EVENT_ARGS_CHARS),
            tool_name=name,
        )
        return result

    def _run(
        self,
        spec: ToolSpec,
        ctx: AgentContext,
        user_id: str,
        task_id: str,
        args: dict[str, Any],
        approvals: ApprovalMaps,
    ) -> ToolExecResult:
        try:
            payload = spec.input_model.model_validate(args)
        except ValidationError as exc:
            return ToolExecResult.failure(format_validation_error(exc))

        call = ToolCall(
            ctx=ctx,
            user_id=user_id,
            task_id=task_id,
            tool_name=spec.name,
            approvals=approvals,
        )
        try:
            return spec.handler(call, payload)
        except ToolError as exc:
            return ToolExecResult.failure(str(exc))
        except HttpStatusError as exc:
            return ToolExecResult.failure(
                f"{spec.name} request failed ({exc.status}): {truncate(exc.body, 500)}"
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("tool_crashed task_id=%s tool=%s", task_id, spec.name)
            return ToolExecResult.failure(str(exc) or f"{spec.name} failed.")
