"""Provider-neutral driver for model tool-call loops."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from task_agent.tools.schemas import PauseReason, ToolExecResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolLoopBudget:
    max_tool_calls: int = 10
    max_iterations: int = 12


@dataclass
class ToolLoopResult:
    text: str
    paused: bool = False
    waiting_for_event_id: str | None = None
    pause_reason: PauseReason | None = None


@dataclass(frozen=True)
class ToolCallRequest:
    id: str
    name: str
    arguments: dict[str, Any]


@dataclass
class ToolTurn:
    """One assistant response: its text, the tool calls it asked for, and the raw message."""

    text: str
    calls: list[ToolCallRequest] = field(default_factory=list)
    raw: Any = None


ToolExecuteFn = Callable[[str, dict[str, Any]], ToolExecResult]


def budget_exhausted_payload(reason: str) -> str:
    return json.dumps(
        {
            "error": reason,
            "stepSummary": "",
            "stepOutputMarkdown": "",
            "planSteps": [],
        }
    )


def parse_tool_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def drive_tool_loop(
    *,
    send: Callable[[], ToolTurn],
    record_results: Callable[[ToolTurn, list[tuple[ToolCallRequest, str]]], None],
    execute: ToolExecuteFn,
    budget: ToolLoopBudget,
) -> ToolLoopResult:
    """Alternate model turns and tool executions until the model answers in plain text.

    ``send`` performs one model request over the provider's running transcript;
    ``record_results`` appends the assistant turn and tool outputs to that
    transcript. A pausing tool ends the loop immediately.
    """
    tool_calls_used = 0
    for iteration in range(max(1, budget.max_iterations)):
        turn = send()
        if not turn.calls:
            return ToolLoopResult(text=turn.text)

        if tool_calls_used >= budget.max_tool_calls:
            logger.warning("tool_loop event=budget_exhausted tool_calls=%d", tool_calls_used)
            return ToolLoopResult(text=budget_exhausted_payload("Tool call budget exhausted."))

        outputs: list[tuple[ToolCallRequest, str]] = []
        for call in turn.calls:
            if tool_calls_used >= budget.max_tool_calls:
                outputs.append(
                    (call, ToolExecResult.failure("Tool call budget exhausted.").for_model())
                )
                continue
            tool_calls_used += 1
            result = execute(call.name, call.arguments)
            if result.pause and result.event_id and result.pause_reason:
                logger.info(
                    "tool_loop event=paused tool=%s reason=%s iteration=%d",
                    call.name,
                    result.pause_reason,
                    iteration,
                )
                return ToolLoopResult(
                    text=turn.text,
                    paused=True,
                    waiting_for_event_id=result.event_id,
                    pause_reason=result.pause_reason,
                )
            outputs.append((call, result.for_model()))
        record_results(turn, outputs)

    logger.warning("tool_loop event=iterations_exhausted max_iterations=%d", budget.max_iterations)
    return ToolLoopResult(text=budget_exhausted_payload("Tool loop iteration limit reached."))
