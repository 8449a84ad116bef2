"""Persisted run-state codec and the typed LangGraph state contract."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Any, Literal, TypedDict

from task_agent.storage.models import TaskRecord

STATE_VERSION = 1
MAX_STORED_PLAN_STEPS = 10
DEFAULT_CONTEXT_SUMMARY_CHARS = 1800

WaitingKind = Literal["question", "approval"]
Outcome = Literal["succeeded", "failed", "paused", "waiting", "yielded", "superseded"]


@dataclass
class AgentRunState:
    """Everything a later invocation needs to pick the run back up."""

    step_index: int = 0
    plan_steps: list[str] = field(default_factory=list)
    context_summary: str = ""
    waiting_for_event_id: str | None = None
    waiting_for_kind: WaitingKind | None = None
    approved_tools: dict[str, bool] | None = None
    denied_tools: dict[str, bool] | None = None

    @property
    def is_waiting(self) -> bool:
        return self.waiting_for_event_id is not None

    def clear_wait(self) -> None:
        self.waiting_for_event_id = None
        self.waiting_for_kind = None


@dataclass
class RunLease:
    """The stored task fields this invocation owns; writes land only while both still match."""

    run_id: str | None
    stored_state: str | None

    def expected(self) -> dict[str, Any]:
        return {"agent_run_id": self.run_id, "agent_state": self.stored_state}


def _true_only(raw: Any) -> dict[str, bool] | None:
    if not isinstance(raw, dict):
        return None
    kept = {str(key): True for key, value in raw.items() if value is True}
    return kept or None


def encode_state(state: AgentRunState) -> str:
    payload: dict[str, Any] = {
        "v": STATE_VERSION,
        "stepIndex": state.step_index,
        "planSteps": list(state.plan_steps),
    }
    if state.context_summary:
        payload["contextSummary"] = state.context_summary
    if state.waiting_for_event_id and state.waiting_for_kind:
        payload["waitingForEventId"] = state.waiting_for_event_id
        payload["waitingForKind"] = state.waiting_for_kind
    approved = _true_only(state.approved_tools)
    if approved:
        payload["approvedTools"] = approved
    denied = _true_only(state.denied_tools)
    if denied:
        payload["deniedTools"] = denied
    return json.dumps(payload, ensure_ascii=False)


def decode_state(
    raw: Any, *, max_context_chars: int = DEFAULT_CONTEXT_SUMMARY_CHARS
) -> AgentRunState | None:
    """Return the stored state, or None when anything about it is doubtful."""
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        obj = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(obj, dict) or obj.get("v") != STATE_VERSION:
        return None

    plan_raw = obj.get("planSteps")
    if not isinstance(plan_raw, list):
        return None
    step_raw = obj.get("stepIndex")
    if isinstance(step_raw, bool) or not isinstance(step_raw, (int, float)):
        return None
    if not math.isfinite(step_raw):
        return None

    plan_steps = [str(step) for step in plan_raw if step not in (None, "")][
        :MAX_STORED_PLAN_STEPS
    ]
    step_index = max(0, math.floor(step_raw))
    if step_index > len(plan_steps):
        return None

    event_id = obj.get("waitingForEventId")
    event_id = event_id if isinstance(event_id, str) and event_id else None
    kind = obj.get("waitingForKind")
    if kind is not None and kind not in ("question", "approval"):
        return None
    if (event_id is None) != (kind is None):
        return None

    summary = obj.get("contextSummary")
    summary = summary if isinstance(summary, str) else ""
    if len(summary) > max_context_chars:
        summary = summary[-max_context_chars:]

    return AgentRunState(
        step_index=step_index,
        plan_steps=plan_steps,
        context_summary=summary,
        waiting_for_event_id=event_id,
        waiting_for_kind=kind,
        approved_tools=_true_only(obj.get("approvedTools")),
        denied_tools=_true_only(obj.get("deniedTools")),
    )


class AgentGraphState(TypedDict, total=False):
    user_id: str
    task_id: str
    run_id: str | None
    lease: RunLease
    task: TaskRecord
    run_state: AgentRunState
    clarification: str
    model: Any
    started_at: float
    steps_completed: int
    outcome: Outcome | None
    error: str | None
    prefetched: str | None


def initial_graph_state(
    *,
    user_id: str,
    task_id: str,
    run_id: str | None,
    task: TaskRecord,
    run_state: AgentRunState,
    started_at: float,
) -> AgentGraphState:
    return {
        "user_id": user_id,
        "task_id": task_id,
        "run_id": run_id,
        "lease": RunLease(run_id=run_id, stored_state=task.agent_state),
        "task": task,
        "run_state": run_state,
        "clarification": "",
        "model": None,
        "started_at": started_at,
        "steps_completed": 0,
        "outcome": None,
        "error": None,
        "prefetched": None,
    }
