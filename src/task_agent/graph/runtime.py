"""Shared services and state transitions used by the graph nodes."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from task_agent.config.settings import EngineConfig
from task_agent.graph.checkpoint import ContinuationMessage, should_yield
from task_agent.graph.context import AgentContext, task_url
from task_agent.graph.progress import ProgressiveWriter
from task_agent.graph.state import AgentGraphState, encode_state
from task_agent.llm.client import ChatModel, ModelBinding, build_chat_model, resolve_model_binding
from task_agent.llm.tool_loop import ToolLoopBudget, ToolLoopResult
from task_agent.storage.models import TaskRecord
from task_agent.tools.gateway import ToolExecutor
from task_agent.tools.schemas import ApprovalMaps, ToolExecResult

logger = logging.getLogger(__name__)

ModelFactory = Callable[[ModelBinding], ChatModel]

PREFETCH_RESULT_CHARS = 3000


def utc_now() -> datetime:
    return datetime.now(UTC)


class RunSuperseded(Exception):
    """The task moved on without this invocation; its remaining work is discarded."""


class AgentRuntime:
    def __init__(
        self,
        ctx: AgentContext,
        config: EngineConfig,
        *,
        tools: ToolExecutor | None = None,
        model_factory: ModelFactory = build_chat_model,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.ctx = ctx
        self.config = config
        self.tools = tools or ToolExecutor()
        self.model_factory = model_factory
        self.clock = clock
        self.sleep = sleep

    def resolve_model(self, user_id: str) -> ChatModel:
        binding = resolve_model_binding(self.ctx.get_settings(user_id), self.ctx.app_settings)
        return self.model_factory(binding)

    def writer(self, state: AgentGraphState) -> ProgressiveWriter:
        return ProgressiveWriter(
            lambda text: self.write(state, agent_result=text), self.config, sleep=self.sleep
        )

    def elapsed_ms(self, state: AgentGraphState) -> float:
        return (self.clock() - state["started_at"]) * 1000.0

    def should_yield(self, state: AgentGraphState, steps_completed: int) -> bool:
        return should_yield(
            elapsed_ms=self.elapsed_ms(state),
            steps_completed=steps_completed,
            max_elapsed_ms=self.config.max_elapsed_ms,
            max_steps_per_run=self.config.max_steps_per_run,
        )

    def superseded(self, state: AgentGraphState) -> bool:
        """True when the task was restarted, removed or advanced by another invocation."""
        task = self.ctx.get_task(state["user_id"], state["task_id"])
        if task is None:
            return True
        lease = state["lease"]
        return task.agent_run_id != lease.run_id or task.agent_state != lease.stored_state

    def ensure_current(self, state: AgentGraphState) -> None:
        if self.superseded(state):
            raise RunSuperseded(state["task_id"])

    def current_task(self, state: AgentGraphState) -> TaskRecord:
        task = self.ctx.get_task(state["user_id"], state["task_id"])
        return task if task is not None else state["task"]

    def write(self, state: AgentGraphState, **updates: Any) -> TaskRecord:
        """Patch the task only while this invocation still owns it."""
        lease = state["lease"]
        record = self.ctx.patch_task_if(
            state["user_id"], state["task_id"], expected=lease.expected(), **updates
        )
        if record is None:
            logger.info(
                "task_agent event=write_rejected task_id=%s run_id=%s",
                state["task_id"],
                lease.run_id,
            )
            raise RunSuperseded(state["task_id"])
        if "agent_state" in updates:
            lease.stored_state = updates["agent_state"]
        return record

    def persist(self, state: AgentGraphState, **updates: Any) -> None:
        self.write(state, agent_state=encode_state(state["run_state"]), **updates)

    def workspace_snapshot(self, state: AgentGraphState) -> str | None:
        """Read-only tool results embedded in prompts for models without tool calling."""
        model = state.get("model")
        if model is None or model.supports_tools:
            return None
        cached = state.get("prefetched")
        if cached is not None:
            return cached
        sections = []
        for name in self.tools.read_only_tools():
            result = self.tools.execute(
                self.ctx, state["user_id"], state["task_id"], name, {}
            )
            sections.append(f"### {name}\n{result.for_model(max_chars=PREFETCH_RESULT_CHARS)}")
        return "\n\n".join(sections)

    def call_model(
        self,
        state: AgentGraphState,
        *,
        system_prompt: str,
        prompt: str,
        tool_budget: int,
        max_tokens: int,
    ) -> ToolLoopResult:
        model: ChatModel = state["model"]
        if not model.supports_tools:
            text = model.complete(
                system_prompt,
                [{"role": "user", "content": prompt}],
                temperature=self.config.temperature,
                max_tokens=max_tokens,
            )
            self.ensure_current(state)
            return ToolLoopResult(text=text)

        run_state = state["run_state"]
        approvals = ApprovalMaps(
            approved=dict(run_state.approved_tools or {}),
            denied=dict(run_state.denied_tools or {}),
        )

        def execute(name: str, args: dict[str, Any]) -> ToolExecResult:
            # No side effects on behalf of a run the user already replaced.
            self.ensure_current(state)
            return self.tools.execute(
                self.ctx, state["user_id"], state["task_id"], name, args, approvals=approvals
            )

        result = model.run_tool_loop(
            system_prompt,
            prompt,
            tools=self.tools.list_tools(),
            execute=execute,
            budget=ToolLoopBudget(
                max_tool_calls=tool_budget, max_iterations=self.config.max_tool_iterations
            ),
            temperature=self.config.temperature,
            max_tokens=max_tokens,
        )
        self.ensure_current(state)
        return result

    def pause(self, state: AgentGraphState, result: ToolLoopResult) -> AgentGraphState:
        run_state = state["run_state"]
        if result.pause_reason == "ask_user":
            run_state.waiting_for_kind = "question"
            phase = "Waiting for your answer"
            summary = "Needs your input to continue."
        else:
            run_state.waiting_for_kind = "approval"
            phase = "Waiting for approval"
            summary = "Needs your approval to continue."
        run_state.waiting_for_event_id = result.waiting_for_event_id
        self.persist(state, agent_phase=phase, agent_summary=summary)
        self.ctx.append_event(
            state["user_id"], state["task_id"], kind="status", title=phase, detail=summary
        )
        logger.info(
            "task_agent event=paused task_id=%s kind=%s event_id=%s",
            state["task_id"],
            run_state.waiting_for_kind,
            run_state.waiting_for_event_id,
        )
        return {"run_state": run_state, "outcome": "paused"}

    def hold(self, state: AgentGraphState) -> AgentGraphState:
        """Re-persist an unresolved wait without advancing."""
        run_state = state["run_state"]
        if run_state.waiting_for_kind == "question":
            phase = "Waiting for your answer"
        else:
            phase = "Waiting for approval"
        self.persist(state, agent_phase=phase)
        logger.info(
            "task_agent event=still_waiting task_id=%s event_id=%s",
            state["task_id"],
            run_state.waiting_for_event_id,
        )
        return {"outcome": "waiting"}

    def yield_run(self, state: AgentGraphState) -> AgentGraphState:
        run_state = state["run_state"]
        self.persist(state, agent_phase="Continuing")
        self.ctx.append_event(
            state["user_id"],
            state["task_id"],
            kind="status",
            title="Continuing",
            detail="Continuing in a fresh run to stay within time limits.",
        )
        self.ctx.schedule_continuation(
            ContinuationMessage(
                kind="continue",
                user_id=state["user_id"],
                task_id=state["task_id"],
                run_id=state.get("run_id"),
                step_index=run_state.step_index,
            )
        )
        logger.info(
            "task_agent event=yielded task_id=%s step_index=%d elapsed_ms=%d",
            state["task_id"],
            run_state.step_index,
            self.elapsed_ms(state),
        )
        return {"run_state": run_state, "outcome": "yielded"}

    def fail(self, state: AgentGraphState, message: str) -> AgentGraphState:
        task = self.current_task(state)
        if not self.fail_task(state["user_id"], task, message, expected=state["lease"].expected()):
            raise RunSuperseded(state["task_id"])
        return {"outcome": "failed", "error": message}

    def fail_task(
        self, user_id: str, task: TaskRecord, message: str, *, expected: dict[str, Any]
    ) -> bool:
        """Mark the task failed unless it no longer matches ``expected``."""
        record = self.ctx.patch_task_if(
            user_id,
            task.task_id,
            expected=expected,
            agent_status="failed",
            agent_progress=100,
            agent_phase="Failed",
            agent_error=message,
            agent_completed_at=utc_now(),
            agent_state=None,
        )
        if record is None:
            logger.info("task_agent event=fail_skipped task_id=%s", task.task_id)
            return False
        self.ctx.append_event(
            user_id, task.task_id, kind="error", title="Failed", detail=message, progress=100
        )
        self.ctx.send_notification(
            user_id,
            title="Agent failed a task",
            body=f"Task: {task.title}. {message}",
            action_url=task_url(task.task_id),
        )
        logger.warning("task_agent event=failed task_id=%s error=%s", task.task_id, message)
        return True
