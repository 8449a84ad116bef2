"""Entry points that start, continue and answer agent runs."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from uuid import uuid4

from task_agent.config.settings import EngineConfig, Settings
from task_agent.graph.checkpoint import ContinuationMessage, Scheduler, ThreadPoolScheduler
from task_agent.graph.context import StorageAgentContext, task_url
from task_agent.graph.runtime import AgentRuntime, ModelFactory, RunSuperseded, utc_now
from task_agent.graph.state import AgentRunState, decode_state, initial_graph_state
from task_agent.graph.workflow import RECURSION_LIMIT, build_graph
from task_agent.llm.client import build_chat_model
from task_agent.storage.base import AgentStorage
from task_agent.storage.models import TaskEventRecord, TaskRecord
from task_agent.tools.gateway import ToolExecutor

logger = logging.getLogger(__name__)

CORRUPT_STATE_MESSAGE = "Saved agent progress could not be read. Restart the task to try again."


class EventNotFoundError(LookupError):
    pass


class EventKindError(ValueError):
    pass


class TaskAgentEngine:
    """Owns the run graph and the four ways into it: start, run, continue and human responses.

    Every invocation is bounded by the ``EngineConfig`` budgets; anything left
    over is handed to the scheduler as a ``ContinuationMessage`` whose handler
    is ``handle``.
    """

    def __init__(
        self,
        storage: AgentStorage,
        settings: Settings,
        *,
        scheduler: Scheduler | None = None,
        config: EngineConfig | None = None,
        tools: ToolExecutor | None = None,
        model_factory: ModelFactory = build_chat_model,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.storage = storage
        self.settings = settings
        self.scheduler = scheduler or ThreadPoolScheduler(max_workers=settings.scheduler_workers)
        self.scheduler.bind(self.handle)
        self.config = config or settings.engine_config()
        self.ctx = StorageAgentContext(storage, settings, self.scheduler)
        self.tools = tools or ToolExecutor()
        self.runtime = AgentRuntime(
            self.ctx,
            self.config,
            tools=self.tools,
            model_factory=model_factory,
            clock=clock,
            sleep=sleep,
        )
        self.graph = build_graph(self.runtime)

    def handle(self, message: ContinuationMessage) -> str | None:
        if message.kind == "run":
            return self.run(message.user_id, message.task_id, message.run_id)
        return self.continue_run(
            message.user_id,
            message.task_id,
            message.run_id,
            step_index=message.step_index,
            event_id=message.event_id,
        )

    def close(self) -> None:
        """Let in-flight continuations finish before the process exits."""
        self.scheduler.shutdown()

    def start(self, user_id: str, task_id: str) -> bool:
        task = self.ctx.get_task(user_id, task_id)
        if task is None:
            return False

        run_id = uuid4().hex
        self.ctx.patch_task(
            user_id,
            task_id,
            agent_status="queued",
            agent_progress=3,
            agent_phase="Queued",
            agent_started_at=utc_now(),
            agent_completed_at=None,
            agent_error=None,
            agent_summary=None,
            agent_plan=None,
            agent_result=None,
            agent_state=None,
            agent_run_id=run_id,
        )
        self.ctx.clear_events(user_id, task_id)
        self.ctx.append_event(
            user_id,
            task_id,
            kind="status",
            title="Queued",
            detail="Agent is about to start.",
            progress=3,
        )
        self.ctx.send_notification(
            user_id,
            title="Agent restarted a task",
            body=f"Working on: {task.title}",
            action_url=task_url(task_id),
        )
        self.ctx.schedule_continuation(
            ContinuationMessage(kind="run", user_id=user_id, task_id=task_id, run_id=run_id)
        )
        logger.info("task_agent event=queued task_id=%s run_id=%s", task_id, run_id)
        return True

    def run(self, user_id: str, task_id: str, run_id: str | None) -> str | None:
        task = self.ctx.patch_task_if(
            user_id,
            task_id,
            expected={"agent_status": "queued", "agent_run_id": run_id},
            agent_status="running",
            agent_progress=12,
            agent_phase="Planning",
            agent_error=None,
            agent_completed_at=None,
        )
        if task is None:
            logger.info("task_agent event=run_skipped task_id=%s run_id=%s", task_id, run_id)
            return None

        self.ctx.append_event(
            user_id,
            task_id,
            kind="progress",
            title="Planning",
            detail="Breaking the work into steps.",
            progress=12,
        )
        return self._invoke(user_id, task, AgentRunState())

    def continue_run(
        self,
        user_id: str,
        task_id: str,
        run_id: str | None = None,
        *,
        step_index: int | None = None,
        event_id: str | None = None,
    ) -> str | None:
        task = self.ctx.get_task(user_id, task_id)
        if task is None:
            return None
        if run_id is not None and task.agent_run_id != run_id:
            logger.info("task_agent event=continue_superseded task_id=%s", task_id)
            return None
        if not task.agent_state:
            return None

        run_state = decode_state(
            task.agent_state, max_context_chars=self.config.context_summary_chars
        )
        if run_state is None:
            logger.warning("task_agent event=state_undecodable task_id=%s", task_id)
            expected = {"agent_run_id": task.agent_run_id, "agent_state": task.agent_state}
            if not self.runtime.fail_task(user_id, task, CORRUPT_STATE_MESSAGE, expected=expected):
                return None
            return "failed"
        if step_index is not None and run_state.step_index != step_index:
            logger.info(
                "task_agent event=continue_duplicate task_id=%s expected=%d actual=%d",
                task_id,
                step_index,
                run_state.step_index,
            )
            return None
        if event_id is not None and run_state.waiting_for_event_id != event_id:
            logger.info(
                "task_agent event=resume_stale task_id=%s event_id=%s", task_id, event_id
            )
            return None
        return self._invoke(user_id, task, run_state)

    def request_continue(self, user_id: str, task_id: str) -> bool:
        """Queue a continuation for the task's current checkpoint."""
        task = self.ctx.get_task(user_id, task_id)
        if task is None or not task.agent_state:
            return False
        run_state = decode_state(
            task.agent_state, max_context_chars=self.config.context_summary_chars
        )
        self.ctx.schedule_continuation(
            ContinuationMessage(
                kind="continue",
                user_id=user_id,
                task_id=task_id,
                run_id=task.agent_run_id,
                step_index=run_state.step_index if run_state is not None else None,
            )
        )
        return True

    def answer_question(self, user_id: str, event_id: str, answer: str) -> TaskEventRecord:
        event = self._response_event(user_id, event_id, "question")
        if event.answered:
            return event
        event = self.ctx.update_event(user_id, event_id, answered=True, answer=answer)
        self.ctx.append_event(
            user_id, event.task_id, kind="note", title="Answered question", detail=answer
        )
        self._schedule_resume(user_id, event)
        return event

    def respond_approval(self, user_id: str, event_id: str, approved: bool) -> TaskEventRecord:
        event = self._response_event(user_id, event_id, "approval-request")
        if event.approved is not None:
            return event
        event = self.ctx.update_event(user_id, event_id, approved=approved)
        action = event.approval_action or "action"
        self.ctx.append_event(
            user_id,
            event.task_id,
            kind="note",
            title=f"Approved: {action}" if approved else f"Denied: {action}",
        )
        self._schedule_resume(user_id, event)
        return event

    def _response_event(self, user_id: str, event_id: str, kind: str) -> TaskEventRecord:
        event = self.ctx.get_event(user_id, event_id)
        if event is None:
            raise EventNotFoundError(f"Event {event_id} not found")
        if event.kind != kind:
            raise EventKindError(f"Event {event_id} has kind {event.kind}, expected {kind}")
        return event

    def _schedule_resume(self, user_id: str, event: TaskEventRecord) -> None:
        task = self.ctx.get_task(user_id, event.task_id)
        self.ctx.schedule_continuation(
            ContinuationMessage(
                kind="continue",
                user_id=user_id,
                task_id=event.task_id,
                run_id=task.agent_run_id if task else None,
                event_id=event.event_id,
            )
        )

    def _invoke(self, user_id: str, task: TaskRecord, run_state: AgentRunState) -> str | None:
        state = initial_graph_state(
            user_id=user_id,
            task_id=task.task_id,
            run_id=task.agent_run_id,
            task=task,
            run_state=run_state,
            started_at=self.runtime.clock(),
        )
        lease = state["lease"]
        try:
            final = self.graph.invoke(state, config={"recursion_limit": RECURSION_LIMIT})
        except RunSuperseded:
            logger.info("task_agent event=invocation_superseded task_id=%s", task.task_id)
            return "superseded"
        except Exception:  # noqa: BLE001
            logger.exception("task_agent event=invoke_crashed task_id=%s", task.task_id)
            if self.runtime.fail_task(
                user_id, task, "Agent generation failed.", expected=lease.expected()
            ):
                return "failed"
            return "superseded"
        outcome = final.get("outcome")
        logger.info("task_agent event=invocation_done task_id=%s outcome=%s", task.task_id, outcome)
        return outcome
