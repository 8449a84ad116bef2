"""Resume node: resolve any pending wait and bind the model for this invocation."""

from __future__ import annotations

import logging

from task_agent.graph.prompts import clarification_for_answer, clarification_for_approval
from task_agent.graph.runtime import AgentRuntime
from task_agent.graph.state import AgentGraphState
from task_agent.llm.client import ConfigurationError

logger = logging.getLogger(__name__)


def run(state: AgentGraphState, runtime: AgentRuntime) -> AgentGraphState:
    if runtime.superseded(state):
        return {"outcome": "superseded"}

    ctx = runtime.ctx
    user_id = state["user_id"]
    task_id = state["task_id"]
    run_state = state["run_state"]
    clarification = ""
    resumed = False

    if run_state.is_waiting:
        event = ctx.get_event(user_id, run_state.waiting_for_event_id)
        if event is None or event.task_id != task_id:
            logger.warning(
                "task_agent event=wait_event_missing task_id=%s event_id=%s",
                task_id,
                run_state.waiting_for_event_id,
            )
        elif run_state.waiting_for_kind == "question":
            if not event.answered:
                return runtime.hold(state)
            clarification = clarification_for_answer(event.title, event.answer or "")
        else:
            if event.approved is None:
                return runtime.hold(state)
            action = (event.approval_action or "").strip()
            if action:
                approved = dict(run_state.approved_tools or {})
                denied = dict(run_state.denied_tools or {})
                if event.approved:
                    approved[action] = True
                    denied.pop(action, None)
                else:
                    denied[action] = True
                    approved.pop(action, None)
                run_state.approved_tools = approved or None
                run_state.denied_tools = denied or None
            else:
                logger.warning(
                    "task_agent event=approval_without_action task_id=%s event_id=%s",
                    task_id,
                    event.event_id,
                )
            clarification = clarification_for_approval(
                action or "the requested action", event.approved
            )
        run_state.clear_wait()
        resumed = True

    try:
        model = runtime.resolve_model(user_id)
    except ConfigurationError as exc:
        return runtime.fail(state, str(exc))

    if resumed:
        # Claims the wait: a second delivery for the same answer fails this write.
        runtime.persist(state, agent_status="running", agent_phase="Resuming")
        logger.info(
            "task_agent event=resumed task_id=%s step_index=%d",
            task_id,
            run_state.step_index,
        )

    return {"run_state": run_state, "clarification": clarification, "model": model}
