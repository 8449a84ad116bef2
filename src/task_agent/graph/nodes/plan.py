"""Plan node: ask the model for a short list of user-facing steps."""

from __future__ import annotations

import logging

from task_agent.graph.parsing import fallback_plan, parse_plan
from task_agent.graph.prompts import PLAN_SYSTEM_PROMPT, build_plan_prompt
from task_agent.graph.runtime import AgentRuntime, RunSuperseded
from task_agent.graph.state import AgentGraphState
from task_agent.tools.workspace import profile_text

logger = logging.getLogger(__name__)

PLAN_READY_PROGRESS = 18


def run(state: AgentGraphState, runtime: AgentRuntime) -> AgentGraphState:
    if runtime.superseded(state):
        return {"outcome": "superseded"}

    ctx = runtime.ctx
    config = runtime.config
    user_id = state["user_id"]
    task_id = state["task_id"]
    task = state["task"]
    run_state = state["run_state"]

    prefetched = runtime.workspace_snapshot(state)
    prompt = build_plan_prompt(
        task,
        profile_excerpt=profile_text(ctx, user_id)[: config.profile_excerpt_chars],
        clarification=state.get("clarification", ""),
        prefetched=prefetched,
    )
    try:
        result = runtime.call_model(
            state,
            system_prompt=PLAN_SYSTEM_PROMPT,
            prompt=prompt,
            tool_budget=config.plan_tool_budget,
            max_tokens=config.plan_max_tokens,
        )
    except RunSuperseded:
        raise
    except Exception:  # noqa: BLE001
        logger.exception("task_agent event=plan_failed task_id=%s", task_id)
        return runtime.fail(state, "Agent generation failed.")

    if result.paused:
        return {**runtime.pause(state, result), "prefetched": prefetched}

    steps = parse_plan(result.text, max_steps=config.max_plan_steps)
    if not steps:
        logger.info("task_agent event=plan_fallback task_id=%s", task_id)
        steps = fallback_plan(task.title)
    run_state.plan_steps = steps
    run_state.step_index = 0

    runtime.persist(
        state,
        agent_plan=steps,
        agent_progress=PLAN_READY_PROGRESS,
        agent_phase="Plan ready",
    )
    ctx.append_event(
        user_id,
        task_id,
        kind="progress",
        title="Plan ready",
        detail="\n".join(f"{index}. {step}" for index, step in enumerate(steps, start=1)),
        progress=PLAN_READY_PROGRESS,
    )
    logger.info("task_agent event=plan_ready task_id=%s steps=%d", task_id, len(steps))
    return {"run_state": run_state, "clarification": "", "prefetched": prefetched}
