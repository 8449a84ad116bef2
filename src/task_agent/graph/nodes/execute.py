"""Execute node: run one plan step per pass and fold its output into the draft."""

from __future__ import annotations

import logging

from task_agent.graph.parsing import parse_step_payload
from task_agent.graph.prompts import STEP_SYSTEM_PROMPT, build_step_prompt
from task_agent.graph.runtime import AgentRuntime, RunSuperseded
from task_agent.graph.state import AgentGraphState
from task_agent.storage.models import TaskEventRecord

logger = logging.getLogger(__name__)

RECENT_SIGNAL_COUNT = 8
STEP_EXCERPT_CHARS = 280


def step_progress(index: int, total: int) -> int:
    """20..90 across the plan, rounded half up."""
    return 20 + int(70 * (index + 1) / max(1, total) + 0.5)


def roll_context(summary: str, step_number: int, step: str, outcome: str, max_chars: int) -> str:
    line = f"[Step {step_number}] {step}: {' '.join(outcome.split())}"
    combined = f"{summary}\n{line}" if summary else line
    return combined[-max_chars:] if len(combined) > max_chars else combined


def recent_signals(events: list[TaskEventRecord], limit: int = RECENT_SIGNAL_COUNT) -> list[str]:
    signals = []
    for event in events[-limit:]:
        detail = " ".join((event.detail or "").split())[:160]
        signals.append(f"[{event.kind}] {event.title}" + (f": {detail}" if detail else ""))
    return signals


def run(state: AgentGraphState, runtime: AgentRuntime) -> AgentGraphState:
    if runtime.superseded(state):
        return {"outcome": "superseded"}

    ctx = runtime.ctx
    config = runtime.config
    user_id = state["user_id"]
    task_id = state["task_id"]
    run_state = state["run_state"]
    index = run_state.step_index
    total = len(run_state.plan_steps)
    step = run_state.plan_steps[index]

    progress = step_progress(index, total)
    phase = f"Step {index + 1}/{total}: {step}"
    runtime.write(state, agent_status="running", agent_progress=progress, agent_phase=phase)
    ctx.append_event(
        user_id,
        task_id,
        kind="progress",
        title=f"Step {index + 1}/{total}",
        detail=step,
        progress=progress,
    )
    if config.step_delay_s > 0:
        runtime.sleep(config.step_delay_s)

    task = runtime.current_task(state)
    current_result = task.agent_result or ""
    prefetched = runtime.workspace_snapshot(state)
    prompt = build_step_prompt(
        task,
        plan_steps=run_state.plan_steps,
        step_index=index,
        context_summary=run_state.context_summary,
        recent_signals=recent_signals(ctx.list_events(user_id, task_id)),
        current_result=current_result,
        clarification=state.get("clarification", ""),
        prefetched=prefetched,
    )
    try:
        result = runtime.call_model(
            state,
            system_prompt=STEP_SYSTEM_PROMPT,
            prompt=prompt,
            tool_budget=config.step_tool_budget,
            max_tokens=config.step_max_tokens,
        )
    except RunSuperseded:
        raise
    except Exception:  # noqa: BLE001
        logger.exception("task_agent event=step_failed task_id=%s step=%d", task_id, index + 1)
        return runtime.fail(state, "Agent generation failed.")

    if result.paused:
        return {**runtime.pause(state, result), "prefetched": prefetched}

    payload = parse_step_payload(result.text)
    markdown = payload.step_output_markdown.strip()
    if len(markdown) < config.min_step_chars:
        return runtime.fail(state, f"Agent step {index + 1} output was too short.")

    runtime.writer(state).append(current_result, f"## {step}", markdown)
    outcome = payload.step_summary.strip() or markdown[:STEP_EXCERPT_CHARS]
    run_state.context_summary = roll_context(
        run_state.context_summary, index + 1, step, outcome, config.context_summary_chars
    )
    run_state.step_index = index + 1
    runtime.persist(state)
    ctx.append_event(
        user_id,
        task_id,
        kind="note",
        title=f"Completed step {index + 1}",
        detail=payload.step_summary.strip() or step,
    )
    logger.info("task_agent event=step_done task_id=%s step=%d/%d", task_id, index + 1, total)

    steps_completed = state.get("steps_completed", 0) + 1
    update: AgentGraphState = {
        "run_state": run_state,
        "clarification": "",
        "steps_completed": steps_completed,
        "prefetched": prefetched,
    }
    if run_state.step_index < total and runtime.should_yield(state, steps_completed):
        update.update(runtime.yield_run(state))
    return update
