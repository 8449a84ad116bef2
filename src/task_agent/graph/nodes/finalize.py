"""Finalize node: synthesize the deliverable and close out the run."""

from __future__ import annotations

import logging

from task_agent.graph.context import task_url
from task_agent.graph.parsing import DEFAULT_SUMMARY, parse_final_payload
from task_agent.graph.progress import StreamFlusher
from task_agent.graph.prompts import (
    FINAL_STREAM_SYSTEM_PROMPT,
    FINAL_SYSTEM_PROMPT,
    build_final_prompt,
)
from task_agent.graph.runtime import AgentRuntime, RunSuperseded, utc_now
from task_agent.graph.state import AgentGraphState

logger = logging.getLogger(__name__)

FINALIZING_PROGRESS = 95


def _stream_final(state: AgentGraphState, runtime: AgentRuntime, prompt: str) -> str:
    config = runtime.config
    flusher = StreamFlusher(
        lambda text: runtime.write(state, agent_result=text),
        min_chars=config.stream_flush_chars,
        min_interval_s=config.stream_flush_interval_s,
        clock=runtime.clock,
    )
    for delta in state["model"].stream(
        FINAL_STREAM_SYSTEM_PROMPT,
        [{"role": "user", "content": prompt}],
        temperature=config.temperature,
        max_tokens=config.final_max_tokens,
    ):
        flusher.push(delta)
    return flusher.finish()


def run(state: AgentGraphState, runtime: AgentRuntime) -> AgentGraphState:
    if runtime.superseded(state):
        return {"outcome": "superseded"}

    steps_completed = state.get("steps_completed", 0)
    if steps_completed > 0 and runtime.should_yield(state, steps_completed):
        return runtime.yield_run(state)

    ctx = runtime.ctx
    config = runtime.config
    user_id = state["user_id"]
    task_id = state["task_id"]
    run_state = state["run_state"]
    model = state["model"]

    runtime.write(
        state,
        agent_status="running",
        agent_progress=FINALIZING_PROGRESS,
        agent_phase="Finalizing",
    )
    ctx.append_event(
        user_id,
        task_id,
        kind="progress",
        title="Finalizing",
        detail="Polishing the final deliverable.",
        progress=FINALIZING_PROGRESS,
    )

    task = runtime.current_task(state)
    draft = task.agent_result or ""
    prompt = build_final_prompt(
        task,
        plan_steps=run_state.plan_steps,
        context_summary=run_state.context_summary,
        draft=draft,
        clarification=state.get("clarification", ""),
    )

    markdown: str | None = None
    summary = ""
    if config.stream_final_output and model.supports_streaming:
        try:
            markdown = _stream_final(state, runtime, prompt).strip()
        except RunSuperseded:
            raise
        except Exception:  # noqa: BLE001
            logger.warning(
                "task_agent event=stream_failed task_id=%s fallback=tool_loop",
                task_id,
                exc_info=True,
            )
            markdown = None

    if markdown is None:
        try:
            result = runtime.call_model(
                state,
                system_prompt=FINAL_SYSTEM_PROMPT,
                prompt=prompt,
                tool_budget=config.final_tool_budget,
                max_tokens=config.final_max_tokens,
            )
        except RunSuperseded:
            raise
        except Exception:  # noqa: BLE001
            logger.exception("task_agent event=finalize_failed task_id=%s", task_id)
            return runtime.fail(state, "Agent generation failed.")
        if result.paused:
            return runtime.pause(state, result)
        payload = parse_final_payload(result.text, draft)
        markdown = payload.result_markdown.strip()
        summary = payload.summary.strip()
        if len(markdown) >= config.min_final_chars:
            runtime.writer(state).replace(markdown)

    if len(markdown) < config.min_final_chars:
        return runtime.fail(state, "Agent output was too short.")

    runtime.write(
        state,
        agent_status="succeeded",
        agent_progress=100,
        agent_phase="Ready",
        agent_summary=summary or DEFAULT_SUMMARY,
        agent_result=markdown,
        agent_error=None,
        agent_completed_at=utc_now(),
        agent_state=None,
    )
    ctx.append_event(
        user_id,
        task_id,
        kind="result",
        title="Output ready",
        detail=summary or "Review the output and decide what to do next.",
        progress=100,
    )
    if task.source_type != "ai-insight":
        ctx.send_notification(
            user_id,
            title="Agent finished a task",
            body=summary or f"Finished: {task.title}",
            action_url=task_url(task_id),
        )
    logger.info("task_agent event=succeeded task_id=%s chars=%d", task_id, len(markdown))
    return {"outcome": "succeeded"}
