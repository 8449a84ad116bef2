"""Prompt text for the plan, step and finalize phases."""

from __future__ import annotations

from task_agent.storage.models import TaskRecord

AGENT_PREAMBLE = (
    "You are an AI agent working on a task for the user of a personal productivity workspace.\n"
    "Be honest about what you did: only claim an external action happened if a tool "
    "returned success for it. Use ask_user when something essential is missing, and "
    "request_approval before any action with side effects outside the workspace."
)

PLAN_SYSTEM_PROMPT = f"""{AGENT_PREAMBLE}

First call read-only tools (read_profile, list_tasks, list_income_streams, list_ideas,
list_mentorship_sessions, search_insights) when they would help you plan.

Then return ONLY valid JSON with this shape:
{{"planSteps": string[]}}

Rules:
- 3-7 short, user-facing steps (no internal reasoning).
- No extra keys. No prose outside JSON."""

STEP_SYSTEM_PROMPT = f"""{AGENT_PREAMBLE}

You are executing ONE step of a plan. Use tools when the step needs data or actions.

Return ONLY valid JSON with this shape:
{{"stepSummary": string, "stepOutputMarkdown": string}}

Rules:
- stepSummary: 1 sentence describing what this step produced.
- stepOutputMarkdown: the useful output of this step (markdown), <= 400 words.
- No extra keys. No prose outside JSON."""

FINAL_SYSTEM_PROMPT = f"""{AGENT_PREAMBLE}

You are finishing the task. Combine the draft into one polished deliverable.

Return ONLY valid JSON with this shape:
{{"summary": string, "resultMarkdown": string}}

Rules:
- summary: 1 sentence.
- resultMarkdown: the final deliverable (markdown), <= 900 words.
- No extra keys. No prose outside JSON."""

FINAL_STREAM_SYSTEM_PROMPT = f"""{AGENT_PREAMBLE}

You are finishing the task. Combine the draft into one polished deliverable.
Output the final deliverable as markdown only, <= 900 words. No JSON, no preamble."""


def _task_block(task: TaskRecord) -> str:
    return f"## Task\nTitle: {task.title}\nNote: {task.note or '(none)'}"


def _clarification_block(clarification: str) -> str:
    return f"\n\n{clarification}" if clarification else ""


def _numbered(steps: list[str]) -> str:
    return "\n".join(f"{index}. {step}" for index, step in enumerate(steps, start=1))


def build_plan_prompt(
    task: TaskRecord,
    *,
    profile_excerpt: str,
    clarification: str = "",
    prefetched: str | None = None,
) -> str:
    sections = [
        _task_block(task),
        f"## User Profile Excerpt\n{profile_excerpt or '(no profile found)'}",
    ]
    if prefetched:
        sections.append(f"## Workspace Data\n{prefetched}")
    return "\n\n".join(sections) + _clarification_block(clarification)


def build_step_prompt(
    task: TaskRecord,
    *,
    plan_steps: list[str],
    step_index: int,
    context_summary: str,
    recent_signals: list[str],
    current_result: str,
    clarification: str = "",
    prefetched: str | None = None,
) -> str:
    step = plan_steps[step_index]
    signals = "\n".join(f"- {signal}" for signal in recent_signals) or "(none)"
    sections = [
        _task_block(task),
        f"## Plan\n{_numbered(plan_steps)}",
        f"## Current Step\n{step_index + 1}/{len(plan_steps)}: {step}",
        f"## Context So Far\n{context_summary or '(nothing yet)'}",
        f"## Recent Activity\n{signals}",
        f"## Draft So Far\n{current_result.strip() or '(empty)'}",
    ]
    if prefetched:
        sections.append(f"## Workspace Data\n{prefetched}")
    return "\n\n".join(sections) + _clarification_block(clarification)


def build_final_prompt(
    task: TaskRecord,
    *,
    plan_steps: list[str],
    context_summary: str,
    draft: str,
    clarification: str = "",
) -> str:
    sections = [
        _task_block(task),
        f"## Plan\n{_numbered(plan_steps)}",
        f"## Context\n{context_summary or '(none)'}",
        f"## Draft\n{draft.strip() or '(empty)'}",
    ]
    return "\n\n".join(sections) + _clarification_block(clarification)


def clarification_for_answer(question: str, answer: str) -> str:
    return f"## Clarification from the user\nQuestion: {question}\nAnswer: {answer}"


def clarification_for_approval(action: str, approved: bool) -> str:
    if approved:
        decision = f"The user APPROVED the action: {action}. You may now perform it."
    else:
        decision = (
            f"The user DENIED the action: {action}. Do not perform it; "
            "continue without it and mention what was skipped."
        )
    return f"## Clarification from the user\n{decision}"
