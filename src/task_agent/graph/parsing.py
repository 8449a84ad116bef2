"""Tolerant parsers for model output."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

DEFAULT_SUMMARY = "Output ready to review."
MAX_PLAN_STEPS = 7


@dataclass(frozen=True)
class StepPayload:
    step_summary: str
    step_output_markdown: str


@dataclass(frozen=True)
class FinalPayload:
    summary: str
    result_markdown: str


def _json_candidate(raw: str | None) -> str | None:
    trimmed = (raw or "").strip()
    first = trimmed.find("{")
    last = trimmed.rfind("}")
    if first == -1 or last == -1 or last <= first:
        return None
    return trimmed[first : last + 1]


def _load_object(candidate: str) -> dict[str, Any] | None:
    try:
        obj = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return obj if isinstance(obj, dict) else None


def parse_plan(raw: str | None, *, max_steps: int = MAX_PLAN_STEPS) -> list[str]:
    candidate = _json_candidate(raw)
    if candidate is None:
        return []
    obj = _load_object(candidate)
    if obj is None or not isinstance(obj.get("planSteps"), list):
        return []
    steps = [str(step).strip() for step in obj["planSteps"] if step is not None]
    return [step for step in steps if step][:max_steps]


def parse_step_payload(raw: str | None) -> StepPayload:
    text = (raw or "").strip()
    candidate = _json_candidate(raw)
    obj = _load_object(candidate) if candidate is not None else None
    if obj is None:
        return StepPayload(step_summary="", step_output_markdown=text)
    summary = obj.get("stepSummary")
    markdown = obj.get("stepOutputMarkdown")
    return StepPayload(
        step_summary=summary if isinstance(summary, str) else "",
        step_output_markdown=markdown if isinstance(markdown, str) else text,
    )


def parse_final_payload(raw: str | None, fallback_markdown: str) -> FinalPayload:
    text = (raw or "").strip()
    candidate = _json_candidate(raw)
    if candidate is None:
        return FinalPayload(summary=DEFAULT_SUMMARY, result_markdown=text or fallback_markdown)
    obj = _load_object(candidate)
    if obj is None:
        return FinalPayload(summary=DEFAULT_SUMMARY, result_markdown=fallback_markdown or text)
    summary = obj.get("summary")
    markdown = obj.get("resultMarkdown")
    return FinalPayload(
        summary=summary if isinstance(summary, str) else DEFAULT_SUMMARY,
        result_markdown=markdown if isinstance(markdown, str) else (fallback_markdown or text),
    )


def fallback_plan(title: str) -> list[str]:
    return [
        f"Clarify the goal and constraints for: {title}",
        "Draft the deliverable",
        "Review and polish the output",
    ]
