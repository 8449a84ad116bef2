"""Server-sent event parsing for streamed chat responses."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Iterator
from typing import Any

logger = logging.getLogger(__name__)


def iter_sse_data(lines: Iterable[str]) -> Iterator[str]:
    """Yield the payload of each ``data:`` field, stopping at ``[DONE]``."""
    for line in lines:
        if not line.startswith("data:"):
            continue
        data = line[len("data:") :].strip()
        if not data:
            continue
        if data == "[DONE]":
            return
        yield data


def _json_events(lines: Iterable[str]) -> Iterator[dict[str, Any]]:
    for data in iter_sse_data(lines):
        try:
            event = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("sse_skip reason=non_json data=%s", data[:120])
            continue
        if isinstance(event, dict):
            yield event


def openai_stream_deltas(lines: Iterable[str]) -> Iterator[str]:
    for event in _json_events(lines):
        choices = event.get("choices")
        if not isinstance(choices, list) or not choices:
            continue
        delta = choices[0].get("delta") if isinstance(choices[0], dict) else None
        content = delta.get("content") if isinstance(delta, dict) else None
        if isinstance(content, str) and content:
            yield content


def anthropic_stream_deltas(lines: Iterable[str]) -> Iterator[str]:
    for event in _json_events(lines):
        if event.get("type") == "message_stop":
            return
        if event.get("type") != "content_block_delta":
            continue
        delta = event.get("delta")
        if not isinstance(delta, dict) or delta.get("type") != "text_delta":
            continue
        text = delta.get("text")
        if isinstance(text, str) and text:
            yield text
