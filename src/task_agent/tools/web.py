"""Web search and URL reading tools."""

from __future__ import annotations

from typing import Any
from urllib import parse

from task_agent import http_client
from task_agent.http_client import HttpStatusError
from task_agent.tools.approval import ensure_approved_or_pause
from task_agent.tools.schemas import (
    ReadUrlInput,
    ToolCall,
    ToolExecResult,
    WebSearchInput,
    truncate,
    truncate_soft,
)

TAVILY_URL = "https://api.tavily.com/search"
PERPLEXITY_URL = "https://api.perplexity.ai/search"
JINA_SEARCH_URL = "https://s.jina.ai/"
JINA_READER_URL = "https://r.jina.ai/"


def web_search(call: ToolCall, payload: WebSearchInput) -> ToolExecResult:
    gate = ensure_approved_or_pause(
        call,
        detail="Allow the agent to search the public web for this task.",
        params={"q": payload.q, "maxResults": payload.max_results},
    )
    if gate is not None:
        return gate

    settings = call.ctx.get_settings(call.user_id)
    provider = settings.search_provider if settings else "jina"
    api_key = (settings.search_api_key or "") if settings else ""
    timeout_s = call.ctx.app_settings.http_timeout_s

    if provider == "tavily":
        if not api_key:
            return ToolExecResult.failure("Tavily API key not configured in Settings.")
        try:
            data = http_client.request_json(
                "POST",
                TAVILY_URL,
                headers={"Authorization": f"Bearer {api_key}"},
                json_body={
                    "query": payload.q,
                    "max_results": payload.max_results,
                    "search_depth": "basic",
                    "include_answer": False,
                    "include_raw_content": False,
                },
                timeout_s=timeout_s,
            )
        except HttpStatusError as exc:
            return ToolExecResult.failure(f"Tavily error ({exc.status}): {truncate(exc.body, 800)}")
        results = [
            {
                "title": str(item.get("title") or ""),
                "url": str(item.get("url") or ""),
                "content": truncate(str(item.get("content") or ""), 1200),
                "score": item.get("score") if isinstance(item.get("score"), (int, float)) else None,
            }
            for item in _result_rows(data)[: payload.max_results]
        ]
        return ToolExecResult.success(
            {"provider": "tavily", "q": payload.q, "results": results},
            f"Found {len(results)} results.",
        )

    if provider == "perplexity":
        if not api_key:
            return ToolExecResult.failure("Perplexity API key not configured in Settings.")
        try:
            data = http_client.request_json(
                "POST",
                PERPLEXITY_URL,
                headers={"Authorization": f"Bearer {api_key}"},
                json_body={"query": payload.q, "max_results": payload.max_results},
                timeout_s=timeout_s,
            )
        except HttpStatusError as exc:
            return ToolExecResult.failure(
                f"Perplexity error ({exc.status}): {truncate(exc.body, 800)}"
            )
        results = [
            {
                "title": str(item.get("title") or ""),
                "url": str(item.get("url") or ""),
                "snippet": truncate(str(item.get("snippet") or ""), 1200),
                "date": item.get("date") if isinstance(item.get("date"), str) else None,
            }
            for item in _result_rows(data)[: payload.max_results]
        ]
        return ToolExecResult.success(
            {"provider": "perplexity", "q": payload.q, "results": results},
            f"Found {len(results)} results.",
        )

    try:
        digest = http_client.request_text(
            "GET",
            JINA_SEARCH_URL + parse.quote(payload.q, safe=""),
            timeout_s=timeout_s,
        )
    except HttpStatusError as exc:
        return ToolExecResult.failure(
            f"Jina search error ({exc.status}): {truncate(exc.body, 800)}"
        )
    return ToolExecResult.success(
        {"provider": "jina", "q": payload.q, "digest": truncate_soft(digest, 22000)},
        "Returned search digest.",
    )


def read_url(call: ToolCall, payload: ReadUrlInput) -> ToolExecResult:
    gate = ensure_approved_or_pause(
        call,
        detail="Allow the agent to fetch and read a public URL for this task.",
        params={"url": payload.url},
    )
    if gate is not None:
        return gate

    try:
        text = http_client.request_text(
            "GET",
            JINA_READER_URL + payload.url,
            timeout_s=call.ctx.app_settings.http_timeout_s,
        )
    except HttpStatusError as exc:
        return ToolExecResult.failure(f"read_url error ({exc.status}): {truncate(exc.body, 800)}")
    content = truncate_soft(text, payload.max_chars)
    return ToolExecResult.success(
        {"url": payload.url, "content": content, "truncated": len(text) > len(content)},
        f"Read {payload.url}",
    )


def _result_rows(data: Any) -> list[dict[str, Any]]:
    rows = data.get("results") if isinstance(data, dict) else None
    if not isinstance(rows, list):
        return []
    return [row for row in rows if isinstance(row, dict)]
