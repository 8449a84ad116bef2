"""GitHub tools backed by the user's stored access token."""

from __future__ import annotations

from urllib import parse

from task_agent import http_client
from task_agent.http_client import HttpStatusError
from task_agent.tools.approval import ensure_approved_or_pause
from task_agent.tools.schemas import (
    GithubCreateIssueInput,
    GithubListPullRequestsInput,
    ToolCall,
    ToolError,
    ToolExecResult,
    truncate,
)

GITHUB_API = "https://api.github.com"
NOT_CONNECTED = "GitHub is not connected. Add a token in Settings > Connections."


def _github_headers(token: str) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {token}",
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": "2022-11-28",
    }


def _github_token(call: ToolCall) -> str:
    record = call.ctx.get_connector_token(call.user_id, "github")
    token = record.access_token.strip() if record else ""
    if not token:
        raise ToolError(NOT_CONNECTED)
    return token


def github_list_my_pull_requests(
    call: ToolCall, payload: GithubListPullRequestsInput
) -> ToolExecResult:
    token = _github_token(call)
    timeout_s = call.ctx.app_settings.http_timeout_s

    try:
        user = http_client.request_json(
            "GET", f"{GITHUB_API}/user", headers=_github_headers(token), timeout_s=timeout_s
        )
    except HttpStatusError as exc:
        return ToolExecResult.failure(
            f"GitHub auth failed ({exc.status}): {truncate(exc.body, 300)}"
        )
    login = str(user.get("login") or "").strip() if isinstance(user, dict) else ""
    if not login:
        return ToolExecResult.failure("GitHub auth succeeded but user login was missing.")

    query = " ".join(part for part in ("is:pr", "is:open", f"author:{login}", payload.q) if part)
    url = f"{GITHUB_API}/search/issues?q={parse.quote(query)}&per_page={payload.limit}"
    try:
        data = http_client.request_json(
            "GET", url, headers=_github_headers(token), timeout_s=timeout_s
        )
    except HttpStatusError as exc:
        return ToolExecResult.failure(
            f"GitHub search failed ({exc.status}): {truncate(exc.body, 300)}"
        )

    items = data.get("items") if isinstance(data, dict) else None
    results = [
        {
            "title": str(item.get("title") or ""),
            "url": str(item.get("html_url") or ""),
            "repo": str(item.get("repository_url") or "").replace(f"{GITHUB_API}/repos/", ""),
            "number": item.get("number") if isinstance(item.get("number"), int) else None,
            "updatedAt": str(item.get("updated_at") or ""),
        }
        for item in (items if isinstance(items, list) else [])[: payload.limit]
        if isinstance(item, dict)
    ]
    return ToolExecResult.success(
        {"query": query, "results": results}, f"Returned {len(results)} PRs."
    )


def github_create_issue(call: ToolCall, payload: GithubCreateIssueInput) -> ToolExecResult:
    token = _github_token(call)
    labels = [label.strip() for label in payload.labels or [] if label.strip()][:10] or None

    gate = ensure_approved_or_pause(
        call,
        detail=f"Allow the agent to create a GitHub issue in {payload.repo}.",
        params={
            "repo": payload.repo,
            "title": payload.title,
            "body": truncate(payload.body, 1200) if payload.body else None,
            "labels": labels,
        },
    )
    if gate is not None:
        return gate

    try:
        data = http_client.request_json(
            "POST",
            f"{GITHUB_API}/repos/{payload.repo}/issues",
            headers=_github_headers(token),
            json_body={"title": payload.title, "body": payload.body, "labels": labels},
            timeout_s=call.ctx.app_settings.http_timeout_s,
        )
    except HttpStatusError as exc:
        return ToolExecResult.failure(
            f"GitHub create issue failed ({exc.status}): {truncate(exc.body, 500)}"
        )

    html_url = str(data.get("html_url") or "") if isinstance(data, dict) else ""
    number = data.get("number") if isinstance(data, dict) else None
    return ToolExecResult.success(
        {
            "repo": payload.repo,
            "title": payload.title,
            "url": html_url or None,
            "number": number if isinstance(number, int) else None,
        },
        "Created GitHub issue." if html_url else "Created GitHub issue (no URL returned).",
    )
