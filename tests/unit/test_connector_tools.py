import base64
import email
from datetime import UTC, datetime, timedelta

from task_agent.storage.models import ConnectorTokenRecord, UserSettingsRecord
from task_agent.tools import ApprovalMaps, ToolExecutor
from task_agent.tools.google import SCOPE_GMAIL_READONLY, SCOPE_GMAIL_SEND

from conftest import USER_ID


def _task(agent_ctx):
    return agent_ctx.storage.create_task(USER_ID, title="Inbox triage")


def _connect(agent_ctx, provider, *, scopes, expires_in=None, refresh_token="refresh-1"):
    now = datetime.now(UTC)
    agent_ctx.storage.save_connector_token(
        ConnectorTokenRecord(
            user_id=USER_ID,
            provider=provider,
            access_token="old-token",
            refresh_token=refresh_token,
            scopes=scopes,
            expires_at=now + expires_in if expires_in is not None else None,
            updated_at=now,
        )
    )


def _run(agent_ctx, name, args, approvals=None):
    task = _task(agent_ctx)
    return ToolExecutor().execute(agent_ctx, USER_ID, task.task_id, name, args, approvals=approvals)


def test_gmail_requires_connection(agent_ctx) -> None:
    result = _run(agent_ctx, "gmail_list_recent", {})

    assert not result.ok
    assert result.error == "Gmail is not connected. Connect it in Settings > Connections."


def test_gmail_requires_matching_scope(agent_ctx) -> None:
    _connect(agent_ctx, "gmail", scopes=[SCOPE_GMAIL_SEND])

    result = _run(agent_ctx, "gmail_search_messages", {"query": "invoice"})

    assert not result.ok
    assert result.error == (
        "Reconnect Gmail in Settings > Connections to grant access for gmail_search_messages."
    )


def test_expiring_token_is_refreshed_before_listing(agent_ctx, fake_http) -> None:
    _connect(agent_ctx, "gmail", scopes=[SCOPE_GMAIL_READONLY], expires_in=timedelta(seconds=30))
    fake_http.add(
        "POST",
        "https://oauth2.googleapis.com/token",
        {"access_token": "new-token", "expires_in": 3599},
    )
    fake_http.add(
        "GET",
        "https://gmail.googleapis.com/gmail/v1/users/me/messages?",
        {"messages": [{"id": "m1"}]},
    )
    fake_http.add(
        "GET",
        "https://gmail.googleapis.com/gmail/v1/users/me/messages/m1",
        {
            "threadId": "t1",
            "snippet": "Your invoice is attached",
            "payload": {
                "headers": [
                    {"name": "From", "value": "billing@example.com"},
                    {"name": "Subject", "value": "Invoice 42"},
                ]
            },
        },
    )

    result = _run(agent_ctx, "gmail_list_recent", {"maxResults": 5})

    assert result.ok
    assert result.result["messages"][0]["subject"] == "Invoice 42"
    assert "labelIds=INBOX" in fake_http.requests[1].url
    assert fake_http.requests[1].headers["authorization"] == "Bearer new-token"
    stored = agent_ctx.get_connector_token(USER_ID, "gmail")
    assert stored.access_token == "new-token"
    assert stored.refresh_token == "refresh-1"


def test_expired_token_without_refresh_token_fails(agent_ctx) -> None:
    _connect(
        agent_ctx,
        "google-calendar",
        scopes=["https://www.googleapis.com/auth/calendar"],
        expires_in=timedelta(seconds=-10),
        refresh_token=None,
    )

    result = _run(agent_ctx, "calendar_list_upcoming", {})

    assert not result.ok
    assert "Reconnect Google Calendar" in result.error


def test_send_email_after_approval(agent_ctx, fake_http) -> None:
    _connect(agent_ctx, "gmail", scopes=[SCOPE_GMAIL_SEND])
    fake_http.add(
        "POST", "https://gmail.googleapis.com/gmail/v1/users/me/messages/send", {"id": "sent-1"}
    )

    result = _run(
        agent_ctx,
        "gmail_send_email",
        {"to": "dana@example.com", "subject": "Agenda", "body": "See you Monday."},
        approvals=ApprovalMaps(approved={"send_email": True}),
    )

    assert result.ok
    assert result.result["messageId"] == "sent-1"
    raw = fake_http.requests[0].json()["raw"]
    message = email.message_from_bytes(base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4)))
    assert message["To"] == "dana@example.com"
    assert message["Subject"] == "Agenda"


def test_calendar_create_event_pauses_before_touching_credentials(agent_ctx) -> None:
    result = _run(
        agent_ctx,
        "calendar_create_event",
        {
            "title": "Planning",
            "startDateTime": "2026-10-20T09:00:00Z",
            "endDateTime": "2026-10-20T10:00:00Z",
        },
    )

    assert result.pause
    assert result.pause_reason == "approval"


def test_github_checks_connection_before_asking_for_approval(agent_ctx) -> None:
    result = _run(agent_ctx, "github_create_issue", {"repo": "acme/site", "title": "Bug"})

    assert not result.ok
    assert result.error == "GitHub is not connected. Add a token in Settings > Connections."


def test_github_pull_requests_query(agent_ctx, fake_http) -> None:
    agent_ctx.storage.save_connector_token(
        ConnectorTokenRecord(
            user_id=USER_ID,
            provider="github",
            access_token="gh-token",
            updated_at=datetime.now(UTC),
        )
    )
    fake_http.add("GET", "https://api.github.com/user", {"login": "octo"})
    fake_http.add(
        "GET",
        "https://api.github.com/search/issues",
        {
            "items": [
                {
                    "title": "Fix footer",
                    "html_url": "https://github.com/acme/site/pull/3",
                    "repository_url": "https://api.github.com/repos/acme/site",
                    "number": 3,
                }
            ]
        },
    )

    result = _run(agent_ctx, "github_list_my_pull_requests", {"limit": 5})

    assert result.ok
    assert result.result["query"] == "is:pr is:open author:octo"
    assert result.result["results"][0]["repo"] == "acme/site"
    assert "per_page=5" in fake_http.requests[1].url


def test_web_search_uses_jina_by_default(agent_ctx, fake_http) -> None:
    fake_http.add("GET", "https://s.jina.ai/", "1. Result one\n2. Result two")

    result = _run(
        agent_ctx,
        "web_search",
        {"q": "coworking in Lisbon"},
        approvals=ApprovalMaps(approved={"web_search": True}),
    )

    assert result.ok
    assert result.result["provider"] == "jina"
    assert fake_http.requests[0].url == "https://s.jina.ai/coworking%20in%20Lisbon"


def test_web_search_tavily_requires_key(agent_ctx) -> None:
    agent_ctx.storage.save_user_settings(
        UserSettingsRecord(user_id=USER_ID, search_provider="tavily")
    )

    result = _run(
        agent_ctx,
        "web_search",
        {"q": "pricing"},
        approvals=ApprovalMaps(approved={"web_search": True}),
    )

    assert not result.ok
    assert result.error == "Tavily API key not configured in Settings."


def test_web_search_reports_provider_errors(agent_ctx, fake_http) -> None:
    agent_ctx.storage.save_user_settings(
        UserSettingsRecord(user_id=USER_ID, search_provider="tavily", search_api_key="tv-key")
    )
    fake_http.add("POST", "https://api.tavily.com/search", "rate limited", status=429)

    result = _run(
        agent_ctx,
        "web_search",
        {"q": "pricing"},
        approvals=ApprovalMaps(approved={"web_search": True}),
    )

    assert not result.ok
    assert result.error == "Tavily error (429): rate limited"


def test_read_url_truncates_long_pages(agent_ctx, fake_http) -> None:
    fake_http.add("GET", "https://r.jina.ai/https://example.com", "x" * 5000)

    result = _run(
        agent_ctx,
        "read_url",
        {"url": "https://example.com", "maxChars": 2000},
        approvals=ApprovalMaps(approved={"read_url": True}),
    )

    assert result.ok
    assert result.result["truncated"] is True
    assert len(result.result["content"]) == 2000
