"""Gmail and Google Calendar tools."""

from __future__ import annotations

import base64
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import UTC, datetime, timedelta
from email.message import EmailMessage
from typing import Any
from urllib import parse

from task_agent import http_client
from task_agent.http_client import HttpStatusError
from task_agent.storage.models import ConnectorTokenRecord
from task_agent.tools.approval import ensure_approved_or_pause
from task_agent.tools.schemas import (
    CalendarCreateEventInput,
    CalendarListUpcomingInput,
    GmailComposeInput,
    GmailListRecentInput,
    GmailSearchMessagesInput,
    ToolCall,
    ToolError,
    ToolExecResult,
    truncate,
)

logger = logging.getLogger(__name__)

GMAIL_API = "https://gmail.googleapis.com/gmail/v1/users/me"
CALENDAR_API = "https://www.googleapis.com/calendar/v3/calendars/primary/events"

REFRESH_SKEW = timedelta(seconds=60)
METADATA_WORKERS = 5

SCOPE_GMAIL_READONLY = "https://www.googleapis.com/auth/gmail.readonly"
SCOPE_GMAIL_COMPOSE = "https://www.googleapis.com/auth/gmail.compose"
SCOPE_GMAIL_SEND = "https://www.googleapis.com/auth/gmail.send"
SCOPE_GMAIL_MODIFY = "https://www.googleapis.com/auth/gmail.modify"
SCOPE_MAIL_FULL = "https://mail.google.com/"
SCOPE_CALENDAR_READONLY = "https://www.googleapis.com/auth/calendar.readonly"
SCOPE_CALENDAR_FULL = "https://www.googleapis.com/auth/calendar"

# Any one of the listed scopes is enough for the tool.
TOOL_SCOPES: dict[str, tuple[str, ...]] = {
    "gmail_list_recent": (SCOPE_GMAIL_READONLY, SCOPE_GMAIL_MODIFY, SCOPE_MAIL_FULL),
    "gmail_search_messages": (SCOPE_GMAIL_READONLY, SCOPE_GMAIL_MODIFY, SCOPE_MAIL_FULL),
    "gmail_create_draft": (SCOPE_GMAIL_COMPOSE, SCOPE_GMAIL_MODIFY, SCOPE_MAIL_FULL),
    "gmail_send_email": (
        SCOPE_GMAIL_SEND,
        SCOPE_GMAIL_COMPOSE,
        SCOPE_GMAIL_MODIFY,
        SCOPE_MAIL_FULL,
    ),
    "calendar_list_upcoming": (SCOPE_CALENDAR_READONLY, SCOPE_CALENDAR_FULL),
    "calendar_create_event": (SCOPE_CALENDAR_FULL,),
}

_PROVIDER_LABELS = {"gmail": "Gmail", "google-calendar": "Google Calendar"}


def required_scopes(tool_name: str) -> tuple[str, ...]:
    return TOOL_SCOPES.get(tool_name, ())


def has_any_scope(granted: list[str], acceptable: tuple[str, ...]) -> bool:
    normalized = {scope.strip() for scope in granted if scope and scope.strip()}
    return any(scope in normalized for scope in acceptable)


def google_access_token(call: ToolCall, provider: str) -> str:
    """Return a usable access token for ``provider``, refreshing it when close to expiry."""
    label = _PROVIDER_LABELS.get(provider, provider)
    token = call.ctx.get_connector_token(call.user_id, provider)
    if token is None or not token.access_token.strip():
        raise ToolError(f"{label} is not connected. Connect it in Settings > Connections.")

    acceptable = required_scopes(call.tool_name)
    if acceptable and not has_any_scope(token.scopes, acceptable):
        raise ToolError(
            f"Reconnect {label} in Settings > Connections to grant access for {call.tool_name}."
        )

    if _needs_refresh(token):
        if not token.refresh_token:
            raise ToolError(
                f"{label} access expired. Reconnect {label} in Settings > Connections."
            )
        try:
            token = call.ctx.refresh_connector_token(token)
        except HttpStatusError as exc:
            raise ToolError(
                f"{label} token refresh failed ({exc.status}). "
                f"Reconnect {label} in Settings > Connections."
            ) from exc
    return token.access_token


def _needs_refresh(token: ConnectorTokenRecord) -> bool:
    if token.expires_at is None:
        return False
    expires_at = token.expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=UTC)
    return expires_at - REFRESH_SKEW <= datetime.now(UTC)


def _auth(access_token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {access_token}"}


def _header(headers: Any, name: str) -> str:
    if not isinstance(headers, list):
        return ""
    for item in headers:
        if isinstance(item, dict) and str(item.get("name") or "").lower() == name.lower():
            return str(item.get("value") or "")
    return ""


def _fetch_message_metadata(access_token: str, message_id: str, timeout_s: float) -> dict[str, Any]:
    url = http_client.build_url(
        f"{GMAIL_API}/messages/{parse.quote(message_id, safe='')}",
        {"format": "metadata", "metadataHeaders": ["From", "Subject", "Date"]},
    )
    data = http_client.request_json("GET", url, headers=_auth(access_token), timeout_s=timeout_s)
    headers = data.get("payload", {}).get("headers") if isinstance(data, dict) else None
    return {
        "id": message_id,
        "threadId": data.get("threadId") if isinstance(data, dict) else None,
        "from": _header(headers, "From"),
        "subject": _header(headers, "Subject"),
        "date": _header(headers, "Date"),
        "snippet": truncate(str(data.get("snippet") or ""), 400) if isinstance(data, dict) else "",
    }


def _list_messages(
    access_token: str,
    *,
    max_results: int,
    timeout_s: float,
    query: str | None = None,
    label_ids: list[str] | None = None,
) -> list[dict[str, Any]]:
    url = http_client.build_url(
        f"{GMAIL_API}/messages",
        {"maxResults": max_results, "q": query, "labelIds": label_ids or None},
    )
    data = http_client.request_json("GET", url, headers=_auth(access_token), timeout_s=timeout_s)
    rows = data.get("messages") if isinstance(data, dict) else None
    ids = [
        str(row["id"])
        for row in (rows if isinstance(rows, list) else [])
        if isinstance(row, dict) and row.get("id")
    ][:max_results]
    if not ids:
        return []

    messages: list[dict[str, Any]] = []
    with ThreadPoolExecutor(max_workers=min(METADATA_WORKERS, len(ids))) as pool:
        futures = {
            pool.submit(_fetch_message_metadata, access_token, message_id, timeout_s): message_id
            for message_id in ids
        }
        for future in as_completed(futures):
            try:
                messages.append(future.result())
            except HttpStatusError as exc:
                logger.warning(
                    "gmail_metadata_failed message_id=%s status=%s", futures[future], exc.status
                )
    return messages


def gmail_list_recent(call: ToolCall, payload: GmailListRecentInput) -> ToolExecResult:
    access_token = google_access_token(call, "gmail")
    try:
        messages = _list_messages(
            access_token,
            max_results=payload.max_results,
            label_ids=payload.label_ids or ["INBOX"],
            timeout_s=call.ctx.app_settings.http_timeout_s,
        )
    except HttpStatusError as exc:
        return ToolExecResult.failure(f"Gmail error ({exc.status}): {truncate(exc.body, 500)}")
    return ToolExecResult.success({"messages": messages}, f"Returned {len(messages)} messages.")


def gmail_search_messages(call: ToolCall, payload: GmailSearchMessagesInput) -> ToolExecResult:
    access_token = google_access_token(call, "gmail")
    try:
        messages = _list_messages(
            access_token,
            max_results=payload.max_results,
            query=payload.query,
            timeout_s=call.ctx.app_settings.http_timeout_s,
        )
    except HttpStatusError as exc:
        return ToolExecResult.failure(f"Gmail error ({exc.status}): {truncate(exc.body, 500)}")
    return ToolExecResult.success(
        {"query": payload.query, "messages": messages},
        f"Found {len(messages)} messages.",
    )


def _raw_message(payload: GmailComposeInput) -> str:
    message = EmailMessage()
    message["To"] = payload.to
    if payload.cc:
        message["Cc"] = payload.cc
    message["Subject"] = payload.subject
    message.set_content(payload.body)
    return base64.urlsafe_b64encode(message.as_bytes()).decode("ascii").rstrip("=")


def gmail_create_draft(call: ToolCall, payload: GmailComposeInput) -> ToolExecResult:
    access_token = google_access_token(call, "gmail")
    try:
        data = http_client.request_json(
            "POST",
            f"{GMAIL_API}/drafts",
            headers=_auth(access_token),
            json_body={"message": {"raw": _raw_message(payload)}},
            timeout_s=call.ctx.app_settings.http_timeout_s,
        )
    except HttpStatusError as exc:
        return ToolExecResult.failure(
            f"Gmail draft failed ({exc.status}): {truncate(exc.body, 500)}"
        )
    return ToolExecResult.success(
        {"draftId": data.get("id"), "to": payload.to, "subject": payload.subject},
        f"Drafted email to {payload.to}.",
    )


def gmail_send_email(call: ToolCall, payload: GmailComposeInput) -> ToolExecResult:
    gate = ensure_approved_or_pause(
        call,
        detail=f"Allow the agent to send an email to {payload.to}.",
        params={
            "to": payload.to,
            "cc": payload.cc,
            "subject": payload.subject,
            "body": truncate(payload.body, 1200),
        },
    )
    if gate is not None:
        return gate

    access_token = google_access_token(call, "gmail")
    try:
        data = http_client.request_json(
            "POST",
            f"{GMAIL_API}/messages/send",
            headers=_auth(access_token),
            json_body={"raw": _raw_message(payload)},
            timeout_s=call.ctx.app_settings.http_timeout_s,
        )
    except HttpStatusError as exc:
        return ToolExecResult.failure(
            f"Gmail send failed ({exc.status}): {truncate(exc.body, 500)}"
        )
    return ToolExecResult.success(
        {"messageId": data.get("id"), "to": payload.to, "subject": payload.subject},
        f"Sent email to {payload.to}.",
    )


def calendar_list_upcoming(call: ToolCall, payload: CalendarListUpcomingInput) -> ToolExecResult:
    access_token = google_access_token(call, "google-calendar")
    now = datetime.now(UTC)
    time_min = payload.time_min or now.isoformat()
    time_max = payload.time_max or (now + timedelta(days=7)).isoformat()
    url = http_client.build_url(
        CALENDAR_API,
        {
            "timeMin": time_min,
            "timeMax": time_max,
            "maxResults": payload.max_results,
            "singleEvents": "true",
            "orderBy": "startTime",
        },
    )
    try:
        data = http_client.request_json(
            "GET", url, headers=_auth(access_token), timeout_s=call.ctx.app_settings.http_timeout_s
        )
    except HttpStatusError as exc:
        return ToolExecResult.failure(
            f"Calendar error ({exc.status}): {truncate(exc.body, 500)}"
        )

    items = data.get("items") if isinstance(data, dict) else None
    events = [
        {
            "id": item.get("id"),
            "title": str(item.get("summary") or "(no title)"),
            "start": _event_time(item.get("start")),
            "end": _event_time(item.get("end")),
            "location": item.get("location"),
            "url": item.get("htmlLink"),
        }
        for item in (items if isinstance(items, list) else [])
        if isinstance(item, dict)
    ]
    return ToolExecResult.success(
        {"timeMin": time_min, "timeMax": time_max, "events": events},
        f"Returned {len(events)} events.",
    )


def _event_time(value: Any) -> str | None:
    if not isinstance(value, dict):
        return None
    return value.get("dateTime") or value.get("date")


def calendar_create_event(call: ToolCall, payload: CalendarCreateEventInput) -> ToolExecResult:
    attendees = [email.strip() for email in payload.attendees or [] if email.strip()]
    gate = ensure_approved_or_pause(
        call,
        detail=f"Allow the agent to create the calendar event \"{payload.title}\".",
        params={
            "title": payload.title,
            "start": payload.start_date_time,
            "end": payload.end_date_time,
            "attendees": attendees or None,
            "location": payload.location,
        },
    )
    if gate is not None:
        return gate

    access_token = google_access_token(call, "google-calendar")
    body: dict[str, Any] = {
        "summary": payload.title,
        "start": {"dateTime": payload.start_date_time},
        "end": {"dateTime": payload.end_date_time},
    }
    if payload.description:
        body["description"] = payload.description
    if payload.location:
        body["location"] = payload.location
    if attendees:
        body["attendees"] = [{"email": email} for email in attendees]

    try:
        data = http_client.request_json(
            "POST",
            CALENDAR_API,
            headers=_auth(access_token),
            json_body=body,
            timeout_s=call.ctx.app_settings.http_timeout_s,
        )
    except HttpStatusError as exc:
        return ToolExecResult.failure(
            f"Calendar create failed ({exc.status}): {truncate(exc.body, 500)}"
        )
    return ToolExecResult.success(
        {"eventId": data.get("id"), "title": payload.title, "url": data.get("htmlLink")},
        f"Created calendar event \"{payload.title}\".",
    )
