"""Capability interface handed to the run loop and the tool handlers."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, Protocol

from task_agent.config.settings import Settings
from task_agent.http_client import request_json
from task_agent.storage.base import AgentStorage
from task_agent.storage.models import (
    ConnectorTokenRecord,
    EventKind,
    NotificationRecord,
    TaskEventRecord,
    TaskRecord,
    UserSettingsRecord,
)

if TYPE_CHECKING:
    from task_agent.graph.checkpoint import ContinuationMessage, Scheduler

logger = logging.getLogger(__name__)


def task_url(task_id: str) -> str:
    return f"/dashboard/data?tab=tasks&taskId={task_id}"


class AgentContext(Protocol):
    app_settings: Settings

    @property
    def workspace(self) -> AgentStorage: ...

    def get_task(self, user_id: str, task_id: str) -> TaskRecord | None: ...

    def patch_task(self, user_id: str, task_id: str, **updates: Any) -> TaskRecord: ...

    def patch_task_if(
        self, user_id: str, task_id: str, *, expected: dict[str, Any], **updates: Any
    ) -> TaskRecord | None: ...

    def append_event(
        self, user_id: str, task_id: str, *, kind: EventKind, title: str, **fields: Any
    ) -> TaskEventRecord: ...

    def get_event(self, user_id: str, event_id: str) -> TaskEventRecord | None: ...

    def update_event(self, user_id: str, event_id: str, **updates: Any) -> TaskEventRecord: ...

    def list_events(self, user_id: str, task_id: str) -> list[TaskEventRecord]: ...

    def clear_events(self, user_id: str, task_id: str) -> None: ...

    def get_settings(self, user_id: str) -> UserSettingsRecord | None: ...

    def get_connector_token(self, user_id: str, provider: str) -> ConnectorTokenRecord | None: ...

    def refresh_connector_token(self, token: ConnectorTokenRecord) -> ConnectorTokenRecord: ...

    def send_notification(
        self,
        user_id: str,
        *,
        title: str,
        body: str,
        action_url: str | None = None,
        type: str = "agent-task",
    ) -> NotificationRecord: ...

    def schedule_continuation(self, message: ContinuationMessage) -> None: ...


class StorageAgentContext:
    """``AgentContext`` backed by an ``AgentStorage`` and a message scheduler."""

    def __init__(
        self,
        storage: AgentStorage,
        settings: Settings,
        scheduler: Scheduler | None = None,
    ) -> None:
        self.storage = storage
        self.app_settings = settings
        self.scheduler = scheduler

    @property
    def workspace(self) -> AgentStorage:
        return self.storage

    def get_task(self, user_id: str, task_id: str) -> TaskRecord | None:
        return self.storage.get_task(user_id, task_id)

    def patch_task(self, user_id: str, task_id: str, **updates: Any) -> TaskRecord:
        return self.storage.patch_task(user_id, task_id, updates)

    def patch_task_if(
        self, user_id: str, task_id: str, *, expected: dict[str, Any], **updates: Any
    ) -> TaskRecord | None:
        return self.storage.patch_task_if(user_id, task_id, updates, expected)

    def append_event(
        self, user_id: str, task_id: str, *, kind: EventKind, title: str, **fields: Any
    ) -> TaskEventRecord:
        return self.storage.append_event(user_id, task_id, kind=kind, title=title, **fields)

    def get_event(self, user_id: str, event_id: str) -> TaskEventRecord | None:
        return self.storage.get_event(user_id, event_id)

    def update_event(self, user_id: str, event_id: str, **updates: Any) -> TaskEventRecord:
        return self.storage.update_event(user_id, event_id, updates)

    def list_events(self, user_id: str, task_id: str) -> list[TaskEventRecord]:
        return self.storage.list_events(user_id, task_id)

    def clear_events(self, user_id: str, task_id: str) -> None:
        self.storage.clear_events(user_id, task_id)

    def get_settings(self, user_id: str) -> UserSettingsRecord | None:
        return self.storage.get_user_settings(user_id)

    def get_connector_token(self, user_id: str, provider: str) -> ConnectorTokenRecord | None:
        return self.storage.get_connector_token(user_id, provider)

    def refresh_connector_token(self, token: ConnectorTokenRecord) -> ConnectorTokenRecord:
        """Exchange the stored refresh token for a fresh Google access token."""
        settings = self.app_settings
        if not settings.google_oauth_client_id or not settings.google_oauth_client_secret:
            raise RuntimeError("Google OAuth client is not configured on the server.")
        if not token.refresh_token:
            raise RuntimeError("No refresh token stored for this connection.")

        data = request_json(
            "POST",
            settings.google_token_url,
            form_body={
                "client_id": settings.google_oauth_client_id,
                "client_secret": settings.google_oauth_client_secret,
                "refresh_token": token.refresh_token,
                "grant_type": "refresh_token",
            },
            timeout_s=settings.http_timeout_s,
        )
        access_token = str(data.get("access_token") or "").strip()
        if not access_token:
            raise RuntimeError("Google token refresh returned no access token.")
        expires_in = data.get("expires_in")
        if not isinstance(expires_in, (int, float)) or isinstance(expires_in, bool):
            expires_in = 3600
        scope = data.get("scope")
        scopes = scope.split() if isinstance(scope, str) and scope.strip() else token.scopes
        now = datetime.now(UTC)
        refreshed = token.model_copy(
            update={
                "access_token": access_token,
                "refresh_token": data.get("refresh_token") or token.refresh_token,
                "scopes": scopes,
                "expires_at": now + timedelta(seconds=float(expires_in)),
                "updated_at": now,
            }
        )
        self.storage.save_connector_token(refreshed)
        logger.info(
            "connector_refresh user_id=%s provider=%s expires_in=%s",
            token.user_id,
            token.provider,
            expires_in,
        )
        return refreshed

    def send_notification(
        self,
        user_id: str,
        *,
        title: str,
        body: str,
        action_url: str | None = None,
        type: str = "agent-task",
    ) -> NotificationRecord:
        return self.storage.create_notification(
            user_id, type=type, title=title, body=body, action_url=action_url
        )

    def schedule_continuation(self, message: ContinuationMessage) -> None:
        if self.scheduler is None:
            raise RuntimeError("No scheduler configured for continuations")
        self.scheduler.send(message)
