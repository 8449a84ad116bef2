"""Storage interfaces for tasks, run timelines and the records tools read."""

from __future__ import annotations

from typing import Any, Protocol

from task_agent.storage.models import (
    AgentFileRecord,
    ConnectorTokenRecord,
    EventKind,
    NotificationRecord,
    TaskEventRecord,
    TaskRecord,
    UserSettingsRecord,
    WorkspaceRecord,
)

EVENT_FIELDS = frozenset(
    {
        "detail",
        "progress",
        "tool_name",
        "options",
        "answered",
        "answer",
        "approval_action",
        "approval_params",
        "approved",
    }
)


class AgentStorage(Protocol):
    def migrate(self) -> None: ...

    # Tasks
    def create_task(
        self,
        user_id: str,
        *,
        title: str,
        note: str | None = None,
        source_type: str = "manual",
        source_id: str | None = None,
        due_date: str | None = None,
        priority: str = "medium",
    ) -> TaskRecord: ...

    def get_task(self, user_id: str, task_id: str) -> TaskRecord | None: ...

    def list_tasks(
        self, user_id: str, *, limit: int = 50, include_done: bool = True
    ) -> list[TaskRecord]: ...

    def patch_task(self, user_id: str, task_id: str, updates: dict[str, Any]) -> TaskRecord: ...

    def patch_task_if(
        self,
        user_id: str,
        task_id: str,
        updates: dict[str, Any],
        expected: dict[str, Any],
    ) -> TaskRecord | None:
        """Apply ``updates`` only while every ``expected`` field still holds; else None."""
        ...

    # Task events
    def append_event(
        self,
        user_id: str,
        task_id: str,
        *,
        kind: EventKind,
        title: str,
        **fields: Any,
    ) -> TaskEventRecord: ...

    def get_event(self, user_id: str, event_id: str) -> TaskEventRecord | None: ...

    def update_event(
        self, user_id: str, event_id: str, updates: dict[str, Any]
    ) -> TaskEventRecord: ...

    def list_events(self, user_id: str, task_id: str) -> list[TaskEventRecord]: ...

    def clear_events(self, user_id: str, task_id: str) -> None: ...

    # Notifications
    def create_notification(
        self,
        user_id: str,
        *,
        type: str,
        title: str,
        body: str,
        action_url: str | None = None,
    ) -> NotificationRecord: ...

    def list_notifications(self, user_id: str, *, limit: int = 50) -> list[NotificationRecord]: ...

    # Settings and connectors
    def get_user_settings(self, user_id: str) -> UserSettingsRecord | None: ...

    def save_user_settings(self, record: UserSettingsRecord) -> UserSettingsRecord: ...

    def get_connector_token(self, user_id: str, provider: str) -> ConnectorTokenRecord | None: ...

    def save_connector_token(self, record: ConnectorTokenRecord) -> ConnectorTokenRecord: ...

    # Agent files
    def create_agent_file(
        self,
        user_id: str,
        *,
        task_id: str | None,
        title: str,
        content: str,
        file_type: str = "document",
    ) -> AgentFileRecord: ...

    def get_agent_file(self, user_id: str, file_id: str) -> AgentFileRecord | None: ...

    def update_agent_file(
        self, user_id: str, file_id: str, updates: dict[str, Any]
    ) -> AgentFileRecord: ...

    def list_agent_files(
        self, user_id: str, *, task_id: str | None = None, limit: int = 20
    ) -> list[AgentFileRecord]: ...

    # Read-only workspace records
    def list_workspace_records(
        self, user_id: str, kind: str, *, limit: int = 50
    ) -> list[WorkspaceRecord]: ...

    def add_workspace_record(
        self, user_id: str, kind: str, data: dict[str, Any]
    ) -> WorkspaceRecord: ...
