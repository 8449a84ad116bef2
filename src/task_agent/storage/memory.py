"""In-memory storage backend for tests and local development."""

from __future__ import annotations

import threading
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from task_agent.storage.base import EVENT_FIELDS
from task_agent.storage.models import (
    AGENT_FIELDS,
    GUARD_FIELDS,
    TASK_FIELDS,
    AgentFileRecord,
    ConnectorTokenRecord,
    EventKind,
    NotificationRecord,
    TaskEventRecord,
    TaskRecord,
    UserSettingsRecord,
    WorkspaceRecord,
)


class InMemoryAgentStorage:
    """Dict-backed implementation of ``AgentStorage``.

    Records are copied on the way in and out so callers never share mutable
    state with the store.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._tasks: dict[str, TaskRecord] = {}
        self._events: dict[str, TaskEventRecord] = {}
        self._notifications: list[NotificationRecord] = []
        self._settings: dict[str, UserSettingsRecord] = {}
        self._tokens: dict[tuple[str, str], ConnectorTokenRecord] = {}
        self._files: dict[str, AgentFileRecord] = {}
        self._workspace: list[WorkspaceRecord] = []

    def migrate(self) -> None:
        return None

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
    ) -> TaskRecord:
        now = datetime.now(UTC)
        record = TaskRecord(
            task_id=str(uuid4()),
            user_id=user_id,
            title=title,
            note=note,
            source_type=source_type,
            source_id=source_id,
            due_date=due_date,
            priority=priority,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._tasks[record.task_id] = record
        return record.model_copy(deep=True)

    def get_task(self, user_id: str, task_id: str) -> TaskRecord | None:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.user_id != user_id:
                return None
            return task.model_copy(deep=True)

    def list_tasks(
        self, user_id: str, *, limit: int = 50, include_done: bool = True
    ) -> list[TaskRecord]:
        with self._lock:
            rows = [
                task
                for task in self._tasks.values()
                if task.user_id == user_id and (include_done or not task.done)
            ]
        rows.sort(key=lambda task: task.created_at, reverse=True)
        return [task.model_copy(deep=True) for task in rows[:limit]]

    def patch_task(self, user_id: str, task_id: str, updates: dict[str, Any]) -> TaskRecord:
        unknown = set(updates) - AGENT_FIELDS - TASK_FIELDS
        if unknown:
            raise ValueError(f"Unsupported task fields: {sorted(unknown)}")
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None or current.user_id != user_id:
                raise KeyError(f"Task {task_id} does not exist")
            updated = current.model_copy(
                update={**updates, "updated_at": datetime.now(UTC)}, deep=True
            )
            self._tasks[task_id] = updated
            return updated.model_copy(deep=True)

    def patch_task_if(
        self,
        user_id: str,
        task_id: str,
        updates: dict[str, Any],
        expected: dict[str, Any],
    ) -> TaskRecord | None:
        unknown = set(expected) - GUARD_FIELDS
        if unknown:
            raise ValueError(f"Unsupported guard fields: {sorted(unknown)}")
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None or current.user_id != user_id:
                return None
            if any(getattr(current, name) != value for name, value in expected.items()):
                return None
            return self.patch_task(user_id, task_id, updates)

    def append_event(
        self,
        user_id: str,
        task_id: str,
        *,
        kind: EventKind,
        title: str,
        **fields: Any,
    ) -> TaskEventRecord:
        unknown = set(fields) - EVENT_FIELDS
        if unknown:
            raise ValueError(f"Unsupported event fields: {sorted(unknown)}")
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.user_id != user_id:
                raise KeyError(f"Task {task_id} does not exist")
            record = TaskEventRecord(
                event_id=str(uuid4()),
                task_id=task_id,
                user_id=user_id,
                kind=kind,
                title=title,
                created_at=datetime.now(UTC),
                **fields,
            )
            self._events[record.event_id] = record
            return record.model_copy(deep=True)

    def get_event(self, user_id: str, event_id: str) -> TaskEventRecord | None:
        with self._lock:
            event = self._events.get(event_id)
            if event is None or event.user_id != user_id:
                return None
            return event.model_copy(deep=True)

    def update_event(
        self, user_id: str, event_id: str, updates: dict[str, Any]
    ) -> TaskEventRecord:
        unknown = set(updates) - EVENT_FIELDS
        if unknown:
            raise ValueError(f"Unsupported event fields: {sorted(unknown)}")
        with self._lock:
            current = self._events.get(event_id)
            if current is None or current.user_id != user_id:
                raise KeyError(f"Event {event_id} does not exist")
            updated = current.model_copy(update=updates, deep=True)
            self._events[event_id] = updated
            return updated.model_copy(deep=True)

    def list_events(self, user_id: str, task_id: str) -> list[TaskEventRecord]:
        with self._lock:
            rows = [
                event
                for event in self._events.values()
                if event.user_id == user_id and event.task_id == task_id
            ]
        # dicts keep insertion order, which is also creation order
        return [event.model_copy(deep=True) for event in rows]

    def clear_events(self, user_id: str, task_id: str) -> None:
        with self._lock:
            stale = [
                event_id
                for event_id, event in self._events.items()
                if event.user_id == user_id and event.task_id == task_id
            ]
            for event_id in stale:
                del self._events[event_id]

    def create_notification(
        self,
        user_id: str,
        *,
        type: str,
        title: str,
        body: str,
        action_url: str | None = None,
    ) -> NotificationRecord:
        record = NotificationRecord(
            notification_id=str(uuid4()),
            user_id=user_id,
            type=type,
            title=title,
            body=body,
            action_url=action_url,
            created_at=datetime.now(UTC),
        )
        with self._lock:
            self._notifications.append(record)
        return record.model_copy(deep=True)

    def list_notifications(self, user_id: str, *, limit: int = 50) -> list[NotificationRecord]:
        with self._lock:
            rows = [item for item in self._notifications if item.user_id == user_id]
        return [item.model_copy(deep=True) for item in reversed(rows)][:limit]

    def get_user_settings(self, user_id: str) -> UserSettingsRecord | None:
        with self._lock:
            record = self._settings.get(user_id)
            return record.model_copy(deep=True) if record else None

    def save_user_settings(self, record: UserSettingsRecord) -> UserSettingsRecord:
        with self._lock:
            self._settings[record.user_id] = record.model_copy(deep=True)
        return record

    def get_connector_token(self, user_id: str, provider: str) -> ConnectorTokenRecord | None:
        with self._lock:
            record = self._tokens.get((user_id, provider))
            return record.model_copy(deep=True) if record else None

    def save_connector_token(self, record: ConnectorTokenRecord) -> ConnectorTokenRecord:
        with self._lock:
            self._tokens[(record.user_id, record.provider)] = record.model_copy(deep=True)
        return record

    def create_agent_file(
        self,
        user_id: str,
        *,
        task_id: str | None,
        title: str,
        content: str,
        file_type: str = "document",
    ) -> AgentFileRecord:
        now = datetime.now(UTC)
        record = AgentFileRecord(
            file_id=str(uuid4()),
            user_id=user_id,
            task_id=task_id,
            title=title,
            content=content,
            file_type=file_type,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._files[record.file_id] = record
        return record.model_copy(deep=True)

    def get_agent_file(self, user_id: str, file_id: str) -> AgentFileRecord | None:
        with self._lock:
            record = self._files.get(file_id)
            if record is None or record.user_id != user_id:
                return None
            return record.model_copy(deep=True)

    def update_agent_file(
        self, user_id: str, file_id: str, updates: dict[str, Any]
    ) -> AgentFileRecord:
        allowed = {"title", "content", "file_type"}
        unknown = set(updates) - allowed
        if unknown:
            raise ValueError(f"Unsupported file fields: {sorted(unknown)}")
        with self._lock:
            current = self._files.get(file_id)
            if current is None or current.user_id != user_id:
                raise KeyError(f"File {file_id} does not exist")
            updated = current.model_copy(update={**updates, "updated_at": datetime.now(UTC)})
            self._files[file_id] = updated
            return updated.model_copy(deep=True)

    def list_agent_files(
        self, user_id: str, *, task_id: str | None = None, limit: int = 20
    ) -> list[AgentFileRecord]:
        with self._lock:
            rows = [
                record
                for record in self._files.values()
                if record.user_id == user_id and (task_id is None or record.task_id == task_id)
            ]
        rows.sort(key=lambda record: record.updated_at, reverse=True)
        return [record.model_copy(deep=True) for record in rows[:limit]]

    def list_workspace_records(
        self, user_id: str, kind: str, *, limit: int = 50
    ) -> list[WorkspaceRecord]:
        with self._lock:
            rows = [
                record
                for record in self._workspace
                if record.user_id == user_id and record.kind == kind
            ]
        return [record.model_copy(deep=True) for record in reversed(rows)][:limit]

    def add_workspace_record(
        self, user_id: str, kind: str, data: dict[str, Any]
    ) -> WorkspaceRecord:
        record = WorkspaceRecord(
            record_id=str(uuid4()),
            user_id=user_id,
            kind=kind,
            data=dict(data),
            created_at=datetime.now(UTC),
        )
        with self._lock:
            self._workspace.append(record)
        return record.model_copy(deep=True)
