"""PostgreSQL-backed storage with automatic table migration."""

from __future__ import annotations

import json
import threading
import uuid
from datetime import UTC, datetime
from typing import Any

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

_JSON_TASK_COLUMNS = frozenset({"agent_plan"})
_JSON_EVENT_COLUMNS = frozenset({"options"})
_FILE_FIELDS = frozenset({"title", "content", "file_type"})


class PostgresAgentStorage:
    """Persist tasks, timelines and connector state in PostgreSQL."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("TASK_AGENT_DATABASE_URL is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS agent_tasks (
                    task_id UUID PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    note TEXT,
                    source_type TEXT NOT NULL DEFAULT 'manual',
                    source_id TEXT,
                    due_date TEXT,
                    priority TEXT NOT NULL DEFAULT 'medium',
                    done BOOLEAN NOT NULL DEFAULT FALSE,
                    agent_status TEXT NOT NULL DEFAULT 'idle',
                    agent_progress INTEGER NOT NULL DEFAULT 0,
                    agent_phase TEXT,
                    agent_plan JSONB,
                    agent_summary TEXT,
                    agent_result TEXT,
                    agent_error TEXT,
                    agent_started_at TIMESTAMPTZ,
                    agent_completed_at TIMESTAMPTZ,
                    agent_state TEXT,
                    agent_run_id TEXT,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_agent_tasks_user
                ON agent_tasks(user_id, created_at DESC)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS task_events (
                    event_id UUID PRIMARY KEY,
                    seq BIGSERIAL,
                    task_id UUID NOT NULL REFERENCES agent_tasks(task_id) ON DELETE CASCADE,
                    user_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    title TEXT NOT NULL,
                    detail TEXT,
                    progress INTEGER,
                    tool_name TEXT,
                    options JSONB,
                    answered BOOLEAN,
                    answer TEXT,
                    approval_action TEXT,
                    approval_params TEXT,
                    approved BOOLEAN,
                    created_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_task_events_task
                ON task_events(task_id, seq)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS notifications (
                    notification_id UUID PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    title TEXT NOT NULL,
                    body TEXT NOT NULL,
                    action_url TEXT,
                    read BOOLEAN NOT NULL DEFAULT FALSE,
                    created_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS user_settings (
                    user_id TEXT PRIMARY KEY,
                    payload_json JSONB NOT NULL
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS connector_tokens (
                    user_id TEXT NOT NULL,
                    provider TEXT NOT NULL,
                    payload_json JSONB NOT NULL,
                    PRIMARY KEY (user_id, provider)
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS agent_files (
                    file_id UUID PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    task_id TEXT,
                    title TEXT NOT NULL,
                    content TEXT NOT NULL,
                    file_type TEXT NOT NULL DEFAULT 'document',
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS workspace_records (
                    record_id UUID PRIMARY KEY,
                    seq BIGSERIAL,
                    user_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    data_json JSONB NOT NULL DEFAULT '{}'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_workspace_records_user_kind
                ON workspace_records(user_id, kind, seq DESC)
                """)
            conn.commit()

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
    ) -> TaskRecord:
        task_id = uuid.uuid4()
        now = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO agent_tasks (
                    task_id, user_id, title, note, source_type, source_id,
                    due_date, priority, created_at, updated_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    task_id,
                    user_id,
                    title,
                    note,
                    source_type,
                    source_id,
                    due_date,
                    priority,
                    now,
                    now,
                ),
            )
            conn.commit()
        created = self.get_task(user_id, str(task_id))
        if created is None:
            raise RuntimeError("Failed to load created task")
        return created

    def get_task(self, user_id: str, task_id: str) -> TaskRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM agent_tasks WHERE task_id::text = %s AND user_id = %s",
                (task_id, user_id),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def list_tasks(
        self, user_id: str, *, limit: int = 50, include_done: bool = True
    ) -> list[TaskRecord]:
        query = "SELECT * FROM agent_tasks WHERE user_id = %s"
        if not include_done:
            query += " AND done = FALSE"
        query += " ORDER BY created_at DESC LIMIT %s"
        with self._lock, self._connect() as conn:
            rows = conn.execute(query, (user_id, limit)).fetchall()
        return [self._row_to_task(row) for row in rows]

    def patch_task(self, user_id: str, task_id: str, updates: dict[str, Any]) -> TaskRecord:
        self._update_task(user_id, task_id, updates, {})
        refreshed = self.get_task(user_id, task_id)
        if refreshed is None:
            raise KeyError(f"Task {task_id} does not exist")
        return refreshed

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
        if not self._update_task(user_id, task_id, updates, expected):
            return None
        return self.get_task(user_id, task_id)

    def _update_task(
        self,
        user_id: str,
        task_id: str,
        updates: dict[str, Any],
        expected: dict[str, Any],
    ) -> bool:
        unknown = set(updates) - AGENT_FIELDS - TASK_FIELDS
        if unknown:
            raise ValueError(f"Unsupported task fields: {sorted(unknown)}")
        columns: list[str] = []
        values: list[Any] = []
        for column, value in updates.items():
            columns.append(f"{column} = %s")
            if column in _JSON_TASK_COLUMNS and value is not None:
                value = self._json_wrapper(value)
            values.append(value)
        columns.append("updated_at = %s")
        values.append(datetime.now(tz=UTC))
        conditions = ["task_id::text = %s", "user_id = %s"]
        params: list[Any] = [task_id, user_id]
        for column, value in expected.items():
            conditions.append(f"{column} IS NOT DISTINCT FROM %s")
            params.append(value)
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE agent_tasks SET {', '.join(columns)} WHERE {' AND '.join(conditions)}",
                (*values, *params),
            )
            conn.commit()
        return cursor.rowcount > 0

    # Task events

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
        event_id = uuid.uuid4()
        now = datetime.now(tz=UTC)
        columns = ["event_id", "task_id", "user_id", "kind", "title", "created_at"]
        values: list[Any] = [event_id, task_id, user_id, kind, title, now]
        for column, value in fields.items():
            columns.append(column)
            if column in _JSON_EVENT_COLUMNS and value is not None:
                value = self._json_wrapper(value)
            values.append(value)
        placeholders = ", ".join(["%s"] * len(values))
        with self._lock, self._connect() as conn:
            conn.execute(
                f"INSERT INTO task_events ({', '.join(columns)}) VALUES ({placeholders})",
                tuple(values),
            )
            conn.commit()
        created = self.get_event(user_id, str(event_id))
        if created is None:
            raise RuntimeError("Failed to load created event")
        return created

    def get_event(self, user_id: str, event_id: str) -> TaskEventRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM task_events WHERE event_id::text = %s AND user_id = %s",
                (event_id, user_id),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_event(row)

    def update_event(
        self, user_id: str, event_id: str, updates: dict[str, Any]
    ) -> TaskEventRecord:
        unknown = set(updates) - EVENT_FIELDS
        if unknown:
            raise ValueError(f"Unsupported event fields: {sorted(unknown)}")
        if updates:
            columns: list[str] = []
            values: list[Any] = []
            for column, value in updates.items():
                columns.append(f"{column} = %s")
                if column in _JSON_EVENT_COLUMNS and value is not None:
                    value = self._json_wrapper(value)
                values.append(value)
            with self._lock, self._connect() as conn:
                conn.execute(
                    f"UPDATE task_events SET {', '.join(columns)} "
                    "WHERE event_id::text = %s AND user_id = %s",
                    (*values, event_id, user_id),
                )
                conn.commit()
        refreshed = self.get_event(user_id, event_id)
        if refreshed is None:
            raise KeyError(f"Event {event_id} does not exist")
        return refreshed

    def list_events(self, user_id: str, task_id: str) -> list[TaskEventRecord]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM task_events
                WHERE task_id::text = %s AND user_id = %s
                ORDER BY seq ASC
                """,
                (task_id, user_id),
            ).fetchall()
        return [self._row_to_event(row) for row in rows]

    def clear_events(self, user_id: str, task_id: str) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                "DELETE FROM task_events WHERE task_id::text = %s AND user_id = %s",
                (task_id, user_id),
            )
            conn.commit()

    # Notifications

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
            notification_id=str(uuid.uuid4()),
            user_id=user_id,
            type=type,
            title=title,
            body=body,
            action_url=action_url,
            created_at=datetime.now(tz=UTC),
        )
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO notifications (
                    notification_id, user_id, type, title, body, action_url, read, created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    record.notification_id,
                    user_id,
                    type,
                    title,
                    body,
                    action_url,
                    False,
                    record.created_at,
                ),
            )
            conn.commit()
        return record

    def list_notifications(self, user_id: str, *, limit: int = 50) -> list[NotificationRecord]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM notifications
                WHERE user_id = %s
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (user_id, limit),
            ).fetchall()
        return [
            NotificationRecord(
                notification_id=str(row["notification_id"]),
                user_id=row["user_id"],
                type=row["type"],
                title=row["title"],
                body=row["body"],
                action_url=row["action_url"],
                read=bool(row["read"]),
                created_at=self._parse_datetime(row["created_at"]),
            )
            for row in rows
        ]

    # Settings and connectors

    def get_user_settings(self, user_id: str) -> UserSettingsRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT payload_json FROM user_settings WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        payload = self._parse_json_optional(row["payload_json"]) if row else None
        if payload is None:
            return None
        return UserSettingsRecord.model_validate(payload)

    def save_user_settings(self, record: UserSettingsRecord) -> UserSettingsRecord:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_settings (user_id, payload_json)
                VALUES (%s, %s)
                ON CONFLICT (user_id) DO UPDATE SET payload_json = EXCLUDED.payload_json
                """,
                (record.user_id, self._json_wrapper(record.model_dump(mode="json"))),
            )
            conn.commit()
        return record

    def get_connector_token(self, user_id: str, provider: str) -> ConnectorTokenRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT payload_json FROM connector_tokens WHERE user_id = %s AND provider = %s",
                (user_id, provider),
            ).fetchone()
        payload = self._parse_json_optional(row["payload_json"]) if row else None
        if payload is None:
            return None
        return ConnectorTokenRecord.model_validate(payload)

    def save_connector_token(self, record: ConnectorTokenRecord) -> ConnectorTokenRecord:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO connector_tokens (user_id, provider, payload_json)
                VALUES (%s, %s, %s)
                ON CONFLICT (user_id, provider)
                DO UPDATE SET payload_json = EXCLUDED.payload_json
                """,
                (
                    record.user_id,
                    record.provider,
                    self._json_wrapper(record.model_dump(mode="json")),
                ),
            )
            conn.commit()
        return record

    # Agent files

    def create_agent_file(
        self,
        user_id: str,
        *,
        task_id: str | None,
        title: str,
        content: str,
        file_type: str = "document",
    ) -> AgentFileRecord:
        file_id = uuid.uuid4()
        now = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO agent_files (
                    file_id, user_id, task_id, title, content, file_type, created_at, updated_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (file_id, user_id, task_id, title, content, file_type, now, now),
            )
            conn.commit()
        created = self.get_agent_file(user_id, str(file_id))
        if created is None:
            raise RuntimeError("Failed to load created file")
        return created

    def get_agent_file(self, user_id: str, file_id: str) -> AgentFileRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM agent_files WHERE file_id::text = %s AND user_id = %s",
                (file_id, user_id),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_file(row)

    def update_agent_file(
        self, user_id: str, file_id: str, updates: dict[str, Any]
    ) -> AgentFileRecord:
        unknown = set(updates) - _FILE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported file fields: {sorted(unknown)}")
        columns = [f"{column} = %s" for column in updates]
        columns.append("updated_at = %s")
        values = [*updates.values(), datetime.now(tz=UTC)]
        with self._lock, self._connect() as conn:
            conn.execute(
                f"UPDATE agent_files SET {', '.join(columns)} "
                "WHERE file_id::text = %s AND user_id = %s",
                (*values, file_id, user_id),
            )
            conn.commit()
        refreshed = self.get_agent_file(user_id, file_id)
        if refreshed is None:
            raise KeyError(f"File {file_id} does not exist")
        return refreshed

    def list_agent_files(
        self, user_id: str, *, task_id: str | None = None, limit: int = 20
    ) -> list[AgentFileRecord]:
        query = "SELECT * FROM agent_files WHERE user_id = %s"
        params: list[Any] = [user_id]
        if task_id is not None:
            query += " AND task_id = %s"
            params.append(task_id)
        query += " ORDER BY updated_at DESC LIMIT %s"
        params.append(limit)
        with self._lock, self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [self._row_to_file(row) for row in rows]

    # Workspace records

    def list_workspace_records(
        self, user_id: str, kind: str, *, limit: int = 50
    ) -> list[WorkspaceRecord]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM workspace_records
                WHERE user_id = %s AND kind = %s
                ORDER BY seq DESC
                LIMIT %s
                """,
                (user_id, kind, limit),
            ).fetchall()
        return [
            WorkspaceRecord(
                record_id=str(row["record_id"]),
                user_id=row["user_id"],
                kind=row["kind"],
                data=self._parse_json_optional(row["data_json"]) or {},
                created_at=self._parse_datetime(row["created_at"]),
            )
            for row in rows
        ]

    def add_workspace_record(
        self, user_id: str, kind: str, data: dict[str, Any]
    ) -> WorkspaceRecord:
        record = WorkspaceRecord(
            record_id=str(uuid.uuid4()),
            user_id=user_id,
            kind=kind,
            data=dict(data),
            created_at=datetime.now(tz=UTC),
        )
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO workspace_records (record_id, user_id, kind, data_json, created_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (
                    record.record_id,
                    user_id,
                    kind,
                    self._json_wrapper(record.data),
                    record.created_at,
                ),
            )
            conn.commit()
        return record

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse_json_optional(raw: Any) -> dict[str, Any] | None:
        if raw is None:
            return None
        parsed = json.loads(raw) if isinstance(raw, str) else raw
        if isinstance(parsed, dict):
            return parsed
        return None

    @staticmethod
    def _parse_string_list(raw: Any) -> list[str] | None:
        if raw is None:
            return None
        parsed = json.loads(raw) if isinstance(raw, str) else raw
        if not isinstance(parsed, list):
            return None
        return [str(item) for item in parsed]

    @staticmethod
    def _parse_datetime(raw: Any) -> datetime:
        if isinstance(raw, datetime):
            return raw
        if isinstance(raw, str):
            return datetime.fromisoformat(raw)
        raise TypeError(f"Unsupported datetime value: {type(raw)!r}")

    @classmethod
    def _row_to_task(cls, row: Any) -> TaskRecord:
        return TaskRecord(
            task_id=str(row["task_id"]),
            user_id=row["user_id"],
            title=row["title"],
            note=row["note"],
            source_type=row["source_type"],
            source_id=row["source_id"],
            due_date=row["due_date"],
            priority=row["priority"],
            done=bool(row["done"]),
            agent_status=row["agent_status"],
            agent_progress=int(row["agent_progress"] or 0),
            agent_phase=row["agent_phase"],
            agent_plan=cls._parse_string_list(row["agent_plan"]),
            agent_summary=row["agent_summary"],
            agent_result=row["agent_result"],
            agent_error=row["agent_error"],
            agent_started_at=row["agent_started_at"],
            agent_completed_at=row["agent_completed_at"],
            agent_state=row["agent_state"],
            agent_run_id=row["agent_run_id"],
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
        )

    @classmethod
    def _row_to_event(cls, row: Any) -> TaskEventRecord:
        return TaskEventRecord(
            event_id=str(row["event_id"]),
            task_id=str(row["task_id"]),
            user_id=row["user_id"],
            kind=row["kind"],
            title=row["title"],
            detail=row["detail"],
            progress=row["progress"],
            tool_name=row["tool_name"],
            options=cls._parse_string_list(row["options"]),
            answered=row["answered"],
            answer=row["answer"],
            approval_action=row["approval_action"],
            approval_params=row["approval_params"],
            approved=row["approved"],
            created_at=cls._parse_datetime(row["created_at"]),
        )

    @classmethod
    def _row_to_file(cls, row: Any) -> AgentFileRecord:
        return AgentFileRecord(
            file_id=str(row["file_id"]),
            user_id=row["user_id"],
            task_id=row["task_id"],
            title=row["title"],
            content=row["content"],
            file_type=row["file_type"],
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
        )
