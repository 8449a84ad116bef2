"""Storage backends and models."""

from task_agent.storage.base import AgentStorage
from task_agent.storage.memory import InMemoryAgentStorage
from task_agent.storage.models import (
    AgentFileRecord,
    ConnectorTokenRecord,
    NotificationRecord,
    TaskEventRecord,
    TaskRecord,
    UserSettingsRecord,
    WorkspaceRecord,
)
from task_agent.storage.postgres import PostgresAgentStorage

__all__ = [
    "AgentFileRecord",
    "AgentStorage",
    "ConnectorTokenRecord",
    "InMemoryAgentStorage",
    "NotificationRecord",
    "PostgresAgentStorage",
    "TaskEventRecord",
    "TaskRecord",
    "UserSettingsRecord",
    "WorkspaceRecord",
]
