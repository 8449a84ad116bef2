from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from task_agent.tools import github, google, web, workspace
from task_agent.tools.schemas import (
    AskUserInput,
    CalendarCreateEventInput,
    CalendarListUpcomingInput,
    CreateFileInput,
    CreateTaskInput,
    GetTaskResultInput,
    GithubCreateIssueInput,
    GithubListPullRequestsInput,
    GmailComposeInput,
    GmailListRecentInput,
    GmailSearchMessagesInput,
    ListAgentFilesInput,
    ListIdeasInput,
    ListIncomeStreamsInput,
    ListMentorshipSessionsInput,
    ListTasksInput,
    ReadAgentFileInput,
    ReadProfileInput,
    ReadUrlInput,
    RequestApprovalInput,
    SearchInsightsInput,
    SendNotificationInput,
    ToolCall,
    ToolDef,
    ToolExecResult,
    UpdateAgentFileInput,
    UpdateTaskInput,
    WebSearchInput,
)

ToolHandler = Callable[[ToolCall, Any], ToolExecResult]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    input_model: type[BaseModel]
    handler: ToolHandler
    read_only: bool = False

    def definition(self) -> ToolDef:
        return ToolDef(
            name=self.name,
            description=self.description,
            input_schema=self.input_model.model_json_schema(by_alias=True),
        )


def _spec(
    name: str,
    description: str,
    input_model: type[BaseModel],
    handler: ToolHandler,
    *,
    read_only: bool = False,
) -> ToolSpec:
    return ToolSpec(
        name=name,
        description=description,
        input_model=input_model,
        handler=handler,
        read_only=read_only,
    )


def build_registry() -> dict[str, ToolSpec]:
    specs = [
        _spec(
            "read_profile",
            "Read the user's profile summary (goals, skills, situation).",
            ReadProfileInput,
            workspace.read_profile,
        ),
        _spec(
            "list_tasks",
            "List the user's tasks with status, due date and priority.",
            ListTasksInput,
            workspace.list_tasks,
            read_only=True,
        ),
        _spec(
            "list_income_streams",
            "List the user's income streams with revenue and hours.",
            ListIncomeStreamsInput,
            workspace.list_income_streams,
            read_only=True,
        ),
        _spec(
            "list_ideas",
            "List ideas captured in the user's idea bank.",
            ListIdeasInput,
            workspace.list_ideas,
            read_only=True,
        ),
        _spec(
            "list_mentorship_sessions",
            "List recent mentorship sessions with notes and action items.",
            ListMentorshipSessionsInput,
            workspace.list_mentorship_sessions,
            read_only=True,
        ),
        _spec(
            "search_insights",
            "Search saved AI insights by keyword.",
            SearchInsightsInput,
            workspace.search_insights,
        ),
        _spec(
            "get_task_result",
            "Read the latest agent output for another task.",
            GetTaskResultInput,
            workspace.get_task_result,
        ),
        _spec(
            "ask_user",
            "Ask the user a clarifying question (optionally with 2-6 options). "
            "Pauses the task until the user answers.",
            AskUserInput,
            workspace.ask_user,
        ),
        _spec(
            "create_file",
            "Create a draft markdown file linked to this task.",
            CreateFileInput,
            workspace.create_file,
        ),
        _spec(
            "list_agent_files",
            "List draft files the agent has created.",
            ListAgentFilesInput,
            workspace.list_agent_files,
        ),
        _spec(
            "read_agent_file",
            "Read the content of an agent draft file.",
            ReadAgentFileInput,
            workspace.read_agent_file,
        ),
        _spec(
            "update_agent_file",
            "Update the title, content or type of an agent draft file.",
            UpdateAgentFileInput,
            workspace.update_agent_file,
        ),
        _spec(
            "create_task",
            "Create a new task for the user, optionally starting the agent on it.",
            CreateTaskInput,
            workspace.create_task,
        ),
        _spec(
            "update_task",
            "Update a task's title, note, due date, priority or done flag.",
            UpdateTaskInput,
            workspace.update_task,
        ),
        _spec(
            "send_notification",
            "Send the user an in-app notification.",
            SendNotificationInput,
            workspace.send_notification,
        ),
        _spec(
            "request_approval",
            "Ask the user to approve a side-effecting action (e.g. send_email, "
            "create_calendar_event). Pauses the task until the user decides.",
            RequestApprovalInput,
            workspace.request_approval,
        ),
        _spec(
            "web_search",
            "Search the public web. Requires user approval.",
            WebSearchInput,
            web.web_search,
        ),
        _spec(
            "read_url",
            "Fetch a public URL and return its readable text. Requires user approval.",
            ReadUrlInput,
            web.read_url,
        ),
        _spec(
            "github_list_my_pull_requests",
            "List the user's open GitHub pull requests. Requires a GitHub connection.",
            GithubListPullRequestsInput,
            github.github_list_my_pull_requests,
        ),
        _spec(
            "github_create_issue",
            "Create a GitHub issue in a repository (owner/name). Requires user approval.",
            GithubCreateIssueInput,
            github.github_create_issue,
        ),
        _spec(
            "gmail_list_recent",
            "List recent Gmail messages. Requires scope gmail.readonly.",
            GmailListRecentInput,
            google.gmail_list_recent,
        ),
        _spec(
            "gmail_search_messages",
            "Search Gmail with a Gmail query string. Requires scope gmail.readonly.",
            GmailSearchMessagesInput,
            google.gmail_search_messages,
        ),
        _spec(
            "gmail_create_draft",
            "Create a Gmail draft. Requires scope gmail.compose.",
            GmailComposeInput,
            google.gmail_create_draft,
        ),
        _spec(
            "gmail_send_email",
            "Send an email from the user's Gmail. Requires scope gmail.send and user approval.",
            GmailComposeInput,
            google.gmail_send_email,
        ),
        _spec(
            "calendar_list_upcoming",
            "List upcoming Google Calendar events. Requires scope calendar.readonly.",
            CalendarListUpcomingInput,
            google.calendar_list_upcoming,
        ),
        _spec(
            "calendar_create_event",
            "Create a Google Calendar event. Requires scope calendar and user approval.",
            CalendarCreateEventInput,
            google.calendar_create_event,
        ),
    ]
    return {spec.name: spec for spec in specs}


TOOL_REGISTRY = build_registry()


def list_tools(registry: dict[str, ToolSpec] | None = None) -> list[ToolDef]:
    return [spec.definition() for spec in (registry or TOOL_REGISTRY).values()]


def read_only_tool_names(registry: dict[str, ToolSpec] | None = None) -> list[str]:
    return [spec.name for spec in (registry or TOOL_REGISTRY).values() if spec.read_only]
