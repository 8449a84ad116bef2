from __future__ import annotations

import io
import json
from collections import deque
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any
from urllib import error

import pytest

from task_agent import http_client
from task_agent.config.settings import EngineConfig, Settings
from task_agent.graph.checkpoint import QueueScheduler
from task_agent.graph.context import StorageAgentContext
from task_agent.graph.engine import TaskAgentEngine
from task_agent.llm.client import ChatModel, ModelBinding
from task_agent.llm.tool_loop import ToolCallRequest, ToolTurn, drive_tool_loop
from task_agent.storage.memory import InMemoryAgentStorage
from task_agent.storage.models import UserSettingsRecord

USER_ID = "user-1"


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def tool_call(name: str, **arguments: Any) -> list[tuple[str, dict[str, Any]]]:
    return [(name, arguments)]


@dataclass
class ModelScript:
    """Replies handed out in order to every model built by the engine.

    A ``str`` is a plain text reply, a list of ``(name, args)`` pairs is a
    tool-call turn, and an exception instance is raised. A callable runs while
    the call is in flight and its return value is used as the reply.
    """

    replies: deque[Any] = field(default_factory=deque)
    prompts: list[str] = field(default_factory=list)
    system_prompts: list[str] = field(default_factory=list)
    tool_outputs: list[str] = field(default_factory=list)
    clock: FakeClock | None = None
    seconds_per_call: float = 0.0

    def add(self, *replies: Any) -> ModelScript:
        self.replies.extend(replies)
        return self

    def next(self, system_prompt: str, prompt: str) -> Any:
        self.system_prompts.append(system_prompt)
        self.prompts.append(prompt)
        if self.clock is not None and self.seconds_per_call:
            self.clock.advance(self.seconds_per_call)
        if not self.replies:
            raise AssertionError("model script exhausted")
        reply = self.replies.popleft()
        if callable(reply):
            reply = reply()
        if isinstance(reply, Exception):
            raise reply
        return reply

    @property
    def calls(self) -> int:
        return len(self.prompts)


class ScriptedChatModel(ChatModel):
    def __init__(
        self,
        binding: ModelBinding,
        script: ModelScript,
        *,
        tools: bool = True,
        streaming: bool = False,
    ) -> None:
        super().__init__(binding)
        self.script = script
        self.supports_tools = tools
        self.supports_streaming = streaming

    def complete(self, system_prompt, messages, *, temperature, max_tokens):
        return self.script.next(system_prompt, messages[-1]["content"])

    def run_tool_loop(
        self, system_prompt, prompt, *, tools, execute, budget, temperature, max_tokens
    ):
        counter = iter(range(1000))

        def send() -> ToolTurn:
            reply = self.script.next(system_prompt, prompt)
            if isinstance(reply, str):
                return ToolTurn(text=reply)
            calls = [
                ToolCallRequest(id=f"call_{next(counter)}", name=name, arguments=args)
                for name, args in reply
            ]
            return ToolTurn(text="", calls=calls)

        def record_results(turn, outputs) -> None:
            self.script.tool_outputs.extend(output for _, output in outputs)

        return drive_tool_loop(
            send=send, record_results=record_results, execute=execute, budget=budget
        )

    def stream(self, system_prompt, messages, *, temperature, max_tokens) -> Iterator[str]:
        reply = self.script.next(system_prompt, messages[-1]["content"])
        for index in range(0, len(reply), 16):
            yield reply[index : index + 16]


def plan_reply(*steps: str) -> str:
    return json.dumps({"planSteps": list(steps)})


def step_reply(summary: str, markdown: str) -> str:
    return json.dumps({"stepSummary": summary, "stepOutputMarkdown": markdown})


def final_reply(summary: str, markdown: str) -> str:
    return json.dumps({"summary": summary, "resultMarkdown": markdown})


def engine_config_for_tests(**overrides: Any) -> EngineConfig:
    values: dict[str, Any] = {
        "step_delay_s": 0.0,
        "chunk_delay_s": 0.0,
        "stream_final_output": False,
        "max_steps_per_run": 10,
    }
    values.update(overrides)
    return EngineConfig(**values)


@dataclass
class Harness:
    engine: TaskAgentEngine
    storage: InMemoryAgentStorage
    scheduler: QueueScheduler
    script: ModelScript
    clock: FakeClock

    def create_task(self, title: str = "Write a launch plan", **fields: Any):
        return self.storage.create_task(USER_ID, title=title, **fields)

    def task(self, task_id: str):
        return self.storage.get_task(USER_ID, task_id)

    def events(self, task_id: str):
        return self.storage.list_events(USER_ID, task_id)

    def start_and_drain(self, task_id: str) -> None:
        assert self.engine.start(USER_ID, task_id)
        self.scheduler.drain()


def build_harness(
    *,
    config: EngineConfig | None = None,
    tools: bool = True,
    streaming: bool = False,
    configure_user: bool = True,
    seconds_per_call: float = 0.0,
) -> Harness:
    storage = InMemoryAgentStorage()
    scheduler = QueueScheduler()
    clock = FakeClock()
    script = ModelScript(clock=clock, seconds_per_call=seconds_per_call)
    if configure_user:
        storage.save_user_settings(
            UserSettingsRecord(user_id=USER_ID, ai_provider="openrouter", openrouter_api_key="sk")
        )
    engine = TaskAgentEngine(
        storage,
        Settings(app_name="task-agent-test"),
        scheduler=scheduler,
        config=config or engine_config_for_tests(),
        model_factory=lambda binding: ScriptedChatModel(
            binding, script, tools=tools, streaming=streaming
        ),
        clock=clock,
        sleep=lambda _: None,
    )
    return Harness(
        engine=engine, storage=storage, scheduler=scheduler, script=script, clock=clock
    )


@pytest.fixture
def harness() -> Harness:
    return build_harness()


@pytest.fixture
def storage() -> InMemoryAgentStorage:
    return InMemoryAgentStorage()


@pytest.fixture
def agent_ctx(storage: InMemoryAgentStorage) -> StorageAgentContext:
    settings = Settings(
        app_name="task-agent-test",
        google_oauth_client_id="client-id",
        google_oauth_client_secret="client-secret",
    )
    return StorageAgentContext(storage, settings, QueueScheduler())


class FakeResponse:
    def __init__(self, body: str) -> None:
        self._body = body.encode("utf-8")

    def read(self) -> bytes:
        return self._body

    def __iter__(self):
        return iter(io.BytesIO(self._body).readlines())

    def __enter__(self) -> FakeResponse:
        return self

    def __exit__(self, *exc: Any) -> None:
        return None


@dataclass
class RecordedRequest:
    method: str
    url: str
    headers: dict[str, str]
    body: bytes | None

    def json(self) -> Any:
        return json.loads(self.body or b"null")


class FakeOpener:
    """Stands in for ``urllib.request.urlopen``; routes match on method and URL prefix."""

    def __init__(self) -> None:
        self.routes: list[tuple[str, str, deque[tuple[int, str]]]] = []
        self.requests: list[RecordedRequest] = []

    def add(self, method: str, url_prefix: str, body: Any = None, *, status: int = 200):
        text = body if isinstance(body, str) else json.dumps(body if body is not None else {})
        for route_method, prefix, queue in self.routes:
            if route_method == method and prefix == url_prefix:
                queue.append((status, text))
                return self
        self.routes.append((method, url_prefix, deque([(status, text)])))
        return self

    def __call__(self, req, timeout):
        method = req.get_method()
        self.requests.append(
            RecordedRequest(
                method=method,
                url=req.full_url,
                headers={key.lower(): value for key, value in req.header_items()},
                body=req.data,
            )
        )
        for route_method, prefix, queue in self.routes:
            if route_method == method and req.full_url.startswith(prefix) and queue:
                status, text = queue[0] if len(queue) == 1 else queue.popleft()
                if status >= 400:
                    raise error.HTTPError(
                        req.full_url, status, "error", {}, io.BytesIO(text.encode("utf-8"))
                    )
                return FakeResponse(text)
        raise AssertionError(f"unexpected request {method} {req.full_url}")


@pytest.fixture
def fake_http(monkeypatch: pytest.MonkeyPatch) -> FakeOpener:
    opener = FakeOpener()
    monkeypatch.setattr(http_client, "_open", opener)
    return opener
