import json

import pytest

from task_agent.config.settings import Settings
from task_agent.http_client import HttpStatusError
from task_agent.llm.client import (
    AnthropicChatModel,
    ConfigurationError,
    GoogleChatModel,
    OpenRouterChatModel,
    build_chat_model,
    resolve_model_binding,
)
from task_agent.llm.tool_loop import ToolLoopBudget
from task_agent.storage.models import UserSettingsRecord
from task_agent.tools import ToolDef, ToolExecResult

SETTINGS = Settings(app_name="task-agent-test", app_base_url="https://app.example.com")


def _binding(provider: str, **fields):
    record = UserSettingsRecord(user_id="u1", ai_provider=provider, **fields)
    return resolve_model_binding(record, SETTINGS)


def test_resolve_requires_settings_and_key() -> None:
    with pytest.raises(ConfigurationError, match="Please configure AI settings first."):
        resolve_model_binding(None, SETTINGS)
    with pytest.raises(ConfigurationError, match=r"No Anthropic API key configured \(Settings\)."):
        _binding("anthropic", anthropic_api_key="  ")


def test_resolve_picks_provider_defaults() -> None:
    binding = _binding("google", google_api_key="g-key")

    assert binding.model == SETTINGS.default_google_model
    assert binding.base_url == SETTINGS.google_base_url
    assert isinstance(build_chat_model(binding), GoogleChatModel)
    anthropic = build_chat_model(_binding("anthropic", anthropic_api_key="a"))
    assert isinstance(anthropic, AnthropicChatModel)

    custom = _binding("openrouter", openrouter_api_key="or", ai_model=" openai/gpt-4o ")
    assert custom.model == "openai/gpt-4o"
    assert isinstance(build_chat_model(custom), OpenRouterChatModel)


def test_openrouter_tool_loop_round_trips_tool_results(fake_http) -> None:
    url = f"{SETTINGS.openrouter_base_url}/chat/completions"
    fake_http.add(
        "POST",
        url,
        {
            "choices": [
                {
                    "message": {
                        "content": None,
                        "tool_calls": [
                            {
                                "id": "call_1",
                                "type": "function",
                                "function": {"name": "list_tasks", "arguments": '{"limit": 3}'},
                            }
                        ],
                    }
                }
            ]
        },
    )
    fake_http.add("POST", url, {"choices": [{"message": {"content": "Final answer"}}]})
    model = build_chat_model(_binding("openrouter", openrouter_api_key="or-key"))
    seen = []

    result = model.run_tool_loop(
        "system",
        "prompt",
        tools=[ToolDef(name="list_tasks", description="List tasks.", input_schema={})],
        execute=lambda name, args: seen.append((name, args)) or ToolExecResult.success(["t1"]),
        budget=ToolLoopBudget(),
        temperature=0.3,
        max_tokens=100,
    )

    assert result.text == "Final answer"
    assert seen == [("list_tasks", {"limit": 3})]
    first, second = fake_http.requests
    assert first.headers["authorization"] == "Bearer or-key"
    assert first.headers["http-referer"] == "https://app.example.com"
    assert first.json()["tools"][0]["function"]["name"] == "list_tasks"
    transcript = second.json()["messages"]
    assert transcript[-1]["role"] == "tool"
    assert transcript[-1]["tool_call_id"] == "call_1"
    assert json.loads(transcript[-1]["content"])["result"] == ["t1"]


def test_anthropic_streaming_yields_text_deltas(fake_http) -> None:
    events = [
        {"type": "message_start"},
        {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hello "}},
        {"type": "content_block_delta", "delta": {"type": "input_json_delta"}},
        {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "world"}},
        {"type": "message_stop"},
        {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "ignored"}},
    ]
    body = "".join(f"event: x\ndata: {json.dumps(event)}\n\n" for event in events)
    fake_http.add("POST", f"{SETTINGS.anthropic_base_url}/messages", body)
    model = build_chat_model(_binding("anthropic", anthropic_api_key="a-key"))

    text = "".join(
        model.stream("system", [{"role": "user", "content": "hi"}], temperature=0.2, max_tokens=50)
    )

    assert text == "Hello world"
    request = fake_http.requests[0]
    assert request.headers["x-api-key"] == "a-key"
    assert request.json()["stream"] is True


def test_openrouter_stream_stops_at_done(fake_http) -> None:
    chunks = [{"choices": [{"delta": {"content": part}}]} for part in ("A", "B")]
    body = "".join(f"data: {json.dumps(chunk)}\n\n" for chunk in chunks)
    body += "data: [DONE]\n\ndata: {\"choices\": [{\"delta\": {\"content\": \"C\"}}]}\n\n"
    fake_http.add("POST", f"{SETTINGS.openrouter_base_url}/chat/completions", body)
    model = build_chat_model(_binding("openrouter", openrouter_api_key="k"))

    assert list(model.stream("s", [], temperature=0, max_tokens=5)) == ["A", "B"]


def test_google_complete_reads_candidate_parts(fake_http) -> None:
    fake_http.add(
        "POST",
        f"{SETTINGS.google_base_url}/models/",
        {"candidates": [{"content": {"parts": [{"text": "Hi "}, {"text": "there"}]}}]},
    )
    model = build_chat_model(_binding("google", google_api_key="g-key"))

    messages = [{"role": "user", "content": "hello"}]
    text = model.complete("sys", messages, temperature=0, max_tokens=5)

    assert text == "Hi there"
    assert fake_http.requests[0].headers["x-goog-api-key"] == "g-key"
    assert not model.supports_tools


def test_non_retryable_error_is_raised(fake_http) -> None:
    fake_http.add(
        "POST", f"{SETTINGS.openrouter_base_url}/chat/completions", "bad key", status=401
    )
    model = build_chat_model(_binding("openrouter", openrouter_api_key="k"))

    with pytest.raises(HttpStatusError) as excinfo:
        model.complete("s", [], temperature=0, max_tokens=5)

    assert excinfo.value.status == 401
    assert len(fake_http.requests) == 1
