"""Chat model providers behind a single interface."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any
from urllib import parse

from task_agent import http_client
from task_agent.config.settings import Settings
from task_agent.llm.streaming import anthropic_stream_deltas, openai_stream_deltas
from task_agent.llm.tool_loop import (
    ToolCallRequest,
    ToolExecuteFn,
    ToolLoopBudget,
    ToolLoopResult,
    ToolTurn,
    drive_tool_loop,
    parse_tool_arguments,
)
from task_agent.storage.models import UserSettingsRecord
from task_agent.tools.schemas import ToolDef

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"

ChatMessage = dict[str, str]


class ConfigurationError(RuntimeError):
    """The user's model settings cannot produce a usable model."""


@dataclass(frozen=True)
class ModelBinding:
    provider: str
    model: str
    api_key: str
    base_url: str
    timeout_s: float = 60.0
    max_retries: int = 1
    backoff_s: float = 0.5
    referer: str = ""
    title: str = ""


class ChatModel:
    """Base chat model; providers override what they support."""

    supports_tools = False
    supports_streaming = False

    def __init__(self, binding: ModelBinding) -> None:
        self.binding = binding

    @property
    def provider(self) -> str:
        return self.binding.provider

    @property
    def model(self) -> str:
        return self.binding.model

    def complete(
        self,
        system_prompt: str,
        messages: list[ChatMessage],
        *,
        temperature: float,
        max_tokens: int,
    ) -> str:
        raise NotImplementedError

    def run_tool_loop(
        self,
        system_prompt: str,
        prompt: str,
        *,
        tools: list[ToolDef],
        execute: ToolExecuteFn,
        budget: ToolLoopBudget,
        temperature: float,
        max_tokens: int,
    ) -> ToolLoopResult:
        raise NotImplementedError(f"{self.provider} does not support tool calling")

    def stream(
        self,
        system_prompt: str,
        messages: list[ChatMessage],
        *,
        temperature: float,
        max_tokens: int,
    ) -> Iterator[str]:
        raise NotImplementedError(f"{self.provider} does not support streaming")

    def _post(self, url: str, headers: dict[str, str], body: dict[str, Any]) -> Any:
        return http_client.request_json(
            "POST",
            url,
            headers=headers,
            json_body=body,
            timeout_s=self.binding.timeout_s,
            max_retries=self.binding.max_retries,
            backoff_s=self.binding.backoff_s,
        )


class OpenRouterChatModel(ChatModel):
    """OpenAI-compatible chat completions (OpenRouter)."""

    supports_tools = True
    supports_streaming = True

    def _url(self) -> str:
        return f"{self.binding.base_url.rstrip('/')}/chat/completions"

    def _headers(self) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self.binding.api_key}"}
        if self.binding.referer:
            headers["HTTP-Referer"] = self.binding.referer
        if self.binding.title:
            headers["X-Title"] = self.binding.title
        return headers

    def _body(
        self,
        messages: list[dict[str, Any]],
        *,
        temperature: float,
        max_tokens: int,
    ) -> dict[str, Any]:
        return {
            "model": self.binding.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }

    def complete(
        self,
        system_prompt: str,
        messages: list[ChatMessage],
        *,
        temperature: float,
        max_tokens: int,
    ) -> str:
        body = self._body(
            [{"role": "system", "content": system_prompt}, *messages],
            temperature=temperature,
            max_tokens=max_tokens,
        )
        data = self._post(self._url(), self._headers(), body)
        return _openai_message_text(_openai_message(data))

    def run_tool_loop(
        self,
        system_prompt: str,
        prompt: str,
        *,
        tools: list[ToolDef],
        execute: ToolExecuteFn,
        budget: ToolLoopBudget,
        temperature: float,
        max_tokens: int,
    ) -> ToolLoopResult:
        transcript: list[dict[str, Any]] = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": prompt},
        ]
        tool_specs = [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.input_schema,
                },
            }
            for tool in tools
        ]

        def send() -> ToolTurn:
            body = self._body(transcript, temperature=temperature, max_tokens=max_tokens)
            body["tools"] = tool_specs
            body["tool_choice"] = "auto"
            message = _openai_message(self._post(self._url(), self._headers(), body))
            raw_calls = message.get("tool_calls")
            calls = [
                ToolCallRequest(
                    id=str(item.get("id") or f"call_{index}"),
                    name=str(item.get("function", {}).get("name") or ""),
                    arguments=parse_tool_arguments(item.get("function", {}).get("arguments")),
                )
                for index, item in enumerate(raw_calls if isinstance(raw_calls, list) else [])
                if isinstance(item, dict)
            ]
            return ToolTurn(text=_openai_message_text(message), calls=calls, raw=message)

        def record_results(turn: ToolTurn, outputs: list[tuple[ToolCallRequest, str]]) -> None:
            transcript.append(
                {
                    "role": "assistant",
                    "content": turn.text or None,
                    "tool_calls": turn.raw.get("tool_calls"),
                }
            )
            for call, output in outputs:
                transcript.append({"role": "tool", "tool_call_id": call.id, "content": output})

        return drive_tool_loop(
            send=send, record_results=record_results, execute=execute, budget=budget
        )

    def stream(
        self,
        system_prompt: str,
        messages: list[ChatMessage],
        *,
        temperature: float,
        max_tokens: int,
    ) -> Iterator[str]:
        body = self._body(
            [{"role": "system", "content": system_prompt}, *messages],
            temperature=temperature,
            max_tokens=max_tokens,
        )
        body["stream"] = True
        lines = http_client.stream_lines(
            "POST",
            self._url(),
            headers=self._headers(),
            json_body=body,
            timeout_s=self.binding.timeout_s,
        )
        yield from openai_stream_deltas(lines)


class AnthropicChatModel(ChatModel):
    """Anthropic messages API."""

    supports_tools = True
    supports_streaming = True

    def _url(self) -> str:
        return f"{self.binding.base_url.rstrip('/')}/messages"

    def _headers(self) -> dict[str, str]:
        return {"x-api-key": self.binding.api_key, "anthropic-version": ANTHROPIC_VERSION}

    def _body(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        *,
        temperature: float,
        max_tokens: int,
    ) -> dict[str, Any]:
        return {
            "model": self.binding.model,
            "system": system_prompt,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }

    def complete(
        self,
        system_prompt: str,
        messages: list[ChatMessage],
        *,
        temperature: float,
        max_tokens: int,
    ) -> str:
        body = self._body(
            system_prompt, list(messages), temperature=temperature, max_tokens=max_tokens
        )
        data = self._post(self._url(), self._headers(), body)
        return _anthropic_text(data)

    def run_tool_loop(
        self,
        system_prompt: str,
        prompt: str,
        *,
        tools: list[ToolDef],
        execute: ToolExecuteFn,
        budget: ToolLoopBudget,
        temperature: float,
        max_tokens: int,
    ) -> ToolLoopResult:
        transcript: list[dict[str, Any]] = [{"role": "user", "content": prompt}]
        tool_specs = [
            {"name": tool.name, "description": tool.description, "input_schema": tool.input_schema}
            for tool in tools
        ]

        def send() -> ToolTurn:
            body = self._body(
                system_prompt, transcript, temperature=temperature, max_tokens=max_tokens
            )
            body["tools"] = tool_specs
            data = self._post(self._url(), self._headers(), body)
            blocks = data.get("content") if isinstance(data, dict) else None
            blocks = blocks if isinstance(blocks, list) else []
            calls = [
                ToolCallRequest(
                    id=str(block.get("id") or f"toolu_{index}"),
                    name=str(block.get("name") or ""),
                    arguments=parse_tool_arguments(block.get("input")),
                )
                for index, block in enumerate(blocks)
                if isinstance(block, dict) and block.get("type") == "tool_use"
            ]
            return ToolTurn(text=_anthropic_text(data), calls=calls, raw=blocks)

        def record_results(turn: ToolTurn, outputs: list[tuple[ToolCallRequest, str]]) -> None:
            transcript.append({"role": "assistant", "content": turn.raw})
            transcript.append(
                {
                    "role": "user",
                    "content": [
                        {"type": "tool_result", "tool_use_id": call.id, "content": output}
                        for call, output in outputs
                    ],
                }
            )

        return drive_tool_loop(
            send=send, record_results=record_results, execute=execute, budget=budget
        )

    def stream(
        self,
        system_prompt: str,
        messages: list[ChatMessage],
        *,
        temperature: float,
        max_tokens: int,
    ) -> Iterator[str]:
        body = self._body(
            system_prompt, list(messages), temperature=temperature, max_tokens=max_tokens
        )
        body["stream"] = True
        lines = http_client.stream_lines(
            "POST",
            self._url(),
            headers=self._headers(),
            json_body=body,
            timeout_s=self.binding.timeout_s,
        )
        yield from anthropic_stream_deltas(lines)


class GoogleChatModel(ChatModel):
    """Gemini ``generateContent``; no tool calling or streaming."""

    def complete(
        self,
        system_prompt: str,
        messages: list[ChatMessage],
        *,
        temperature: float,
        max_tokens: int,
    ) -> str:
        url = (
            f"{self.binding.base_url.rstrip('/')}/models/"
            f"{parse.quote(self.binding.model, safe='')}:generateContent"
        )
        body = {
            "systemInstruction": {"parts": [{"text": system_prompt}]},
            "contents": [
                {
                    "role": "model" if message.get("role") == "assistant" else "user",
                    "parts": [{"text": message.get("content", "")}],
                }
                for message in messages
            ],
            "generationConfig": {"temperature": temperature, "maxOutputTokens": max_tokens},
        }
        data = self._post(url, {"x-goog-api-key": self.binding.api_key}, body)
        candidates = data.get("candidates") if isinstance(data, dict) else None
        if not isinstance(candidates, list) or not candidates:
            return ""
        content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
        parts = content.get("parts") if isinstance(content, dict) else None
        return "".join(
            str(part.get("text") or "")
            for part in (parts if isinstance(parts, list) else [])
            if isinstance(part, dict)
        )


def _openai_message(data: Any) -> dict[str, Any]:
    choices = data.get("choices") if isinstance(data, dict) else None
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return {}
    message = choices[0].get("message")
    return message if isinstance(message, dict) else {}


def _openai_message_text(message: dict[str, Any]) -> str:
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            str(part.get("text") or "") for part in content if isinstance(part, dict)
        )
    return ""


def _anthropic_text(data: Any) -> str:
    blocks = data.get("content") if isinstance(data, dict) else None
    return "".join(
        str(block.get("text") or "")
        for block in (blocks if isinstance(blocks, list) else [])
        if isinstance(block, dict) and block.get("type") == "text"
    )


_PROVIDER_LABELS = {"openrouter": "OpenRouter", "google": "Google", "anthropic": "Anthropic"}


def resolve_model_binding(
    user_settings: UserSettingsRecord | None, settings: Settings
) -> ModelBinding:
    if user_settings is None:
        raise ConfigurationError("Please configure AI settings first.")

    provider = user_settings.ai_provider
    if provider == "google":
        api_key = user_settings.google_api_key
        base_url = settings.google_base_url
        default_model = settings.default_google_model
    elif provider == "anthropic":
        api_key = user_settings.anthropic_api_key
        base_url = settings.anthropic_base_url
        default_model = settings.default_anthropic_model
    else:
        api_key = user_settings.openrouter_api_key
        base_url = settings.openrouter_base_url
        default_model = settings.default_openrouter_model

    api_key = (api_key or "").strip()
    if not api_key:
        label = _PROVIDER_LABELS.get(provider, provider)
        raise ConfigurationError(f"No {label} API key configured (Settings).")

    return ModelBinding(
        provider=provider,
        model=(user_settings.ai_model or "").strip() or default_model,
        api_key=api_key,
        base_url=base_url,
        timeout_s=settings.llm_timeout_s,
        max_retries=settings.llm_max_retries,
        backoff_s=settings.llm_backoff_s,
        referer=settings.app_base_url,
        title=settings.app_name,
    )


def build_chat_model(binding: ModelBinding) -> ChatModel:
    if binding.provider == "anthropic":
        return AnthropicChatModel(binding)
    if binding.provider == "google":
        return GoogleChatModel(binding)
    return OpenRouterChatModel(binding)
