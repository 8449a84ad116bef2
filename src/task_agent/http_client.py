"""Small urllib wrapper shared by model providers and external tools."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Iterator
from typing import Any
from urllib import error, parse, request

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


class HttpStatusError(RuntimeError):
    """Non-2xx response; ``body`` keeps the first part of the response text."""

    def __init__(self, status: int, body: str, *, url: str = "") -> None:
        self.status = status
        self.body = body
        self.url = url
        super().__init__(f"HTTP {status}: {body[:400]}")


def _open(req: request.Request, timeout: float) -> Any:
    return request.urlopen(req, timeout=timeout)


def build_url(base: str, params: dict[str, Any] | None = None) -> str:
    if not params:
        return base
    query = parse.urlencode(
        [(key, value) for key, value in params.items() if value is not None], doseq=True
    )
    separator = "&" if "?" in base else "?"
    return f"{base}{separator}{query}"


def _build_request(
    method: str,
    url: str,
    *,
    headers: dict[str, str] | None,
    json_body: Any = None,
    form_body: dict[str, str] | None = None,
) -> request.Request:
    data: bytes | None = None
    merged = dict(headers or {})
    if json_body is not None:
        data = json.dumps(json_body).encode("utf-8")
        merged.setdefault("Content-Type", "application/json")
    elif form_body is not None:
        data = parse.urlencode(form_body).encode("utf-8")
        merged.setdefault("Content-Type", "application/x-www-form-urlencoded")
    return request.Request(url=url, data=data, method=method.upper(), headers=merged)


def request_text(
    method: str,
    url: str,
    *,
    headers: dict[str, str] | None = None,
    json_body: Any = None,
    form_body: dict[str, str] | None = None,
    timeout_s: float = 20.0,
    max_retries: int = 0,
    backoff_s: float = 0.0,
) -> str:
    last_error: Exception | None = None
    for attempt in range(max_retries + 1):
        req = _build_request(
            method, url, headers=headers, json_body=json_body, form_body=form_body
        )
        try:
            with _open(req, timeout_s) as response:
                return response.read().decode("utf-8", errors="replace")
        except error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="replace")
            last_error = HttpStatusError(exc.code, body, url=url)
            if exc.code not in _RETRYABLE_STATUS:
                raise last_error from exc
        except error.URLError as exc:
            last_error = RuntimeError(f"Request to {url} failed: {exc.reason}")
        if attempt < max_retries:
            logger.warning(
                "http_retry method=%s url=%s attempt=%s error=%s",
                method,
                url,
                attempt + 1,
                last_error,
            )
            if backoff_s > 0:
                time.sleep(backoff_s * (attempt + 1))

    if last_error is None:
        raise RuntimeError(f"Request to {url} failed")
    raise last_error


def request_json(
    method: str,
    url: str,
    *,
    headers: dict[str, str] | None = None,
    json_body: Any = None,
    form_body: dict[str, str] | None = None,
    timeout_s: float = 20.0,
    max_retries: int = 0,
    backoff_s: float = 0.0,
) -> Any:
    raw = request_text(
        method,
        url,
        headers=headers,
        json_body=json_body,
        form_body=form_body,
        timeout_s=timeout_s,
        max_retries=max_retries,
        backoff_s=backoff_s,
    )
    if not raw.strip():
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"Non-JSON response from {url}") from exc


def stream_lines(
    method: str,
    url: str,
    *,
    headers: dict[str, str] | None = None,
    json_body: Any = None,
    timeout_s: float = 60.0,
) -> Iterator[str]:
    """Yield decoded lines of a streaming (server-sent events) response."""
    req = _build_request(method, url, headers=headers, json_body=json_body)
    try:
        response = _open(req, timeout_s)
    except error.HTTPError as exc:
        body = exc.read().decode("utf-8", errors="replace")
        raise HttpStatusError(exc.code, body, url=url) from exc
    except error.URLError as exc:
        raise RuntimeError(f"Request to {url} failed: {exc.reason}") from exc

    with response:
        for raw_line in response:
            yield raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
