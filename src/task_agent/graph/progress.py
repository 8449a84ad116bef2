"""Incremental writes of the task's visible result."""

from __future__ import annotations

import time
from collections.abc import Callable

from task_agent.config.settings import EngineConfig


def chunk_text(text: str, *, chunk_chars: int, max_chunks: int) -> list[str]:
    """Split ``text`` into fixed-size chunks; anything past ``max_chunks`` joins the last one."""
    if not text:
        return []
    size = max(1, chunk_chars)
    chunks = [text[index : index + size] for index in range(0, len(text), size)]
    limit = max(1, max_chunks)
    if len(chunks) > limit:
        chunks = chunks[: limit - 1] + ["".join(chunks[limit - 1 :])]
    return chunks


class ProgressiveWriter:
    """Append or replace the visible result a chunk at a time through ``write``."""

    def __init__(
        self,
        write: Callable[[str], object],
        config: EngineConfig,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._write = write
        self.config = config
        self._sleep = sleep

    def append(self, existing: str, header: str, body: str) -> str:
        prefix = f"{existing.rstrip()}\n\n" if existing.strip() else ""
        return self._write_chunks(f"{prefix}{header}\n\n", body.strip())

    def replace(self, text: str) -> str:
        return self._write_chunks("", text)

    def _write_chunks(self, content: str, body: str) -> str:
        chunks = chunk_text(
            body, chunk_chars=self.config.chunk_chars, max_chunks=self.config.max_chunks
        )
        if not chunks:
            self._write(content)
            return content
        for index, chunk in enumerate(chunks):
            content += chunk
            self._write(content)
            if index < len(chunks) - 1 and self.config.chunk_delay_s > 0:
                self._sleep(self.config.chunk_delay_s)
        return content


class StreamFlusher:
    """Accumulate streamed tokens and flush on a size or time threshold."""

    def __init__(
        self,
        write: Callable[[str], None],
        *,
        min_chars: int,
        min_interval_s: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._write = write
        self._min_chars = max(1, min_chars)
        self._min_interval_s = max(0.0, min_interval_s)
        self._clock = clock
        self._text = ""
        self._flushed_len = 0
        self._last_flush_at = clock()
        self.flush_count = 0

    @property
    def text(self) -> str:
        return self._text

    def push(self, delta: str) -> None:
        if not delta:
            return
        self._text += delta
        pending = len(self._text) - self._flushed_len
        elapsed = self._clock() - self._last_flush_at
        if pending >= self._min_chars or elapsed >= self._min_interval_s:
            self._flush()

    def finish(self) -> str:
        if len(self._text) != self._flushed_len or self.flush_count == 0:
            self._flush()
        return self._text

    def _flush(self) -> None:
        self._write(self._text)
        self._flushed_len = len(self._text)
        self._last_flush_at = self._clock()
        self.flush_count += 1
