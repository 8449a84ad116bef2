"""Yield decisions and continuation message delivery."""

from __future__ import annotations

import logging
import math
import threading
from collections import deque
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Literal, Protocol

logger = logging.getLogger(__name__)

MessageKind = Literal["run", "continue"]


@dataclass(frozen=True)
class ContinuationMessage:
    """Work item for the resume entrypoint.

    ``run_id`` ties the message to one start of the task; ``step_index`` (set on
    budget continuations) lets a duplicate delivery detect that the run already
    moved past the checkpoint it was sent for. ``event_id`` names the question
    or approval a resume was sent for, so a resume for a wait that was already
    picked up is dropped.
    """

    kind: MessageKind
    user_id: str
    task_id: str
    run_id: str | None = None
    step_index: int | None = None
    event_id: str | None = None


MessageHandler = Callable[[ContinuationMessage], object]


class Scheduler(Protocol):
    def bind(self, handler: MessageHandler) -> None: ...

    def send(self, message: ContinuationMessage) -> None: ...

    def shutdown(self) -> None: ...


def should_yield(
    *,
    elapsed_ms: float,
    steps_completed: int,
    max_elapsed_ms: float,
    max_steps_per_run: int,
) -> bool:
    elapsed = max(0, math.floor(elapsed_ms))
    steps = max(0, math.floor(steps_completed))
    max_elapsed = max(1, math.floor(max_elapsed_ms))
    max_steps = max(1, math.floor(max_steps_per_run))
    return elapsed >= max_elapsed or steps >= max_steps


class QueueScheduler:
    """In-process FIFO; messages run only when ``drain`` is called."""

    def __init__(self) -> None:
        self._handler: MessageHandler | None = None
        self._queue: deque[ContinuationMessage] = deque()
        self.sent: list[ContinuationMessage] = []

    def bind(self, handler: MessageHandler) -> None:
        self._handler = handler

    def send(self, message: ContinuationMessage) -> None:
        self.sent.append(message)
        self._queue.append(message)

    @property
    def pending(self) -> int:
        return len(self._queue)

    def shutdown(self) -> None:
        self._queue.clear()

    def drain(self, *, max_messages: int = 100) -> int:
        if self._handler is None:
            raise RuntimeError("QueueScheduler has no handler bound")
        handled = 0
        while self._queue and handled < max_messages:
            message = self._queue.popleft()
            self._handler(message)
            handled += 1
        return handled


class ThreadPoolScheduler:
    """Deliver messages on a background worker pool."""

    def __init__(self, *, max_workers: int = 4) -> None:
        self._handler: MessageHandler | None = None
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="task-agent")
        self._lock = threading.Lock()

    def bind(self, handler: MessageHandler) -> None:
        self._handler = handler

    def send(self, message: ContinuationMessage) -> None:
        if self._handler is None:
            raise RuntimeError("ThreadPoolScheduler has no handler bound")
        with self._lock:
            self._pool.submit(self._deliver, message)

    def shutdown(self, *, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)

    def _deliver(self, message: ContinuationMessage) -> None:
        handler = self._handler
        if handler is None:
            return
        try:
            handler(message)
        except Exception:  # noqa: BLE001
            logger.exception(
                "scheduler event=delivery_failed kind=%s task_id=%s",
                message.kind,
                message.task_id,
            )
