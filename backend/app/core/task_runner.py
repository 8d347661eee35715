# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
PieceLocator - Task Runner / Progress Channel
Runs blocking work (tiling, scoring) off the event loop on one dedicated
worker thread per task type, and streams its messages back to the loop.

Message protocol per request:
    zero or more  TaskProgressMessage(processed, total)
    exactly one   TaskResultMessage | TaskErrorMessage

Rules:
  - At most one in-flight request per channel. Submitting while a request
    is pending fails the pending one with TaskSuperseded immediately, then
    starts the new one. Nothing is queued on the caller side.
  - The worker thread is not interrupted. A superseded request keeps running
    to completion in the background; its messages are dropped.
  - Progress callbacks run on the event loop, in order, always before the
    terminal message of the same request. The worker never blocks on them.
  - No timeout: a stalled task stalls its channel.
"""

from __future__ import annotations

import asyncio
import itertools
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from app.core.errors import TaskSuperseded, as_locator_error
from app.utils.logger import get_logger

log = get_logger(__name__)

ProgressCallback = Callable[[int, int], None]


# ─── Messages ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TaskProgressMessage:
    request_id: int
    processed: int
    total: int


@dataclass(frozen=True)
class TaskResultMessage:
    request_id: int
    value: Any


@dataclass(frozen=True)
class TaskErrorMessage:
    request_id: int
    error: BaseException


TaskMessage = Union[TaskProgressMessage, TaskResultMessage, TaskErrorMessage]


@dataclass
class _PendingRequest:
    request_id: int
    future: asyncio.Future
    on_progress: Optional[ProgressCallback]


# ─── Channel ─────────────────────────────────────────────────────────────────

class TaskChannel:
    """
    Single-in-flight request/progress/response channel for one task type.

    Usage:
        channel = TaskChannel("split")
        tiles = await channel.submit(split_image, image, grid, ..., on_progress=cb)

    The submitted callable receives a keyword argument `progress`, a
    (processed, total) callback that is safe to call from the worker thread.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"{name}-worker"
        )
        self._ids = itertools.count(1)
        self._pending: Optional[_PendingRequest] = None
        self._dispatchers: set[asyncio.Task] = set()

    @property
    def busy(self) -> bool:
        return self._pending is not None and not self._pending.future.done()

    async def submit(
        self,
        fn: Callable[..., Any],
        *args: Any,
        on_progress: Optional[ProgressCallback] = None,
        **kwargs: Any,
    ) -> Any:
        """
        Run fn(*args, progress=..., **kwargs) on this channel's worker.
        Returns fn's value, or raises its error (wrapped into the error
        taxonomy), or TaskSuperseded if a newer request arrives first.
        """
        loop = asyncio.get_running_loop()
        self._supersede_pending()

        request = _PendingRequest(
            request_id=next(self._ids),
            future=loop.create_future(),
            on_progress=on_progress,
        )
        self._pending = request
        queue: asyncio.Queue[TaskMessage] = asyncio.Queue()

        def post(message: TaskMessage) -> None:
            loop.call_soon_threadsafe(queue.put_nowait, message)

        def report(processed: int, total: int) -> None:
            post(TaskProgressMessage(request.request_id, processed, total))

        def work() -> None:
            try:
                value = fn(*args, progress=report, **kwargs)
            except BaseException as exc:  # forwarded to the awaiting caller
                post(TaskErrorMessage(request.request_id, exc))
            else:
                post(TaskResultMessage(request.request_id, value))

        log.debug("task_submitted", channel=self.name, request_id=request.request_id)
        loop.run_in_executor(self._executor, work)

        dispatcher = asyncio.ensure_future(self._dispatch(request, queue))
        self._dispatchers.add(dispatcher)
        dispatcher.add_done_callback(self._dispatchers.discard)

        return await request.future

    def _supersede_pending(self) -> None:
        pending = self._pending
        if pending is None or pending.future.done():
            return
        pending.future.set_exception(
            TaskSuperseded(
                f"{self.name} request {pending.request_id} superseded by a newer request."
            )
        )
        log.info("task_superseded", channel=self.name, request_id=pending.request_id)

    async def _dispatch(
        self, request: _PendingRequest, queue: "asyncio.Queue[TaskMessage]"
    ) -> None:
        """Deliver one request's messages until its terminal message arrives."""
        while True:
            message = await queue.get()
            live = not request.future.done()

            if isinstance(message, TaskProgressMessage):
                if live and request.on_progress is not None:
                    try:
                        request.on_progress(message.processed, message.total)
                    except Exception as exc:
                        log.warning(
                            "progress_callback_failed",
                            channel=self.name,
                            error=str(exc),
                        )
                continue

            if isinstance(message, TaskErrorMessage):
                if live:
                    request.future.set_exception(as_locator_error(message.error))
                log.debug(
                    "task_failed",
                    channel=self.name,
                    request_id=request.request_id,
                    delivered=live,
                    error=str(message.error),
                )
            else:
                if live:
                    request.future.set_result(message.value)
                log.debug(
                    "task_complete",
                    channel=self.name,
                    request_id=request.request_id,
                    delivered=live,
                )

            if self._pending is request:
                self._pending = None
            return

    def close(self) -> None:
        """Stop accepting work. Running tasks finish in the background."""
        self._executor.shutdown(wait=False)
