"""Sync progress tracking.

Holds the live progress of one sync run and publishes a SyncProgressUpdate to
registered listeners after every change. Listeners may be plain callables or
coroutine functions; delivering the update to a client is their concern.
"""
from __future__ import annotations

import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Union

from ccanalytics.date_utils import utc_now
from ccanalytics.models import SyncProgressUpdate

logger = logging.getLogger("ccanalytics.sync")

ProgressListener = Callable[[SyncProgressUpdate], Union[None, Awaitable[None]]]


class SyncProgressTracker:
    def __init__(self) -> None:
        self._listeners: list[ProgressListener] = []
        self._state = SyncProgressUpdate()
        self._started_monotonic: float | None = None

    def subscribe(self, listener: ProgressListener) -> Callable[[], None]:
        """Register a listener. Returns a callable that removes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    @property
    def current(self) -> SyncProgressUpdate:
        return self._state.model_copy()

    @property
    def is_running(self) -> bool:
        return self._state.status == "in_progress"

    async def start(self, total_files: int) -> None:
        self._started_monotonic = time.monotonic()
        self._state = SyncProgressUpdate(
            status="in_progress",
            total_files=total_files,
            start_time=utc_now(),
        )
        await self._publish()

    async def file_started(self, path: str) -> None:
        self._state.current_file = path
        await self._publish()

    async def file_finished(self, *, sessions: int = 0, messages: int = 0, errors: int = 0) -> None:
        state = self._state
        state.processed_files += 1
        state.sessions_processed += sessions
        state.messages_processed += messages
        state.errors += errors
        state.progress_percent = _percent(state.processed_files, state.total_files)
        state.estimated_time_remaining_ms = self._eta_ms()
        await self._publish()

    async def finish(self, *, success: bool) -> None:
        self._state.status = "completed" if success else "failed"
        self._state.current_file = None
        self._state.estimated_time_remaining_ms = 0 if success else None
        if success:
            self._state.progress_percent = 100
        await self._publish()

    def _eta_ms(self) -> int | None:
        processed = self._state.processed_files
        if self._started_monotonic is None or processed <= 0:
            return None
        elapsed_ms = (time.monotonic() - self._started_monotonic) * 1000
        remaining = max(0, self._state.total_files - processed)
        return int(elapsed_ms / processed * remaining)

    async def _publish(self) -> None:
        snapshot = self._state.model_copy()
        for listener in list(self._listeners):
            try:
                outcome: Any = listener(snapshot)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Progress listener failed")


def _percent(processed: int, total: int) -> int:
    if total <= 0:
        return 100
    return min(100, round(processed / total * 100))
