"""File watcher service using watchfiles.

Monitors the session log tree and feeds added or modified log files to the
sync engine's targeted-file sync.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

from watchfiles import Change, awatch

from ccanalytics import config

logger = logging.getLogger("ccanalytics.watcher")


class FileWatcher:
    """Background watcher that runs ``sync_files`` for changed session logs."""

    def __init__(self, suffix: str = config.SESSION_FILE_SUFFIX):
        self.suffix = suffix
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._running = False

    async def start(self, sync_engine, sessions_dir: Path) -> None:
        """Start watching ``sessions_dir`` in a background task."""
        if self._running:
            logger.warning("File watcher already running")
            return

        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._watch_loop(sync_engine, Path(sessions_dir)))
        logger.info("File watcher started for %s", sessions_dir)

    async def stop(self) -> None:
        self._running = False
        if self._stop_event:
            self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("File watcher stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _watch_loop(self, sync_engine, sessions_dir: Path) -> None:
        if not sessions_dir.exists():
            logger.warning("Sessions directory %s does not exist, watcher has nothing to monitor", sessions_dir)
            self._running = False
            return

        try:
            async for changes in awatch(sessions_dir, stop_event=self._stop_event):
                if not self._running:
                    break
                changed = self.classify_changes(changes)
                if not changed:
                    continue
                logger.info("Detected %d changed session files, syncing...", len(changed))
                try:
                    await sync_engine.sync_files(changed, trigger="watcher")
                except Exception:
                    logger.exception("Error syncing changed files")
        except asyncio.CancelledError:
            logger.info("File watcher task cancelled")
            raise
        finally:
            self._running = False

    def classify_changes(self, changes: set[tuple[Change, str]]) -> list[Path]:
        """Added or modified session logs, sorted. Deletions are ignored."""
        changed: set[Path] = set()
        for change_type, path_str in changes:
            path = Path(path_str)
            if path.suffix != self.suffix:
                continue
            if change_type == Change.deleted:
                logger.debug("Ignoring deleted session file %s", path)
                continue
            changed.add(path)
        return sorted(changed)
