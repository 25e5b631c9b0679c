"""Session log discovery.

Walks the session root for ``*.jsonl`` files and classifies them against the
last sync watermark.
"""
from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from ccanalytics import config
from ccanalytics.models import DiscoveryDiff, FileInfo

logger = logging.getLogger("ccanalytics.discovery")


def _file_info(path: Path, stat_result: os.stat_result) -> FileInfo:
    return FileInfo(
        path=str(path),
        size=stat_result.st_size,
        modified_time=datetime.fromtimestamp(stat_result.st_mtime, tz=timezone.utc),
    )


def _walk(root: Path, suffix: str) -> list[FileInfo]:
    found: list[FileInfo] = []
    pending = [root]
    while pending:
        current = pending.pop()
        try:
            entries = list(os.scandir(current))
        except OSError as exc:
            logger.warning("Skipping unreadable directory %s: %s", current, exc)
            continue
        for entry in entries:
            try:
                if entry.is_dir(follow_symlinks=False):
                    pending.append(Path(entry.path))
                elif entry.is_file() and entry.name.endswith(suffix):
                    found.append(_file_info(Path(entry.path), entry.stat()))
            except OSError as exc:
                logger.warning("Skipping unreadable entry %s: %s", entry.path, exc)
    return found


class FileDiscoveryService:
    """Enumerate session log files under a root directory."""

    def __init__(self, root: Path | str | None = None, suffix: str = config.SESSION_FILE_SUFFIX):
        self.root = Path(root) if root is not None else config.SESSIONS_DIR
        self.suffix = suffix

    async def list_files(self, root: Path | str | None = None) -> list[FileInfo]:
        """Return every log file below the root, newest first. Absent root yields []."""
        target = Path(root) if root is not None else self.root
        if not target.is_dir():
            logger.warning("Session root %s does not exist", target)
            return []
        files = await asyncio.to_thread(_walk, target, self.suffix)
        files.sort(key=lambda info: info.modified_time, reverse=True)
        logger.debug("Discovered %d session files under %s", len(files), target)
        return files

    def diff(
        self,
        all_files: list[FileInfo],
        watermark: datetime | None,
        known_paths: Iterable[str] | None = None,
    ) -> DiscoveryDiff:
        """Split files into new/updated relative to the watermark.

        Without a watermark every file is new. With one, only files modified
        after it are candidates; ``known_paths`` (previously ingested source
        files) decides whether a candidate is updated or new. When it is not
        supplied, candidates are reported as new.
        """
        if watermark is None:
            new = [info.model_copy(update={"is_new": True}) for info in all_files]
            return DiscoveryDiff(new=new, updated=[], all=list(all_files))

        known = set(known_paths) if known_paths is not None else None
        new: list[FileInfo] = []
        updated: list[FileInfo] = []
        for info in all_files:
            if info.modified_time <= watermark:
                continue
            if known is not None and info.path in known:
                updated.append(info.model_copy(update={"is_updated": True}))
            else:
                new.append(info.model_copy(update={"is_new": True}))
        return DiscoveryDiff(new=new, updated=updated, all=list(all_files))

    async def find_new_and_updated(
        self,
        watermark: datetime | None,
        known_paths: Iterable[str] | None = None,
    ) -> DiscoveryDiff:
        return self.diff(await self.list_files(), watermark, known_paths)

    async def get_file_info(self, path: Path | str) -> FileInfo | None:
        candidate = Path(path)
        if candidate.suffix != self.suffix:
            return None
        try:
            stat_result = await asyncio.to_thread(candidate.stat)
        except OSError as exc:
            logger.warning("Cannot stat %s: %s", candidate, exc)
            return None
        if not candidate.is_file():
            return None
        return _file_info(candidate, stat_result)

    async def file_stats(self) -> dict[str, Any]:
        files = await self.list_files()
        projects: set[str] = set()
        for info in files:
            try:
                relative = Path(info.path).relative_to(self.root)
            except ValueError:
                continue
            if len(relative.parts) > 1:
                projects.add(relative.parts[0])
        return {
            "root": str(self.root),
            "totalFiles": len(files),
            "totalSizeBytes": sum(info.size for info in files),
            "oldestModified": min((f.modified_time for f in files), default=None),
            "newestModified": max((f.modified_time for f in files), default=None),
            "projects": sorted(projects),
        }
