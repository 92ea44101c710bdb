"""
persistence.py — Best-effort audit log of request / outcome pairs.

Sinks implement ``append(request_record, outcome_record)``.  The dispatcher
never calls a sink directly: ``AuditWriter.submit`` schedules the write on a
worker thread and returns immediately.  A failing sink is logged and otherwise
ignored, callers never see persistence errors.

``FolderAuditSink`` writes one Markdown file per call::

    ai-calls/ai-call-2025-01-31T12-00-00-123456.md

    # AI Call
    ## Request
    ```json
    {...}
    ```
    ## Response
    ```json
    {...}
    ```
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict

logger = logging.getLogger(__name__)


class PersistenceSink(ABC):
    @abstractmethod
    def append(self, request_record: Dict[str, Any], outcome_record: Dict[str, Any]) -> None:
        ...


class NullSink(PersistenceSink):
    def append(self, request_record: Dict[str, Any], outcome_record: Dict[str, Any]) -> None:
        return None


class FolderAuditSink(PersistenceSink):
    _MAX_NAME_ATTEMPTS = 5

    def __init__(self, folder: str | Path = "ai-calls") -> None:
        self.folder = Path(folder)

    def append(self, request_record: Dict[str, Any], outcome_record: Dict[str, Any]) -> None:
        self.folder.mkdir(parents=True, exist_ok=True)
        path = self._unique_path()
        body = (
            "# AI Call\n\n"
            f"## Request\n```json\n{json.dumps(request_record, indent=2, default=str)}\n```\n\n"
            f"## Response\n```json\n{json.dumps(outcome_record, indent=2, default=str)}\n```\n"
        )
        path.write_text(body, encoding="utf-8")
        logger.debug("AI call saved to %s", path)

    def _unique_path(self) -> Path:
        stamp = datetime.now(UTC).strftime("%Y-%m-%dT%H-%M-%S-%f")
        path = self.folder / f"ai-call-{stamp}.md"
        attempts = 0
        while path.exists():
            attempts += 1
            if attempts > self._MAX_NAME_ATTEMPTS:
                raise FileExistsError(f"could not find a unique audit file name in {self.folder}")
            path = self.folder / f"ai-call-{stamp}-{random.randint(0, 9999)}.md"
        return path

    def clear(self) -> int:
        """Delete every audit file in the folder.  Returns the number removed."""
        if not self.folder.is_dir():
            return 0
        removed = 0
        for path in self.folder.glob("ai-call-*.md"):
            path.unlink()
            removed += 1
        logger.info("Cleared %d AI call log(s) from %s", removed, self.folder)
        return removed


class AuditWriter:
    """Fire-and-forget front end for a PersistenceSink."""

    def __init__(self, sink: PersistenceSink) -> None:
        self.sink = sink
        self._pending: set[asyncio.Task] = set()
        self.failures = 0

    def submit(self, request_record: Dict[str, Any], outcome_record: Dict[str, Any]) -> None:
        if isinstance(self.sink, NullSink):
            return
        task = asyncio.get_running_loop().create_task(self._write(request_record, outcome_record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(self, request_record: Dict[str, Any], outcome_record: Dict[str, Any]) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self.sink.append, request_record, outcome_record)
        except Exception as exc:
            self.failures += 1
            logger.error("Failed to persist AI call: %s", exc)

    async def drain(self) -> None:
        """Wait for writes already submitted."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._pending)
