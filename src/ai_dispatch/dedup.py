"""
dedup.py — In-flight request deduplication.

At most one PendingExecution exists per fingerprint.  The first caller to
``admit`` a fingerprint becomes the leader and runs the request; anyone
admitted while it is in flight joins and awaits the same outcome.  The entry
is removed exactly once, when the leader settles it (success, failure or
cancellation).

All bookkeeping happens on the event loop thread between awaits, so no lock
is needed for the registry itself.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from .errors import RequestCancelledError

logger = logging.getLogger(__name__)


@dataclass
class PendingExecution:
    fingerprint: str
    future: asyncio.Future
    followers: int = 0
    settled: bool = field(default=False, repr=False)

    async def wait(self) -> str:
        """Await the shared outcome without letting a follower cancel the leader."""
        self.followers += 1
        return await asyncio.shield(self.future)


class Deduplicator:
    def __init__(self) -> None:
        self._pending: dict[str, PendingExecution] = {}

    def lookup(self, fingerprint: str) -> PendingExecution | None:
        return self._pending.get(fingerprint)

    def admit(self, fingerprint: str) -> tuple[PendingExecution, bool]:
        """Return (execution, is_leader).  Creates the entry when none exists."""
        existing = self._pending.get(fingerprint)
        if existing is not None:
            return existing, False
        pending = PendingExecution(fingerprint, asyncio.get_running_loop().create_future())
        self._pending[fingerprint] = pending
        return pending, True

    def settle(
        self,
        pending: PendingExecution,
        result: str | None = None,
        error: BaseException | None = None,
    ) -> None:
        """Resolve followers and drop the entry.  Idempotent."""
        if pending.settled:
            return
        pending.settled = True
        if self._pending.get(pending.fingerprint) is pending:
            del self._pending[pending.fingerprint]

        fut = pending.future
        if fut.done():
            return
        if error is None:
            fut.set_result(result)
            return
        if isinstance(error, asyncio.CancelledError):
            error = RequestCancelledError(reason="leader request was cancelled")
        fut.set_exception(error)
        # mark retrieved; followers re-raise it
        fut.exception()

    def __contains__(self, fingerprint: str) -> bool:
        return fingerprint in self._pending

    def __len__(self) -> int:
        return len(self._pending)
