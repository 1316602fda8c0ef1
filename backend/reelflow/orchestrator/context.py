"""Per-document run context: cancellation token, op counter, owned items.

A RunContext is passed explicitly through every pipeline call instead of
module-level flags. Stopping a document sets its token; pipelines check it
before each submission and poll iteration, and poll sleeps wake early.
"""

import asyncio
import logging
import uuid
from contextlib import contextmanager
from typing import Iterator, Optional

logger = logging.getLogger(__name__)


class RunContext:
    """Live-run state for one document within this process."""

    def __init__(self, doc_id: uuid.UUID):
        self.doc_id = doc_id
        self.cancel_event = asyncio.Event()
        self.resuming = False
        self._outstanding = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._owned: set[tuple[str, str]] = set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def outstanding(self) -> int:
        return self._outstanding

    def should_continue(self) -> bool:
        return not self.cancel_event.is_set()

    def cancel(self) -> None:
        if not self.cancel_event.is_set():
            logger.info(f"Workflow {self.doc_id}: cancellation requested")
        self.cancel_event.set()

    def begin(self) -> None:
        self._outstanding += 1
        self._idle.clear()

    def end(self) -> None:
        self._outstanding -= 1
        if self._outstanding <= 0:
            self._outstanding = 0
            self._idle.set()

    @contextmanager
    def operation(self) -> Iterator[None]:
        """Count one outstanding operation for the duration of the block."""
        self.begin()
        try:
            yield
        finally:
            self.end()

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Wait until no operation is outstanding."""
        await asyncio.wait_for(self._idle.wait(), timeout)

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to seconds; return True if woken by cancellation."""
        try:
            await asyncio.wait_for(self.cancel_event.wait(), seconds)
        except asyncio.TimeoutError:
            return False
        return True

    def claim(self, kind: str, item_id: str) -> bool:
        """Take ownership of an item slot; False if a live pipeline holds it."""
        slot = (kind, item_id)
        if slot in self._owned:
            return False
        self._owned.add(slot)
        return True

    def release(self, kind: str, item_id: str) -> None:
        self._owned.discard((kind, item_id))

    def owns(self, kind: str, item_id: str) -> bool:
        return (kind, item_id) in self._owned


class RunRegistry:
    """Maps document id to its RunContext."""

    def __init__(self):
        self._contexts: dict[uuid.UUID, RunContext] = {}

    def get(self, doc_id: uuid.UUID) -> RunContext:
        """Return the live context, replacing one that was cancelled.

        Pipelines started before a stop keep their reference to the cancelled
        context, so a fresh run never revives them.
        """
        ctx = self._contexts.get(doc_id)
        if ctx is None or ctx.cancelled:
            ctx = RunContext(doc_id)
            self._contexts[doc_id] = ctx
        return ctx

    def peek(self, doc_id: uuid.UUID) -> Optional[RunContext]:
        return self._contexts.get(doc_id)

    def evict_idle(self, doc_id: uuid.UUID) -> None:
        """Forget the document's context once nothing runs under it."""
        ctx = self._contexts.get(doc_id)
        if ctx is not None and ctx.outstanding == 0 and not ctx.resuming:
            del self._contexts[doc_id]

    def cancel(self, doc_id: uuid.UUID) -> Optional[RunContext]:
        ctx = self._contexts.get(doc_id)
        if ctx is not None:
            ctx.cancel()
        return ctx

    def discard(self, doc_id: uuid.UUID) -> None:
        ctx = self._contexts.pop(doc_id, None)
        if ctx is not None:
            ctx.cancel()
