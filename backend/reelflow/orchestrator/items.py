"""Single-item submit, poll and persist pipeline.

Every write made here is conditional: progress writes require the run to be
live and the item to be in the expected status, and terminal writes require
the item to still be in flight. A stop or a newer retry therefore always
wins over a late result.
"""

import logging
import uuid
from typing import Optional

from reelflow.errors import Cancelled, ItemError
from reelflow.orchestrator.context import RunContext
from reelflow.orchestrator.poller import ResultPoller
from reelflow.orchestrator.submitter import TaskSubmitter
from reelflow.orchestrator.updater import DocumentUpdater
from reelflow.schemas.workflow import ITEM_KINDS

logger = logging.getLogger(__name__)

STARTABLE_STATUSES = {"pending", "error"}


class ItemPipeline:
    """Drives one item from pending to done or error."""

    def __init__(self, updater: DocumentUpdater, submitter: TaskSubmitter, poller: ResultPoller):
        self.updater = updater
        self.submitter = submitter
        self.poller = poller

    async def run(
        self,
        ctx: RunContext,
        doc_id: uuid.UUID,
        kind: str,
        index: int,
        item_id: str,
    ) -> Optional[str]:
        """Submit the item, persist its handle, poll and persist the outcome.

        Returns the output URL on success, None otherwise. Item-level failures
        are recorded on the item and not raised.
        """
        if not ctx.claim(kind, item_id):
            logger.info(f"Workflow {doc_id}: {kind} {item_id} already owned by a live run")
            return None
        try:
            with ctx.operation():
                return await self._run(ctx, doc_id, kind, index, item_id)
        finally:
            ctx.release(kind, item_id)

    async def resume(
        self,
        ctx: RunContext,
        doc_id: uuid.UUID,
        kind: str,
        index: int,
        item_id: str,
        job_handle: str,
    ) -> Optional[str]:
        """Re-enter the pipeline at the polling step for an existing handle."""
        if not ctx.claim(kind, item_id):
            return None
        try:
            with ctx.operation():
                return await self._await_result(ctx, doc_id, kind, index, item_id, job_handle)
        finally:
            ctx.release(kind, item_id)

    async def _run(self, ctx, doc_id, kind, index, item_id):
        _, model = ITEM_KINDS[kind]
        in_flight = model.in_flight_statuses

        if not ctx.should_continue():
            return None

        doc = await self.updater.apply_patch(
            doc_id,
            kind,
            index,
            {
                "status": model.submitting_status,
                "output_url": None,
                "error": None,
                "job_handle": None,
            },
            expect_in=STARTABLE_STATUSES,
            item_id=item_id,
            guard=ctx.should_continue,
        )
        if doc is None:
            return None
        item = doc.item_at(kind, index)

        try:
            result = await self.submitter.submit(kind, item, doc)
        except ItemError as e:
            logger.warning(f"Workflow {doc_id}: {kind} {item_id} submission failed: {e}")
            await self._record_error(doc_id, kind, index, item_id, in_flight, str(e))
            return None

        if result.output_url:
            await self._record_done(doc_id, kind, index, item_id, in_flight, result.output_url)
            return result.output_url

        # Persist the handle before polling so a restart can resume it
        written = await self.updater.apply_patch(
            doc_id,
            kind,
            index,
            {"status": model.awaiting_status, "job_handle": result.job_handle},
            expect_in=in_flight,
            item_id=item_id,
            guard=ctx.should_continue,
        )
        if written is None:
            logger.info(f"Workflow {doc_id}: {kind} {item_id} handle {result.job_handle} dropped, run stopped")
            return None
        return await self._await_result(ctx, doc_id, kind, index, item_id, result.job_handle)

    async def _await_result(self, ctx, doc_id, kind, index, item_id, job_handle):
        _, model = ITEM_KINDS[kind]
        in_flight = model.in_flight_statuses
        try:
            output_url = await self.poller.poll(
                job_handle, model.poll_kind, ctx.should_continue, ctx.cancel_event
            )
        except Cancelled:
            logger.info(f"Workflow {doc_id}: {kind} {item_id} polling cancelled")
            return None
        except ItemError as e:
            logger.warning(f"Workflow {doc_id}: {kind} {item_id} failed: {e}")
            await self._record_error(doc_id, kind, index, item_id, in_flight, str(e))
            return None

        await self._record_done(doc_id, kind, index, item_id, in_flight, output_url)
        return output_url

    async def _record_done(self, doc_id, kind, index, item_id, in_flight, output_url):
        written = await self.updater.apply_patch(
            doc_id,
            kind,
            index,
            {"status": "done", "output_url": output_url},
            expect_in=in_flight,
            item_id=item_id,
        )
        if written is not None:
            logger.info(f"Workflow {doc_id}: {kind} {item_id} done")

    async def _record_error(self, doc_id, kind, index, item_id, in_flight, message):
        await self.updater.apply_patch(
            doc_id,
            kind,
            index,
            {"status": "error", "error": message},
            expect_in=in_flight,
            item_id=item_id,
        )
