"""Resume of in-flight work after a restart or a missed completion.

An in-flight item with a job handle is polled again (never resubmitted).
An in-flight item without a handle lost its submission and is failed with a
retry hint. Items owned by a live pipeline in this process are left alone.
"""

import asyncio
import logging
import uuid
from typing import Optional

from reelflow.db.store import DocumentStore
from reelflow.orchestrator.context import RunContext, RunRegistry
from reelflow.orchestrator.controller import StageController
from reelflow.orchestrator.items import ItemPipeline
from reelflow.orchestrator.state import INTERRUPTED_ITEM_ERROR
from reelflow.orchestrator.updater import DocumentUpdater
from reelflow.schemas.workflow import ItemPatch, WorkflowDocument, apply_item_patch

logger = logging.getLogger(__name__)


def owned(ctx: Optional[RunContext], kind: str, item_id: str) -> bool:
    return ctx is not None and ctx.owns(kind, item_id)


def pollable_items(doc: WorkflowDocument, ctx: Optional[RunContext]) -> list[tuple[str, int, str, str]]:
    """(kind, index, item_id, job_handle) of in-flight items no live run owns."""
    return [
        (kind, index, item.id, item.job_handle)
        for kind, index, item in doc.iter_items()
        if item.is_in_flight() and item.job_handle and not owned(ctx, kind, item.id)
    ]


class ResumeManager:
    """Repairs and resumes one document at a time."""

    def __init__(
        self,
        store: DocumentStore,
        updater: DocumentUpdater,
        pipeline: ItemPipeline,
        controller: StageController,
        registry: RunRegistry,
    ):
        self.store = store
        self.updater = updater
        self.pipeline = pipeline
        self.controller = controller
        self.registry = registry

    async def reclassify(self, doc_id: uuid.UUID) -> WorkflowDocument:
        """Fail in-flight items that have no handle and no live owner.

        A script stage with no live run is failed the same way, since script
        generation has no handle to resume.
        """
        ctx = self.registry.peek(doc_id)

        def _repair(doc: WorkflowDocument) -> bool:
            changed = False
            for kind, index, item in list(doc.iter_items()):
                if item.is_in_flight() and not item.job_handle and not owned(ctx, kind, item.id):
                    logger.warning(f"Workflow {doc_id}: {kind} {item.id} interrupted without a handle")
                    doc.replace_item(
                        kind,
                        index,
                        apply_item_patch(item, ItemPatch(status="error", error=INTERRUPTED_ITEM_ERROR)),
                    )
                    changed = True
            if doc.stage == "script" and doc.status == "running" and (ctx is None or ctx.outstanding == 0):
                logger.warning(f"Workflow {doc_id}: script generation interrupted")
                doc.stage = "error"
                doc.status = "failed"
                doc.error_message = INTERRUPTED_ITEM_ERROR
                changed = True
            return changed

        written = await self.updater.mutate(doc_id, _repair)
        return written if written is not None else await self.store.read(doc_id)

    def needs_resume(self, doc: WorkflowDocument) -> bool:
        ctx = self.registry.peek(doc.id)
        if ctx is not None and ctx.resuming:
            return False
        return bool(pollable_items(doc, ctx))

    async def resume(self, doc_id: uuid.UUID) -> WorkflowDocument:
        """Poll every resumable item of the document, then advance.

        Guarded per document: a second call while one is running returns
        immediately.
        """
        ctx = self.registry.get(doc_id)
        if ctx.resuming:
            logger.info(f"Workflow {doc_id}: resume already in progress")
            return await self.store.read(doc_id)

        ctx.resuming = True
        try:
            with ctx.operation():
                doc = await self.reclassify(doc_id)
                targets = pollable_items(doc, ctx)
                if targets:
                    logger.info(f"Workflow {doc_id}: resuming {len(targets)} in-flight items")
                    outcomes = await asyncio.gather(
                        *(
                            self.pipeline.resume(ctx, doc_id, kind, index, item_id, handle)
                            for kind, index, item_id, handle in targets
                        ),
                        return_exceptions=True,
                    )
                    for (kind, _, item_id, _), outcome in zip(targets, outcomes):
                        if isinstance(outcome, Exception):
                            logger.error(
                                f"Workflow {doc_id}: resume of {kind} {item_id} failed: {outcome}",
                                exc_info=outcome,
                            )
            return await self.controller.advance(doc_id)
        finally:
            ctx.resuming = False

