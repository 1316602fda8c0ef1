"""Flat image batches: many independent image tasks with a concurrency cap."""

import logging
import uuid
from typing import Optional

from reelflow.config import settings
from reelflow.db.store import DocumentStore
from reelflow.orchestrator.batch import run_batch
from reelflow.orchestrator.context import RunContext
from reelflow.orchestrator.controller import finalize_batch
from reelflow.orchestrator.items import ItemPipeline
from reelflow.orchestrator.updater import DocumentUpdater
from reelflow.schemas.inputs import ImageBatchInput
from reelflow.schemas.workflow import ImageTask, WorkflowConfig, WorkflowDocument

logger = logging.getLogger(__name__)


def build_batch_document(request: ImageBatchInput) -> WorkflowDocument:
    doc = WorkflowDocument(
        kind="image_batch",
        title=request.title,
        stage="idle",
        status="running",
        config=WorkflowConfig(
            image_mode=request.image_mode,
            aspect_ratio=request.aspect_ratio,
            image_size=request.image_size,
        ),
    )
    doc.set_items(
        "task",
        [
            ImageTask(
                id=f"task-{i}",
                index=i,
                filename=task.filename or f"image-{i + 1}.png",
                source_url=task.source_url,
                prompt=task.prompt,
            )
            for i, task in enumerate(request.tasks)
        ],
    )
    return doc


class ImageBatchRunner:
    """Runs an image batch's tasks in capped groups, then closes the batch."""

    def __init__(
        self,
        store: DocumentStore,
        updater: DocumentUpdater,
        pipeline: ItemPipeline,
        cap: Optional[int] = None,
    ):
        self.store = store
        self.updater = updater
        self.pipeline = pipeline
        self.cap = cap or settings.batch.image_batch_cap

    async def run(
        self, ctx: RunContext, doc_id: uuid.UUID, only_pending: bool = False
    ) -> WorkflowDocument:
        """Run the unfinished tasks, then close the batch once all are terminal.

        With only_pending, tasks already in flight are left to resume.
        """
        doc = await self.store.read(doc_id)
        todo = [
            (index, task.id)
            for index, task in enumerate(doc.items("task"))
            if (task.state == "pending" if only_pending else not task.is_terminal())
        ]
        logger.info(f"Workflow {doc_id}: image batch of {len(todo)} tasks, cap {self.cap}")

        with ctx.operation():
            await run_batch(
                todo,
                lambda entry: self.pipeline.run(ctx, doc_id, "task", entry[0], entry[1]),
                cap=self.cap,
                should_continue=ctx.should_continue,
            )

        written = await self.updater.mutate(doc_id, finalize_batch)
        if written is None:
            return await self.store.read(doc_id)
        logger.info(f"Workflow {doc_id}: image batch finished with status {written.status}")
        return written
