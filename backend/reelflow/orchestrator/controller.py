"""Stage controller: advances, continues, stops and merges workflows.

All document changes are applied through the updater's optimistic-retry
combinator; the controller never holds the document across an await.
"""

import logging
import uuid
from typing import Optional

from reelflow.db.store import DocumentStore
from reelflow.errors import InvalidStateError, MergeError
from reelflow.orchestrator.batch import run_batch
from reelflow.orchestrator.context import RunContext
from reelflow.orchestrator.items import ItemPipeline
from reelflow.orchestrator.state import (
    ACTIVE_STATUSES,
    NO_VIDEOS_ERROR,
    STOPPED_ITEM_ERROR,
    done_stage,
    kind_for_stage,
    next_stage,
)
from reelflow.orchestrator.updater import DocumentUpdater
from reelflow.schemas.workflow import (
    ItemPatch,
    VideoItem,
    WorkflowDocument,
    apply_item_patch,
)

logger = logging.getLogger(__name__)


def completed_scene_urls(doc: WorkflowDocument) -> list[str]:
    return [s.output_url for s in doc.items("scene") if s.is_done()]


def frames_for_video(doc: WorkflowDocument, position: int, mode: str) -> tuple[Optional[str], Optional[str]]:
    """First and last frame for the video at position among completed scenes."""
    urls = completed_scene_urls(doc)
    first = urls[position] if position < len(urls) else None
    last = None
    if mode == "first-last-frame" and position + 1 < len(urls):
        last = urls[position + 1]
    return first, last


def build_videos(doc: WorkflowDocument) -> list[VideoItem]:
    """One video per completed scene, in scene order."""
    completed = [s for s in doc.items("scene") if s.is_done()]
    videos = []
    for i, scene in enumerate(completed):
        first, last = frames_for_video(doc, i, doc.config.video_mode)
        videos.append(
            VideoItem(
                id=f"video-{i}",
                index=i,
                prompt=scene.video_prompt or scene.image_prompt,
                first_frame_url=first,
                last_frame_url=last,
                model=doc.config.video_model,
            )
        )
    return videos


def mark_stopped(doc: WorkflowDocument) -> None:
    """Set stopped state and fail every non-terminal item in place."""
    doc.stage = "stopped"
    doc.status = "stopped"
    for kind, index, item in list(doc.iter_items()):
        if not item.is_terminal():
            doc.replace_item(
                kind, index, apply_item_patch(item, ItemPatch(status="error", error=STOPPED_ITEM_ERROR))
            )


def finalize_batch(doc: WorkflowDocument) -> bool:
    """Close a running image batch once every task is terminal."""
    if doc.status != "running":
        return False
    tasks = doc.items("task")
    if any(not t.is_terminal() for t in tasks):
        return False
    errors = sum(1 for t in tasks if t.state == "error")
    if tasks and errors == len(tasks):
        doc.stage, doc.status = "failed", "failed"
    elif errors:
        doc.stage, doc.status = "completed", "partial"
    else:
        doc.stage, doc.status = "completed", "completed"
    return True


def advance_document(doc: WorkflowDocument) -> bool:
    """Move an active item stage to its checkpoint once all items are terminal.

    Returns True if the document changed. Idempotent: a checkpoint stage is
    never advanced again.
    """
    if doc.kind == "image_batch":
        return finalize_batch(doc)

    kind = kind_for_stage(doc.stage)
    if kind is None:
        return False
    items = doc.items(kind)
    if any(not item.is_terminal() for item in items):
        return False

    if kind == "video" and not any(item.is_done() for item in items):
        doc.stage = "failed"
        doc.status = "failed"
        doc.error_message = NO_VIDEOS_ERROR
    else:
        doc.stage = done_stage(doc.stage)
        doc.status = "waiting"
    return True


class StageController:
    """Owns stage transitions and runs each stage's items."""

    def __init__(
        self,
        store: DocumentStore,
        updater: DocumentUpdater,
        pipeline: ItemPipeline,
        merge_service,
    ):
        self.store = store
        self.updater = updater
        self.pipeline = pipeline
        self.merge_service = merge_service

    async def advance(self, doc_id: uuid.UUID) -> WorkflowDocument:
        """Re-evaluate the stage and return the current document."""
        written = await self.updater.mutate(doc_id, advance_document)
        if written is not None:
            logger.info(f"Workflow {doc_id}: advanced to {written.stage} ({written.status})")
            return written
        return await self.store.read(doc_id)

    async def enter_next_stage(self, doc_id: uuid.UUID) -> WorkflowDocument:
        """Move a waiting document from its checkpoint to the next stage.

        Entering ``videos`` materialises video items when none exist.

        Raises:
            InvalidStateError: the document is not waiting at a checkpoint
        """

        def _enter(doc: WorkflowDocument) -> bool:
            if doc.status != "waiting":
                raise InvalidStateError(f"Workflow is {doc.status}, not waiting")
            target = next_stage(doc.stage)
            if target is None:
                raise InvalidStateError(f"Cannot continue from stage {doc.stage}")
            if target == "videos" and not doc.videos:
                doc.set_items("video", build_videos(doc))
            doc.stage = target
            doc.status = "running"
            doc.error_message = None
            return True

        doc = await self.updater.mutate(doc_id, _enter)
        logger.info(f"Workflow {doc_id}: entered stage {doc.stage}")
        return doc

    async def run_stage(
        self, ctx: RunContext, doc_id: uuid.UUID, only_pending: bool = False
    ) -> WorkflowDocument:
        """Run every non-done item of the current stage, then advance.

        With only_pending, items that already failed are left as they are.
        """
        doc = await self.store.read(doc_id)
        if not ctx.should_continue():
            return doc
        if doc.stage == "merging":
            return await self.merge(ctx, doc_id)

        kind = kind_for_stage(doc.stage)
        if kind is None:
            raise InvalidStateError(f"Stage {doc.stage} has no items to run")

        todo = [
            (index, item.id)
            for index, item in enumerate(doc.items(kind))
            if (item.state == "pending" if only_pending else not item.is_done())
        ]
        logger.info(f"Workflow {doc_id}: running {len(todo)} {kind} items")
        with ctx.operation():
            await run_batch(
                todo,
                lambda entry: self.pipeline.run(ctx, doc_id, kind, entry[0], entry[1]),
            )
        return await self.advance(doc_id)

    async def merge(self, ctx: RunContext, doc_id: uuid.UUID) -> WorkflowDocument:
        """Merge completed videos ordered by index.

        Success completes the workflow; failure completes it as partial.
        """
        with ctx.operation():
            doc = await self.store.read(doc_id)
            videos = sorted((v for v in doc.items("video") if v.is_done()), key=lambda v: v.index)
            urls = [v.output_url for v in videos]
            logger.info(f"Workflow {doc_id}: merging {len(urls)} videos")

            try:
                merged_url = await self.merge_service.merge(urls)
            except MergeError as e:
                logger.error(f"Workflow {doc_id}: merge failed: {e}")
                merged_url, failure = None, str(e)
            else:
                failure = None

            def _finish(doc: WorkflowDocument) -> bool:
                if doc.stage != "merging" or not ctx.should_continue():
                    return False
                doc.stage = "completed"
                if failure is None:
                    doc.status = "completed"
                    doc.merged_video_url = merged_url
                    doc.error_message = None
                else:
                    doc.status = "partial"
                    doc.error_message = failure
                return True

            written = await self.updater.mutate(doc_id, _finish)
        if written is None:
            return await self.store.read(doc_id)
        logger.info(f"Workflow {doc_id}: completed with status {written.status}")
        return written

    async def stop(self, ctx: Optional[RunContext], doc_id: uuid.UUID) -> WorkflowDocument:
        """Cancel live work and fail every non-terminal item.

        Raises:
            InvalidStateError: the document is not running or waiting
        """
        if ctx is not None:
            ctx.cancel()

        def _stop(doc: WorkflowDocument) -> bool:
            if doc.status not in ACTIVE_STATUSES:
                raise InvalidStateError(f"Workflow is already {doc.status}")
            mark_stopped(doc)
            return True

        doc = await self.updater.mutate(doc_id, _stop)
        logger.info(f"Workflow {doc_id}: stopped")
        return doc

    async def mark_error(self, doc_id: uuid.UUID, message: str) -> Optional[WorkflowDocument]:
        """Record an unexpected failure of a background run."""

        def _fail(doc: WorkflowDocument) -> bool:
            if doc.status == "stopped":
                return False
            doc.stage = "error"
            doc.status = "failed"
            doc.error_message = message
            return True

        return await self.updater.mutate(doc_id, _fail)
