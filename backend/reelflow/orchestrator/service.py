"""Workflow operations: the single entry point used by the API and the CLI.

WorkflowService wires the store, updater, provider adapters and orchestrator
components together, and owns every background task it spawns so callers
can await them (tests) or cancel them (shutdown).

Usage:
    service = WorkflowService()
    doc_id = await service.start_workflow(StartWorkflowInput(script_data=...))
    await service.continue_workflow(doc_id)
    report = await service.get_status(doc_id)
"""

import asyncio
import logging
import uuid
from typing import Awaitable, Optional, Union

from pydantic import BaseModel

from reelflow.db.store import DocumentStore
from reelflow.errors import InvalidStateError, NotFoundError, ReelflowError, ValidationError
from reelflow.orchestrator.context import RunContext, RunRegistry
from reelflow.orchestrator.controller import StageController, frames_for_video
from reelflow.orchestrator.image_batch import ImageBatchRunner, build_batch_document
from reelflow.orchestrator.items import ItemPipeline
from reelflow.orchestrator.poller import PollPolicy, ResultPoller
from reelflow.orchestrator.progress import Progress, calculate_progress
from reelflow.orchestrator.resume import ResumeManager
from reelflow.orchestrator.state import ACTIVE_STATUSES, kind_for_stage
from reelflow.orchestrator.submitter import TaskSubmitter
from reelflow.orchestrator.updater import DocumentUpdater
from reelflow.schemas.inputs import ImageBatchInput, StartWorkflowInput
from reelflow.schemas.script import (
    SCRIPT_OUTPUT_FORMAT,
    ScriptData,
    character_items,
    merge_script,
    parse_script_text,
    scene_items,
)
from reelflow.schemas.workflow import (
    ItemPatch,
    WorkflowConfig,
    WorkflowDocument,
    check_kind,
    normalize_item,
)
from reelflow.services.generation_client import get_generation_client, video_model
from reelflow.services.merge_client import get_merge_client

logger = logging.getLogger(__name__)

# Seconds delete_workflow waits for a cancelled run to finish its writes
DRAIN_TIMEOUT = 5.0


class StatusReport(BaseModel):
    document: WorkflowDocument
    progress: Progress


class WorkflowService:
    """Operations on workflow and image-batch documents."""

    def __init__(
        self,
        store: Optional[DocumentStore] = None,
        provider=None,
        merge_service=None,
        registry: Optional[RunRegistry] = None,
        updater: Optional[DocumentUpdater] = None,
        poll_policies: Optional[dict[str, PollPolicy]] = None,
        batch_cap: Optional[int] = None,
    ):
        self.store = store or DocumentStore()
        self.provider = provider or get_generation_client()
        self.merge_service = merge_service or get_merge_client()
        self.registry = registry or RunRegistry()
        self.updater = updater or DocumentUpdater(self.store)
        self.pipeline = ItemPipeline(
            self.updater,
            TaskSubmitter(self.provider),
            ResultPoller(self.provider, poll_policies),
        )
        self.controller = StageController(self.store, self.updater, self.pipeline, self.merge_service)
        self.resume_manager = ResumeManager(
            self.store, self.updater, self.pipeline, self.controller, self.registry
        )
        self.image_batches = ImageBatchRunner(self.store, self.updater, self.pipeline, cap=batch_cap)
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    def _spawn(self, ctx: RunContext, doc_id: uuid.UUID, work: Awaitable) -> asyncio.Task:
        # Counted before the task starts so a status read never sees the run as idle
        ctx.begin()
        task = asyncio.create_task(self._run_background(ctx, doc_id, work))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _run_background(self, ctx: RunContext, doc_id: uuid.UUID, work: Awaitable) -> None:
        """Await work; an unexpected exception fails the document."""
        try:
            await work
        except Exception as e:
            logger.error(f"Workflow {doc_id}: background run failed: {e}", exc_info=True)
            try:
                await self.controller.mark_error(doc_id, str(e))
            except ReelflowError as mark_exc:
                logger.error(f"Workflow {doc_id}: could not record failure: {mark_exc}")
        finally:
            ctx.end()
            self.registry.evict_idle(doc_id)

    async def wait_background(self) -> None:
        """Wait until every spawned background task has finished."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel background tasks; in-flight items keep their handles for resume."""
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Cancelled {len(tasks)} background tasks")

    # ------------------------------------------------------------------
    # Workflow operations
    # ------------------------------------------------------------------

    async def start_workflow(self, request: StartWorkflowInput) -> uuid.UUID:
        """Create a workflow document.

        With script data the characters and scenes are seeded and the
        workflow waits at ``script_done``; otherwise the script is generated
        from the source video in the background.
        """
        video_model(request.video_model)
        doc = WorkflowDocument(
            title=request.title,
            source_video_url=request.source_video_url,
            config=WorkflowConfig(
                script_prompt=request.script_prompt,
                video_model=request.video_model,
                video_mode=request.video_mode,
                image_size=request.image_size,
            ),
        )
        if request.script_data is not None:
            doc.set_items("character", character_items(request.script_data))
            doc.set_items("scene", scene_items(request.script_data))
            doc.script_result = request.script_data.model_dump_json()
            doc.stage = "script_done"
            doc.status = "waiting"
            doc = await self.store.create(doc)
            logger.info(f"Workflow {doc.id}: script data ready, waiting for continue")
            return doc.id

        doc.stage = "script"
        doc.status = "running"
        doc = await self.store.create(doc)
        ctx = self.registry.get(doc.id)
        self._spawn(ctx, doc.id, self._generate_script(ctx, doc.id))
        return doc.id

    async def _generate_script(self, ctx: RunContext, doc_id: uuid.UUID) -> None:
        doc = await self.store.read(doc_id)
        if not ctx.should_continue():
            return
        prompt = (doc.config.script_prompt or "") + SCRIPT_OUTPUT_FORMAT
        logger.info(f"Workflow {doc_id}: generating script")
        text = await self.provider.generate_script(doc.source_video_url, prompt)

        try:
            script = parse_script_text(text)
        except ValidationError as e:
            logger.error(f"Workflow {doc_id}: {e}")
            script, failure = None, str(e)
        else:
            failure = None

        def _apply(doc: WorkflowDocument) -> bool:
            if doc.stage != "script" or not ctx.should_continue():
                return False
            doc.script_result = text
            if script is None:
                doc.stage = "error"
                doc.status = "failed"
                doc.error_message = failure
                return True
            doc.set_items("character", character_items(script))
            doc.set_items("scene", scene_items(script))
            doc.stage = "script_done"
            doc.status = "waiting"
            return True

        written = await self.updater.mutate(doc_id, _apply)
        if written is not None:
            logger.info(
                f"Workflow {doc_id}: script stage finished as {written.stage} "
                f"({len(written.characters)} characters, {len(written.scenes)} scenes)"
            )

    async def continue_workflow(self, doc_id: uuid.UUID) -> WorkflowDocument:
        """Enter the next stage and run it in the background.

        Raises:
            InvalidStateError: the workflow is not waiting at a checkpoint
        """
        doc = await self.store.read(doc_id)
        if doc.kind != "workflow":
            raise ValidationError("Image batches cannot be continued")
        doc = await self.controller.enter_next_stage(doc_id)
        ctx = self.registry.get(doc_id)
        self._spawn(ctx, doc_id, self.controller.run_stage(ctx, doc_id))
        return doc

    async def stop_workflow(self, doc_id: uuid.UUID) -> WorkflowDocument:
        """Stop the workflow; polling stops within one interval."""
        return await self.controller.stop(self.registry.peek(doc_id), doc_id)

    async def retry_item(
        self,
        doc_id: uuid.UUID,
        kind: str,
        index: int,
        new_prompt: Optional[str] = None,
        video_model_name: Optional[str] = None,
        video_mode: Optional[str] = None,
    ) -> WorkflowDocument:
        """Reset one item and regenerate it in the background.

        Video model or mode overrides recompute the clip's frames from the
        currently completed scenes.

        Raises:
            InvalidStateError: the item is already in flight, or done and
                nothing about it would change
            ValidationError: bad kind, index, model or override
        """
        check_kind(kind)
        if (video_model_name or video_mode) and kind != "video":
            raise ValidationError("video_model and video_mode apply to videos only")
        if video_model_name:
            video_model(video_model_name)
        if video_mode is not None and video_mode not in ("first-last-frame", "single-image"):
            raise ValidationError(f"Invalid video mode: {video_mode}")
        if new_prompt is not None and not new_prompt.strip():
            raise ValidationError("new_prompt cannot be empty")

        ctx = self.registry.get(doc_id)
        overrides = bool(video_model_name or video_mode)
        retried: dict = {}

        def _reset(doc: WorkflowDocument) -> bool:
            item = doc.item_at(kind, index)
            if item.is_in_flight() or ctx.owns(kind, item.id):
                raise InvalidStateError("Generation already in progress")
            if item.is_done() and not new_prompt and not overrides:
                raise InvalidStateError("Item already completed")

            updates = {
                item.status_field: "pending",
                "output_url": None,
                "error": None,
                "job_handle": None,
            }
            if new_prompt:
                updates[item.prompt_field] = new_prompt
            if kind == "video":
                if video_model_name:
                    updates["model"] = video_model_name
                if overrides:
                    mode = video_mode or doc.config.video_mode
                    first, last = frames_for_video(doc, item.index, mode)
                    if first:
                        updates["first_frame_url"] = first
                    updates["last_frame_url"] = last
                if doc.stage == "failed":
                    # Reopen the video stage so its outcome is evaluated again
                    doc.stage = "videos"
                    doc.status = "running"
                    doc.error_message = None
            doc.replace_item(kind, index, normalize_item(item.model_copy(update=updates)))
            retried["id"] = item.id
            return True

        doc = await self.updater.mutate(doc_id, _reset)
        logger.info(f"Workflow {doc_id}: retrying {kind} {index}")
        self._spawn(ctx, doc_id, self._run_single(ctx, doc_id, kind, index, retried["id"]))
        return doc

    async def _run_single(self, ctx, doc_id, kind, index, item_id) -> None:
        try:
            await self.pipeline.run(ctx, doc_id, kind, index, item_id)
        except ReelflowError as e:
            # Item keeps its persisted handle; the next status read resumes it
            logger.error(f"Workflow {doc_id}: retry of {kind} {item_id} could not be recorded: {e}")
        await self.controller.advance(doc_id)

    async def get_status(self, doc_id: uuid.UUID, repair: bool = True) -> StatusReport:
        """Observe-and-repair read.

        Fails stuck in-flight items that have no handle, advances the stage
        if all items are terminal, and schedules resume of in-flight items
        and of stage runs lost with a previous process.

        With repair=False the document is only read. Use it from a process
        that does not own the workflow's runs: repair treats every item with
        no live owner in this process as interrupted.
        """
        if not repair:
            doc = await self.store.read(doc_id)
            return StatusReport(document=doc, progress=calculate_progress(doc))
        await self.resume_manager.reclassify(doc_id)
        doc = await self.controller.advance(doc_id)
        self._schedule_resume(doc)
        return StatusReport(document=doc, progress=calculate_progress(doc))

    def _interrupted_run(self, doc: WorkflowDocument) -> bool:
        """True when a running stage has unstarted work and no live run."""
        ctx = self.registry.peek(doc.id)
        if doc.status != "running" or (ctx is not None and ctx.outstanding > 0):
            return False
        if doc.stage == "merging":
            return True
        if doc.kind == "image_batch":
            return any(t.state == "pending" for t in doc.items("task"))
        kind = kind_for_stage(doc.stage)
        return kind is not None and any(item.state == "pending" for item in doc.items(kind))

    def _schedule_resume(self, doc: WorkflowDocument) -> bool:
        restart = self._interrupted_run(doc)
        if not restart and not self.resume_manager.needs_resume(doc):
            return False
        ctx = self.registry.get(doc.id)
        self._spawn(ctx, doc.id, self._resume(ctx, doc.id, restart))
        return True

    async def _resume(self, ctx: RunContext, doc_id: uuid.UUID, restart: bool) -> None:
        """Poll resumable items; restart an interrupted run's pending items alongside."""
        doc = await self.store.read(doc_id)
        if not restart or doc.status != "running":
            await self.resume_manager.resume(doc_id)
            return
        logger.info(f"Workflow {doc_id}: restarting interrupted {doc.stage} run")
        if doc.kind == "image_batch":
            rerun = self.image_batches.run(ctx, doc_id, only_pending=True)
        else:
            rerun = self.controller.run_stage(ctx, doc_id, only_pending=True)
        # Both paths advance when they finish, so the later one closes the stage
        outcomes = await asyncio.gather(
            self.resume_manager.resume(doc_id), rerun, return_exceptions=True
        )
        for outcome in outcomes:
            if isinstance(outcome, Exception):
                raise outcome

    async def resume_all(self) -> int:
        """Repair every running or waiting document and resume it in the background.

        Called once at application startup. Returns how many were scheduled.
        """
        docs = await self.store.list(statuses=ACTIVE_STATUSES)
        scheduled = 0
        for doc in docs:
            try:
                await self.resume_manager.reclassify(doc.id)
                doc = await self.controller.advance(doc.id)
            except ReelflowError as e:
                logger.error(f"Workflow {doc.id}: startup repair failed: {e}")
                continue
            if self._schedule_resume(doc):
                scheduled += 1
        logger.info(f"Resuming {scheduled} of {len(docs)} active documents")
        return scheduled

    async def update_item(
        self,
        doc_id: uuid.UUID,
        kind: str,
        index: int,
        patch: Union[ItemPatch, dict],
    ) -> WorkflowDocument:
        """Apply a caller-supplied patch to one item under optimistic concurrency."""
        doc = await self.updater.apply_patch(doc_id, kind, index, patch)
        return doc

    async def update_script(self, doc_id: uuid.UUID, script: ScriptData) -> WorkflowDocument:
        """Merge edited script data into characters and scenes, keeping outputs.

        Raises:
            InvalidStateError: a character or scene is being generated
        """
        ctx = self.registry.peek(doc_id)

        def _merge(doc: WorkflowDocument) -> bool:
            busy = [
                item.id
                for kind in ("character", "scene")
                for item in doc.items(kind)
                if item.is_in_flight() or (ctx is not None and ctx.owns(kind, item.id))
            ]
            if busy:
                raise InvalidStateError(f"Cannot update script while generating: {', '.join(busy)}")
            characters, scenes = merge_script(script, doc.items("character"), doc.items("scene"))
            doc.set_items("character", characters)
            doc.set_items("scene", scenes)
            doc.script_result = script.model_dump_json()
            return True

        doc = await self.updater.mutate(doc_id, _merge)
        logger.info(
            f"Workflow {doc_id}: script updated ({len(doc.characters)} characters, {len(doc.scenes)} scenes)"
        )
        return doc

    async def retry_merge(self, doc_id: uuid.UUID) -> WorkflowDocument:
        """Merge the completed videos again.

        Raises:
            InvalidStateError: no completed videos, or not at a merge point
        """

        def _enter(doc: WorkflowDocument) -> bool:
            if doc.stage not in ("videos_done", "completed"):
                raise InvalidStateError(f"Cannot merge from stage {doc.stage}")
            if not any(v.is_done() for v in doc.items("video")):
                raise InvalidStateError("No completed videos to merge")
            doc.stage = "merging"
            doc.status = "running"
            return True

        doc = await self.updater.mutate(doc_id, _enter)
        ctx = self.registry.get(doc_id)
        self._spawn(ctx, doc_id, self.controller.merge(ctx, doc_id))
        return doc

    async def list_workflows(
        self, kind: Optional[str] = None, limit: Optional[int] = None
    ) -> list[WorkflowDocument]:
        return await self.store.list(kind=kind, limit=limit)

    async def delete_workflow(self, doc_id: uuid.UUID) -> None:
        """Cancel any live run, let it drain, then delete the document."""
        ctx = self.registry.peek(doc_id)
        self.registry.discard(doc_id)
        if ctx is not None:
            try:
                await ctx.wait_idle(timeout=DRAIN_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning(f"Workflow {doc_id}: deleting with {ctx.outstanding} operations still running")
        await self.store.delete(doc_id)

    # ------------------------------------------------------------------
    # Image batches
    # ------------------------------------------------------------------

    async def start_image_batch(self, request: ImageBatchInput) -> uuid.UUID:
        doc = await self.store.create(build_batch_document(request))
        ctx = self.registry.get(doc.id)
        self._spawn(ctx, doc.id, self.image_batches.run(ctx, doc.id))
        return doc.id

    async def stop_image_batch(self, doc_id: uuid.UUID) -> WorkflowDocument:
        doc = await self.store.read(doc_id)
        if doc.kind != "image_batch":
            raise NotFoundError(f"Image batch {doc_id} not found")
        return await self.controller.stop(self.registry.peek(doc_id), doc_id)
