"""Maps a work item to the provider call that generates it."""

import logging

from reelflow.schemas.workflow import WorkflowDocument, WorkItem
from reelflow.services.generation_client import SubmitResult

logger = logging.getLogger(__name__)

CHARACTER_ASPECT_RATIO = "1:1"
SCENE_ASPECT_RATIO = "9:16"


class TaskSubmitter:
    """Submits one item to the generation provider.

    Returns a SubmitResult carrying either an inline output URL or a job
    handle to poll. Provider rejections surface as SubmissionError.
    """

    def __init__(self, provider):
        self.provider = provider

    async def submit(self, kind: str, item: WorkItem, doc: WorkflowDocument) -> SubmitResult:
        config = doc.config

        if kind == "character":
            return await self.provider.text_to_image(
                item.prompt, aspect_ratio=CHARACTER_ASPECT_RATIO, size=config.image_size
            )

        if kind == "scene":
            refs = [c.output_url for c in doc.items("character") if c.is_done()]
            if refs:
                logger.info(f"Workflow {doc.id}: scene {item.id} uses {len(refs)} character references")
                return await self.provider.image_to_edit(
                    item.image_prompt, refs, aspect_ratio=SCENE_ASPECT_RATIO, size=config.image_size
                )
            return await self.provider.text_to_image(
                item.image_prompt, aspect_ratio=SCENE_ASPECT_RATIO, size=config.image_size
            )

        if kind == "video":
            model = item.model or config.video_model
            logger.info(
                f"Workflow {doc.id}: submitting video {item.id} to {model}"
                f"{' with last frame' if item.last_frame_url else ''}"
            )
            return await self.provider.image_to_video(
                model, item.prompt, item.first_frame_url, item.last_frame_url
            )

        # image batch task
        if config.image_mode == "image-to-edit" and item.source_url:
            return await self.provider.image_to_edit(
                item.prompt, [item.source_url], aspect_ratio=config.aspect_ratio, size=config.image_size
            )
        return await self.provider.text_to_image(
            item.prompt, aspect_ratio=config.aspect_ratio, size=config.image_size
        )
