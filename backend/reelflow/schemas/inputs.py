"""Input models for the workflow and image-batch operations."""

from typing import Optional

from pydantic import BaseModel, Field, model_validator

from reelflow.schemas.script import ScriptData
from reelflow.schemas.workflow import ImageMode, ItemPatch, VideoMode


class StartWorkflowInput(BaseModel):
    """Either script_data or source_video_url must be given."""

    title: str = ""
    source_video_url: Optional[str] = None
    script_prompt: Optional[str] = None
    script_data: Optional[ScriptData] = None
    video_model: str = "seedance"
    video_mode: VideoMode = "first-last-frame"
    image_size: str = "1K"

    @model_validator(mode="after")
    def require_source(self):
        if self.script_data is None and not self.source_video_url:
            raise ValueError("Video URL or script data is required")
        return self


class RetryItemInput(BaseModel):
    kind: str
    index: int = Field(ge=0)
    new_prompt: Optional[str] = None
    video_model: Optional[str] = None
    video_mode: Optional[VideoMode] = None


class UpdateItemInput(BaseModel):
    kind: str
    index: int = Field(ge=0)
    patch: ItemPatch


class ImageTaskInput(BaseModel):
    prompt: str = Field(min_length=1)
    filename: Optional[str] = None
    source_url: Optional[str] = None


class ImageBatchInput(BaseModel):
    title: str = ""
    tasks: list[ImageTaskInput] = Field(min_length=1)
    image_mode: ImageMode = "text-to-image"
    aspect_ratio: str = "9:16"
    image_size: str = "1K"
