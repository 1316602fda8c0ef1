"""Pydantic models for the workflow document and its work items.

A WorkflowDocument is the single mutable record of one pipeline run. Its item
collections are held as insertion-ordered dicts keyed by stable item id;
callers address items by positional index, which the document resolves to a
key. The persisted form (ordered JSON arrays) is produced only at the store
boundary, see reelflow.db.store.
"""

import uuid
from datetime import datetime
from typing import ClassVar, Iterator, Literal, Optional, get_args

from pydantic import BaseModel, Field

from reelflow.errors import ValidationError

Stage = Literal[
    "idle",
    "script",
    "script_done",
    "characters",
    "characters_done",
    "scenes",
    "scenes_done",
    "videos",
    "videos_done",
    "merging",
    "completed",
    "stopped",
    "failed",
    "error",
]
WorkflowStatus = Literal["running", "waiting", "stopped", "failed", "partial", "completed"]
ImageStatus = Literal["pending", "generating", "uploading", "done", "error"]
VideoStatus = Literal["pending", "submitting", "polling", "done", "error"]
TaskStatus = Literal["pending", "processing", "done", "error"]
ItemKind = Literal["character", "scene", "video", "task"]
DocumentKind = Literal["workflow", "image_batch"]
VideoMode = Literal["first-last-frame", "single-image"]
ImageMode = Literal["text-to-image", "image-to-edit"]
PollKind = Literal["image", "video", "task"]

TERMINAL_STATUSES = frozenset({"done", "error"})
DEFAULT_ITEM_ERROR = "Generation failed"


class WorkItem(BaseModel):
    """Fields and status semantics shared by every work item kind.

    Subclasses declare which attribute holds the status, which statuses mean
    "awaiting async completion", and which status an item takes while its
    submission is in progress and while its job handle is being polled.
    """

    id: str
    output_url: Optional[str] = None
    job_handle: Optional[str] = None
    error: Optional[str] = None

    status_field: ClassVar[str] = "status"
    prompt_field: ClassVar[str] = "prompt"
    allowed_statuses: ClassVar[frozenset[str]] = frozenset()
    in_flight_statuses: ClassVar[frozenset[str]] = frozenset()
    submitting_status: ClassVar[str] = ""
    awaiting_status: ClassVar[str] = ""
    poll_kind: ClassVar[PollKind] = "image"

    @property
    def state(self) -> str:
        return getattr(self, self.status_field)

    @property
    def prompt_text(self) -> str:
        return getattr(self, self.prompt_field)

    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATUSES

    def is_in_flight(self) -> bool:
        return self.state in self.in_flight_statuses

    def is_done(self) -> bool:
        return self.state == "done" and bool(self.output_url)


class CharacterItem(WorkItem):
    """Reference image of one recurring character."""

    name: str
    description: str = ""
    prompt: str
    status: ImageStatus = "pending"

    allowed_statuses: ClassVar[frozenset[str]] = frozenset(get_args(ImageStatus))
    in_flight_statuses: ClassVar[frozenset[str]] = frozenset({"generating", "uploading"})
    submitting_status: ClassVar[str] = "generating"
    awaiting_status: ClassVar[str] = "generating"


class SceneItem(WorkItem):
    """Still image for one scene, later used as a video frame."""

    image_prompt: str
    video_prompt: str = ""
    image_status: ImageStatus = "pending"

    status_field: ClassVar[str] = "image_status"
    prompt_field: ClassVar[str] = "image_prompt"
    allowed_statuses: ClassVar[frozenset[str]] = frozenset(get_args(ImageStatus))
    in_flight_statuses: ClassVar[frozenset[str]] = frozenset({"generating", "uploading"})
    submitting_status: ClassVar[str] = "generating"
    awaiting_status: ClassVar[str] = "generating"


class VideoItem(WorkItem):
    """Video clip animated from one scene image (and optionally the next)."""

    index: int
    prompt: str
    first_frame_url: str
    last_frame_url: Optional[str] = None
    status: VideoStatus = "pending"
    model: Optional[str] = None

    allowed_statuses: ClassVar[frozenset[str]] = frozenset(get_args(VideoStatus))
    in_flight_statuses: ClassVar[frozenset[str]] = frozenset({"submitting", "polling"})
    submitting_status: ClassVar[str] = "submitting"
    awaiting_status: ClassVar[str] = "polling"
    poll_kind: ClassVar[PollKind] = "video"


class ImageTask(WorkItem):
    """One image of a flat image batch."""

    index: int
    filename: str
    source_url: Optional[str] = None
    prompt: str
    status: TaskStatus = "pending"

    allowed_statuses: ClassVar[frozenset[str]] = frozenset(get_args(TaskStatus))
    in_flight_statuses: ClassVar[frozenset[str]] = frozenset({"processing"})
    submitting_status: ClassVar[str] = "processing"
    awaiting_status: ClassVar[str] = "processing"
    poll_kind: ClassVar[PollKind] = "task"


# item kind -> (document attribute, model class)
ITEM_KINDS: dict[str, tuple[str, type[WorkItem]]] = {
    "character": ("characters", CharacterItem),
    "scene": ("scenes", SceneItem),
    "video": ("videos", VideoItem),
    "task": ("tasks", ImageTask),
}


def check_kind(kind: str) -> str:
    """Return kind unchanged if it names a known item kind."""
    if kind not in ITEM_KINDS:
        raise ValidationError(f"Unknown item kind: {kind!r}")
    return kind


class ItemPatch(BaseModel):
    """Partial update for one item.

    Only fields that were explicitly provided are applied; an explicit None
    clears the field. ``status`` is written to the kind's status attribute and
    ``prompt`` to the kind's prompt attribute.
    """

    status: Optional[str] = None
    output_url: Optional[str] = None
    job_handle: Optional[str] = None
    error: Optional[str] = None
    prompt: Optional[str] = None


def normalize_item(item: WorkItem) -> WorkItem:
    """Enforce the terminal-state invariants on an item.

    A terminal item carries no job handle, and exactly one of output_url and
    error. A pending item carries no job handle.
    """
    state = item.state
    updates: dict = {}
    if state in TERMINAL_STATUSES or state == "pending":
        updates["job_handle"] = None
    if state == "done":
        if not item.output_url:
            raise ValidationError(f"Item {item.id} cannot be done without an output_url")
        updates["error"] = None
    elif state == "error":
        updates["output_url"] = None
        updates["error"] = item.error or DEFAULT_ITEM_ERROR
    return item.model_copy(update=updates) if updates else item


def apply_item_patch(item: WorkItem, patch: ItemPatch) -> WorkItem:
    """Return a copy of item with patch applied and invariants normalised."""
    changes = patch.model_dump(exclude_unset=True)
    updates: dict = {}

    if "status" in changes:
        status = changes.pop("status")
        if status not in item.allowed_statuses:
            raise ValidationError(
                f"Invalid status {status!r} for {type(item).__name__}; "
                f"allowed: {sorted(item.allowed_statuses)}"
            )
        updates[item.status_field] = status

    if "prompt" in changes:
        prompt = changes.pop("prompt")
        if not prompt:
            raise ValidationError("prompt cannot be empty")
        updates[item.prompt_field] = prompt

    updates.update(changes)
    return normalize_item(item.model_copy(update=updates))


class WorkflowConfig(BaseModel):
    """Per-document generation settings chosen at start time."""

    script_prompt: Optional[str] = None
    video_model: str = "seedance"
    video_mode: VideoMode = "first-last-frame"
    image_size: str = "1K"
    aspect_ratio: str = "9:16"
    image_mode: ImageMode = "text-to-image"


class WorkflowDocument(BaseModel):
    """Single mutable record of one pipeline run.

    ``version`` is the optimistic-concurrency token; the store increments it
    on every successful conditional write.
    """

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    kind: DocumentKind = "workflow"
    title: str = ""
    stage: Stage = "idle"
    status: WorkflowStatus = "running"
    config: WorkflowConfig = Field(default_factory=WorkflowConfig)
    source_video_url: Optional[str] = None
    script_result: Optional[str] = None
    characters: dict[str, CharacterItem] = Field(default_factory=dict)
    scenes: dict[str, SceneItem] = Field(default_factory=dict)
    videos: dict[str, VideoItem] = Field(default_factory=dict)
    tasks: dict[str, ImageTask] = Field(default_factory=dict)
    merged_video_url: Optional[str] = None
    error_message: Optional[str] = None
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def collection(self, kind: str) -> dict[str, WorkItem]:
        attr, _ = ITEM_KINDS[check_kind(kind)]
        return getattr(self, attr)

    def items(self, kind: str) -> list[WorkItem]:
        return list(self.collection(kind).values())

    def key_at(self, kind: str, index: int) -> str:
        """Resolve a positional index to the item's stable key."""
        keys = list(self.collection(kind))
        if not 0 <= index < len(keys):
            raise ValidationError(
                f"Invalid {kind} index: {index}, only {len(keys)} {kind}s exist"
            )
        return keys[index]

    def item_at(self, kind: str, index: int) -> WorkItem:
        return self.collection(kind)[self.key_at(kind, index)]

    def replace_item(self, kind: str, index: int, item: WorkItem) -> None:
        key = self.key_at(kind, index)
        if item.id != key:
            raise ValidationError(f"Item id cannot change ({key} -> {item.id})")
        # Reassigning an existing key keeps its position
        self.collection(kind)[key] = item

    def set_items(self, kind: str, items: list[WorkItem]) -> None:
        attr, _ = ITEM_KINDS[check_kind(kind)]
        setattr(self, attr, index_items(items))

    def dump_ordered(self) -> dict:
        """JSON-ready dict with item collections as ordered arrays."""
        data = self.model_dump(mode="json")
        for attr, _ in ITEM_KINDS.values():
            data[attr] = list(data[attr].values())
        return data

    def iter_items(self) -> Iterator[tuple[str, int, WorkItem]]:
        """Yield (kind, index, item) for every item in every collection."""
        for kind in ITEM_KINDS:
            for index, item in enumerate(self.collection(kind).values()):
                yield kind, index, item


def index_items(items: list[WorkItem]) -> dict:
    """Key an ordered item list by id, rejecting duplicate ids."""
    indexed: dict = {}
    for item in items:
        if item.id in indexed:
            raise ValidationError(f"Duplicate item id: {item.id}")
        indexed[item.id] = item
    return indexed
