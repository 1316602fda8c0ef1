"""Progress summary reported alongside document status."""

from pydantic import BaseModel

from reelflow.schemas.workflow import WorkflowDocument

STAGE_PERCENT = {
    "idle": 0,
    "script": 10,
    "script_done": 20,
    "characters": 40,
    "characters_done": 50,
    "scenes": 60,
    "scenes_done": 70,
    "videos": 80,
    "videos_done": 100,
    "merging": 100,
    "completed": 100,
}

# stage -> (item kind, base percent, span)
_ITEM_STAGE_SPANS = {
    "characters": ("character", 30, 20),
    "scenes": ("scene", 50, 20),
    "videos": ("video", 70, 30),
}


class Progress(BaseModel):
    stage: str
    percent: int
    characters_total: int = 0
    characters_done: int = 0
    scenes_total: int = 0
    scenes_done: int = 0
    videos_total: int = 0
    videos_done: int = 0
    tasks_total: int = 0
    tasks_done: int = 0
    tasks_failed: int = 0


def _done(doc: WorkflowDocument, kind: str) -> int:
    return sum(1 for item in doc.items(kind) if item.is_done())


def calculate_progress(doc: WorkflowDocument) -> Progress:
    """Percent complete plus per-kind done counts.

    Inside an item stage the percent interpolates by the share of done items;
    an image batch reports the share of terminal tasks.
    """
    if doc.kind == "image_batch":
        tasks = doc.items("task")
        terminal = sum(1 for t in tasks if t.is_terminal())
        percent = terminal / len(tasks) * 100 if tasks else 100
    else:
        percent = STAGE_PERCENT.get(doc.stage, 0)
        span = _ITEM_STAGE_SPANS.get(doc.stage)
        if span is not None:
            kind, base, width = span
            items = doc.items(kind)
            if items:
                percent = base + _done(doc, kind) / len(items) * width

    return Progress(
        stage=doc.stage,
        percent=int(percent + 0.5),
        characters_total=len(doc.characters),
        characters_done=_done(doc, "character"),
        scenes_total=len(doc.scenes),
        scenes_done=_done(doc, "scene"),
        videos_total=len(doc.videos),
        videos_done=_done(doc, "video"),
        tasks_total=len(doc.tasks),
        tasks_done=_done(doc, "task"),
        tasks_failed=sum(1 for t in doc.items("task") if t.state == "error"),
    )
