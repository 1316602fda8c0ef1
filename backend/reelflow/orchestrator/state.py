"""State machine constants and transition logic for the workflow orchestrator.

Defines the ordered stage machine: active item stages alternate with
``*_done`` checkpoints at which the workflow waits for the caller to
continue. Side states are terminal and reachable from any active stage.
"""

from typing import Optional

# Workflow stages in execution order
WORKFLOW_STAGES = {
    "idle": "Created, nothing started",
    "script": "Generating script from the source video",
    "script_done": "Script parsed into characters and scenes",
    "characters": "Generating character reference images",
    "characters_done": "All characters terminal",
    "scenes": "Generating scene images",
    "scenes_done": "All scenes terminal",
    "videos": "Generating video clips",
    "videos_done": "All videos terminal",
    "merging": "Merging completed clips",
    "completed": "Workflow finished",
    "stopped": "Workflow stopped by user",
    "failed": "Video stage produced no clips",
    "error": "Workflow hit an unexpected error",
}

# Checkpoint -> next stage entered by continue
CONTINUE_TRANSITIONS = {
    "script_done": "characters",
    "characters_done": "scenes",
    "scenes_done": "videos",
    "videos_done": "merging",
}

# Active item stage -> item kind it produces
STAGE_KINDS = {
    "characters": "character",
    "scenes": "scene",
    "videos": "video",
}

TERMINAL_STAGES = {"completed", "stopped", "failed", "error"}

ACTIVE_STATUSES = {"running", "waiting"}

STOPPED_ITEM_ERROR = "Stopped by user"
INTERRUPTED_ITEM_ERROR = "Generation interrupted, please retry"
NO_VIDEOS_ERROR = "All video generation failed"


def done_stage(stage: str) -> str:
    """Checkpoint reached when every item of an active stage is terminal."""
    return f"{stage}_done"


def kind_for_stage(stage: str) -> Optional[str]:
    """Return the item kind an active stage produces, or None."""
    return STAGE_KINDS.get(stage)


def next_stage(stage: str) -> Optional[str]:
    """Return the stage continue would enter from stage, or None."""
    return CONTINUE_TRANSITIONS.get(stage)


def is_terminal_stage(stage: str) -> bool:
    return stage in TERMINAL_STAGES
