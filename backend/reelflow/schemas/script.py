"""Pydantic schemas for script data (characters and scenes).

Script data arrives either from the caller at start time or as raw text from
the script-generation model. Model output uses camelCase keys and sometimes
wraps the JSON in a markdown code fence; both are accepted here.
"""

import json
from typing import Annotated, Any, Optional

from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from reelflow.errors import ValidationError
from reelflow.schemas.workflow import CharacterItem, SceneItem


def _coerce_to_str(v: Any) -> Any:
    """Join list values into one string; some models return arrays for prompts."""
    if isinstance(v, list):
        return ", ".join(str(item) for item in v)
    return v


CoercedStr = Annotated[str, BeforeValidator(_coerce_to_str)]


class ScriptCharacter(BaseModel):
    """Recurring character with the prompt for its reference image."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    description: CoercedStr = ""
    image_prompt: CoercedStr = Field(
        default="",
        validation_alias=AliasChoices("image_prompt", "imagePrompt", "RoleimagePrompt"),
        description="Prompt for the character reference image",
    )


class ScriptScene(BaseModel):
    """One scene with its still-image prompt and motion prompt."""

    model_config = ConfigDict(populate_by_name=True)

    id: Optional[int] = None
    image_prompt: CoercedStr = Field(
        validation_alias=AliasChoices("image_prompt", "imagePrompt"),
        description="Prompt for the scene still image",
    )
    video_prompt: CoercedStr = Field(
        default="",
        validation_alias=AliasChoices("video_prompt", "videoPrompt"),
        description="Motion prompt used when animating the scene",
    )


class ScriptData(BaseModel):
    characters: list[ScriptCharacter] = Field(default_factory=list)
    scenes: list[ScriptScene] = Field(default_factory=list)


SCRIPT_OUTPUT_FORMAT = """

---

# Output Format Requirements (Must Follow Strictly)

Please output the result strictly in the following JSON format:

```json
{
  "characters": [
    {
      "name": "Character Name",
      "RoleimagePrompt": "Reference Image Prompt"
    }
  ],
  "scenes": [
    {
      "id": 1,
      "imagePrompt": "Image Prompt",
      "videoPrompt": "Video Prompt"
    }
  ]
}
```

**Important**: Output must be valid JSON format.
"""


def strip_code_fence(text: str) -> str:
    """Remove a surrounding ```json ... ``` (or bare ```) fence."""
    cleaned = text.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[len("```json"):]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def parse_script_text(text: str) -> ScriptData:
    """Parse model output (fenced or bare JSON) into ScriptData.

    Raises:
        ValidationError: if the text is not valid script JSON
    """
    try:
        payload = json.loads(strip_code_fence(text))
    except json.JSONDecodeError as e:
        raise ValidationError(f"Failed to parse script JSON: {e}") from e
    try:
        return ScriptData.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(f"Script JSON has unexpected shape: {e}") from e


def character_items(script: ScriptData) -> list[CharacterItem]:
    return [
        CharacterItem(
            id=f"char-{i}",
            name=c.name,
            description=c.description,
            prompt=c.image_prompt,
        )
        for i, c in enumerate(script.characters)
    ]


def scene_items(script: ScriptData) -> list[SceneItem]:
    return [
        SceneItem(
            id=f"scene-{i + 1}",
            image_prompt=s.image_prompt,
            video_prompt=s.video_prompt,
        )
        for i, s in enumerate(script.scenes)
    ]


def merge_script(
    script: ScriptData,
    characters: list[CharacterItem],
    scenes: list[SceneItem],
) -> tuple[list[CharacterItem], list[SceneItem]]:
    """Merge edited script data into existing items.

    Characters are matched by name, falling back to position; scenes are
    matched by position. Matched items keep their status and outputs and take
    the new prompts. Unmatched entries become new pending items. Existing
    items beyond the new script's length are dropped.
    """
    by_name = {c.name: c for c in characters}
    used_ids: set[str] = set()
    merged_characters: list[CharacterItem] = []
    for i, new in enumerate(script.characters):
        existing = by_name.get(new.name)
        if existing is None and i < len(characters):
            existing = characters[i]
        if existing is not None and existing.id not in used_ids:
            used_ids.add(existing.id)
            merged_characters.append(
                existing.model_copy(
                    update={
                        "name": new.name,
                        "description": new.description or existing.description,
                        "prompt": new.image_prompt,
                    }
                )
            )
        else:
            merged_characters.append(
                CharacterItem(
                    id=_fresh_id("char", i, used_ids | {c.id for c in characters}),
                    name=new.name,
                    description=new.description,
                    prompt=new.image_prompt,
                )
            )
            used_ids.add(merged_characters[-1].id)

    merged_scenes: list[SceneItem] = []
    for i, new in enumerate(script.scenes):
        if i < len(scenes):
            merged_scenes.append(
                scenes[i].model_copy(
                    update={"image_prompt": new.image_prompt, "video_prompt": new.video_prompt}
                )
            )
        else:
            merged_scenes.append(
                SceneItem(
                    id=f"scene-{i + 1}",
                    image_prompt=new.image_prompt,
                    video_prompt=new.video_prompt,
                )
            )
    return merged_characters, merged_scenes


def _fresh_id(prefix: str, index: int, taken: set[str]) -> str:
    candidate = f"{prefix}-{index}"
    suffix = 1
    while candidate in taken:
        candidate = f"{prefix}-{index}-{suffix}"
        suffix += 1
    return candidate
