"""Pydantic schemas for structured LLM output in the documentary pipeline.

Used both as response_schema for the LLM adapters and as the shape of the
JSON artifacts persisted on Thought and Video rows.
"""

from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, Field


def _coerce_to_str(v: Any) -> str:
    """Coerce list values to a comma-separated string.

    Some providers (e.g. Ollama) return arrays for fields declared as string.
    """
    if isinstance(v, list):
        return ", ".join(str(item) for item in v)
    return v


CoercedStr = Annotated[str, BeforeValidator(_coerce_to_str)]


class PromptAnalysis(BaseModel):
    """Emotional read of the user's prompt."""

    emotion: CoercedStr = Field(description="Dominant emotion, one or two words")
    distortion_type: CoercedStr = Field(
        default="none",
        description="Cognitive distortion present, or 'none'",
    )
    intensity: int = Field(ge=1, le=10, description="Emotional intensity from 1 to 10")
    themes: list[str] = Field(default_factory=list, description="Two to four short themes")
    summary: CoercedStr = Field(default="", description="One sentence summary of the struggle")


class Essay(BaseModel):
    """Short reflective essay framing the prompt."""

    title: CoercedStr
    thesis: CoercedStr
    outline: list[str] = Field(default_factory=list)
    essay_text: CoercedStr


class Understanding(BaseModel):
    """Layer 1: what the prompt is really about."""

    core_loss: CoercedStr = Field(description="What the person feels they lost or lack")
    hidden_fear: CoercedStr = Field(description="The fear underneath the stated problem")
    existential_question: CoercedStr = Field(description="The question they are living with")


class Perspective(BaseModel):
    """Layer 2: the stance the documentary takes."""

    posture: CoercedStr = Field(description="e.g. 'shared_human_struggle'")
    core_insight: CoercedStr = Field(description="One sentence the film quietly argues")
    avoid: list[str] = Field(default_factory=list, description="Framings the film must not use")


class BlueprintScene(BaseModel):
    """One observational scene."""

    description: CoercedStr = Field(description="What the camera sees; specific and filmable")
    symbolism: CoercedStr = Field(default="", description="What the scene represents (internal)")
    duration: int = Field(ge=1, le=30, description="Seconds")
    time_of_day: str = Field(
        description="dawn, morning, midday, afternoon, dusk, evening or night"
    )
    setting: str = Field(
        description="urban, suburban, rural, interior, transit, workplace or public_space"
    )


class SceneBlueprint(BaseModel):
    """Layer 3: the ordered scene plan."""

    scenes: list[BlueprintScene] = Field(min_length=1)

    @property
    def total_duration(self) -> int:
        return sum(scene.duration for scene in self.scenes)


class NarrationScript(BaseModel):
    """Layer 4: three narration segments, spoken in this order."""

    validation: CoercedStr = Field(description="Acknowledge the feeling without fixing it")
    perspective: CoercedStr = Field(description="Place the struggle among others who share it")
    agency: CoercedStr = Field(description="A small, honest note of what remains possible")


NARRATION_SEGMENT_TYPES = ("validation", "perspective", "agency")
