"""Stage executors for the documentary pipeline.

Each executor takes the accumulated StageContext and returns a StageResult; none
of them raise. Generative stages fall back to a fixed default artifact when the
model call fails, times out or returns output that does not validate. The
blueprint is the exception: without real scenes there is nothing to film, so it
reports failure instead.

Usage:
    executors = StageExecutors.from_settings()
    result = await executors.understanding(context)
    if result.used_fallback:
        ...
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Optional, Type

from pydantic import BaseModel

from docuvid.config import settings
from docuvid.exceptions import InputTooLongError
from docuvid.schemas.documentary import (
    Essay,
    NarrationScript,
    Perspective,
    PromptAnalysis,
    SceneBlueprint,
    Understanding,
)
from docuvid.services.file_manager import FileManager
from docuvid.services.llm import LLMAdapter, get_adapter
from docuvid.services.narration_client import ElevenLabsClient

logger = logging.getLogger(__name__)


FALLBACK_ANALYSIS = {
    "emotion": "uncertainty",
    "distortion_type": "none",
    "intensity": 5,
    "themes": [],
    "summary": "",
}

FALLBACK_ESSAY = {
    "title": "A prompt we carry",
    "thesis": "The prompt stays with us because it touches the shape of a human life.",
    "outline": [
        "The scale of the prompt",
        "What it asks of ordinary lives",
        "Why the answer remains open",
    ],
    "essay_text": "Some prompts do not end. They widen. We live inside them.",
}

FALLBACK_UNDERSTANDING = {
    "core_loss": "unmet expectations",
    "hidden_fear": "this struggle defines me",
    "existential_question": "What now?",
}

FALLBACK_PERSPECTIVE = {
    "posture": "shared_human_struggle",
    "core_insight": "Many carry weights that others cannot see.",
    "avoid": ["comparison", "gratitude enforcement", "toxic positivity"],
}

FALLBACK_VALIDATION = "This is hard. What you're feeling is real."
FALLBACK_AGENCY = "You're still here. That matters."

DOCUMENTARY_SYSTEM_PROMPT = (
    "You are a documentary filmmaker making quiet, observational short films "
    "about shared human experience. Never depict the person's exact situation, "
    "never dramatize, never offer motivational slogans."
)


def prepare_prompt(text: str, limit: int) -> str:
    """Strip surrounding whitespace and enforce the input character cap.

    Raises:
        InputTooLongError: If the stripped prompt is longer than limit.
    """
    text = text.strip()
    if len(text) > limit:
        raise InputTooLongError(len(text), limit)
    return text


@dataclass
class StageResult:
    """Outcome of one executor call."""

    ok: bool
    artifact: Any = None
    used_fallback: bool = False
    reason: Optional[str] = None


@dataclass
class StageContext:
    """Everything produced so far for one run."""

    prompt: str
    analysis: Optional[dict] = None
    essay: Optional[dict] = None
    understanding: Optional[dict] = None
    perspective: Optional[dict] = None
    blueprint: Optional[dict] = None
    narration_script: Optional[dict] = None


def _describe(ctx: StageContext, *fields: str) -> str:
    """Render the prompt and selected artifacts as model input."""
    lines = [f"Prompt: {ctx.prompt}"]
    for name in fields:
        value = getattr(ctx, name)
        if value:
            lines.append(f"{name.replace('_', ' ').title()}: {json.dumps(value, ensure_ascii=False)}")
    return "\n".join(lines)


class StageExecutors:
    """Generative executors for layers 1-5 plus the prompt framing steps."""

    def __init__(
        self,
        adapter: Optional[LLMAdapter] = None,
        tts: Optional[ElevenLabsClient] = None,
        file_manager: Optional[FileManager] = None,
        *,
        timeout: float = 90.0,
        scene_count: int = 5,
    ):
        self._adapter = adapter
        self._tts = tts
        self._file_manager = file_manager
        self._timeout = timeout
        self._scene_count = scene_count

    @classmethod
    def from_settings(cls) -> "StageExecutors":
        return cls(
            get_adapter(settings.models.text_llm),
            ElevenLabsClient.from_settings(),
            FileManager(),
            timeout=settings.pipeline.stage_timeout_seconds,
            scene_count=settings.pipeline.scene_count,
        )

    async def _generate(self, name: str, prompt: str, schema: Type[BaseModel]) -> BaseModel:
        if self._adapter is None:
            raise RuntimeError("no text model configured")
        logger.info(f"Stage {name}: calling text model")
        return await asyncio.wait_for(
            self._adapter.generate_text(prompt, schema, system_prompt=DOCUMENTARY_SYSTEM_PROMPT),
            timeout=self._timeout,
        )

    async def _with_fallback(
        self,
        name: str,
        prompt: str,
        schema: Type[BaseModel],
        fallback: dict,
    ) -> StageResult:
        try:
            result = await self._generate(name, prompt, schema)
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
            logger.warning(f"Stage {name}: using fallback artifact ({reason})")
            return StageResult(ok=True, artifact=dict(fallback), used_fallback=True, reason=reason)
        return StageResult(ok=True, artifact=result.model_dump())

    # ------------------------------------------------------------------
    # Prompt framing (run when a thought is created)
    # ------------------------------------------------------------------

    async def analyze_prompt(self, ctx: StageContext) -> StageResult:
        prompt = (
            "Read the prompt below. Name its dominant emotion, any cognitive "
            "distortion, an intensity from 1 to 10 and two to four themes.\n\n"
            + _describe(ctx)
        )
        return await self._with_fallback("analysis", prompt, PromptAnalysis, FALLBACK_ANALYSIS)

    async def draft_essay(self, ctx: StageContext) -> StageResult:
        prompt = (
            "Write a short reflective essay (under 250 words) that frames the prompt "
            "as part of ordinary human life. Give it a title, a one-sentence thesis "
            "and a three-point outline.\n\n" + _describe(ctx, "analysis")
        )
        return await self._with_fallback("essay", prompt, Essay, FALLBACK_ESSAY)

    # ------------------------------------------------------------------
    # Layers 1-4
    # ------------------------------------------------------------------

    async def understanding(self, ctx: StageContext) -> StageResult:
        prompt = (
            "Look beneath the surface words. What is the core loss, the hidden fear, "
            "and the existential question this person is living with?\n\n"
            + _describe(ctx, "analysis", "essay")
        )
        return await self._with_fallback("understanding", prompt, Understanding, FALLBACK_UNDERSTANDING)

    async def perspective(self, ctx: StageContext) -> StageResult:
        prompt = (
            "Choose the stance the film takes toward this struggle: a posture "
            "(such as shared_human_struggle or universal_uncertainty), one quiet "
            "insight, and framings to avoid.\n\n"
            + _describe(ctx, "understanding")
        )
        return await self._with_fallback("perspective", prompt, Perspective, FALLBACK_PERSPECTIVE)

    async def blueprint(self, ctx: StageContext) -> StageResult:
        prompt = (
            f"Plan exactly {self._scene_count} observational scenes that form a visual "
            "essay on the shared experience behind this prompt. Open with life in "
            "motion, end with life continuing. For each scene give a filmable "
            "description of what the camera sees, its symbolism, a duration in "
            "seconds (4-8), a time_of_day (dawn, morning, midday, afternoon, dusk, "
            "evening, night) and a setting (urban, suburban, rural, interior, "
            "transit, workplace, public_space). No faces in distress, no drama.\n\n"
            + _describe(ctx, "essay", "understanding", "perspective")
        )
        try:
            result = await self._generate("blueprint", prompt, SceneBlueprint)
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
            logger.error(f"Stage blueprint: generation failed ({reason})")
            return StageResult(ok=False, reason=reason)

        blueprint = result.model_dump()
        blueprint["scenes"] = blueprint["scenes"][: self._scene_count]
        return StageResult(ok=True, artifact=blueprint)

    async def narration_script(self, ctx: StageContext) -> StageResult:
        perspective = ctx.perspective or FALLBACK_PERSPECTIVE
        fallback = {
            "validation": FALLBACK_VALIDATION,
            "perspective": perspective.get("core_insight") or FALLBACK_PERSPECTIVE["core_insight"],
            "agency": FALLBACK_AGENCY,
        }
        prompt = (
            "Write three short narration segments (one to three sentences each) to "
            "be spoken over the scenes: validation, perspective, agency. Plain words, "
            "no advice, no slogans.\n\n"
            + _describe(ctx, "understanding", "perspective", "blueprint")
        )
        return await self._with_fallback("narration_script", prompt, NarrationScript, fallback)

    # ------------------------------------------------------------------
    # Layer 5
    # ------------------------------------------------------------------

    async def narration_audio(self, video_id: uuid.UUID, segment_type: str, text: str) -> StageResult:
        """Synthesize one segment; the artifact is the audio media URL."""
        if self._tts is None or self._file_manager is None or not self._tts.configured:
            return StageResult(ok=False, reason="narration audio is not configured")
        try:
            audio = await asyncio.wait_for(self._tts.synthesize(text), timeout=self._timeout)
            path = await asyncio.to_thread(
                self._file_manager.save_narration_audio, video_id, segment_type, audio
            )
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
            logger.warning(f"Video {video_id}: narration {segment_type} audio failed ({reason})")
            return StageResult(ok=False, reason=reason)
        return StageResult(ok=True, artifact=self._file_manager.media_url(path))

    async def close(self) -> None:
        if self._tts is not None:
            await self._tts.close()
