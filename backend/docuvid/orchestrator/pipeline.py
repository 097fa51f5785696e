"""Main pipeline orchestrator with resumable stage execution and step logging.

Drives one video through the seven layers:
- understanding (1) and perspective (2)
- blueprint (3), narration script (4) and narration audio (5)
- scene generation (6) via the SceneScheduler
- assembly (7)

Before running, the orchestrator claims the run in the store (version CAS plus a
fenced run token), so at most one runner executes a given video at a time. Every
stage persists its status before it starts and appends one PipelineStep row when
it ends. Failures are recorded on the run with the layer they happened at;
partial artifacts are left in place so a re-trigger resumes instead of
restarting. run_pipeline() never raises.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from docuvid.config import PipelineConfig, settings
from docuvid.db.models import Thought, Video
from docuvid.exceptions import AssemblyError, LeaseLost, TransientAssemblyError
from docuvid.orchestrator.scheduler import SceneScheduler
from docuvid.orchestrator.state import (
    LAYER_ASSEMBLY,
    LAYER_BLUEPRINT,
    LAYER_NARRATION_AUDIO,
    LAYER_NARRATION_SCRIPT,
    LAYER_PERSPECTIVE,
    LAYER_SCENE_GENERATION,
    LAYER_UNDERSTANDING,
    get_resume_step,
    status_to_layer,
)
from docuvid.orchestrator.store import RunStateStore
from docuvid.pipeline.assembly import AssemblyResult, FFmpegAssembler
from docuvid.pipeline.scene_prompts import build_scene_prompt
from docuvid.pipeline.stages import StageContext, StageExecutors, StageResult
from docuvid.schemas.documentary import NARRATION_SEGMENT_TYPES
from docuvid.services.runway_client import RunwayClient

logger = logging.getLogger(__name__)


@dataclass
class PipelineServices:
    """Collaborators the orchestrator calls out to."""

    executors: StageExecutors
    task_client: RunwayClient
    assembler: FFmpegAssembler
    config: PipelineConfig = field(default_factory=lambda: settings.pipeline)
    max_prompt_chars: int = 1000
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    @classmethod
    def from_settings(cls) -> "PipelineServices":
        return cls(
            executors=StageExecutors.from_settings(),
            task_client=RunwayClient.from_settings(),
            assembler=FFmpegAssembler(),
            config=settings.pipeline,
            max_prompt_chars=settings.runway.max_prompt_chars,
        )

    async def close(self) -> None:
        await self.executors.close()
        await self.task_client.close()


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _stage_payload(result: StageResult) -> dict:
    return {
        "ok": result.ok,
        "used_fallback": result.used_fallback,
        "reason": result.reason,
    }


class _PipelineRunner:
    """Executes stages for one claimed run."""

    def __init__(
        self,
        store: RunStateStore,
        services: PipelineServices,
        video: Video,
        thought: Thought,
        run_token: str,
        progress_callback: Optional[Callable[[str], None]] = None,
    ):
        self.store = store
        self.services = services
        self.video_id = video.id
        self.token = run_token
        self.progress_callback = progress_callback
        self.status: Optional[str] = None
        self.ctx = StageContext(
            prompt=thought.original_text,
            analysis=thought.analysis,
            essay=thought.essay,
            understanding=video.understanding,
            perspective=video.perspective,
            blueprint=video.blueprint,
            narration_script=video.narration_script,
        )

    def _progress(self, message: str) -> None:
        logger.info(f"Video {self.video_id}: {message}")
        if self.progress_callback:
            self.progress_callback(message)

    async def _enter(self, status: str) -> None:
        await self.store.transition(self.video_id, self.token, status)
        self.status = status
        self._progress(f"{status} (layer {status_to_layer(status)})")

    async def _record(self, layer: int, step: str, started: float, payload: dict) -> None:
        await self.store.record_step(
            self.video_id, layer, step, _elapsed_ms(started), payload, run_token=self.token
        )

    async def _run_stage(self, layer: int, step: str, executor) -> StageResult:
        started = time.monotonic()
        result = await executor(self.ctx)
        await self._record(layer, step, started, _stage_payload(result))
        if result.used_fallback:
            self._progress(f"{step} used fallback ({result.reason})")
        return result

    async def _fail(self, layer: int, message: str) -> str:
        await self.store.fail_run(self.video_id, self.token, layer, message)
        self.status = "failed"
        self._progress(f"failed at layer {layer}: {message}")
        return "failed"

    async def fail_unexpected(self, exc: Exception) -> Optional[str]:
        """Record an unexpected exception against the current layer."""
        layer = status_to_layer(self.status) if self.status else None
        message = f"{self.status or 'pipeline'} failed: {type(exc).__name__}: {exc}"
        try:
            return await self._fail(layer, message)
        except LeaseLost:
            return None
        except Exception:
            logger.exception(f"Video {self.video_id}: could not persist failure state")
            return "failed"

    async def execute(self, start: str) -> str:
        status = start
        if start != "pending":
            self._progress(f"resuming from {start}")

        if status == "pending":
            await self.store.reset_generated_content(self.video_id, self.token)
            status = "understanding"

        # Layers 1-2
        if status == "understanding":
            await self._enter("understanding")
            executors = self.services.executors
            understanding = await self._run_stage(
                LAYER_UNDERSTANDING, "understanding", executors.understanding
            )
            if not understanding.ok:
                return await self._fail(LAYER_UNDERSTANDING, f"Understanding failed: {understanding.reason}")
            self.ctx.understanding = understanding.artifact

            perspective = await self._run_stage(
                LAYER_PERSPECTIVE, "perspective", executors.perspective
            )
            if not perspective.ok:
                return await self._fail(LAYER_PERSPECTIVE, f"Perspective failed: {perspective.reason}")
            self.ctx.perspective = perspective.artifact

            await self.store.save_artifacts(
                self.video_id,
                self.token,
                understanding=self.ctx.understanding,
                perspective=self.ctx.perspective,
            )
            status = "blueprint"

        # Layers 3-5
        if status == "blueprint":
            await self._enter("blueprint")
            if not await self._plan_scenes():
                return "failed"
            await self._narrate()
            status = "generating"

        # Layer 6
        if status == "generating":
            await self._enter("generating")
            if not await self._generate_scenes():
                return "failed"

        # Layer 7
        await self._enter("assembling")
        return await self._assemble()

    async def _plan_scenes(self) -> bool:
        result = await self._run_stage(LAYER_BLUEPRINT, "blueprint", self.services.executors.blueprint)
        if not result.ok:
            await self._fail(LAYER_BLUEPRINT, f"Blueprint failed: {result.reason}")
            return False

        blueprint = result.artifact
        cfg = self.services.config
        scenes = [
            {
                "scene_index": index,
                "description": scene["description"],
                "duration": scene["duration"],
                "time_of_day": scene["time_of_day"],
                "setting": scene["setting"],
                "runway_prompt": build_scene_prompt(
                    scene["description"],
                    scene["time_of_day"],
                    scene["setting"],
                    description_chars=cfg.scene_description_chars,
                    max_chars=self.services.max_prompt_chars,
                ),
            }
            for index, scene in enumerate(blueprint["scenes"])
        ]
        self.ctx.blueprint = blueprint
        await self.store.save_artifacts(self.video_id, self.token, blueprint=blueprint)
        await self.store.replace_scenes(self.video_id, self.token, scenes)
        self._progress(f"planned {len(scenes)} scenes")
        return True

    async def _narrate(self) -> None:
        """Layers 4-5. Audio failures are recorded per segment and never fail the run."""
        script = await self._run_stage(
            LAYER_NARRATION_SCRIPT, "narration_script", self.services.executors.narration_script
        )
        if not script.ok:
            self._progress("continuing without narration")
            return
        self.ctx.narration_script = script.artifact
        await self.store.save_artifacts(self.video_id, self.token, narration_script=script.artifact)

        segments = {
            segment_type: script.artifact[segment_type]
            for segment_type in NARRATION_SEGMENT_TYPES
            if script.artifact.get(segment_type)
        }
        await self.store.replace_narration_segments(self.video_id, self.token, segments)

        started = time.monotonic()
        statuses = {}
        for segment_type, text in segments.items():
            await self.store.update_segment(
                self.video_id, self.token, segment_type, status="processing"
            )
            audio = await self.services.executors.narration_audio(self.video_id, segment_type, text)
            if audio.ok:
                await self.store.update_segment(
                    self.video_id, self.token, segment_type,
                    status="ready", audio_url=audio.artifact,
                )
                statuses[segment_type] = "ready"
            else:
                await self.store.update_segment(
                    self.video_id, self.token, segment_type,
                    status="failed", error_message=audio.reason,
                )
                statuses[segment_type] = "failed"
        await self._record(LAYER_NARRATION_AUDIO, "narration_audio", started, {"segments": statuses})

    async def _generate_scenes(self) -> bool:
        scenes = await self.store.list_scenes(self.video_id)
        if not scenes:
            await self._fail(LAYER_SCENE_GENERATION, "Scene generation failed: no scenes planned")
            return False

        cfg = self.services.config
        scheduler = SceneScheduler(
            self.store,
            self.services.task_client,
            max_in_flight=cfg.video_gen_concurrency,
            poll_interval=cfg.video_poll_interval,
            max_wait=cfg.video_poll_max_wait,
            sleep=self.services.sleep,
        )
        started = time.monotonic()
        summary = await scheduler.run(self.video_id, self.token, scenes)
        await self._record(LAYER_SCENE_GENERATION, "scene_generation", started, summary.as_payload())
        self._progress(f"{len(summary.ready)}/{summary.total} scenes ready")

        if not summary.meets_threshold(cfg.min_ready_fraction):
            await self._fail(
                LAYER_SCENE_GENERATION,
                f"Scene generation failed: {len(summary.ready)}/{summary.total} scenes ready "
                f"(minimum {cfg.min_ready_fraction:.0%})",
            )
            return False
        return True

    async def _assemble(self) -> str:
        scenes = await self.store.list_scenes(self.video_id)
        scene_videos = [
            (scene.scene_index, scene.runway_video_url)
            for scene in scenes
            if scene.status == "ready" and scene.runway_video_url
        ]
        segments = {s.segment_type: s for s in await self.store.list_segments(self.video_id)}
        narration = [
            segments[t].audio_url
            for t in NARRATION_SEGMENT_TYPES
            if t in segments and segments[t].status == "ready" and segments[t].audio_url
        ]

        cfg = self.services.config
        retrying = AsyncRetrying(
            stop=stop_after_attempt(cfg.assembly_retry_attempts),
            wait=wait_exponential(multiplier=cfg.retry_base_delay, max=60),
            retry=retry_if_exception_type(TransientAssemblyError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        started = time.monotonic()
        payload = {"scenes": [index for index, _ in scene_videos], "narration_segments": len(narration)}
        try:
            result: AssemblyResult = await retrying(
                self.services.assembler.assemble, self.video_id, scene_videos, narration
            )
        except AssemblyError as e:
            await self._record(LAYER_ASSEMBLY, "assembly", started, {**payload, "ok": False, "reason": str(e)})
            return await self._fail(LAYER_ASSEMBLY, f"Assembly failed: {e}")
        except Exception as e:
            logger.exception(f"Video {self.video_id}: assembler crashed")
            await self._record(LAYER_ASSEMBLY, "assembly", started, {**payload, "ok": False, "reason": str(e)})
            return await self._fail(LAYER_ASSEMBLY, f"Assembly failed: {type(e).__name__}: {e}")

        await self._record(
            LAYER_ASSEMBLY, "assembly", started,
            {**payload, "ok": True, "duration_seconds": result.duration_seconds},
        )
        await self.store.complete_run(
            self.video_id,
            self.token,
            final_video_url=result.video_url,
            thumbnail_url=result.thumbnail_url,
            total_duration=result.duration_seconds,
        )
        self.status = "ready"
        self._progress(f"ready: {result.video_url}")
        return "ready"


async def run_pipeline(
    video_id: uuid.UUID,
    *,
    store: Optional[RunStateStore] = None,
    services: Optional[PipelineServices] = None,
    progress_callback: Optional[Callable[[str], None]] = None,
) -> Optional[str]:
    """Run (or resume) the pipeline for one video.

    Resume point comes from get_resume_step(): runs with ready or in-flight
    scenes restart at generating and reuse the persisted blueprint, so ready
    scenes are never regenerated.

    Args:
        video_id: Run to execute.
        store: Run state store; defaults to the configured database.
        services: Executors, task client and assembler; defaults built from settings.
        progress_callback: Optional callable receiving human-readable progress lines.

    Returns:
        "ready" or "failed" when this call drove the run to a terminal state,
        None when another runner owns it, the run is missing, or the claim was lost.
    """
    store = store or RunStateStore()
    owns_services = services is None
    if owns_services:
        services = PipelineServices.from_settings()

    try:
        return await _run_claimed(video_id, store, services, progress_callback)
    except Exception:
        logger.exception(f"Video {video_id}: pipeline crashed before a run was claimed")
        return None
    finally:
        if owns_services:
            await services.close()


async def _run_claimed(
    video_id: uuid.UUID,
    store: RunStateStore,
    services: PipelineServices,
    progress_callback: Optional[Callable[[str], None]],
) -> Optional[str]:
    video = await store.get_run(video_id)
    if video is None:
        logger.error(f"Video {video_id}: not found")
        return None
    thought = await store.get_thought(video.thought_id)
    if thought is None:
        logger.error(f"Video {video_id}: thought {video.thought_id} not found")
        return None

    completed = await store.completed_steps(video_id)
    start = get_resume_step(video.pipeline_status, video.error_layer, completed)
    token = await store.claim_run(video_id, video.version, start)
    if token is None:
        logger.info(f"Video {video_id}: run already in progress, skipping")
        return None

    runner = _PipelineRunner(store, services, video, thought, token, progress_callback)
    heartbeat = asyncio.create_task(_keep_lease(store, video_id, token))

    try:
        return await runner.execute(start)
    except LeaseLost:
        logger.warning(f"Video {video_id}: lost run claim, stopping without further writes")
        return None
    except Exception as e:
        logger.exception(f"Video {video_id}: unexpected pipeline error")
        return await runner.fail_unexpected(e)
    finally:
        heartbeat.cancel()
        await asyncio.gather(heartbeat, return_exceptions=True)


async def _keep_lease(store: RunStateStore, video_id: uuid.UUID, token: str) -> None:
    """Renew the run lease every third of its length while the run is claimed.

    Returns once the claim is gone.
    """
    interval = store.lease_seconds / 3
    while True:
        await asyncio.sleep(interval)
        try:
            await store.renew_lease(video_id, token)
        except LeaseLost:
            return
        except Exception as e:
            logger.warning(f"Video {video_id}: lease renewal failed, retrying next round: {e}")
