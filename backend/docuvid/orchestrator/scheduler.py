"""Scene scheduler for layer 6 (external scene video generation).

Runs one task per scene that is not yet ready, bounded by a semaphore:
- Submit a text-to-video job, persisting processing + job id before polling
- Re-poll a stored job id instead of resubmitting (crash recovery)
- Poll on a fixed interval until done, failed or the per-scene deadline
- Resubmit a failed job once with a safe nature prompt (content-filter
  recovery) before accepting the failure
- Mark each scene ready or failed independently; one scene's failure never
  touches another

The scheduler never fails the run. It returns a SchedulerSummary and leaves the
ready-fraction decision to the orchestrator.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from docuvid.db.models import VideoScene
from docuvid.exceptions import LeaseLost, ProviderError
from docuvid.orchestrator.store import RunStateStore
from docuvid.pipeline.scene_prompts import is_safe_scene_prompt, safe_scene_prompt
from docuvid.services.runway_client import RunwayClient

logger = logging.getLogger(__name__)


@dataclass
class SceneOutcome:
    scene_index: int
    status: str  # "ready" | "failed"
    video_url: Optional[str] = None
    error: Optional[str] = None
    submitted: bool = False


@dataclass
class SchedulerSummary:
    """Per-scene outcomes, always ordered by scene_index."""

    outcomes: list[SceneOutcome] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def ready(self) -> list[SceneOutcome]:
        return [o for o in self.outcomes if o.status == "ready"]

    @property
    def failed(self) -> list[SceneOutcome]:
        return [o for o in self.outcomes if o.status == "failed"]

    @property
    def ready_fraction(self) -> float:
        return len(self.ready) / self.total if self.total else 0.0

    def meets_threshold(self, min_ready_fraction: float) -> bool:
        return bool(self.ready) and self.ready_fraction >= min_ready_fraction

    def as_payload(self) -> dict:
        return {
            "total": self.total,
            "ready": len(self.ready),
            "failed": len(self.failed),
            "submitted": sum(1 for o in self.outcomes if o.submitted),
            "scenes": [
                {"index": o.scene_index, "status": o.status, "error": o.error}
                for o in self.outcomes
            ],
        }


class SceneScheduler:
    """Concurrent submit/poll driver for one run's scenes."""

    def __init__(
        self,
        store: RunStateStore,
        task_client: RunwayClient,
        *,
        max_in_flight: int = 3,
        poll_interval: float = 15.0,
        max_wait: float = 900.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._client = task_client
        self._max_in_flight = max_in_flight
        self._poll_interval = poll_interval
        self._max_wait = max_wait
        self._sleep = sleep
        self._clock = clock

    async def run(
        self,
        video_id: uuid.UUID,
        run_token: str,
        scenes: list[VideoScene],
    ) -> SchedulerSummary:
        """Drive every not-ready scene to ready or failed.

        Raises:
            LeaseLost: If the run claim was lost.

        Whatever escapes a scene task, the remaining scene tasks are cancelled
        and awaited before it propagates.
        """
        semaphore = asyncio.Semaphore(self._max_in_flight)
        outcomes: list[SceneOutcome] = []
        tasks: list[asyncio.Task] = []

        for scene in scenes:
            if scene.status == "ready" and scene.runway_video_url:
                outcomes.append(
                    SceneOutcome(scene.scene_index, "ready", video_url=scene.runway_video_url)
                )
            else:
                tasks.append(
                    asyncio.create_task(self._run_scene(semaphore, video_id, run_token, scene))
                )

        logger.info(
            f"Video {video_id}: {len(tasks)} scenes to generate, "
            f"{len(outcomes)} already ready (max in flight {self._max_in_flight})"
        )

        try:
            outcomes.extend(await asyncio.gather(*tasks))
        except BaseException:
            # No scene task may outlive the run that started it
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        outcomes.sort(key=lambda o: o.scene_index)
        return SchedulerSummary(outcomes=outcomes)

    async def _run_scene(
        self,
        semaphore: asyncio.Semaphore,
        video_id: uuid.UUID,
        run_token: str,
        scene: VideoScene,
    ) -> SceneOutcome:
        async with semaphore:
            try:
                return await self._generate_scene(video_id, run_token, scene)
            except LeaseLost:
                raise
            except ProviderError as e:
                error = str(e)
            except Exception as e:
                logger.exception(f"Video {video_id}: scene {scene.scene_index} crashed")
                error = f"{type(e).__name__}: {e}"

            logger.warning(f"Video {video_id}: scene {scene.scene_index} failed: {error}")
            await self._store.update_scene(
                video_id, run_token, scene.scene_index,
                status="failed", error_message=error[:1000],
            )
            return SceneOutcome(scene.scene_index, "failed", error=error)

    async def _generate_scene(
        self,
        video_id: uuid.UUID,
        run_token: str,
        scene: VideoScene,
    ) -> SceneOutcome:
        index = scene.scene_index
        prompt = scene.runway_prompt
        attempts = scene.attempts or 0
        submitted = False

        # Resume: a stored job id is re-polled, never resubmitted
        if scene.status == "processing" and scene.external_job_id:
            job_id = scene.external_job_id
            logger.info(f"Video {video_id}: scene {index} resuming poll of job {job_id}")
        else:
            attempts += 1
            job_id = await self._submit(video_id, run_token, index, prompt, scene.duration, attempts)
            submitted = True

        deadline = self._clock() + self._max_wait
        poll_count = 0
        while True:
            status = await self._client.poll(job_id)
            poll_count += 1

            if status.state == "done":
                await self._store.update_scene(
                    video_id, run_token, index,
                    status="ready", runway_video_url=status.video_url, error_message=None,
                )
                logger.info(f"Video {video_id}: scene {index} ready after {poll_count} polls")
                return SceneOutcome(index, "ready", video_url=status.video_url, submitted=submitted)

            if status.state == "failed":
                error = status.reason or "generation failed"
                if not is_safe_scene_prompt(prompt):
                    logger.warning(
                        f"Video {video_id}: scene {index} job {job_id} failed ({error}); "
                        f"retrying once with a safe prompt"
                    )
                    prompt = safe_scene_prompt(index)
                    attempts += 1
                    job_id = await self._submit(
                        video_id, run_token, index, prompt, scene.duration, attempts,
                        runway_prompt=prompt,
                    )
                    submitted = True
                    await self._sleep(self._poll_interval)
                    continue

                await self._store.update_scene(
                    video_id, run_token, index, status="failed", error_message=error[:1000],
                )
                logger.warning(f"Video {video_id}: scene {index} job failed: {error}")
                return SceneOutcome(index, "failed", error=error, submitted=submitted)

            if self._clock() >= deadline:
                error = f"Timed out after {self._max_wait:.0f}s waiting for job {job_id}"
                await self._store.update_scene(
                    video_id, run_token, index, status="failed", error_message=error,
                )
                logger.warning(f"Video {video_id}: scene {index} {error}")
                return SceneOutcome(index, "failed", error=error, submitted=submitted)

            # Still running: keep the claim alive, then wait for the next round
            await self._store.renew_lease(video_id, run_token)
            await self._sleep(self._poll_interval)

    async def _submit(
        self,
        video_id: uuid.UUID,
        run_token: str,
        index: int,
        prompt: str,
        duration: float,
        attempts: int,
        **fields,
    ) -> str:
        """Submit a job and persist processing + job id before any poll."""
        job_id = await self._client.submit(prompt, duration)
        await self._store.update_scene(
            video_id, run_token, index,
            status="processing",
            external_job_id=job_id,
            runway_video_url=None,
            error_message=None,
            attempts=attempts,
            **fields,
        )
        logger.info(f"Video {video_id}: scene {index} submitted as job {job_id} (attempt {attempts})")
        return job_id
