"""Run state store: durable records for runs, scenes, narration and steps.

Every operation opens its own short-lived session, so background runners never
share a session across tasks. Writes made on behalf of a pipeline runner are
fenced on the run_token issued by claim_run(): when the token no longer matches
the row, LeaseLost is raised and nothing is written.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docuvid.config import settings
from docuvid.db.engine import async_session
from docuvid.db.models import (
    NarrationSegment,
    PipelineStep,
    Thought,
    Video,
    VideoScene,
    utcnow,
)
from docuvid.exceptions import LeaseLost
from docuvid.orchestrator.state import IDLE_STATES

logger = logging.getLogger(__name__)


@dataclass
class RunDetail:
    """A run with its scenes (by scene_index) and narration segments."""

    video: Video
    scenes: list[VideoScene] = field(default_factory=list)
    segments: list[NarrationSegment] = field(default_factory=list)


class RunStateStore:
    """Persistence boundary for the orchestrator, scheduler and API."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        *,
        lease_seconds: Optional[float] = None,
    ):
        self._session_factory = session_factory or async_session
        if lease_seconds is None:
            lease_seconds = settings.pipeline.lease_seconds
        self._lease = timedelta(seconds=lease_seconds)

    @property
    def lease_seconds(self) -> float:
        return self._lease.total_seconds()

    def _lease_deadline(self):
        return utcnow() + self._lease

    # ------------------------------------------------------------------
    # Thoughts
    # ------------------------------------------------------------------

    async def create_thought(
        self,
        text: str,
        *,
        analysis: Optional[dict] = None,
        essay: Optional[dict] = None,
        input_type: str = "text",
    ) -> Thought:
        async with self._session_factory() as session:
            thought = Thought(
                original_text=text,
                input_type=input_type,
                analysis=analysis,
                essay=essay,
            )
            session.add(thought)
            await session.commit()
            await session.refresh(thought)
            return thought

    async def get_thought(self, thought_id: uuid.UUID) -> Optional[Thought]:
        async with self._session_factory() as session:
            return await session.get(Thought, thought_id)

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def upsert_run_for_thought(self, thought_id: uuid.UUID) -> Video:
        """Return the run for a thought, creating it in pending if absent.

        An existing run is returned untouched; whether it restarts is decided
        by the claim, not here.
        """
        async with self._session_factory() as session:
            query = select(Video).where(Video.thought_id == thought_id)
            video = (await session.execute(query)).scalar_one_or_none()
            if video is not None:
                return video

            session.add(Video(thought_id=thought_id, pipeline_status="pending"))
            try:
                await session.commit()
            except IntegrityError:
                # Lost the insert race to a concurrent trigger for the same thought
                await session.rollback()
            return (await session.execute(query)).scalar_one()

    async def get_run(self, video_id: uuid.UUID) -> Optional[Video]:
        async with self._session_factory() as session:
            return await session.get(Video, video_id)

    async def list_runs(self, limit: int = 50) -> list[Video]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Video).order_by(Video.created_at.desc()).limit(limit)
            )
            return list(result.scalars().all())

    async def get_run_detail(self, video_id: uuid.UUID) -> Optional[RunDetail]:
        async with self._session_factory() as session:
            video = await session.get(Video, video_id)
            if video is None:
                return None
            scenes = await session.execute(
                select(VideoScene)
                .where(VideoScene.video_id == video_id)
                .order_by(VideoScene.scene_index)
            )
            segments = await session.execute(
                select(NarrationSegment).where(NarrationSegment.video_id == video_id)
            )
            return RunDetail(
                video=video,
                scenes=list(scenes.scalars().all()),
                segments=list(segments.scalars().all()),
            )

    async def completed_steps(self, video_id: uuid.UUID) -> dict[str, bool]:
        """Summarize persisted progress for get_resume_step()."""
        detail = await self.get_run_detail(video_id)
        if detail is None:
            return {}
        video, scenes = detail.video, detail.scenes
        return {
            "has_understanding": video.understanding is not None and video.perspective is not None,
            "has_scenes": bool(scenes),
            "has_ready_scenes": any(
                s.status == "ready" and s.runway_video_url for s in scenes
            ),
            "has_inflight_scenes": any(
                s.status == "processing" and s.external_job_id for s in scenes
            ),
        }

    async def claim_run(
        self,
        video_id: uuid.UUID,
        observed_version: int,
        start_status: str,
    ) -> Optional[str]:
        """Atomically take ownership of a run.

        Succeeds only if the row still has observed_version and is either idle
        or holds an expired lease. Returns the new run token, or None when
        another runner owns the run or the row changed since it was read.
        """
        token = str(uuid.uuid4())
        now = utcnow()
        stmt = (
            update(Video)
            .where(
                Video.id == video_id,
                Video.version == observed_version,
                or_(
                    Video.pipeline_status.in_(IDLE_STATES),
                    Video.lease_expires_at.is_(None),
                    Video.lease_expires_at < now,
                ),
            )
            .values(
                pipeline_status=start_status,
                run_token=token,
                lease_expires_at=now + self._lease,
                version=Video.version + 1,
                error_layer=None,
                error_message=None,
                final_video_url=None,
                thumbnail_url=None,
                total_duration=None,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        if result.rowcount != 1:
            return None
        logger.info(f"Video {video_id}: claimed run starting at {start_status}")
        return token

    async def _fenced_update(self, video_id: uuid.UUID, run_token: str, /, **values: Any) -> None:
        if "lease_expires_at" not in values:
            values["lease_expires_at"] = self._lease_deadline()
        stmt = (
            update(Video)
            .where(Video.id == video_id, Video.run_token == run_token)
            .values(version=Video.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        if result.rowcount != 1:
            raise LeaseLost(video_id)

    async def transition(self, video_id: uuid.UUID, run_token: str, status: str, **fields: Any) -> None:
        """Persist a new pipeline_status (plus optional artifacts) and renew the lease."""
        await self._fenced_update(video_id, run_token, pipeline_status=status, **fields)

    async def save_artifacts(self, video_id: uuid.UUID, run_token: str, **artifacts: Any) -> None:
        await self._fenced_update(video_id, run_token, **artifacts)

    async def renew_lease(self, video_id: uuid.UUID, run_token: str) -> None:
        await self._fenced_update(video_id, run_token)

    async def fail_run(self, video_id: uuid.UUID, run_token: str, layer: Optional[int], message: str) -> None:
        """Mark the run failed at a layer and release the claim."""
        await self._fenced_update(
            video_id,
            run_token,
            pipeline_status="failed",
            error_layer=layer,
            error_message=message[:2000],
            run_token=None,
            lease_expires_at=None,
        )

    async def complete_run(
        self,
        video_id: uuid.UUID,
        run_token: str,
        *,
        final_video_url: str,
        thumbnail_url: Optional[str],
        total_duration: Optional[float],
    ) -> None:
        """Mark the run ready with its final outputs and release the claim."""
        await self._fenced_update(
            video_id,
            run_token,
            pipeline_status="ready",
            final_video_url=final_video_url,
            thumbnail_url=thumbnail_url,
            total_duration=total_duration,
            run_token=None,
            lease_expires_at=None,
        )

    async def _lock_owned_run(self, session: AsyncSession, video_id: uuid.UUID, run_token: str) -> None:
        """Renew the lease inside session's transaction, taking the write lock.

        Later statements in the same transaction then commit only if the token
        still matched at this point.
        """
        result = await session.execute(
            update(Video)
            .where(Video.id == video_id, Video.run_token == run_token)
            .values(lease_expires_at=self._lease_deadline())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await session.rollback()
            raise LeaseLost(video_id)

    # ------------------------------------------------------------------
    # Scenes
    # ------------------------------------------------------------------

    async def reset_generated_content(self, video_id: uuid.UUID, run_token: str) -> None:
        """Drop scenes and narration segments before a fresh run."""
        async with self._session_factory() as session:
            await self._lock_owned_run(session, video_id, run_token)
            await session.execute(delete(VideoScene).where(VideoScene.video_id == video_id))
            await session.execute(
                delete(NarrationSegment).where(NarrationSegment.video_id == video_id)
            )
            await session.commit()

    async def replace_scenes(self, video_id: uuid.UUID, run_token: str, scenes: list[dict]) -> None:
        """Replace the run's scenes with freshly planned pending ones."""
        async with self._session_factory() as session:
            await self._lock_owned_run(session, video_id, run_token)
            await session.execute(delete(VideoScene).where(VideoScene.video_id == video_id))
            for scene in scenes:
                session.add(VideoScene(video_id=video_id, status="pending", **scene))
            await session.commit()

    async def list_scenes(self, video_id: uuid.UUID) -> list[VideoScene]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(VideoScene)
                .where(VideoScene.video_id == video_id)
                .order_by(VideoScene.scene_index)
            )
            return list(result.scalars().all())

    async def update_scene(
        self,
        video_id: uuid.UUID,
        run_token: str,
        scene_index: int,
        **fields: Any,
    ) -> None:
        """Fenced single-statement update of one scene."""
        owns_run = (
            select(Video.id)
            .where(Video.id == video_id, Video.run_token == run_token)
            .exists()
        )
        stmt = (
            update(VideoScene)
            .where(
                VideoScene.video_id == video_id,
                VideoScene.scene_index == scene_index,
                owns_run,
            )
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        if result.rowcount != 1:
            raise LeaseLost(video_id)

    # ------------------------------------------------------------------
    # Narration segments
    # ------------------------------------------------------------------

    async def replace_narration_segments(
        self,
        video_id: uuid.UUID,
        run_token: str,
        segments: dict[str, str],
    ) -> None:
        async with self._session_factory() as session:
            await self._lock_owned_run(session, video_id, run_token)
            await session.execute(
                delete(NarrationSegment).where(NarrationSegment.video_id == video_id)
            )
            for segment_type, text in segments.items():
                session.add(
                    NarrationSegment(
                        video_id=video_id,
                        segment_type=segment_type,
                        text=text,
                        status="pending",
                    )
                )
            await session.commit()

    async def update_segment(
        self,
        video_id: uuid.UUID,
        run_token: str,
        segment_type: str,
        **fields: Any,
    ) -> None:
        owns_run = (
            select(Video.id)
            .where(Video.id == video_id, Video.run_token == run_token)
            .exists()
        )
        stmt = (
            update(NarrationSegment)
            .where(
                NarrationSegment.video_id == video_id,
                NarrationSegment.segment_type == segment_type,
                owns_run,
            )
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        if result.rowcount != 1:
            raise LeaseLost(video_id)

    async def list_segments(self, video_id: uuid.UUID) -> list[NarrationSegment]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(NarrationSegment).where(NarrationSegment.video_id == video_id)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Step log
    # ------------------------------------------------------------------

    async def record_step(
        self,
        video_id: uuid.UUID,
        layer: int,
        step: str,
        duration_ms: int,
        payload: Optional[dict] = None,
        *,
        run_token: Optional[str] = None,
    ) -> None:
        """Append a PipelineStep row. Never raises.

        With run_token, the row is written only while the token still owns
        the run.
        """
        try:
            async with self._session_factory() as session:
                if run_token is not None:
                    await self._lock_owned_run(session, video_id, run_token)
                session.add(
                    PipelineStep(
                        video_id=video_id,
                        layer=layer,
                        step=step,
                        duration_ms=duration_ms,
                        payload=payload,
                    )
                )
                await session.commit()
        except (SQLAlchemyError, LeaseLost) as e:
            logger.warning(f"Video {video_id}: could not record step {step}: {type(e).__name__}: {e}")

    async def list_steps(self, video_id: uuid.UUID) -> list[PipelineStep]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(PipelineStep)
                .where(PipelineStep.video_id == video_id)
                .order_by(PipelineStep.created_at, PipelineStep.id)
            )
            return list(result.scalars().all())
