"""API route handlers and Pydantic request/response schemas.

Response bodies use camelCase field names; they are a compatibility contract
with the web client.
"""

import logging
import secrets
import uuid
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from docuvid.config import settings
from docuvid.exceptions import InputTooLongError
from docuvid.orchestrator.state import is_claimable, status_to_layer
from docuvid.orchestrator.store import RunStateStore
from docuvid.pipeline.stages import StageContext, StageExecutors, prepare_prompt
from docuvid.workers.pipeline_tasks import run_pipeline_background

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

_bearer = HTTPBearer(auto_error=False)


# ============================================================================
# Dependencies
# ============================================================================

_store: Optional[RunStateStore] = None
_executors: Optional[StageExecutors] = None


def get_store() -> RunStateStore:
    global _store
    if _store is None:
        _store = RunStateStore()
    return _store


def get_executors() -> StageExecutors:
    global _executors
    if _executors is None:
        _executors = StageExecutors.from_settings()
    return _executors


def get_pipeline_launcher():
    """Callable scheduled as a background task to run a video's pipeline."""
    return run_pipeline_background


async def close_executors() -> None:
    global _executors
    if _executors is not None:
        await _executors.close()
        _executors = None


async def require_api_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
) -> None:
    """Reject the request with 401 unless it carries the configured bearer token."""
    expected = settings.server.api_token
    if not expected:
        return
    if credentials is None or not secrets.compare_digest(credentials.credentials, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


# ============================================================================
# Schemas
# ============================================================================

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ThoughtRequest(CamelModel):
    text: str = Field(min_length=1)


class ThoughtResponse(CamelModel):
    id: str
    original_text: str
    analysis: Optional[dict] = None
    essay: Optional[dict] = None


class TriggerRequest(CamelModel):
    thought_id: uuid.UUID


class TriggerResponse(CamelModel):
    video_id: str
    status: str


class SceneStatus(CamelModel):
    index: int
    status: str
    video_url: Optional[str] = None


class NarrationStatus(CamelModel):
    status: str
    audio_url: Optional[str] = None


class VideoStatusResponse(CamelModel):
    id: str
    status: str
    current_layer: int
    error_message: Optional[str] = None
    error_layer: Optional[int] = None
    final_video_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    total_duration: Optional[float] = None
    scenes: list[SceneStatus] = []
    narration: dict[str, NarrationStatus] = {}


class VideoSummary(CamelModel):
    id: str
    thought_id: str
    status: str
    current_layer: int


class StepResponse(CamelModel):
    layer: int
    step: str
    duration_ms: int
    payload: Optional[dict[str, Any]] = None
    created_at: datetime


class PipelineRunResponse(CamelModel):
    video_id: str
    pipeline_status: str
    current_layer: int
    error_message: Optional[str] = None
    error_layer: Optional[int] = None
    steps: list[StepResponse] = []


# ============================================================================
# Endpoint Handlers
# ============================================================================

@router.get("/health")
async def health():
    return {"status": "ok"}


@router.post("/thoughts", status_code=201, response_model=ThoughtResponse)
async def create_thought(
    request: ThoughtRequest,
    store: RunStateStore = Depends(get_store),
    executors: StageExecutors = Depends(get_executors),
):
    """Store a prompt with its analysis and essay framing.

    Analysis and essay fall back to defaults when the text model is unavailable,
    so this only fails on invalid input.
    """
    try:
        text = prepare_prompt(request.text, settings.pipeline.max_input_chars)
    except InputTooLongError as e:
        raise HTTPException(status_code=400, detail=str(e))

    ctx = StageContext(prompt=text)
    analysis = await executors.analyze_prompt(ctx)
    ctx.analysis = analysis.artifact
    essay = await executors.draft_essay(ctx)

    thought = await store.create_thought(text, analysis=analysis.artifact, essay=essay.artifact)
    return ThoughtResponse(
        id=str(thought.id),
        original_text=thought.original_text,
        analysis=thought.analysis,
        essay=thought.essay,
    )


@router.get("/thoughts/{thought_id}", response_model=ThoughtResponse)
async def get_thought(thought_id: uuid.UUID, store: RunStateStore = Depends(get_store)):
    thought = await store.get_thought(thought_id)
    if thought is None:
        raise HTTPException(status_code=404, detail="Thought not found")
    return ThoughtResponse(
        id=str(thought.id),
        original_text=thought.original_text,
        analysis=thought.analysis,
        essay=thought.essay,
    )


@router.post(
    "/video",
    response_model=TriggerResponse,
    dependencies=[Depends(require_api_token)],
)
async def trigger_video(
    request: TriggerRequest,
    background_tasks: BackgroundTasks,
    store: RunStateStore = Depends(get_store),
    launcher=Depends(get_pipeline_launcher),
):
    """Create or resume the video for a thought and start the pipeline in background.

    Returns immediately. A run that is already active is left alone; the
    background runner's claim will simply find it taken.
    """
    thought = await store.get_thought(request.thought_id)
    if thought is None:
        raise HTTPException(status_code=404, detail="Thought not found")
    try:
        prepare_prompt(thought.original_text, settings.pipeline.max_input_chars)
    except InputTooLongError as e:
        raise HTTPException(status_code=400, detail=str(e))

    video = await store.upsert_run_for_thought(thought.id)
    background_tasks.add_task(launcher, video.id)
    if is_claimable(video.pipeline_status):
        logger.info(f"Video {video.id}: pipeline scheduled for thought {thought.id}")
    else:
        logger.info(f"Video {video.id}: run is {video.pipeline_status}; runner will claim only if its lease expired")

    return TriggerResponse(video_id=str(video.id), status=video.pipeline_status)


@router.get("/videos", response_model=list[VideoSummary])
async def list_videos(limit: int = 50, store: RunStateStore = Depends(get_store)):
    videos = await store.list_runs(limit=min(max(limit, 1), 200))
    return [
        VideoSummary(
            id=str(v.id),
            thought_id=str(v.thought_id),
            status=v.pipeline_status,
            current_layer=status_to_layer(v.pipeline_status, v.error_layer),
        )
        for v in videos
    ]


@router.get(
    "/video/{video_id}",
    response_model=VideoStatusResponse,
    response_model_exclude_none=True,
)
async def get_video_status(video_id: uuid.UUID, store: RunStateStore = Depends(get_store)):
    """Current status for polling. Read-only."""
    detail = await store.get_run_detail(video_id)
    if detail is None:
        raise HTTPException(status_code=404, detail="Video not found")

    video = detail.video
    return VideoStatusResponse(
        id=str(video.id),
        status=video.pipeline_status,
        current_layer=status_to_layer(video.pipeline_status, video.error_layer),
        error_message=video.error_message if video.pipeline_status == "failed" else None,
        error_layer=video.error_layer if video.pipeline_status == "failed" else None,
        final_video_url=video.final_video_url if video.pipeline_status == "ready" else None,
        thumbnail_url=video.thumbnail_url if video.pipeline_status == "ready" else None,
        total_duration=video.total_duration if video.pipeline_status == "ready" else None,
        scenes=[
            SceneStatus(
                index=scene.scene_index,
                status=scene.status,
                video_url=scene.runway_video_url if scene.status == "ready" else None,
            )
            for scene in detail.scenes
        ],
        narration={
            segment.segment_type: NarrationStatus(
                status=segment.status,
                audio_url=segment.audio_url if segment.status == "ready" else None,
            )
            for segment in detail.segments
        },
    )


@router.get(
    "/video/{video_id}/pipeline-run",
    response_model=PipelineRunResponse,
    response_model_exclude_none=True,
)
async def get_pipeline_run(video_id: uuid.UUID, store: RunStateStore = Depends(get_store)):
    """Run status plus the ordered step log. Read-only."""
    video = await store.get_run(video_id)
    if video is None:
        raise HTTPException(status_code=404, detail="Video not found")
    steps = await store.list_steps(video_id)
    return PipelineRunResponse(
        video_id=str(video.id),
        pipeline_status=video.pipeline_status,
        current_layer=status_to_layer(video.pipeline_status, video.error_layer),
        error_message=video.error_message,
        error_layer=video.error_layer,
        steps=[
            StepResponse(
                layer=step.layer,
                step=step.step,
                duration_ms=step.duration_ms,
                payload=step.payload,
                created_at=step.created_at,
            )
            for step in steps
        ],
    )
