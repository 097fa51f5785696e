"""Shared fixtures: a throwaway SQLite database and in-memory provider fakes.

Nothing here talks to a real model, Runway, ElevenLabs or ffmpeg.
"""

import asyncio
import os
import re
import tempfile
from pathlib import Path

# Settings are read at import time; point storage somewhere disposable first
_TMP = Path(tempfile.mkdtemp(prefix="docuvid-tests-"))
os.environ.setdefault("DOCUVID_STORAGE__DATABASE_URL", f"sqlite+aiosqlite:///{_TMP / 'docuvid.db'}")
os.environ.setdefault("DOCUVID_STORAGE__MEDIA_DIR", str(_TMP / "media"))

import pytest
import pytest_asyncio
from sqlalchemy import update

from docuvid.config import PipelineConfig
from docuvid.db import Video, create_engine, create_session_factory, init_database
from docuvid.exceptions import AssemblyError, PermanentProviderError
from docuvid.orchestrator.pipeline import PipelineServices
from docuvid.orchestrator.store import RunStateStore
from docuvid.pipeline.assembly import AssemblyResult
from docuvid.pipeline.scene_prompts import SAFE_SCENE_PROMPTS
from docuvid.pipeline.stages import StageExecutors
from docuvid.schemas.documentary import (
    BlueprintScene,
    Essay,
    NarrationScript,
    Perspective,
    PromptAnalysis,
    SceneBlueprint,
    Understanding,
)
from docuvid.services.runway_client import TaskStatus

PROMPT = "I keep comparing my life to everyone else's and I always come up short."

_SCENE_INDEX = re.compile(r"scene-(\d+)")


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_database(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def store(session_factory):
    return RunStateStore(session_factory, lease_seconds=600)


async def expire_lease(session_factory, video_id):
    """Simulate a crashed runner whose lease ran out."""
    async with session_factory() as session:
        await session.execute(
            update(Video)
            .where(Video.id == video_id)
            .values(lease_expires_at=None)
        )
        await session.commit()


async def make_run(store: RunStateStore, text: str = PROMPT) -> Video:
    thought = await store.create_thought(text)
    return await store.upsert_run_for_thought(thought.id)


def blueprint_scenes(count: int = 5) -> list[dict]:
    """Scene rows as replace_scenes() expects them."""
    return [
        {
            "scene_index": i,
            "description": f"scene-{i} commuters waiting at a bus stop",
            "duration": 6,
            "time_of_day": "dawn",
            "setting": "urban",
            "runway_prompt": f"Photorealistic documentary, scene-{i} commuters waiting",
        }
        for i in range(count)
    ]


# ---------------------------------------------------------------------------
# Provider fakes
# ---------------------------------------------------------------------------

def default_responses(scene_count: int = 5) -> dict:
    return {
        PromptAnalysis: PromptAnalysis(
            emotion="inadequacy", distortion_type="comparison", intensity=6, themes=["comparison"]
        ),
        Essay: Essay(
            title="Everyone else",
            thesis="Comparison hides how common the struggle is.",
            outline=["a", "b", "c"],
            essay_text="We measure ourselves against edited lives.",
        ),
        Understanding: Understanding(
            core_loss="a sense of enoughness",
            hidden_fear="falling permanently behind",
            existential_question="Is my pace allowed?",
        ),
        Perspective: Perspective(
            posture="shared_human_struggle",
            core_insight="Everyone is quietly behind on something.",
            avoid=["comparison"],
        ),
        SceneBlueprint: SceneBlueprint(
            scenes=[
                BlueprintScene(
                    description=f"scene-{i} commuters waiting at a bus stop",
                    duration=6,
                    time_of_day="dawn",
                    setting="urban",
                )
                for i in range(scene_count)
            ]
        ),
        NarrationScript: NarrationScript(
            validation="It is hard to watch others seem to move faster.",
            perspective="Most people feel behind in some part of their life.",
            agency="Your pace is still a pace.",
        ),
    }


class FakeAdapter:
    """LLMAdapter stand-in returning canned schema instances.

    Schemas listed in `failing` raise instead; every call is recorded by
    schema name.
    """

    def __init__(self, responses=None, failing=(), delay: float = 0.0):
        self.responses = responses if responses is not None else default_responses()
        self.failing = set(failing)
        self.delay = delay
        self.calls: list[str] = []

    async def generate_text(self, prompt, schema, *, temperature=0.7, system_prompt=None, max_retries=3):
        self.calls.append(schema.__name__)
        if self.delay:
            await asyncio.sleep(self.delay)
        if schema in self.failing or schema not in self.responses:
            raise RuntimeError(f"{schema.__name__} unavailable")
        return self.responses[schema]


class FakeTTS:
    configured = True

    def __init__(self, fail=()):
        self.fail = set(fail)
        self.texts: list[str] = []

    async def synthesize(self, text: str) -> bytes:
        self.texts.append(text)
        if text in self.fail:
            raise PermanentProviderError("voice rejected")
        return b"ID3fake-mp3"

    async def close(self):
        pass


class FakeTaskClient:
    """Text-to-video client fake keyed by the scene index found in the prompt.

    outcomes maps scene index to one of:
        "done"     - done on the first poll
        "failed"   - provider reports the task failed, safe prompt included
        "filtered" - the scene's own prompt fails, its safe-prompt retry succeeds
        "running"  - never finishes
        "rejected" - submit raises PermanentProviderError (a 400)
    Unlisted scenes are "done". `polls_before_done` delays completion.
    """

    def __init__(self, outcomes=None, polls_before_done: int = 0, on_submit=None):
        self.outcomes = outcomes or {}
        self.polls_before_done = polls_before_done
        self.on_submit = on_submit
        self.submitted: list[int] = []
        self.safe_submitted: list[int] = []
        self.polled: list[str] = []
        self.completion_order: list[int] = []
        self._jobs: dict[str, int] = {}
        self._safe_jobs: set[str] = set()
        self._poll_counts: dict[str, int] = {}
        self._active: set[str] = set()
        self.max_active = 0

    def register_job(self, job_id: str, scene_index: int) -> None:
        """Make a job id known as if it had been submitted by an earlier run."""
        self._jobs[job_id] = scene_index

    async def submit(self, prompt: str, duration: float) -> str:
        safe = prompt in SAFE_SCENE_PROMPTS
        if safe:
            index = SAFE_SCENE_PROMPTS.index(prompt)
            self.safe_submitted.append(index)
        else:
            index = int(_SCENE_INDEX.search(prompt).group(1))
        self.submitted.append(index)
        if self.on_submit is not None:
            await self.on_submit(index)
        if self.outcomes.get(index) == "rejected" and not safe:
            raise PermanentProviderError("Runway rejected task (400)", status_code=400)
        job_id = f"job-{index}-{len(self.submitted)}"
        self._jobs[job_id] = index
        if safe:
            self._safe_jobs.add(job_id)
        self._track(job_id)
        return job_id

    def _track(self, job_id: str) -> None:
        self._active.add(job_id)
        self.max_active = max(self.max_active, len(self._active))

    async def poll(self, job_id: str) -> TaskStatus:
        self.polled.append(job_id)
        self._track(job_id)
        await asyncio.sleep(0)
        index = self._jobs[job_id]
        outcome = self.outcomes.get(index, "done")
        count = self._poll_counts[job_id] = self._poll_counts.get(job_id, 0) + 1

        if outcome == "running" or (outcome == "done" and count <= self.polls_before_done):
            return TaskStatus(state="running")
        self._active.discard(job_id)
        if outcome == "failed" or (outcome == "filtered" and job_id not in self._safe_jobs):
            return TaskStatus(state="failed", reason="content moderation")
        self.completion_order.append(index)
        return TaskStatus(state="done", video_url=f"https://cdn.example.com/{job_id}.mp4")

    async def close(self):
        pass


class FakeAssembler:
    """Records assemble() calls; raises the queued errors first."""

    def __init__(self, errors=()):
        self.errors = list(errors)
        self.calls: list[tuple[list[tuple[int, str]], list[str]]] = []

    async def assemble(self, video_id, scene_videos, narration_audio):
        self.calls.append((list(scene_videos), list(narration_audio)))
        if self.errors:
            raise self.errors.pop(0)
        if not scene_videos:
            raise AssemblyError("No ready scenes to assemble")
        return AssemblyResult(
            video_url=f"/media/{video_id}/output/final.mp4",
            thumbnail_url=f"/media/{video_id}/output/thumbnail.jpg",
            duration_seconds=6.0 * len(scene_videos),
        )


async def no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


def fast_config(**overrides) -> PipelineConfig:
    values = {
        "video_poll_interval": 0,
        "video_poll_max_wait": 60,
        "retry_base_delay": 0,
        "assembly_retry_attempts": 2,
    }
    values.update(overrides)
    return PipelineConfig(**values)


def build_services(
    adapter=None,
    task_client=None,
    assembler=None,
    tts=None,
    file_manager=None,
    **config,
) -> PipelineServices:
    return PipelineServices(
        executors=StageExecutors(
            adapter or FakeAdapter(),
            tts,
            file_manager,
            timeout=5,
            scene_count=5,
        ),
        task_client=task_client or FakeTaskClient(),
        assembler=assembler or FakeAssembler(),
        config=fast_config(**config),
        sleep=no_sleep,
    )


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest.fixture
def task_client():
    return FakeTaskClient()


@pytest.fixture
def assembler():
    return FakeAssembler()
