"""Tests for the layer-6 scene scheduler."""

import asyncio
import itertools

import pytest

from conftest import FakeTaskClient, blueprint_scenes, make_run, no_sleep
from docuvid.exceptions import LeaseLost
from docuvid.orchestrator.scheduler import SceneScheduler, SchedulerSummary, SceneOutcome
from docuvid.pipeline.scene_prompts import safe_scene_prompt


async def planned_run(store, count=5):
    video = await make_run(store)
    token = await store.claim_run(video.id, video.version, "generating")
    await store.replace_scenes(video.id, token, blueprint_scenes(count))
    return video.id, token


def scheduler_for(store, client, **kwargs):
    kwargs.setdefault("max_in_flight", 3)
    kwargs.setdefault("poll_interval", 0)
    kwargs.setdefault("max_wait", 60)
    return SceneScheduler(store, client, sleep=no_sleep, **kwargs)


async def test_all_scenes_ready(store):
    video_id, token = await planned_run(store)
    client = FakeTaskClient()

    summary = await scheduler_for(store, client).run(video_id, token, await store.list_scenes(video_id))

    assert summary.total == 5
    assert len(summary.ready) == 5
    assert sorted(client.submitted) == [0, 1, 2, 3, 4]
    scenes = await store.list_scenes(video_id)
    assert all(s.status == "ready" and s.runway_video_url for s in scenes)
    assert all(s.attempts == 1 for s in scenes)


async def test_failed_scene_does_not_touch_others(store):
    video_id, token = await planned_run(store)
    client = FakeTaskClient(outcomes={1: "failed", 3: "rejected"})

    summary = await scheduler_for(store, client).run(video_id, token, await store.list_scenes(video_id))

    assert [o.status for o in summary.outcomes] == ["ready", "failed", "ready", "failed", "ready"]
    scenes = {s.scene_index: s for s in await store.list_scenes(video_id)}
    assert scenes[1].error_message == "content moderation"
    assert "400" in scenes[3].error_message
    assert {i for i, s in scenes.items() if s.status == "ready"} == {0, 2, 4}


async def test_outcomes_sorted_by_index_regardless_of_completion(store):
    video_id, token = await planned_run(store)
    client = FakeTaskClient(polls_before_done=2)

    summary = await scheduler_for(store, client, max_in_flight=5).run(
        video_id, token, list(reversed(await store.list_scenes(video_id)))
    )

    assert [o.scene_index for o in summary.outcomes] == [0, 1, 2, 3, 4]


async def test_concurrency_is_bounded(store):
    video_id, token = await planned_run(store)
    client = FakeTaskClient(polls_before_done=3)

    await scheduler_for(store, client, max_in_flight=2).run(
        video_id, token, await store.list_scenes(video_id)
    )

    assert client.max_active == 2


async def test_ready_scenes_are_not_resubmitted(store):
    video_id, token = await planned_run(store)
    await store.update_scene(video_id, token, 0, status="ready", runway_video_url="https://x/0.mp4")
    await store.update_scene(video_id, token, 2, status="ready", runway_video_url="https://x/2.mp4")
    client = FakeTaskClient()

    summary = await scheduler_for(store, client).run(video_id, token, await store.list_scenes(video_id))

    assert sorted(client.submitted) == [1, 3, 4]
    assert summary.outcomes[0].video_url == "https://x/0.mp4"
    assert summary.as_payload()["submitted"] == 3


async def test_processing_scene_is_polled_not_resubmitted(store):
    video_id, token = await planned_run(store, count=2)
    await store.update_scene(
        video_id, token, 1, status="processing", external_job_id="job-earlier", attempts=1
    )
    client = FakeTaskClient()
    client.register_job("job-earlier", 1)

    await scheduler_for(store, client).run(video_id, token, await store.list_scenes(video_id))

    assert client.submitted == [0]
    assert "job-earlier" in client.polled
    scene = (await store.list_scenes(video_id))[1]
    assert scene.status == "ready"
    assert scene.attempts == 1


async def test_scene_times_out(store):
    video_id, token = await planned_run(store, count=1)
    client = FakeTaskClient(outcomes={0: "running"})
    ticks = itertools.count(step=100)

    summary = await scheduler_for(
        store, client, max_wait=250, clock=lambda: next(ticks)
    ).run(video_id, token, await store.list_scenes(video_id))

    assert summary.outcomes[0].status == "failed"
    assert "Timed out" in summary.outcomes[0].error
    assert len(client.polled) == 3
    scene = (await store.list_scenes(video_id))[0]
    assert scene.status == "failed"
    assert scene.external_job_id is not None


async def test_lost_claim_stops_all_scenes(store, session_factory):
    from conftest import expire_lease

    video_id, token = await planned_run(store, count=3)

    async def steal(index):
        if index == 0:
            await expire_lease(session_factory, video_id)
            current = await store.get_run(video_id)
            await store.claim_run(video_id, current.version, "generating")

    client = FakeTaskClient(on_submit=steal)

    with pytest.raises(LeaseLost):
        await scheduler_for(store, client, max_in_flight=1).run(
            video_id, token, await store.list_scenes(video_id)
        )

    assert all(s.status == "pending" for s in await store.list_scenes(video_id))


async def test_failed_job_retried_once_with_safe_prompt(store):
    video_id, token = await planned_run(store, count=3)
    client = FakeTaskClient(outcomes={1: "filtered"})

    summary = await scheduler_for(store, client).run(video_id, token, await store.list_scenes(video_id))

    assert [o.status for o in summary.outcomes] == ["ready", "ready", "ready"]
    assert client.safe_submitted == [1]
    scene = (await store.list_scenes(video_id))[1]
    assert scene.runway_prompt == safe_scene_prompt(1)
    assert scene.attempts == 2
    assert scene.runway_video_url.endswith(f"/{scene.external_job_id}.mp4")


async def test_safe_prompt_retry_happens_only_once(store):
    video_id, token = await planned_run(store, count=2)
    client = FakeTaskClient(outcomes={0: "failed"})

    summary = await scheduler_for(store, client).run(video_id, token, await store.list_scenes(video_id))

    assert summary.outcomes[0].status == "failed"
    assert client.safe_submitted == [0]
    assert client.submitted.count(0) == 2
    scene = (await store.list_scenes(video_id))[0]
    assert scene.status == "failed"
    assert scene.attempts == 2


async def test_rejected_submit_is_not_retried_with_safe_prompt(store):
    video_id, token = await planned_run(store, count=1)
    client = FakeTaskClient(outcomes={0: "rejected"})

    summary = await scheduler_for(store, client).run(video_id, token, await store.list_scenes(video_id))

    assert summary.outcomes[0].status == "failed"
    assert client.safe_submitted == []


async def test_unexpected_error_cancels_sibling_scenes(store, monkeypatch):
    video_id, token = await planned_run(store)
    client = FakeTaskClient(outcomes={0: "failed", 1: "running", 2: "running", 3: "running", 4: "running"})
    update_scene = store.update_scene

    async def locked_on_scene_zero_failure(vid, run_token, scene_index, **fields):
        if scene_index == 0 and fields.get("status") == "failed":
            raise RuntimeError("database is locked")
        await update_scene(vid, run_token, scene_index, **fields)

    monkeypatch.setattr(store, "update_scene", locked_on_scene_zero_failure)

    with pytest.raises(RuntimeError, match="database is locked"):
        await scheduler_for(store, client, max_in_flight=5).run(
            video_id, token, await store.list_scenes(video_id)
        )

    polls_at_raise = len(client.polled)
    for _ in range(20):
        await asyncio.sleep(0)
    assert len(client.polled) == polls_at_raise


def test_summary_threshold():
    outcomes = [SceneOutcome(i, "ready") for i in range(3)] + [SceneOutcome(3, "failed"), SceneOutcome(4, "failed")]
    summary = SchedulerSummary(outcomes)

    assert summary.ready_fraction == pytest.approx(0.6)
    assert summary.meets_threshold(0.6)
    assert not summary.meets_threshold(0.8)
    assert not SchedulerSummary([]).meets_threshold(0.1)
