"""Tests for RunStateStore: claims, fencing, and the step log."""

import pytest

from conftest import blueprint_scenes, expire_lease, make_run
from docuvid.exceptions import LeaseLost


async def test_upsert_returns_same_run_for_thought(store):
    thought = await store.create_thought("why does everyone seem ahead of me")
    first = await store.upsert_run_for_thought(thought.id)
    second = await store.upsert_run_for_thought(thought.id)

    assert first.id == second.id
    assert first.pipeline_status == "pending"
    assert first.version == 0


async def test_get_missing_run_is_none(store):
    import uuid

    assert await store.get_run(uuid.uuid4()) is None
    assert await store.get_run_detail(uuid.uuid4()) is None


# ---------------------------------------------------------------------------
# Claims
# ---------------------------------------------------------------------------

async def test_claim_bumps_version_and_sets_status(store):
    video = await make_run(store)
    token = await store.claim_run(video.id, video.version, "understanding")

    assert token is not None
    claimed = await store.get_run(video.id)
    assert claimed.pipeline_status == "understanding"
    assert claimed.run_token == token
    assert claimed.version == video.version + 1
    assert claimed.lease_expires_at is not None


async def test_second_claim_with_stale_version_fails(store):
    video = await make_run(store)
    assert await store.claim_run(video.id, video.version, "understanding") is not None
    assert await store.claim_run(video.id, video.version, "understanding") is None


async def test_active_run_with_live_lease_cannot_be_claimed(store):
    video = await make_run(store)
    await store.claim_run(video.id, video.version, "understanding")

    current = await store.get_run(video.id)
    assert await store.claim_run(video.id, current.version, "understanding") is None


async def test_expired_lease_can_be_taken_over(store, session_factory):
    video = await make_run(store)
    old_token = await store.claim_run(video.id, video.version, "understanding")
    await expire_lease(session_factory, video.id)

    current = await store.get_run(video.id)
    new_token = await store.claim_run(video.id, current.version, "understanding")

    assert new_token is not None
    assert new_token != old_token


async def test_claim_clears_previous_failure(store):
    video = await make_run(store)
    token = await store.claim_run(video.id, video.version, "understanding")
    await store.fail_run(video.id, token, 3, "Blueprint failed: boom")

    failed = await store.get_run(video.id)
    assert await store.claim_run(video.id, failed.version, "blueprint") is not None

    video = await store.get_run(video.id)
    assert video.pipeline_status == "blueprint"
    assert video.error_layer is None
    assert video.error_message is None


# ---------------------------------------------------------------------------
# Fenced writes
# ---------------------------------------------------------------------------

async def test_stale_token_writes_raise_lease_lost(store, session_factory):
    video = await make_run(store)
    old_token = await store.claim_run(video.id, video.version, "generating")
    await store.replace_scenes(video.id, old_token, blueprint_scenes(2))
    await expire_lease(session_factory, video.id)
    current = await store.get_run(video.id)
    await store.claim_run(video.id, current.version, "generating")

    with pytest.raises(LeaseLost):
        await store.transition(video.id, old_token, "assembling")
    with pytest.raises(LeaseLost):
        await store.update_scene(video.id, old_token, 0, status="ready")
    with pytest.raises(LeaseLost):
        await store.replace_scenes(video.id, old_token, blueprint_scenes(3))
    with pytest.raises(LeaseLost):
        await store.fail_run(video.id, old_token, 6, "too late")

    video = await store.get_run(video.id)
    assert video.pipeline_status == "generating"
    assert [s.status for s in await store.list_scenes(video.id)] == ["pending", "pending"]


async def test_fail_run_releases_claim_and_truncates(store):
    video = await make_run(store)
    token = await store.claim_run(video.id, video.version, "understanding")
    await store.fail_run(video.id, token, 1, "x" * 5000)

    video = await store.get_run(video.id)
    assert video.pipeline_status == "failed"
    assert video.error_layer == 1
    assert len(video.error_message) == 2000
    assert video.run_token is None
    assert video.lease_expires_at is None


async def test_complete_run_sets_outputs(store):
    video = await make_run(store)
    token = await store.claim_run(video.id, video.version, "assembling")
    await store.complete_run(
        video.id, token,
        final_video_url="/media/v/output/final.mp4",
        thumbnail_url=None,
        total_duration=30.0,
    )

    video = await store.get_run(video.id)
    assert video.pipeline_status == "ready"
    assert video.final_video_url == "/media/v/output/final.mp4"
    assert video.run_token is None


async def test_reset_generated_content_drops_scenes_and_segments(store):
    video = await make_run(store)
    token = await store.claim_run(video.id, video.version, "blueprint")
    await store.replace_scenes(video.id, token, blueprint_scenes(3))
    await store.replace_narration_segments(video.id, token, {"validation": "It is hard."})

    await store.reset_generated_content(video.id, token)

    assert await store.list_scenes(video.id) == []
    assert await store.list_segments(video.id) == []


async def test_completed_steps_flags(store):
    video = await make_run(store)
    token = await store.claim_run(video.id, video.version, "understanding")
    assert await store.completed_steps(video.id) == {
        "has_understanding": False,
        "has_scenes": False,
        "has_ready_scenes": False,
        "has_inflight_scenes": False,
    }

    await store.save_artifacts(video.id, token, understanding={"a": 1}, perspective={"b": 2})
    await store.replace_scenes(video.id, token, blueprint_scenes(3))
    await store.update_scene(video.id, token, 0, status="ready", runway_video_url="https://x/0.mp4")
    await store.update_scene(video.id, token, 1, status="processing", external_job_id="job-1")

    assert await store.completed_steps(video.id) == {
        "has_understanding": True,
        "has_scenes": True,
        "has_ready_scenes": True,
        "has_inflight_scenes": True,
    }


async def test_scenes_listed_in_index_order(store):
    video = await make_run(store)
    token = await store.claim_run(video.id, video.version, "blueprint")
    await store.replace_scenes(video.id, token, list(reversed(blueprint_scenes(4))))

    assert [s.scene_index for s in await store.list_scenes(video.id)] == [0, 1, 2, 3]


# ---------------------------------------------------------------------------
# Step log
# ---------------------------------------------------------------------------

async def test_record_step_appends_in_order(store):
    video = await make_run(store)
    token = await store.claim_run(video.id, video.version, "understanding")
    await store.record_step(video.id, 1, "understanding", 120, {"ok": True}, run_token=token)
    await store.record_step(video.id, 2, "perspective", 80, run_token=token)

    steps = await store.list_steps(video.id)
    assert [(s.layer, s.step) for s in steps] == [(1, "understanding"), (2, "perspective")]
    assert steps[0].payload == {"ok": True}
    assert steps[0].duration_ms == 120


async def test_record_step_with_stale_token_writes_nothing(store, session_factory):
    video = await make_run(store)
    old_token = await store.claim_run(video.id, video.version, "understanding")
    await expire_lease(session_factory, video.id)
    current = await store.get_run(video.id)
    await store.claim_run(video.id, current.version, "understanding")

    # Never raises
    await store.record_step(video.id, 1, "understanding", 10, run_token=old_token)

    assert await store.list_steps(video.id) == []
