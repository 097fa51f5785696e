"""Tests for text-to-video prompt composition."""

from docuvid.pipeline.scene_prompts import (
    SETTING_DESCRIPTIONS,
    TIME_OF_DAY_LIGHTING,
    build_scene_prompt,
    enforce_prompt_ceiling,
    truncate_description,
)


def test_short_description_is_kept_whole():
    assert truncate_description("A woman waits for a bus.") == "A woman waits for a bus."


def test_description_whitespace_is_collapsed():
    assert truncate_description("rain   on\n the window") == "rain on the window"


def test_long_description_is_cut_with_ellipsis():
    description = "word " * 100
    result = truncate_description(description, 200)
    assert len(result) <= 200
    assert result.endswith("...")


def test_prompt_has_style_setting_and_lighting():
    prompt = build_scene_prompt("a man ties his shoes on a bench", "dusk", "public_space")

    assert prompt.startswith("Photorealistic documentary, handheld camera, a man ties his shoes on a bench")
    assert SETTING_DESCRIPTIONS["public_space"] in prompt
    assert TIME_OF_DAY_LIGHTING["dusk"] in prompt
    assert "35mm film grain" in prompt
    assert prompt.endswith("No faces, no drama.")


def test_unknown_time_and_setting_fall_back():
    prompt = build_scene_prompt("an empty kitchen", "teatime", "spaceship")

    assert TIME_OF_DAY_LIGHTING["morning"] in prompt
    assert SETTING_DESCRIPTIONS["urban"] in prompt


def test_description_longer_than_limit_is_truncated_in_prompt():
    description = "x" * 500
    prompt = build_scene_prompt(description, "night", "rural", description_chars=200)

    assert "x" * 197 + "..." in prompt
    assert "x" * 198 not in prompt


def test_prompt_never_exceeds_ceiling():
    prompt = build_scene_prompt("y" * 500, "night", "rural", description_chars=400, max_chars=300)
    assert len(prompt) <= 300


def test_ceiling_leaves_short_prompts_alone():
    assert enforce_prompt_ceiling("short", 10) == "short"
