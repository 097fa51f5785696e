"""State machine constants and transition logic for the pipeline orchestrator.

Defines the ordered run statuses, the seven pipeline layers, and the single
status-to-layer mapping shared by the orchestrator and the status endpoint.
"""

from typing import Dict, Optional

# Pipeline states in execution order
PIPELINE_STATES = {
    "pending": "Run created, nothing started yet",
    "understanding": "Deep understanding and perspective (layers 1-2)",
    "blueprint": "Scene blueprint, narration script and audio (layers 3-5)",
    "generating": "External scene video generation (layer 6)",
    "assembling": "Concatenating ready scenes with narration (layer 7)",
    "ready": "Final video available",
    "failed": "Run stopped at error_layer",
}

# State transitions for active pipeline steps
STEP_TRANSITIONS = {
    "pending": "understanding",
    "understanding": "blueprint",
    "blueprint": "generating",
    "generating": "assembling",
    "assembling": "ready",
}

# States a new runner may claim without waiting for a lease to expire
IDLE_STATES = {"pending", "failed", "ready"}

LAYER_UNDERSTANDING = 1
LAYER_PERSPECTIVE = 2
LAYER_BLUEPRINT = 3
LAYER_NARRATION_SCRIPT = 4
LAYER_NARRATION_AUDIO = 5
LAYER_SCENE_GENERATION = 6
LAYER_ASSEMBLY = 7

LAYER_NAMES = {
    LAYER_UNDERSTANDING: "understanding",
    LAYER_PERSPECTIVE: "perspective",
    LAYER_BLUEPRINT: "blueprint",
    LAYER_NARRATION_SCRIPT: "narration_script",
    LAYER_NARRATION_AUDIO: "narration_audio",
    LAYER_SCENE_GENERATION: "scene_generation",
    LAYER_ASSEMBLY: "assembly",
}

STATUS_LAYER = {
    "pending": LAYER_UNDERSTANDING,
    "understanding": LAYER_UNDERSTANDING,
    "blueprint": LAYER_BLUEPRINT,
    "generating": LAYER_SCENE_GENERATION,
    "assembling": LAYER_ASSEMBLY,
    "ready": LAYER_ASSEMBLY,
}

# Status that owns each layer; used to turn a failed run back into a re-entry point
LAYER_STATUS = {
    LAYER_UNDERSTANDING: "understanding",
    LAYER_PERSPECTIVE: "understanding",
    LAYER_BLUEPRINT: "blueprint",
    LAYER_NARRATION_SCRIPT: "blueprint",
    LAYER_NARRATION_AUDIO: "blueprint",
    LAYER_SCENE_GENERATION: "generating",
    LAYER_ASSEMBLY: "assembling",
}


def status_to_layer(status: str, error_layer: Optional[int] = None) -> int:
    """Return the layer a run is at for display and resume decisions.

    A failed run reports the layer it failed at, or layer 1 when the failure
    happened before any layer was assigned. Unknown statuses map to layer 1.
    """
    if status == "failed":
        return error_layer or LAYER_UNDERSTANDING
    return STATUS_LAYER.get(status, LAYER_UNDERSTANDING)


def is_claimable(status: str) -> bool:
    """True if a runner may claim the run without an expired lease."""
    return status in IDLE_STATES


def get_resume_step(
    status: str,
    error_layer: Optional[int],
    completed_steps: Dict[str, bool],
) -> str:
    """Determine which status a (re)started run should begin from.

    Args:
        status: Current persisted pipeline_status.
        error_layer: Layer recorded when the run failed, if any.
        completed_steps: Dict with keys:
            - has_understanding: understanding and perspective are persisted
            - has_scenes: the run has Scene rows
            - has_ready_scenes: at least one scene is ready with a video URL
            - has_inflight_scenes: a scene is processing with a stored job id

    Returns:
        "pending", "blueprint" or "generating".

    Examples:
        >>> get_resume_step("failed", 6, {"has_ready_scenes": True})
        'generating'
        >>> get_resume_step("ready", None, {"has_ready_scenes": True})
        'pending'
    """
    # Re-triggering a finished run produces a fresh video
    if status == "ready":
        return "pending"

    # Ready or in-flight scenes are never regenerated: skip straight to layer 6
    if completed_steps.get("has_ready_scenes") or completed_steps.get("has_inflight_scenes"):
        return "generating"

    if status == "failed":
        effective = LAYER_STATUS.get(error_layer or LAYER_UNDERSTANDING, "understanding")
    else:
        effective = status

    if effective in ("generating", "assembling") and completed_steps.get("has_scenes"):
        return "generating"
    if effective in ("blueprint", "generating", "assembling") and completed_steps.get("has_understanding"):
        return "blueprint"
    return "pending"
