"""Documentary scene prompt composition for text-to-video generation.

A blueprint scene's free-text description is truncated, then combined with
fixed style, setting and lighting fragments. The result always fits under the
provider's prompt ceiling.
"""

ELLIPSIS = "..."

TIME_OF_DAY_LIGHTING = {
    "dawn": "early dawn light, soft blue hour transitioning to warm, muted colors emerging",
    "morning": "soft morning light, gentle shadows, natural daylight beginning",
    "midday": "diffused midday light, even exposure, minimal shadows",
    "afternoon": "warm afternoon light, long soft shadows, golden undertones",
    "dusk": "golden hour fading to blue, warm streetlights beginning, transitional light",
    "evening": "blue hour, ambient city lights, quiet evening atmosphere",
    "night": "night scene, practical lights only, urban glow, no harsh contrast",
}

SETTING_DESCRIPTIONS = {
    "urban": "city street, urban environment, everyday architecture",
    "suburban": "residential area, quiet neighborhood, ordinary homes",
    "rural": "countryside, natural landscape, open spaces",
    "interior": "indoor space, practical lighting, lived-in environment",
    "transit": "public transportation, commute scene, movement in confined space",
    "workplace": "work environment, practical space, tools of labor",
    "public_space": "public area, shared space, diverse presence",
}

STYLE_PREFIX = ("Photorealistic documentary", "handheld camera")
TEXTURE = "35mm film grain"
NEGATIVE_SUFFIX = "No faces, no drama."


def truncate_description(description: str, limit: int = 200) -> str:
    """Keep at most `limit` characters, ending in an ellipsis when cut."""
    description = " ".join(description.split())
    if len(description) <= limit:
        return description
    return description[: limit - len(ELLIPSIS)].rstrip() + ELLIPSIS


def enforce_prompt_ceiling(prompt: str, max_chars: int = 1000) -> str:
    if len(prompt) <= max_chars:
        return prompt
    return prompt[: max_chars - len(ELLIPSIS)].rstrip() + ELLIPSIS


def build_scene_prompt(
    description: str,
    time_of_day: str,
    setting: str,
    *,
    description_chars: int = 200,
    max_chars: int = 1000,
) -> str:
    """Compose the text-to-video prompt for one scene.

    Unknown time_of_day falls back to morning light, unknown setting to urban.
    """
    lighting = TIME_OF_DAY_LIGHTING.get(time_of_day, TIME_OF_DAY_LIGHTING["morning"])
    setting_desc = SETTING_DESCRIPTIONS.get(setting, SETTING_DESCRIPTIONS["urban"])
    parts = [
        *STYLE_PREFIX,
        truncate_description(description, description_chars),
        setting_desc,
        lighting,
        TEXTURE,
    ]
    return enforce_prompt_ceiling(f"{', '.join(parts)}. {NEGATIVE_SUFFIX}", max_chars)


# Observational nature and landscape shots with no people, used once when a
# scene's own prompt is rejected by the provider's content filter.
SAFE_SCENE_PROMPTS = (
    "Time-lapse of stars moving across a dark sky over a desert landscape. Static camera. Natural light.",
    "Wide view of a green valley with a river flowing through it at golden hour. Steady camera. Natural light.",
    "Flock of birds flying in formation over wetlands at dusk. Observational camera.",
    "Sun breaking through clouds over open ocean, time-lapse, observational. No humans.",
    "Wide aerial view of city lights at night, traffic flowing like circulation. No close humans.",
    "Light changing over a hillside landscape at golden hour, slow drift. No humans.",
)


def safe_scene_prompt(scene_index: int) -> str:
    return SAFE_SCENE_PROMPTS[scene_index % len(SAFE_SCENE_PROMPTS)]


def is_safe_scene_prompt(prompt: str) -> bool:
    return prompt in SAFE_SCENE_PROMPTS
