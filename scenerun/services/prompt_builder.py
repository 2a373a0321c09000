"""Styled image prompts for scenes."""

from typing import List, Optional, Sequence

from scenerun.models.project import Scene
from scenerun.models.style import Character, StylePreset


def build_scene_prompt(
    scene: Scene,
    style: Optional[StylePreset] = None,
    characters: Sequence[Character] = (),
    with_references: bool = False,
) -> str:
    """
    Compose the provider prompt for one scene.

    Args:
        scene: Scene to illustrate; falls back to its dialogue when it has no image prompt
        style: Active style preset, wrapped around the scene prompt
        characters: Characters selected for the run
        with_references: Whether reference images are attached to the request

    Returns:
        Prompt text
    """
    body = (scene.image_prompt or scene.dialogue or scene.title or "").strip()
    parts: List[str] = []

    if style and style.prompt_prefix:
        parts.append(style.prompt_prefix.strip())
    parts.append(body)
    if style and style.prompt_suffix:
        parts.append(style.prompt_suffix.strip())

    described = [c for c in characters if c.appearance]
    if described:
        lines = "; ".join(f"{c.name}: {c.appearance.strip()}" for c in described)
        parts.append(f"Characters: {lines}")

    prompt = "\n\n".join(p for p in parts if p)

    if with_references:
        names = ", ".join(c.name for c in characters if c.reference_image_key)
        lead = "Using the provided reference images for character consistency"
        if names:
            lead += f" ({names})"
        prompt = f"{lead}, generate: {prompt}"

    return prompt
