"""Server-side defaults for kid-friendly illustration prompts."""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_IMAGE_SIZE = "768x768"
SUPPORTED_IMAGE_SIZES = ("768x768", "512x512", "1280x720")
DEFAULT_IMAGE_STYLE = (
    "simple 2D children's book illustration, clean lines, flat shading, minimal background, "
    "soft pastel colors, no complex textures, no photorealism, single subject, "
    "centered composition"
)
DEFAULT_AGE_RANGE = "for kids aged 3-7"

TRANSPARENT_PNG_DATA_URL = (
    "data:image/png;base64,"
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mP8/xcAAwMCAO9pN1cAAAAASUVORK5CYII="
)

_AGE_RANGES = {
    "3_5": "for kids aged 3-5",
    "6_8": "for kids aged 6-8",
    "9_12": "for kids aged 9-12",
}


@dataclass(frozen=True)
class ImagePromptPlan:
    prompt: str
    size: str
    aspect_ratio: str
    style: str
    age_range: str


def size_to_aspect_ratio(size: str) -> str:
    return "16:9" if size == "1280x720" else "1:1"


def build_image_prompt(
    *,
    scene: str,
    lang: str,
    age_group: str | None = None,
    size: str | None = None,
    style: str | None = None,
) -> ImagePromptPlan:
    """Wrap the caller's scene description in the fixed safety/style preamble."""
    resolved_size = size if size in SUPPORTED_IMAGE_SIZES else DEFAULT_IMAGE_SIZE
    aspect_ratio = size_to_aspect_ratio(resolved_size)
    resolved_style = (style or "").strip() or DEFAULT_IMAGE_STYLE
    age_range = _AGE_RANGES.get((age_group or "").strip(), DEFAULT_AGE_RANGE)
    lines = [
        "You are generating a kid-friendly 2D illustration for a children's story.",
        f"Target age: {age_range}.",
        f"Language/locale: {lang}.",
        f"Image size: {resolved_size}. Aspect ratio: {aspect_ratio}.",
        f"Style: {resolved_style}.",
        "No photorealism. No camera/photography terms. No realistic skin texture.",
        "Simple shapes, soft colors, clean outlines, gentle lighting, minimal background.",
        "Warm, friendly mood. Non-scary, calm and reassuring.",
        "Single subject, centered composition, one clear scene. No text overlay.",
        "Safety: no violence, no horror, no weapons, no hateful symbols.",
        f"Scene: {scene.strip()}",
    ]
    return ImagePromptPlan(
        prompt="\n".join(lines),
        size=resolved_size,
        aspect_ratio=aspect_ratio,
        style=resolved_style,
        age_range=age_range,
    )
