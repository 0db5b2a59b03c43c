"""Deterministic offline engine for local development and tests."""

from __future__ import annotations

import base64
import json
from typing import Any

from kidstel_agent.core.image_prompt import TRANSPARENT_PNG_DATA_URL
from kidstel_agent.domain.models import GeneratedImage

_TITLES = {
    "en": "A gentle adventure",
    "ru": "Доброе приключение",
    "hy": "Բարի արկած",
}


class MockStoryEngine:
    """Returns well-formed chapters and a 1x1 image without any network access."""

    def __init__(self) -> None:
        self.calls: list[str] = []

    async def generate_json(
        self,
        *,
        model: str,
        prompt: dict[str, Any],
        temperature: float,
        max_output_tokens: int,
    ) -> str:
        self.calls.append(model)
        user = prompt.get("user", {}) if isinstance(prompt, dict) else {}
        constraints = user.get("constraints", {})
        selection = user.get("selection", {})
        previous = user.get("previous") or {}
        lang = str(constraints.get("language") or "en")
        hero = selection.get("hero") or "a little fox"
        location = selection.get("location") or "a sunny meadow"
        is_continuation = bool(previous)
        text = (
            f"{hero} kept exploring {location} and found a new friend."
            if is_continuation
            else f"Once upon a time {hero} lived near {location} and loved to help others."
        )
        return json.dumps(
            {
                "requestId": "mock",
                "storyId": str(previous.get("storyId") or "mock"),
                "chapterIndex": 0,
                "progress": 0.5 if is_continuation else 0.2,
                "title": _TITLES.get(lang, _TITLES["en"]),
                "text": text,
                "image": {"enabled": False, "url": None},
                "choices": [
                    {"id": "explore", "label": "Explore further", "payload": {}},
                    {"id": "rest", "label": "Take a rest", "payload": {}},
                    {"id": "friend", "label": "Call a friend", "payload": {}},
                ],
            },
            ensure_ascii=False,
        )

    async def generate_image(self, *, prompt: str, aspect_ratio: str) -> GeneratedImage:
        encoded = TRANSPARENT_PNG_DATA_URL.split(",", 1)[1]
        return GeneratedImage(data=base64.b64decode(encoded), mime_type="image/png")
