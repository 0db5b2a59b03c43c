"""Text/image generation with strict output parsing, timeouts and model fallback."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from kidstel_agent.core.errors import GenerationTimeout, UpstreamError
from kidstel_agent.core.moderation import KIDS_POLICY_SYSTEM
from kidstel_agent.core.policy import DEFAULT_TEXT_MODEL, RuntimePolicy, normalize_model_id
from kidstel_agent.domain.models import ChapterChoice, ChapterDraft, GeneratedImage
from kidstel_agent.domain.ports import ImageModel, TextModel

MAX_CHOICES = 3
_FENCE_START = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_END = re.compile(r"\s*```$")

T = TypeVar("T")

logger = logging.getLogger(__name__)


class _DraftChoice(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    id: str = Field(min_length=1, max_length=64)
    label: str = Field(min_length=1, max_length=80)
    payload: dict[str, Any] = Field(default_factory=dict)


class _DraftImage(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool
    url: str | None = None
    base64: str | None = None
    mimeType: str | None = None
    disabled: bool | None = None
    reason: str | None = None
    prompt: str | None = None
    storagePath: str | None = None


class DraftPayload(BaseModel):
    """Exact shape the text model must return."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    requestId: str = Field(min_length=1, max_length=128)
    storyId: str = Field(min_length=1, max_length=128)
    chapterIndex: int = Field(ge=0, le=99)
    progress: float = Field(ge=0.0, le=1.0)
    title: str = Field(max_length=140)
    text: str = Field(max_length=12000)
    image: _DraftImage | None = None
    choices: list[_DraftChoice] | None = Field(default=None, max_length=MAX_CHOICES)


OUTPUT_SCHEMA_HINT: dict[str, Any] = {
    "requestId": "string",
    "storyId": "string",
    "chapterIndex": "number",
    "progress": "number (0..1)",
    "title": "string",
    "text": "string",
    "image": {"enabled": "boolean", "url": "string|null"},
    "choices": [{"id": "string", "label": "string", "payload": {"any": "json"}}],
}


@dataclass(frozen=True)
class StorySelection:
    hero: str = ""
    location: str = ""
    style: str = ""


@dataclass(frozen=True)
class CreateParams:
    request_id: str
    uid: str
    story_lang: str = "en"
    age_group: str | None = None
    story_length: str | None = None
    creativity_level: float | None = None
    selection: StorySelection = field(default_factory=StorySelection)
    idea: str = ""


@dataclass(frozen=True)
class ContinueParams:
    request_id: str
    uid: str
    story_id: str
    next_chapter_index: int
    previous_text: str
    choice: dict[str, Any] = field(default_factory=dict)
    story_lang: str = "en"
    age_group: str | None = None
    story_length: str | None = None
    selection: StorySelection = field(default_factory=StorySelection)
    recent_titles: tuple[str, ...] = ()


@dataclass(frozen=True)
class GenerationResult:
    draft: ChapterDraft
    model: str


def strip_json_fences(text: str) -> str:
    stripped = text.strip()
    stripped = _FENCE_START.sub("", stripped)
    return _FENCE_END.sub("", stripped)


def parse_draft(raw_text: str) -> ChapterDraft:
    """Parse model output strictly; any deviation is a bad upstream response."""
    try:
        payload = json.loads(strip_json_fences(raw_text))
        validated = DraftPayload.model_validate(payload)
    except (ValueError, ValidationError) as exc:
        raise UpstreamError(
            kind="bad_response",
            service="text_model",
            message=f"draft rejected: {type(exc).__name__}",
        ) from exc
    return ChapterDraft(
        request_id=validated.requestId,
        story_id=validated.storyId,
        chapter_index=validated.chapterIndex,
        progress=validated.progress,
        title=validated.title,
        text=validated.text,
        choices=tuple(
            ChapterChoice(id=choice.id, label=choice.label, payload=dict(choice.payload))
            for choice in (validated.choices or [])
        ),
        image_enabled=bool(validated.image.enabled) if validated.image else False,
    )


def choose_preferred_model(configured: str, allowlist: list[str]) -> str:
    configured = normalize_model_id(configured)
    return configured if configured in allowlist else allowlist[0]


def model_candidates(preferred: str, allowlist: list[str], last_resort: str) -> list[str]:
    """Preferred first, then the rest of the allowlist, then one known-good default."""
    ordered: list[str] = []
    for model in [preferred, *allowlist, last_resort]:
        if model and model not in ordered:
            ordered.append(model)
    return ordered


async def with_timeout(awaitable: Awaitable[T], *, seconds: float, service: str) -> T:
    """Cancel the local call once it outlives `seconds`; the upstream request is not retracted."""
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except TimeoutError as exc:
        raise GenerationTimeout(timeout_seconds=seconds, service=service) from exc


def build_create_prompt(params: CreateParams) -> dict[str, Any]:
    return {
        "system": KIDS_POLICY_SYSTEM,
        "user": {
            "task": (
                "Create a new kid-safe story chapter (chapterIndex=0) "
                "with 3 short choices for continuation."
            ),
            "constraints": {
                "maxChoices": MAX_CHOICES,
                "language": params.story_lang,
                "ageGroup": params.age_group or "3_5",
                "storyLength": params.story_length or "medium",
                "creativityLevel": params.creativity_level,
            },
            "selection": {
                "hero": params.selection.hero,
                "location": params.selection.location,
                "storyType": params.selection.style,
            },
            "idea": params.idea,
            "outputSchema": OUTPUT_SCHEMA_HINT,
            "outputRules": [
                "Return ONLY JSON. No markdown.",
                "Keep the story gentle, positive, and appropriate for children.",
                "No scary or violent elements.",
                "Choices must be safe and kid-friendly.",
            ],
        },
    }


def build_continue_prompt(params: ContinueParams) -> dict[str, Any]:
    return {
        "system": KIDS_POLICY_SYSTEM,
        "user": {
            "task": (
                "Continue the existing story with the next chapter "
                f"(chapterIndex={params.next_chapter_index})."
            ),
            "constraints": {
                "maxChoices": MAX_CHOICES,
                "language": params.story_lang,
                "ageGroup": params.age_group or "3_5",
                "storyLength": params.story_length or "medium",
            },
            "selection": {
                "hero": params.selection.hero,
                "location": params.selection.location,
                "storyType": params.selection.style,
            },
            "previous": {
                "storyId": params.story_id,
                "chapterTitles": list(params.recent_titles),
                "lastChapterText": params.previous_text,
            },
            "userChoice": params.choice,
            "outputSchema": OUTPUT_SCHEMA_HINT,
            "outputRules": [
                "Return ONLY JSON. No markdown.",
                "Keep it kid-safe and reassuring.",
            ],
        },
    }


class GenerationClient:
    """Narrow facade over the text and image backends.

    Only a "model not found" failure moves on to the next candidate model;
    every other upstream failure ends the attempt immediately.
    """

    def __init__(
        self,
        *,
        text_model: TextModel,
        image_model: ImageModel,
        configured_model: str = DEFAULT_TEXT_MODEL,
        last_resort_model: str = DEFAULT_TEXT_MODEL,
    ) -> None:
        self._text_model = text_model
        self._image_model = image_model
        self._configured_model = configured_model
        self._last_resort_model = last_resort_model

    def candidates_for(self, policy: RuntimePolicy) -> list[str]:
        preferred = choose_preferred_model(self._configured_model, policy.model_allowlist)
        return model_candidates(preferred, policy.model_allowlist, self._last_resort_model)

    async def generate_create(
        self, params: CreateParams, *, policy: RuntimePolicy
    ) -> GenerationResult:
        return await with_timeout(
            self._generate(build_create_prompt(params), policy=policy),
            seconds=policy.request_timeout_seconds,
            service="text_model",
        )

    async def generate_continue(
        self, params: ContinueParams, *, policy: RuntimePolicy
    ) -> GenerationResult:
        return await with_timeout(
            self._generate(build_continue_prompt(params), policy=policy),
            seconds=policy.request_timeout_seconds,
            service="text_model",
        )

    async def generate_image(
        self, *, prompt: str, aspect_ratio: str, timeout_seconds: float
    ) -> GeneratedImage:
        image = await with_timeout(
            self._image_model.generate_image(prompt=prompt, aspect_ratio=aspect_ratio),
            seconds=timeout_seconds,
            service="image_model",
        )
        if not image.data:
            raise UpstreamError(
                kind="bad_response", service="image_model", message="image had zero bytes"
            )
        return image

    async def _generate(
        self, prompt: dict[str, Any], *, policy: RuntimePolicy
    ) -> GenerationResult:
        async def call(model: str) -> str:
            return await self._text_model.generate_json(
                model=model,
                prompt=prompt,
                temperature=policy.temperature,
                max_output_tokens=policy.max_output_tokens,
            )

        model, raw_text = await self._first_available_model(self.candidates_for(policy), call)
        return GenerationResult(draft=parse_draft(raw_text), model=model)

    async def _first_available_model(
        self,
        candidates: list[str],
        call: Callable[[str], Awaitable[str]],
    ) -> tuple[str, str]:
        last_error: UpstreamError | None = None
        for model in candidates:
            try:
                raw = await call(model)
            except UpstreamError as exc:
                if not exc.is_model_not_found:
                    raise
                logger.warning("generation.model_not_found model=%s; trying next candidate", model)
                last_error = exc
                continue
            logger.info("generation.model_used model=%s", model)
            return model, raw
        if last_error is not None:
            raise last_error
        raise UpstreamError(kind="unavailable", service="text_model", message="no candidate models")
