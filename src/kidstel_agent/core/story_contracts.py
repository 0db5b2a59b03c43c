"""Inbound request shapes for the create, continue and illustrate actions."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

StoryLangField = Literal["ru", "en", "hy"]
AgeGroup = Literal["3_5", "6_8", "9_12"]
StoryLength = Literal["short", "medium", "long"]

SafeId = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=128)]
RequestId = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=64)]
ShortText = Annotated[str, StringConstraints(strip_whitespace=True, max_length=200)]
MediumText = Annotated[str, StringConstraints(strip_whitespace=True, max_length=1200)]


class _PassthroughModel(BaseModel):
    """Unknown fields are tolerated so older clients keep working."""

    model_config = ConfigDict(extra="allow")


class RequestMeta(_PassthroughModel):
    userInitiated: bool | None = None


class ImageToggle(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool | None = None


class ImageOptions(_PassthroughModel):
    size: str | None = Field(default=None, max_length=16)
    aspectRatio: str | None = Field(default=None, max_length=16)
    style: ShortText | None = None


class Selection(_PassthroughModel):
    hero: ShortText | None = None
    location: ShortText | None = None
    style: ShortText | None = None

    def has_any(self) -> bool:
        return any((value or "").strip() for value in (self.hero, self.location, self.style))


class ChoiceRef(_PassthroughModel):
    id: str | None = Field(default=None, max_length=64)
    label: ShortText | None = None
    choiceIndex: int | None = Field(default=None, ge=0, le=9, strict=True)
    text: ShortText | None = None
    payload: dict[str, Any] | None = None

    def is_identifiable(self) -> bool:
        return any((value or "").strip() for value in (self.id, self.label, self.text))


class _StoryRequest(_PassthroughModel):
    requestId: RequestId | None = None
    meta: RequestMeta | None = None
    ageGroup: AgeGroup | None = None
    storyLength: StoryLength | None = None
    creativityLevel: float | None = Field(default=None, ge=0.0, le=1.0)
    selection: Selection | None = None
    idea: MediumText | None = None


class CreateRequest(_StoryRequest):
    action: Literal["generate"] | None = None
    storyId: SafeId | None = None
    storyLang: StoryLangField
    image: ImageToggle | None = None
    prompt: MediumText | None = None


class ContinueRequest(_StoryRequest):
    action: Literal["continue"] | None = None
    storyId: SafeId | None = None
    storyLang: StoryLangField | None = None
    chapterIndex: int | None = Field(default=None, ge=0, le=99, strict=True)
    choice: ChoiceRef | None = None
    image: ImageToggle | None = None


class IllustrateRequest(_PassthroughModel):
    action: Literal["illustrate"] | None = None
    requestId: RequestId | None = None
    meta: RequestMeta | None = None
    storyId: SafeId | None = None
    storyLang: StoryLangField | None = None
    ageGroup: AgeGroup | None = None
    chapterIndex: int | None = Field(default=None, ge=0, le=99, strict=True)
    prompt: MediumText | None = None
    image: ImageOptions | None = None


def normalize_legacy_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """Map older client field names onto the current request shape."""
    normalized = dict(payload)
    if "storyLang" not in normalized:
        for alias in ("lang", "language"):
            value = normalized.get(alias)
            if isinstance(value, str) and value.strip():
                normalized["storyLang"] = value.strip().lower()
                break
    return normalized


def infer_legacy_action(payload: dict[str, Any]) -> str:
    """Pick an action for payloads that predate the explicit `action` field."""
    explicit = payload.get("action")
    if isinstance(explicit, str) and explicit.strip():
        return explicit.strip()
    has_story = bool(payload.get("storyId"))
    if has_story and payload.get("chapterIndex") is not None and payload.get("prompt"):
        return "illustrate"
    if has_story and payload.get("choice"):
        return "continue"
    return "generate"
