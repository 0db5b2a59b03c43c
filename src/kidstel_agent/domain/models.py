"""Core story-agent domain records."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

StoryLang = Literal["en", "ru", "hy"]
SUPPORTED_LANGS: tuple[str, ...] = ("en", "ru", "hy")


@dataclass(frozen=True)
class Identity:
    """Actor a request is attributed to; never mutated once assigned."""

    uid: str
    anonymous: bool = False
    source: Literal["id_token", "dev_client", "random"] = "id_token"


@dataclass(frozen=True)
class ChapterChoice:
    """One continuation option offered to the reader."""

    id: str
    label: str
    payload: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {"id": self.id, "label": self.label, "payload": dict(self.payload)}


@dataclass(frozen=True)
class StoryChapter:
    """One persisted chapter addressed by (story id, chapter index)."""

    chapter_index: int
    title: str
    text: str
    progress: float
    choices: tuple[ChapterChoice, ...] = ()
    image_url: str | None = None
    image_storage_path: str | None = None
    image_prompt: str | None = None


@dataclass(frozen=True)
class StoryMeta:
    """Story-level record; id and owner are immutable after create."""

    story_id: str
    owner_id: str
    title: str
    lang: str | None = None
    age_group: str | None = None
    story_length: str | None = None
    creativity_level: float | None = None
    hero: str | None = None
    location: str | None = None
    style: str | None = None
    idea: str | None = None
    policy_version: str | None = None
    latest_chapter_index: int | None = None


@dataclass(frozen=True)
class AuditRecord:
    """Append-only record of one request attempt."""

    request_id: str
    uid: str
    route: str
    blocked: bool
    block_reason: str | None = None
    story_id: str | None = None
    created_at_utc: str | None = None


@dataclass(frozen=True)
class ChapterDraft:
    """Schema-validated chapter produced by the text model."""

    request_id: str
    story_id: str
    chapter_index: int
    progress: float
    title: str
    text: str
    choices: tuple[ChapterChoice, ...] = ()
    image_enabled: bool = False


@dataclass(frozen=True)
class GeneratedImage:
    """Raw image bytes returned by the image model."""

    data: bytes
    mime_type: str = "image/png"
