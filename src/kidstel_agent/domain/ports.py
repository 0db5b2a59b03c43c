"""Ports for persistence, generative backends, storage and token checks."""

from __future__ import annotations

from typing import Any, Protocol

from kidstel_agent.domain.models import (
    AuditRecord,
    GeneratedImage,
    StoryChapter,
    StoryMeta,
)


class StoryStore(Protocol):
    """Document-store operations used by the request pipeline."""

    def enforce_daily_limit(self, *, uid: str, limit: int, day_key: str) -> int: ...

    def get_story_meta(self, *, story_id: str) -> StoryMeta | None: ...

    def get_story_chapter(self, *, story_id: str, chapter_index: int) -> StoryChapter | None: ...

    def list_recent_chapters(self, *, story_id: str, limit: int = 4) -> list[StoryChapter]: ...

    def upsert_story_session(self, *, meta: StoryMeta, chapters: list[StoryChapter]) -> None: ...

    def write_chapter(self, *, story_id: str, owner_id: str, chapter: StoryChapter) -> None: ...

    def update_chapter_illustration(
        self,
        *,
        story_id: str,
        chapter_index: int,
        image_url: str,
        image_storage_path: str,
        image_prompt: str,
    ) -> bool: ...

    def write_audit(self, record: AuditRecord) -> None: ...

    def get_admin_document(self, *, doc_id: str) -> dict[str, Any] | None: ...


class TextModel(Protocol):
    """Generative text backend returning raw model output text."""

    async def generate_json(
        self,
        *,
        model: str,
        prompt: dict[str, Any],
        temperature: float,
        max_output_tokens: int,
    ) -> str: ...


class ImageModel(Protocol):
    """Generative image backend."""

    async def generate_image(self, *, prompt: str, aspect_ratio: str) -> GeneratedImage: ...


class ImageStorage(Protocol):
    """Object storage returning a durable URL for uploaded bytes."""

    def upload(self, *, path: str, data: bytes, content_type: str) -> str: ...


class TokenVerifier(Protocol):
    """Verifies a bearer-style credential and returns decoded claims."""

    async def verify(self, token: str) -> dict[str, Any]: ...


class PolicySource(Protocol):
    """Loads the raw runtime policy document."""

    def load(self) -> Any: ...


class RateBucketStore(Protocol):
    """Key/value holder for fixed-window rate buckets."""

    def get(self, key: str) -> tuple[float, int] | None: ...

    def set(self, key: str, reset_at: float, count: int) -> None: ...
