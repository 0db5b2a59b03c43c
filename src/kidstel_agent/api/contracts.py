"""Response contracts published in the OpenAPI document."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class ContractModel(BaseModel):
    """Base model config used by all API contracts."""

    model_config = ConfigDict(extra="forbid")


class HealthResponse(ContractModel):
    """Liveness payload; never touches policy or storage."""

    ok: Literal[True] = True
    service: str = "kidstel-agent"
    revision: str = "local"


class UpstreamInfo(ContractModel):
    status: int | None = None
    service: str


class ErrorResponse(ContractModel):
    """Client-safe failure body; upstream payloads never pass through."""

    error: str
    code: str
    requestId: str | None = None
    upstream: UpstreamInfo | None = None
    retryAfterSeconds: int | None = None
    detail: str | None = None


class InvalidJsonDebug(ContractModel):
    contentType: str | None = None
    contentLength: int | None = None
    message: str = Field(max_length=120)


class InvalidJsonResponse(ContractModel):
    ok: Literal[False] = False
    error: Literal["invalid_json"] = "invalid_json"
    debug: InvalidJsonDebug


class ChapterImage(BaseModel):
    model_config = ConfigDict(extra="allow")

    enabled: bool
    url: str | None = None
    disabled: bool | None = None
    reason: str | None = None
    base64: str | None = None
    mimeType: str | None = None
    prompt: str | None = None
    storagePath: str | None = None


class ChapterChoiceResponse(ContractModel):
    id: str
    label: str
    payload: dict[str, Any] = Field(default_factory=dict)


class StoryEnvelope(ContractModel):
    """Chapter envelope returned by create, continue, illustrate and the safe stub."""

    requestId: str
    storyId: str
    chapterIndex: int
    progress: float = Field(ge=0.0, le=1.0)
    title: str
    text: str
    image: ChapterImage
    choices: list[ChapterChoiceResponse] = Field(default_factory=list, max_length=3)


STORY_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    413: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
    429: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}
