"""Domain models and ports for the story agent."""

from kidstel_agent.domain.models import (
    AuditRecord,
    ChapterChoice,
    ChapterDraft,
    GeneratedImage,
    Identity,
    StoryChapter,
    StoryMeta,
)
from kidstel_agent.domain.ports import (
    ImageModel,
    ImageStorage,
    PolicySource,
    RateBucketStore,
    StoryStore,
    TextModel,
    TokenVerifier,
)

__all__ = [
    "AuditRecord",
    "ChapterChoice",
    "ChapterDraft",
    "GeneratedImage",
    "Identity",
    "ImageModel",
    "ImageStorage",
    "PolicySource",
    "RateBucketStore",
    "StoryChapter",
    "StoryMeta",
    "StoryStore",
    "TextModel",
    "TokenVerifier",
]
