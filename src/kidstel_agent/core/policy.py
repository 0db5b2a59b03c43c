"""Versioned runtime policy with TTL caching and fail-closed loading."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from kidstel_agent.domain.ports import PolicySource, StoryStore

DEFAULT_TEXT_MODEL = "gemini-2.5-flash"
POLICY_DOCUMENT_ID = "runtime"

# Retired model ids that start returning 404 upstream.
DEPRECATED_MODEL_ALIASES: dict[str, str] = {
    "gemini-pro": "gemini-2.5-flash",
    "gemini-1.0-pro": "gemini-2.5-flash",
    "gemini-1.5-flash": "gemini-2.5-flash",
    "gemini-1.5-flash-001": "gemini-2.5-flash",
    "gemini-1.5-flash-002": "gemini-2.5-flash",
    "gemini-1.5-pro": "gemini-2.5-pro",
    "gemini-1.5-pro-001": "gemini-2.5-pro",
    "gemini-1.5-pro-002": "gemini-2.5-pro",
}

logger = logging.getLogger(__name__)


def normalize_model_id(model: str) -> str:
    cleaned = model.strip()
    return DEPRECATED_MODEL_ALIASES.get(cleaned.lower(), cleaned)


class RuntimePolicy(BaseModel):
    """Policy document; defaults fail closed (generation disabled)."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    enable_story_generation: bool = False
    enable_illustrations: bool = False

    model_allowlist: list[str] = Field(
        default_factory=lambda: [DEFAULT_TEXT_MODEL], min_length=1
    )
    max_output_tokens: int = Field(default=1200, ge=64, le=4096)
    temperature: float = Field(default=0.7, ge=0.0, le=1.2)

    max_input_chars: int = Field(default=1200, ge=200, le=5000)
    max_output_chars: int = Field(default=12000, ge=500, le=30000)
    daily_story_limit: int = Field(default=40, ge=1, le=500)

    # Per instance; horizontal scaling multiplies the effective rate.
    ip_rate_per_min: int = Field(default=120, ge=1, le=600)
    uid_rate_per_min: int = Field(default=60, ge=1, le=300)

    max_body_kb: int = Field(default=64, ge=8, le=256)
    request_timeout_ms: int = Field(default=25000, ge=1000, le=60000)

    policy_version: str | None = Field(default=None, max_length=64)

    @field_validator("model_allowlist")
    @classmethod
    def _normalize_allowlist(cls, values: list[str]) -> list[str]:
        normalized: list[str] = []
        for value in values:
            model = normalize_model_id(value)
            if not model:
                raise ValueError("model_allowlist entries must be non-empty.")
            if model not in normalized:
                normalized.append(model)
        return normalized

    @property
    def max_body_bytes(self) -> int:
        return self.max_body_kb * 1024

    @property
    def request_timeout_seconds(self) -> float:
        return self.request_timeout_ms / 1000.0


def parse_policy(raw: Any) -> RuntimePolicy:
    """Validate a raw document; a missing document yields the fail-closed defaults."""
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValueError("Policy document must be a JSON object.")
    return RuntimePolicy.model_validate(raw)


class StaticPolicySource:
    """Policy injected as a JSON string (env or config file)."""

    def __init__(self, static_json: str) -> None:
        self._static_json = static_json

    def load(self) -> Any:
        text = (self._static_json or "").strip()
        if not text:
            return {}
        return json.loads(text)


class StorePolicySource:
    """Policy document `admin_policy/runtime` held in the document store."""

    def __init__(self, store: StoryStore, doc_id: str = POLICY_DOCUMENT_ID) -> None:
        self._store = store
        self._doc_id = doc_id

    def load(self) -> Any:
        return self._store.get_admin_document(doc_id=self._doc_id)


@dataclass
class _PolicyCache:
    value: RuntimePolicy | None = None
    expires_at: float = 0.0


class PolicyLoader:
    """Caches the last successful policy for a TTL; load errors clear the cache."""

    def __init__(
        self,
        source: PolicySource,
        *,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._source = source
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._cache = _PolicyCache()

    def invalidate(self) -> None:
        self._cache = _PolicyCache()

    async def get_policy(self) -> RuntimePolicy | None:
        """Return the active policy, or None when it cannot be loaded (fail closed)."""
        now = self._clock()
        if self._cache.value is not None and self._cache.expires_at > now:
            return self._cache.value
        try:
            raw = await asyncio.to_thread(self._source.load)
            policy = parse_policy(raw)
        except (ValidationError, ValueError) as exc:
            logger.error("policy.invalid error_type=%s; failing closed", type(exc).__name__)
            self.invalidate()
            return None
        except Exception:
            logger.exception("policy.load_failed; failing closed")
            self.invalidate()
            return None
        self._cache = _PolicyCache(value=policy, expires_at=now + self._ttl_seconds)
        logger.info(
            "policy.loaded version=%s generation=%s illustrations=%s",
            policy.policy_version,
            policy.enable_story_generation,
            policy.enable_illustrations,
        )
        return policy
