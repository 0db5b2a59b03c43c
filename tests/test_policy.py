from __future__ import annotations

import asyncio
import json

import pytest
from pydantic import ValidationError

from kidstel_agent.core.policy import (
    PolicyLoader,
    RuntimePolicy,
    StaticPolicySource,
    normalize_model_id,
    parse_policy,
)


class CountingSource:
    def __init__(self, documents: list[object]) -> None:
        self._documents = documents
        self.loads = 0

    def load(self) -> object:
        self.loads += 1
        item = self._documents[min(self.loads - 1, len(self._documents) - 1)]
        if isinstance(item, Exception):
            raise item
        return item


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_missing_document_parses_to_fail_closed_defaults() -> None:
    policy = parse_policy(None)
    assert policy.enable_story_generation is False
    assert policy.enable_illustrations is False
    assert policy.model_allowlist == ["gemini-2.5-flash"]
    assert policy.max_body_bytes == 64 * 1024
    assert policy.request_timeout_seconds == 25.0


def test_unknown_keys_make_policy_invalid() -> None:
    with pytest.raises(ValidationError):
        parse_policy({"enable_story_generation": True, "enable_everything": True})


def test_out_of_range_values_are_rejected() -> None:
    with pytest.raises(ValidationError):
        parse_policy({"max_body_kb": 512})
    with pytest.raises(ValidationError):
        parse_policy({"model_allowlist": []})


def test_allowlist_is_normalized_and_deduplicated() -> None:
    policy = RuntimePolicy(
        model_allowlist=["gemini-1.5-flash", "gemini-2.5-flash", "gemini-1.5-pro-002"]
    )
    assert policy.model_allowlist == ["gemini-2.5-flash", "gemini-2.5-pro"]
    assert normalize_model_id(" gemini-pro ") == "gemini-2.5-flash"
    assert normalize_model_id("gemini-2.5-pro") == "gemini-2.5-pro"


def test_static_source_treats_empty_string_as_empty_document() -> None:
    assert StaticPolicySource("").load() == {}
    assert StaticPolicySource('{"daily_story_limit": 5}').load() == {"daily_story_limit": 5}


def test_loader_caches_until_ttl_expires() -> None:
    source = CountingSource([{"enable_story_generation": True}])
    clock = FakeClock()
    loader = PolicyLoader(source, ttl_seconds=60, clock=clock)

    first = asyncio.run(loader.get_policy())
    second = asyncio.run(loader.get_policy())
    assert first is not None and first.enable_story_generation is True
    assert second is first
    assert source.loads == 1

    clock.now += 61
    asyncio.run(loader.get_policy())
    assert source.loads == 2


def test_loader_fails_closed_and_drops_cache_on_error() -> None:
    source = CountingSource(
        [{"enable_story_generation": True}, RuntimeError("offline"), {"policy_version": "v2"}]
    )
    clock = FakeClock()
    loader = PolicyLoader(source, ttl_seconds=1, clock=clock)

    assert asyncio.run(loader.get_policy()) is not None
    clock.now += 2
    assert asyncio.run(loader.get_policy()) is None
    recovered = asyncio.run(loader.get_policy())
    assert recovered is not None
    assert recovered.policy_version == "v2"
    assert source.loads == 3


def test_loader_returns_none_for_invalid_document() -> None:
    loader = PolicyLoader(StaticPolicySource(json.dumps({"temperature": 9})))
    assert asyncio.run(loader.get_policy()) is None
    assert asyncio.run(PolicyLoader(StaticPolicySource("[1, 2]")).get_policy()) is None
