from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from kidstel_agent.core.errors import GenerationTimeout, UpstreamError
from kidstel_agent.core.generation import (
    ContinueParams,
    CreateParams,
    GenerationClient,
    build_continue_prompt,
    choose_preferred_model,
    model_candidates,
    parse_draft,
    strip_json_fences,
    with_timeout,
)
from kidstel_agent.core.policy import RuntimePolicy
from kidstel_agent.domain.models import GeneratedImage


def _draft(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "requestId": "r1",
        "storyId": "s1",
        "chapterIndex": 0,
        "progress": 0.4,
        "title": "Moon Picnic",
        "text": "The owl packed sandwiches for the moon.",
        "image": {"enabled": False, "url": None},
        "choices": [{"id": "a", "label": "Fly up", "payload": {}}],
    }
    payload.update(overrides)
    return payload


class ScriptedTextModel:
    def __init__(self, outcomes: dict[str, str | Exception]) -> None:
        self._outcomes = outcomes
        self.calls: list[str] = []

    async def generate_json(self, *, model: str, **_: Any) -> str:
        self.calls.append(model)
        outcome = self._outcomes.get(model, json.dumps(_draft()))
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class EmptyImageModel:
    async def generate_image(self, *, prompt: str, aspect_ratio: str) -> GeneratedImage:
        return GeneratedImage(data=b"")


def test_strip_json_fences_unwraps_markdown() -> None:
    assert strip_json_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_json_fences('  {"a": 1} ') == '{"a": 1}'


def test_parse_draft_accepts_fenced_output() -> None:
    draft = parse_draft("```json\n" + json.dumps(_draft()) + "\n```")
    assert draft.progress == 0.4
    assert len(draft.choices) == 1
    assert draft.title == "Moon Picnic"


def test_parse_draft_rejects_out_of_range_progress_and_extra_choices() -> None:
    with pytest.raises(UpstreamError) as excinfo:
        parse_draft(json.dumps(_draft(progress=7.5)))
    assert excinfo.value.kind == "bad_response"
    too_many = [{"id": str(i), "label": f"Choice {i}", "payload": {}} for i in range(6)]
    with pytest.raises(UpstreamError) as excinfo:
        parse_draft(json.dumps(_draft(choices=too_many)))
    assert excinfo.value.kind == "bad_response"


def test_parse_draft_rejects_unknown_fields_and_non_json() -> None:
    with pytest.raises(UpstreamError) as excinfo:
        parse_draft(json.dumps(_draft(extra="nope")))
    assert excinfo.value.kind == "bad_response"
    with pytest.raises(UpstreamError):
        parse_draft("Once upon a time")


def test_model_selection_and_candidate_order() -> None:
    allowlist = ["gemini-2.5-pro", "gemini-2.5-flash"]
    assert choose_preferred_model("gemini-1.5-flash", allowlist) == "gemini-2.5-flash"
    assert choose_preferred_model("unlisted-model", allowlist) == "gemini-2.5-pro"
    assert model_candidates("gemini-2.5-flash", allowlist, "gemini-2.5-flash") == [
        "gemini-2.5-flash",
        "gemini-2.5-pro",
    ]
    assert model_candidates("a", ["a"], "z") == ["a", "z"]


def test_only_model_not_found_moves_to_next_candidate() -> None:
    text_model = ScriptedTextModel(
        {"gemini-2.5-pro": UpstreamError(kind="model_not_found", status=404)}
    )
    client = GenerationClient(
        text_model=text_model, image_model=EmptyImageModel(), configured_model="gemini-2.5-pro"
    )
    policy = RuntimePolicy(model_allowlist=["gemini-2.5-pro", "gemini-2.5-flash"])
    result = asyncio.run(
        client.generate_create(CreateParams(request_id="r", uid="u"), policy=policy)
    )
    assert result.model == "gemini-2.5-flash"
    assert text_model.calls == ["gemini-2.5-pro", "gemini-2.5-flash"]

    failing = ScriptedTextModel({"gemini-2.5-pro": UpstreamError(kind="auth", status=403)})
    client = GenerationClient(
        text_model=failing, image_model=EmptyImageModel(), configured_model="gemini-2.5-pro"
    )
    with pytest.raises(UpstreamError) as excinfo:
        asyncio.run(client.generate_create(CreateParams(request_id="r", uid="u"), policy=policy))
    assert excinfo.value.kind == "auth"
    assert failing.calls == ["gemini-2.5-pro"]


def test_exhausted_candidates_raise_last_model_not_found() -> None:
    missing = UpstreamError(kind="model_not_found", status=404)
    text_model = ScriptedTextModel({"gemini-2.5-flash": missing})
    client = GenerationClient(text_model=text_model, image_model=EmptyImageModel())
    with pytest.raises(UpstreamError) as excinfo:
        asyncio.run(
            client.generate_create(CreateParams(request_id="r", uid="u"), policy=RuntimePolicy())
        )
    assert excinfo.value is missing


def test_generation_timeout_is_typed() -> None:
    class SlowModel:
        async def generate_json(self, **_: Any) -> str:
            await asyncio.sleep(5)
            return "{}"

    client = GenerationClient(text_model=SlowModel(), image_model=EmptyImageModel())
    policy = RuntimePolicy(request_timeout_ms=1000)
    with pytest.raises(GenerationTimeout):
        asyncio.run(client.generate_create(CreateParams(request_id="r", uid="u"), policy=policy))


def test_zero_byte_image_is_a_bad_response() -> None:
    client = GenerationClient(text_model=ScriptedTextModel({}), image_model=EmptyImageModel())
    with pytest.raises(UpstreamError) as excinfo:
        asyncio.run(client.generate_image(prompt="owl", aspect_ratio="1:1", timeout_seconds=5))
    assert excinfo.value.kind == "bad_response"
    assert excinfo.value.service == "image_model"


def test_continue_prompt_carries_previous_text_and_choice() -> None:
    prompt = build_continue_prompt(
        ContinueParams(
            request_id="r",
            uid="u",
            story_id="story_1",
            next_chapter_index=3,
            previous_text="The owl landed.",
            choice={"id": "a", "label": "Fly up"},
            recent_titles=("One", "Two"),
        )
    )
    user = prompt["user"]
    assert "chapterIndex=3" in user["task"]
    assert user["previous"]["lastChapterText"] == "The owl landed."
    assert user["previous"]["chapterTitles"] == ["One", "Two"]
    assert user["userChoice"] == {"id": "a", "label": "Fly up"}


def test_timeout_cancels_the_local_call() -> None:
    state: dict[str, bool] = {"cancelled": False}

    async def slow_call() -> str:
        try:
            await asyncio.sleep(5)
        except asyncio.CancelledError:
            state["cancelled"] = True
            raise
        return "late"

    with pytest.raises(GenerationTimeout) as excinfo:
        asyncio.run(with_timeout(slow_call(), seconds=0.01, service="text_model"))
    assert excinfo.value.service == "text_model"
    assert state["cancelled"] is True
