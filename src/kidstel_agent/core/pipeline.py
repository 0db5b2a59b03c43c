"""Ordered admission, generation and persistence for story requests.

Every request walks the same gates in a fixed order:

kill switch -> identity/attestation -> runtime policy -> rate limits ->
body size -> request shape -> ownership -> daily quota -> input moderation ->
generation -> output moderation -> persistence.

The first failing gate decides the response. Moderation blocks are not
errors: they answer 200 with a localized safe stub and block headers so a
child-facing client never renders a failure screen.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar
from uuid import uuid4

from pydantic import BaseModel, ValidationError

from kidstel_agent.core.auth import AuthVerifier
from kidstel_agent.core.errors import (
    SERVICE_DISABLED_MESSAGE,
    AdmissionError,
    DailyLimitExceeded,
    GenerationTimeout,
    PolicyError,
    QuotaError,
    ServiceError,
    StoreError,
    UpstreamError,
    UpstreamUnavailable,
)
from kidstel_agent.core.generation import (
    ContinueParams,
    CreateParams,
    GenerationClient,
    GenerationResult,
    StorySelection,
)
from kidstel_agent.core.image_prompt import TRANSPARENT_PNG_DATA_URL, build_image_prompt
from kidstel_agent.core.moderation import ModerationResult, moderate_text
from kidstel_agent.core.policy import PolicyLoader, RuntimePolicy
from kidstel_agent.core.rate_limit import FixedWindowRateLimiter
from kidstel_agent.core.story_contracts import (
    ContinueRequest,
    CreateRequest,
    IllustrateRequest,
    Selection,
)
from kidstel_agent.domain.models import (
    AuditRecord,
    ChapterDraft,
    GeneratedImage,
    Identity,
    StoryChapter,
    StoryMeta,
)
from kidstel_agent.domain.ports import ImageStorage, StoryStore

ACTIONS = ("generate", "continue", "illustrate")
BLOCKED_HEADER = "X-KidsTel-Blocked"
BLOCK_REASON_HEADER = "X-KidsTel-Block-Reason"
RECENT_CHAPTER_WINDOW = 4

SAFE_STUB_COPY: dict[str, tuple[str, str]] = {
    "en": (
        "Let's try again",
        "Let's try a different idea. I can tell a kind story if you change the request.",
    ),
    "ru": (
        "Попробуем иначе",
        "Давай попробуем другую идею. Я могу рассказать добрую историю, если ты изменишь запрос.",
    ),
    "hy": (
        "Փորձենք այլ կերպ",
        "Փորձենք մեկ այլ գաղափար։ Ես կարող եմ պատմել բարի պատմություն, եթե փոխես հարցումը։",
    ),
}

_EXCERPT_UNSAFE = re.compile(r"[^A-Za-z0-9 _.:=/-]")
_DAILY_QUOTA_HINT = re.compile(r"per[\s_-]?day|daily", re.IGNORECASE)

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(UTC)


def day_key(moment: datetime) -> str:
    """UTC calendar day as yyyymmdd."""
    return moment.astimezone(UTC).strftime("%Y%m%d")


def seconds_until_utc_midnight(moment: datetime) -> int:
    current = moment.astimezone(UTC)
    midnight = (current + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return max(1, int((midnight - current).total_seconds()))


def new_story_id() -> str:
    return f"story_{uuid4().hex}"


def new_request_id() -> str:
    return f"req_{uuid4().hex}"


def error_excerpt(exc: BaseException, limit: int = 80) -> str:
    """Short diagnostic string with anything that could leak content stripped."""
    text = f"{type(exc).__name__}: {exc}"
    return _EXCERPT_UNSAFE.sub("", text)[:limit]


def safe_stub_copy(lang: str | None) -> tuple[str, str]:
    return SAFE_STUB_COPY.get((lang or "").strip().lower(), SAFE_STUB_COPY["en"])


def story_envelope(
    *,
    request_id: str,
    story_id: str,
    chapter_index: int,
    progress: float,
    title: str,
    text: str,
    image: dict[str, Any],
    choices: list[dict[str, Any]],
) -> dict[str, Any]:
    return {
        "requestId": request_id,
        "storyId": story_id,
        "chapterIndex": chapter_index,
        "progress": progress,
        "title": title,
        "text": text,
        "image": image,
        "choices": choices,
    }


def safe_stub_envelope(
    *, request_id: str, story_id: str, chapter_index: int, lang: str | None
) -> dict[str, Any]:
    title, text = safe_stub_copy(lang)
    return story_envelope(
        request_id=request_id,
        story_id=story_id,
        chapter_index=chapter_index,
        progress=1.0,
        title=title,
        text=text,
        image={"enabled": False, "url": None},
        choices=[],
    )


def placeholder_image(reason: str, *, prompt: str | None = None) -> dict[str, Any]:
    """Image block for an illustration that could not be produced."""
    return {
        "enabled": False,
        "disabled": True,
        "url": None,
        "base64": TRANSPARENT_PNG_DATA_URL,
        "mimeType": "image/png",
        "reason": reason,
        "prompt": prompt,
    }


def blocked_headers(reason: str) -> dict[str, str]:
    return {BLOCKED_HEADER: "1", BLOCK_REASON_HEADER: reason}


@dataclass(frozen=True)
class InboundRequest:
    """Transport-neutral request; `headers` keys must be lowercase."""

    action: str
    route: str
    headers: Mapping[str, str]
    payload: dict[str, Any]
    body_size: int
    client_host: str = "unknown"


@dataclass
class PipelineResponse:
    status: int
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)
    audits: list[AuditRecord] = field(default_factory=list)


@dataclass(frozen=True)
class PipelineOptions:
    kill_switch: bool = False
    require_illustrate_user_initiated: bool = False


@dataclass
class _RequestContext:
    request: InboundRequest
    request_id: str
    identity: Identity | None = None
    story_id: str | None = None
    audits: list[AuditRecord] = field(default_factory=list)

    def audit(self, *, blocked: bool, block_reason: str | None = None) -> None:
        if self.identity is None:
            return
        self.audits.append(
            AuditRecord(
                request_id=self.request_id,
                uid=self.identity.uid,
                route=self.request.route,
                blocked=blocked,
                block_reason=block_reason,
                story_id=self.story_id,
                created_at_utc=utc_now().isoformat(),
            )
        )


def _request_id_from(payload: Mapping[str, Any]) -> str:
    candidate = payload.get("requestId")
    if isinstance(candidate, str) and 0 < len(candidate.strip()) <= 64:
        return candidate.strip()
    return new_request_id()


class StoryPipeline:
    """Runs one request through every gate and returns a transport-neutral response."""

    def __init__(
        self,
        *,
        auth: AuthVerifier,
        policy_loader: PolicyLoader,
        store: StoryStore,
        generation: GenerationClient,
        image_storage: ImageStorage | None = None,
        origin_limiter: FixedWindowRateLimiter | None = None,
        identity_limiter: FixedWindowRateLimiter | None = None,
        options: PipelineOptions | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._auth = auth
        self._policy_loader = policy_loader
        self._store = store
        self._generation = generation
        self._image_storage = image_storage
        self._origin_limiter = origin_limiter or FixedWindowRateLimiter(name="origin")
        self._identity_limiter = identity_limiter or FixedWindowRateLimiter(name="identity")
        self._options = options or PipelineOptions()
        self._clock = clock

    def disabled_response(self) -> PipelineResponse | None:
        """Kill-switch answer, produced before any body parsing or I/O."""
        if not self._options.kill_switch:
            return None
        return PipelineResponse(
            status=503,
            body={"error": SERVICE_DISABLED_MESSAGE, "code": "SERVICE_DISABLED"},
        )

    async def handle(self, request: InboundRequest) -> PipelineResponse:
        disabled = self.disabled_response()
        if disabled is not None:
            return disabled
        ctx = _RequestContext(request=request, request_id=_request_id_from(request.payload))
        try:
            if request.action == "generate":
                response = await self._handle_create(ctx)
            elif request.action == "continue":
                response = await self._handle_continue(ctx)
            elif request.action == "illustrate":
                response = await self._handle_illustrate(ctx)
            else:
                raise AdmissionError(
                    status=400, code="unsupported_action", safe_message="Unsupported action"
                )
        except ServiceError as exc:
            response = self._error_response(ctx, exc)
        except Exception as exc:
            logger.exception(
                "pipeline.unhandled request_id=%s route=%s", ctx.request_id, request.route
            )
            response = PipelineResponse(
                status=503,
                body={
                    "error": "Service temporarily unavailable",
                    "code": "internal_error",
                    "detail": error_excerpt(exc),
                },
            )
            if not ctx.audits:
                ctx.audit(blocked=True, block_reason="internal_error")
        response.body.setdefault("requestId", ctx.request_id)
        response.audits = list(ctx.audits)
        return response

    def _error_response(self, ctx: _RequestContext, exc: ServiceError) -> PipelineResponse:
        logger.info(
            "pipeline.rejected request_id=%s route=%s status=%s code=%s",
            ctx.request_id,
            ctx.request.route,
            exc.status,
            exc.code,
        )
        if not ctx.audits:
            ctx.audit(blocked=True, block_reason=exc.code)
        headers: dict[str, str] = {}
        if isinstance(exc, QuotaError) and exc.retry_after_seconds is not None:
            headers["Retry-After"] = str(exc.retry_after_seconds)
        return PipelineResponse(status=exc.status, body=exc.body(), headers=headers)

    # -- shared gates -----------------------------------------------------------------

    async def _admit(self, ctx: _RequestContext, *, require_generation: bool) -> RuntimePolicy:
        ctx.identity = await self._auth.verify(ctx.request.headers)
        policy = await self._policy_loader.get_policy()
        if policy is None:
            raise PolicyError(code="POLICY_UNAVAILABLE")
        if require_generation and not policy.enable_story_generation:
            ctx.audit(blocked=True, block_reason="generation_disabled")
            raise PolicyError(code="generation_disabled")
        if not self._origin_limiter.take(ctx.request.client_host, policy.ip_rate_per_min):
            raise AdmissionError(status=429, code="rate_limited", safe_message="Too many requests")
        if not self._identity_limiter.take(ctx.identity.uid, policy.uid_rate_per_min):
            raise AdmissionError(status=429, code="rate_limited", safe_message="Too many requests")
        if ctx.request.body_size > policy.max_body_bytes:
            raise AdmissionError(
                status=413, code="payload_too_large", safe_message="Request entity too large"
            )
        return policy

    def _validate(self, model: type[M], payload: Mapping[str, Any]) -> M:
        try:
            return model.model_validate(dict(payload))
        except ValidationError as exc:
            fields = sorted({".".join(str(part) for part in err["loc"]) for err in exc.errors()})
            logger.info("pipeline.invalid_request fields=%s", ",".join(fields[:8]))
            raise AdmissionError(
                status=400, code="invalid_request", safe_message="Invalid request"
            ) from exc

    async def _store_call(self, operation: str, fn: Callable[..., T], /, **kwargs: Any) -> T:
        try:
            return await asyncio.to_thread(fn, **kwargs)
        except DailyLimitExceeded:
            raise
        except Exception as exc:
            logger.error(
                "store.unavailable operation=%s error_type=%s", operation, type(exc).__name__
            )
            raise StoreError(message=f"{operation} failed") from exc

    async def _owned_story(self, ctx: _RequestContext, story_id: str) -> StoryMeta:
        assert ctx.identity is not None
        ctx.story_id = story_id
        meta = await self._store_call(
            "get_story_meta", self._store.get_story_meta, story_id=story_id
        )
        if meta is None:
            raise AdmissionError(status=404, code="story_not_found", safe_message="Story not found")
        if meta.owner_id != ctx.identity.uid:
            raise AdmissionError(status=403, code="story_forbidden", safe_message="Forbidden")
        return meta

    async def _enforce_daily_limit(self, ctx: _RequestContext, policy: RuntimePolicy) -> None:
        assert ctx.identity is not None
        now = self._clock()
        try:
            await self._store_call(
                "enforce_daily_limit",
                self._store.enforce_daily_limit,
                uid=ctx.identity.uid,
                limit=policy.daily_story_limit,
                day_key=day_key(now),
            )
        except DailyLimitExceeded as exc:
            ctx.audit(blocked=True, block_reason="daily_limit_exceeded")
            raise QuotaError(
                code="daily_limit_exceeded",
                safe_message="Daily limit exceeded",
                retry_after_seconds=seconds_until_utc_midnight(now),
            ) from exc

    def _blocked_input(
        self,
        ctx: _RequestContext,
        verdict: ModerationResult,
        *,
        story_id: str,
        chapter_index: int,
        lang: str | None,
    ) -> PipelineResponse:
        ctx.audit(blocked=True, block_reason=f"moderation_input:{verdict.reason}")
        return PipelineResponse(
            status=200,
            body=safe_stub_envelope(
                request_id=ctx.request_id,
                story_id=story_id,
                chapter_index=chapter_index,
                lang=lang,
            ),
            headers=blocked_headers("moderation_input"),
        )

    def _blocked_output(
        self,
        ctx: _RequestContext,
        verdict: ModerationResult,
        *,
        story_id: str,
        chapter_index: int,
        lang: str | None,
    ) -> PipelineResponse:
        ctx.audit(blocked=True, block_reason=f"moderation_output:{verdict.reason}")
        return PipelineResponse(
            status=200,
            body=safe_stub_envelope(
                request_id=ctx.request_id,
                story_id=story_id,
                chapter_index=chapter_index,
                lang=lang,
            ),
            headers=blocked_headers("moderation_output"),
        )

    async def _run_generation(self, awaitable: Any) -> GenerationResult:
        try:
            return await awaitable
        except GenerationTimeout as exc:
            logger.warning("generation.timeout service=%s", exc.service)
            raise UpstreamUnavailable(
                code="upstream_timeout", service=exc.service, message=str(exc)
            ) from exc
        except UpstreamError as exc:
            logger.warning(
                "generation.failed kind=%s status=%s service=%s", exc.kind, exc.status, exc.service
            )
            if exc.kind == "quota_daily" or (
                exc.kind == "rate_limited" and _DAILY_QUOTA_HINT.search(str(exc))
            ):
                raise QuotaError(
                    code="quota_daily_exceeded",
                    safe_message="Daily generation quota reached",
                    retry_after_seconds=seconds_until_utc_midnight(self._clock()),
                ) from exc
            raise UpstreamUnavailable(upstream_status=exc.status, service=exc.service) from exc

    # -- create -------------------------------------------------------------------------

    async def _handle_create(self, ctx: _RequestContext) -> PipelineResponse:
        policy = await self._admit(ctx, require_generation=True)
        assert ctx.identity is not None
        body = self._validate(CreateRequest, ctx.request.payload)
        selection = body.selection or Selection()
        idea = (body.idea or body.prompt or "").strip()
        if not (idea or body.storyId or selection.has_any()):
            raise AdmissionError(
                status=422,
                code="generate_input_required",
                safe_message="Story idea or selection required",
            )
        await self._enforce_daily_limit(ctx, policy)

        story_id = new_story_id()
        ctx.story_id = story_id
        combined_input = json.dumps(
            {
                "idea": idea,
                "hero": selection.hero or "",
                "location": selection.location or "",
                "storyType": selection.style or "",
            },
            ensure_ascii=False,
        )
        verdict = moderate_text(combined_input, policy.max_input_chars)
        if not verdict.allowed:
            return self._blocked_input(
                ctx, verdict, story_id=story_id, chapter_index=0, lang=body.storyLang
            )

        params = CreateParams(
            request_id=ctx.request_id,
            uid=ctx.identity.uid,
            story_lang=body.storyLang,
            age_group=body.ageGroup,
            story_length=body.storyLength,
            creativity_level=body.creativityLevel,
            selection=StorySelection(
                hero=selection.hero or "",
                location=selection.location or "",
                style=selection.style or "",
            ),
            idea=idea,
        )
        result = await self._run_generation(
            self._generation.generate_create(params, policy=policy)
        )
        image_requested = bool(body.image and body.image.enabled)
        draft = replace(
            result.draft,
            request_id=ctx.request_id,
            story_id=story_id,
            chapter_index=0,
            image_enabled=image_requested and policy.enable_illustrations,
        )
        verdict = moderate_text(f"{draft.title}\n{draft.text}", policy.max_output_chars)
        if not verdict.allowed:
            return self._blocked_output(
                ctx, verdict, story_id=story_id, chapter_index=0, lang=body.storyLang
            )

        chapter = _chapter_from_draft(draft)
        meta = StoryMeta(
            story_id=story_id,
            owner_id=ctx.identity.uid,
            title=draft.title,
            lang=body.storyLang,
            age_group=body.ageGroup,
            story_length=body.storyLength,
            creativity_level=body.creativityLevel,
            hero=selection.hero,
            location=selection.location,
            style=selection.style,
            idea=idea or None,
            policy_version=policy.policy_version,
            latest_chapter_index=0,
        )
        await self._store_call(
            "upsert_story_session",
            self._store.upsert_story_session,
            meta=meta,
            chapters=[chapter],
        )
        ctx.audit(blocked=False)
        logger.info(
            "story.created request_id=%s story_id=%s model=%s",
            ctx.request_id,
            story_id,
            result.model,
        )
        return PipelineResponse(status=200, body=_draft_envelope(draft))

    # -- continue -----------------------------------------------------------------------

    async def _handle_continue(self, ctx: _RequestContext) -> PipelineResponse:
        policy = await self._admit(ctx, require_generation=True)
        assert ctx.identity is not None
        body = self._validate(ContinueRequest, ctx.request.payload)
        if not body.storyId:
            raise AdmissionError(
                status=422, code="generate_input_required", safe_message="storyId required"
            )
        if body.choice is None or not body.choice.is_identifiable():
            raise AdmissionError(
                status=422, code="generate_input_required", safe_message="choice required"
            )
        meta = await self._owned_story(ctx, body.storyId)
        await self._enforce_daily_limit(ctx, policy)

        recent = await self._store_call(
            "list_recent_chapters",
            self._store.list_recent_chapters,
            story_id=meta.story_id,
            limit=RECENT_CHAPTER_WINDOW,
        )
        known_indexes = [chapter.chapter_index for chapter in recent]
        if meta.latest_chapter_index is not None:
            known_indexes.append(meta.latest_chapter_index)
        next_index = max(known_indexes, default=-1) + 1
        lang = body.storyLang or meta.lang or "en"
        selection = body.selection or Selection()
        story_selection = StorySelection(
            hero=selection.hero or meta.hero or "",
            location=selection.location or meta.location or "",
            style=selection.style or meta.style or "",
        )
        choice = body.choice.model_dump(exclude_none=True)

        combined_input = json.dumps(
            {
                "choice": choice,
                "idea": body.idea or "",
                "hero": selection.hero or "",
                "location": selection.location or "",
                "storyType": selection.style or "",
            },
            ensure_ascii=False,
        )
        verdict = moderate_text(combined_input, policy.max_input_chars)
        if not verdict.allowed:
            return self._blocked_input(
                ctx, verdict, story_id=meta.story_id, chapter_index=next_index, lang=lang
            )

        params = ContinueParams(
            request_id=ctx.request_id,
            uid=ctx.identity.uid,
            story_id=meta.story_id,
            next_chapter_index=next_index,
            previous_text=recent[-1].text if recent else "",
            choice=choice,
            story_lang=lang,
            age_group=body.ageGroup or meta.age_group,
            story_length=body.storyLength or meta.story_length,
            selection=story_selection,
            recent_titles=tuple(chapter.title for chapter in recent),
        )
        result = await self._run_generation(
            self._generation.generate_continue(params, policy=policy)
        )
        # The model's own index is never trusted; progress never moves backwards.
        previous_progress = recent[-1].progress if recent else 0.0
        draft = replace(
            result.draft,
            request_id=ctx.request_id,
            story_id=meta.story_id,
            chapter_index=next_index,
            progress=max(previous_progress, result.draft.progress),
            image_enabled=bool(body.image and body.image.enabled) and policy.enable_illustrations,
        )
        verdict = moderate_text(f"{draft.title}\n{draft.text}", policy.max_output_chars)
        if not verdict.allowed:
            return self._blocked_output(
                ctx, verdict, story_id=meta.story_id, chapter_index=next_index, lang=lang
            )

        await self._store_call(
            "write_chapter",
            self._store.write_chapter,
            story_id=meta.story_id,
            owner_id=meta.owner_id,
            chapter=_chapter_from_draft(draft),
        )
        ctx.audit(blocked=False)
        logger.info(
            "story.continued request_id=%s story_id=%s chapter=%s model=%s",
            ctx.request_id,
            meta.story_id,
            next_index,
            result.model,
        )
        return PipelineResponse(status=200, body=_draft_envelope(draft))

    # -- illustrate ---------------------------------------------------------------------

    async def _handle_illustrate(self, ctx: _RequestContext) -> PipelineResponse:
        policy = await self._admit(ctx, require_generation=False)
        body = self._validate(IllustrateRequest, ctx.request.payload)
        if self._options.require_illustrate_user_initiated and not (
            body.meta and body.meta.userInitiated
        ):
            raise AdmissionError(
                status=403,
                code="user_initiation_required",
                safe_message="Illustration must be requested by the user",
            )
        prompt = (body.prompt or "").strip()
        if not body.storyId or body.chapterIndex is None or not prompt:
            raise AdmissionError(
                status=422,
                code="generate_input_required",
                safe_message="storyId, chapterIndex and prompt required",
            )
        meta = await self._owned_story(ctx, body.storyId)
        chapter = await self._store_call(
            "get_story_chapter",
            self._store.get_story_chapter,
            story_id=meta.story_id,
            chapter_index=body.chapterIndex,
        )
        if chapter is None:
            raise AdmissionError(
                status=404, code="story_not_found", safe_message="Chapter not found"
            )
        await self._enforce_daily_limit(ctx, policy)

        lang = body.storyLang or meta.lang or "en"
        verdict = moderate_text(prompt, policy.max_input_chars)
        if not verdict.allowed:
            ctx.audit(blocked=True, block_reason=f"moderation_input:{verdict.reason}")
            return PipelineResponse(
                status=200,
                body=_chapter_envelope(
                    ctx.request_id,
                    meta.story_id,
                    chapter,
                    placeholder_image("moderation_input"),
                ),
                headers=blocked_headers("moderation_input"),
            )
        if not policy.enable_illustrations:
            ctx.audit(blocked=True, block_reason="illustrations_disabled")
            return PipelineResponse(
                status=200,
                body=_chapter_envelope(
                    ctx.request_id,
                    meta.story_id,
                    chapter,
                    placeholder_image("illustrations_disabled"),
                ),
            )

        options = body.image
        plan = build_image_prompt(
            scene=prompt,
            lang=lang,
            age_group=body.ageGroup or meta.age_group,
            size=options.size if options else None,
            style=options.style if options else None,
        )
        image, failure = await self._generate_illustration(plan.prompt, plan.aspect_ratio, policy)
        if image is None:
            ctx.audit(blocked=False, block_reason=failure)
            return PipelineResponse(
                status=200,
                body=_chapter_envelope(
                    ctx.request_id,
                    meta.story_id,
                    chapter,
                    placeholder_image(failure or "image_generation_failed", prompt=prompt),
                ),
            )

        image_block = await self._publish_illustration(
            meta=meta, chapter=chapter, image=image, prompt=prompt
        )
        ctx.audit(blocked=False)
        return PipelineResponse(
            status=200,
            body=_chapter_envelope(ctx.request_id, meta.story_id, chapter, image_block),
        )

    async def _generate_illustration(
        self, prompt: str, aspect_ratio: str, policy: RuntimePolicy
    ) -> tuple[GeneratedImage | None, str | None]:
        try:
            image = await self._generation.generate_image(
                prompt=prompt,
                aspect_ratio=aspect_ratio,
                timeout_seconds=policy.request_timeout_seconds,
            )
        except GenerationTimeout:
            logger.warning("illustration.timeout")
            return None, "image_timeout"
        except UpstreamError as exc:
            logger.warning("illustration.failed kind=%s status=%s", exc.kind, exc.status)
            if exc.kind == "bad_response":
                return None, "image_empty"
            return None, "image_generation_failed"
        except Exception:
            logger.exception("illustration.unexpected_failure")
            return None, "image_generation_failed"
        return image, None

    async def _publish_illustration(
        self,
        *,
        meta: StoryMeta,
        chapter: StoryChapter,
        image: GeneratedImage,
        prompt: str,
    ) -> dict[str, Any]:
        extension = "png" if image.mime_type == "image/png" else "jpg"
        storage_path = (
            f"stories/{meta.story_id}/chapters/{chapter.chapter_index}/{uuid4().hex}.{extension}"
        )
        url: str | None = None
        if self._image_storage is not None:
            try:
                url = await asyncio.to_thread(
                    self._image_storage.upload,
                    path=storage_path,
                    data=image.data,
                    content_type=image.mime_type,
                )
            except Exception as exc:
                logger.warning("illustration.upload_failed error_type=%s", type(exc).__name__)
                url = None

        if url is None:
            encoded = base64.b64encode(image.data).decode("ascii")
            data_url = f"data:{image.mime_type};base64,{encoded}"
            return {
                "enabled": True,
                "disabled": False,
                "url": data_url,
                "base64": data_url,
                "mimeType": image.mime_type,
                "reason": "inline_fallback",
                "prompt": prompt,
            }

        try:
            recorded = await asyncio.to_thread(
                self._store.update_chapter_illustration,
                story_id=meta.story_id,
                chapter_index=chapter.chapter_index,
                image_url=url,
                image_storage_path=storage_path,
                image_prompt=prompt,
            )
            if not recorded:
                logger.warning(
                    "illustration.record_missing story_id=%s chapter=%s",
                    meta.story_id,
                    chapter.chapter_index,
                )
        except Exception as exc:
            logger.warning(
                "illustration.record_failed story_id=%s error_type=%s",
                meta.story_id,
                type(exc).__name__,
            )
        return {
            "enabled": True,
            "disabled": False,
            "url": url,
            "mimeType": image.mime_type,
            "reason": None,
            "prompt": prompt,
            "storagePath": storage_path,
        }


def _chapter_from_draft(draft: ChapterDraft) -> StoryChapter:
    return StoryChapter(
        chapter_index=draft.chapter_index,
        title=draft.title,
        text=draft.text,
        progress=draft.progress,
        choices=draft.choices,
    )


def _draft_envelope(draft: ChapterDraft) -> dict[str, Any]:
    return story_envelope(
        request_id=draft.request_id,
        story_id=draft.story_id,
        chapter_index=draft.chapter_index,
        progress=draft.progress,
        title=draft.title,
        text=draft.text,
        image={"enabled": draft.image_enabled, "url": None},
        choices=[choice.as_dict() for choice in draft.choices],
    )


def _chapter_envelope(
    request_id: str, story_id: str, chapter: StoryChapter, image: dict[str, Any]
) -> dict[str, Any]:
    return story_envelope(
        request_id=request_id,
        story_id=story_id,
        chapter_index=chapter.chapter_index,
        progress=chapter.progress,
        title=chapter.title,
        text=chapter.text,
        image=image,
        choices=[choice.as_dict() for choice in chapter.choices],
    )
