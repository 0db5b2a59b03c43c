"""FastAPI transport for the story agent: body parsing, routing and response headers."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import replace
from pathlib import Path
from typing import Any

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from kidstel_agent.api.contracts import (
    STORY_RESPONSES,
    HealthResponse,
    InvalidJsonDebug,
    InvalidJsonResponse,
    StoryEnvelope,
)
from kidstel_agent.config import AgentSettings
from kidstel_agent.container import AgentContainer, build_container
from kidstel_agent.core.pipeline import InboundRequest, PipelineResponse
from kidstel_agent.core.story_contracts import infer_legacy_action, normalize_legacy_payload
from kidstel_agent.domain.models import AuditRecord
from kidstel_agent.domain.ports import StoryStore

# Transport ceiling; the policy limit (max 256 KiB) is enforced later in the pipeline.
HARD_BODY_LIMIT_BYTES = 256 * 1024

REVISION_HEADER = "X-KidsTel-Revision"
SERVICE_HEADER = "X-KidsTel-Service"
ACTION_HEADER = "X-KidsTel-Action"
REQUEST_ID_HEADER = "X-Request-Id"

logger = logging.getLogger(__name__)


def _client_host(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    first_hop = forwarded.split(",")[0].strip()
    if first_hop:
        return first_hop
    if request.client is not None and request.client.host:
        return request.client.host
    return "unknown"


def _flush_audits(store: StoryStore, audits: list[AuditRecord]) -> None:
    """Runs after the response is sent; a failed write never reaches the client."""
    for record in audits:
        try:
            store.write_audit(record)
        except Exception as exc:
            logger.warning(
                "audit.write_failed request_id=%s error_type=%s",
                record.request_id,
                type(exc).__name__,
            )


def _invalid_json(request: Request, body_size: int, exc: Exception) -> JSONResponse:
    body = InvalidJsonResponse(
        debug=InvalidJsonDebug(
            contentType=request.headers.get("content-type"),
            contentLength=body_size,
            message=str(exc)[:120],
        )
    )
    return JSONResponse(status_code=400, content=body.model_dump())


def create_app(
    settings: AgentSettings | None = None,
    *,
    container: AgentContainer | None = None,
    db_path: Path | None = None,
) -> FastAPI:
    """Create the API application."""
    if container is not None:
        effective_settings = container.settings
    else:
        effective_settings = settings or AgentSettings.from_env()
        if db_path is not None:
            effective_settings = replace(effective_settings, db_path=db_path)
        container = build_container(effective_settings)
    pipeline = container.pipeline
    store = container.store

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "api.start revision=%s service=%s policy_mode=%s",
            effective_settings.revision,
            effective_settings.service,
            effective_settings.policy_mode,
        )
        yield
        await container.aclose()

    app = FastAPI(
        title="kidstel-agent API",
        version="0.4.0",
        description=(
            "Admission, moderation and orchestration for kid-safe interactive story "
            "generation."
        ),
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        openapi_tags=[
            {"name": "system", "description": "Service health and runtime metadata."},
            {"name": "story", "description": "Story create, continue and illustrate actions."},
        ],
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(effective_settings.cors_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=[
            REQUEST_ID_HEADER,
            REVISION_HEADER,
            SERVICE_HEADER,
            ACTION_HEADER,
            "X-KidsTel-Blocked",
            "X-KidsTel-Block-Reason",
            "Retry-After",
        ],
    )

    def diagnostic_headers(action: str | None = None) -> dict[str, str]:
        headers = {
            REVISION_HEADER: effective_settings.revision,
            SERVICE_HEADER: effective_settings.service,
        }
        if action:
            headers[ACTION_HEADER] = action
        return headers

    def to_json_response(
        result: PipelineResponse, *, action: str | None, background_tasks: BackgroundTasks
    ) -> JSONResponse:
        headers = {**diagnostic_headers(action), **result.headers}
        request_id = result.body.get("requestId")
        if isinstance(request_id, str):
            headers[REQUEST_ID_HEADER] = request_id
        if result.audits:
            background_tasks.add_task(_flush_audits, store, list(result.audits))
        return JSONResponse(status_code=result.status, content=result.body, headers=headers)

    async def dispatch(
        request: Request,
        background_tasks: BackgroundTasks,
        *,
        route: str,
        action: str | None,
    ) -> JSONResponse:
        disabled = pipeline.disabled_response()
        if disabled is not None:
            return to_json_response(disabled, action=action, background_tasks=background_tasks)

        raw = await request.body()
        body_size = len(raw)
        if body_size > HARD_BODY_LIMIT_BYTES:
            return JSONResponse(
                status_code=413,
                content={"error": "Request entity too large", "code": "payload_too_large"},
                headers=diagnostic_headers(action),
            )
        try:
            parsed: Any = json.loads(raw) if raw.strip() else {}
        except ValueError as exc:
            return _invalid_json(request, body_size, exc)
        if not isinstance(parsed, dict):
            return _invalid_json(request, body_size, ValueError("JSON body must be an object"))

        payload = normalize_legacy_payload(parsed)
        if isinstance(payload.get("action"), str):
            payload["action"] = payload["action"].strip().lower()
        if action is None:
            action = str(payload.get("action") or "")
        elif action == "legacy":
            action = infer_legacy_action(payload)

        result = await pipeline.handle(
            InboundRequest(
                action=action,
                route=route,
                headers={key.lower(): value for key, value in request.headers.items()},
                payload=payload,
                body_size=body_size,
                client_host=_client_host(request),
            )
        )
        return to_json_response(result, action=action, background_tasks=background_tasks)

    @app.get("/healthz", response_model=HealthResponse, tags=["system"])
    def healthz() -> JSONResponse:
        body = HealthResponse(
            service=effective_settings.service, revision=effective_settings.revision
        )
        return JSONResponse(content=body.model_dump(), headers=diagnostic_headers())

    @app.post("/", response_model=StoryEnvelope, responses=STORY_RESPONSES, tags=["story"])
    async def story_action(request: Request, background_tasks: BackgroundTasks) -> JSONResponse:
        return await dispatch(request, background_tasks, route="/", action=None)

    @app.post(
        "/v1/story/create",
        response_model=StoryEnvelope,
        responses=STORY_RESPONSES,
        tags=["story"],
    )
    async def story_create(request: Request, background_tasks: BackgroundTasks) -> JSONResponse:
        return await dispatch(
            request, background_tasks, route="/v1/story/create", action="generate"
        )

    @app.post(
        "/v1/story/continue",
        response_model=StoryEnvelope,
        responses=STORY_RESPONSES,
        tags=["story"],
    )
    async def story_continue(request: Request, background_tasks: BackgroundTasks) -> JSONResponse:
        return await dispatch(
            request, background_tasks, route="/v1/story/continue", action="continue"
        )

    @app.post(
        "/v1/story/illustrate",
        response_model=StoryEnvelope,
        responses=STORY_RESPONSES,
        tags=["story"],
    )
    async def story_illustrate(
        request: Request, background_tasks: BackgroundTasks
    ) -> JSONResponse:
        return await dispatch(
            request, background_tasks, route="/v1/story/illustrate", action="illustrate"
        )

    @app.post(
        "/v1/story",
        response_model=StoryEnvelope,
        responses=STORY_RESPONSES,
        tags=["story"],
    )
    async def story_legacy(request: Request, background_tasks: BackgroundTasks) -> JSONResponse:
        return await dispatch(request, background_tasks, route="/v1/story", action="legacy")

    return app


app = create_app()
