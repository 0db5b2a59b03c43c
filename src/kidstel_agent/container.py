"""Wire settings, adapters and core services into one request pipeline."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from kidstel_agent.adapters.gemini import GeminiBackend
from kidstel_agent.adapters.image_storage import LocalImageStorage
from kidstel_agent.adapters.jwks_verifier import (
    APPCHECK_JWKS_URL,
    ID_TOKEN_JWKS_URL,
    JwksTokenVerifier,
    RejectingTokenVerifier,
    id_token_issuer,
)
from kidstel_agent.adapters.mock_engine import MockStoryEngine
from kidstel_agent.adapters.sqlite_story_store import SQLiteStoryStore
from kidstel_agent.config import AgentSettings
from kidstel_agent.core.auth import AuthVerifier
from kidstel_agent.core.generation import GenerationClient
from kidstel_agent.core.pipeline import PipelineOptions, StoryPipeline, utc_now
from kidstel_agent.core.policy import (
    DEFAULT_TEXT_MODEL,
    PolicyLoader,
    StaticPolicySource,
    StorePolicySource,
)
from kidstel_agent.core.rate_limit import FixedWindowRateLimiter
from kidstel_agent.domain.ports import (
    ImageModel,
    ImageStorage,
    PolicySource,
    StoryStore,
    TextModel,
    TokenVerifier,
)

logger = logging.getLogger(__name__)


@dataclass
class AgentContainer:
    settings: AgentSettings
    store: StoryStore
    pipeline: StoryPipeline
    policy_loader: PolicyLoader
    gemini: GeminiBackend | None = None

    async def aclose(self) -> None:
        if self.gemini is not None:
            await self.gemini.aclose()


def _id_token_verifier(settings: AgentSettings) -> TokenVerifier:
    return JwksTokenVerifier(
        issuer=settings.id_token_issuer or id_token_issuer(settings.project_id),
        audience=settings.project_id,
        jwks_url=settings.id_token_jwks_url or ID_TOKEN_JWKS_URL,
        jwks_json=settings.id_token_jwks_json,
        ttl_seconds=settings.jwks_ttl_seconds,
    )


def _app_check_verifier(settings: AgentSettings) -> TokenVerifier:
    if not settings.app_check_issuer:
        return RejectingTokenVerifier("KIDSTEL_APPCHECK_ISSUER is not configured.")
    return JwksTokenVerifier(
        issuer=settings.app_check_issuer,
        audience=settings.app_check_audience or f"projects/{settings.project_id}",
        jwks_url=settings.app_check_jwks_url or APPCHECK_JWKS_URL,
        jwks_json=settings.app_check_jwks_json,
        ttl_seconds=settings.jwks_ttl_seconds,
    )


def _policy_source(settings: AgentSettings, store: StoryStore) -> PolicySource:
    if settings.policy_mode == "static":
        return StaticPolicySource(settings.policy_static_json)
    return StorePolicySource(store)


def _image_storage(settings: AgentSettings) -> ImageStorage | None:
    if not settings.image_public_base_url:
        return None
    return LocalImageStorage(
        root=settings.image_dir, public_base_url=settings.image_public_base_url
    )


def build_container(
    settings: AgentSettings,
    *,
    store: StoryStore | None = None,
    text_model: TextModel | None = None,
    image_model: ImageModel | None = None,
    image_storage: ImageStorage | None = None,
    id_token_verifier: TokenVerifier | None = None,
    app_check_verifier: TokenVerifier | None = None,
    policy_source: PolicySource | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> AgentContainer:
    """Build the pipeline; any collaborator passed in replaces the configured one."""
    effective_store: StoryStore = (
        store if store is not None else SQLiteStoryStore(db_path=settings.db_path)
    )

    gemini: GeminiBackend | None = None
    if text_model is None or image_model is None:
        if settings.mock_engine:
            mock = MockStoryEngine()
            text_model = text_model or mock
            image_model = image_model or mock
        else:
            gemini = GeminiBackend(
                api_key=settings.gemini_api_key,
                base_url=settings.gemini_base_url,
                image_model=settings.image_model,
            )
            text_model = text_model or gemini
            image_model = image_model or gemini

    policy_loader = PolicyLoader(
        policy_source or _policy_source(settings, effective_store),
        ttl_seconds=settings.policy_ttl_seconds,
    )
    auth = AuthVerifier(
        id_token_verifier=id_token_verifier or _id_token_verifier(settings),
        app_check_verifier=app_check_verifier or _app_check_verifier(settings),
        auth_required=settings.auth_required,
        app_check_required=settings.app_check_required,
    )
    pipeline = StoryPipeline(
        auth=auth,
        policy_loader=policy_loader,
        store=effective_store,
        generation=GenerationClient(
            text_model=text_model,
            image_model=image_model,
            configured_model=settings.text_model,
            last_resort_model=DEFAULT_TEXT_MODEL,
        ),
        image_storage=image_storage if image_storage is not None else _image_storage(settings),
        origin_limiter=FixedWindowRateLimiter(name="origin"),
        identity_limiter=FixedWindowRateLimiter(name="identity"),
        options=PipelineOptions(
            kill_switch=settings.kill_switch,
            require_illustrate_user_initiated=settings.require_illustrate_user_initiated,
        ),
        clock=clock,
    )
    logger.info(
        "container.built policy_mode=%s auth_required=%s app_check_required=%s mock_engine=%s",
        settings.policy_mode,
        settings.auth_required,
        settings.app_check_required,
        settings.mock_engine,
    )
    return AgentContainer(
        settings=settings,
        store=effective_store,
        pipeline=pipeline,
        policy_loader=policy_loader,
        gemini=gemini,
    )
