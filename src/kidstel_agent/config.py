"""Process settings read once from `KIDSTEL_*` environment variables."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from kidstel_agent.core.policy import DEFAULT_TEXT_MODEL

DEFAULT_DB_PATH = Path("work/local/kidstel.db")
DEFAULT_IMAGE_DIR = Path("work/images")
DEFAULT_IMAGE_MODEL = "imagen-3.0-generate-002"
DEFAULT_CORS_ORIGINS = ("http://127.0.0.1:5173", "http://localhost:5173")

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _env(environ: Mapping[str, str], name: str, default: str = "") -> str:
    return str(environ.get(name, default)).strip()


def _env_flag(environ: Mapping[str, str], name: str, default: bool) -> bool:
    raw = _env(environ, name).lower()
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    return default


def int_env(
    environ: Mapping[str, str], name: str, default: int, *, minimum: int, maximum: int
) -> int:
    raw = _env(environ, name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, min(maximum, value))


@dataclass(frozen=True)
class AgentSettings:
    project_id: str = "kidstel-local"
    auth_required: bool = True
    app_check_required: bool = True
    kill_switch: bool = False
    policy_mode: str = "store"
    policy_static_json: str = ""
    policy_ttl_seconds: int = 60
    text_model: str = DEFAULT_TEXT_MODEL
    image_model: str = DEFAULT_IMAGE_MODEL
    gemini_api_key: str = ""
    gemini_base_url: str = ""
    mock_engine: bool = False
    db_path: Path = DEFAULT_DB_PATH
    image_dir: Path = DEFAULT_IMAGE_DIR
    image_public_base_url: str = ""
    id_token_issuer: str = ""
    id_token_jwks_url: str = ""
    id_token_jwks_json: str = ""
    app_check_issuer: str = ""
    app_check_audience: str = ""
    app_check_jwks_url: str = ""
    app_check_jwks_json: str = ""
    jwks_ttl_seconds: int = 300
    require_illustrate_user_initiated: bool = False
    revision: str = "local"
    service: str = "kidstel-agent"
    cors_origins: tuple[str, ...] = field(default=DEFAULT_CORS_ORIGINS)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> AgentSettings:
        env = os.environ if environ is None else environ
        policy_mode = _env(env, "KIDSTEL_POLICY_MODE", "store").lower()
        if policy_mode == "firestore":
            policy_mode = "store"
        if policy_mode not in {"store", "static"}:
            raise RuntimeError(
                "Unsupported KIDSTEL_POLICY_MODE value. Expected store, firestore, or static."
            )
        cors_raw = _env(env, "KIDSTEL_CORS_ORIGINS")
        cors_origins = (
            tuple(origin.strip() for origin in cors_raw.split(",") if origin.strip())
            if cors_raw
            else DEFAULT_CORS_ORIGINS
        )
        return cls(
            project_id=_env(env, "KIDSTEL_PROJECT_ID", "kidstel-local") or "kidstel-local",
            auth_required=_env_flag(env, "KIDSTEL_AUTH_REQUIRED", True),
            app_check_required=_env_flag(env, "KIDSTEL_APPCHECK_REQUIRED", True),
            kill_switch=_env_flag(env, "KIDSTEL_KILL_SWITCH", False),
            policy_mode=policy_mode,
            policy_static_json=_env(env, "KIDSTEL_POLICY_STATIC_JSON"),
            policy_ttl_seconds=int_env(
                env, "KIDSTEL_POLICY_TTL_SECONDS", 60, minimum=1, maximum=3600
            ),
            text_model=_env(env, "KIDSTEL_GEMINI_MODEL") or DEFAULT_TEXT_MODEL,
            image_model=_env(env, "KIDSTEL_IMAGE_MODEL") or DEFAULT_IMAGE_MODEL,
            gemini_api_key=_env(env, "KIDSTEL_GEMINI_API_KEY"),
            gemini_base_url=_env(env, "KIDSTEL_GEMINI_BASE_URL"),
            mock_engine=_env_flag(env, "KIDSTEL_MOCK_ENGINE", False),
            db_path=Path(_env(env, "KIDSTEL_DB_PATH") or DEFAULT_DB_PATH),
            image_dir=Path(_env(env, "KIDSTEL_IMAGE_DIR") or DEFAULT_IMAGE_DIR),
            image_public_base_url=_env(env, "KIDSTEL_IMAGE_PUBLIC_BASE_URL"),
            id_token_issuer=_env(env, "KIDSTEL_ID_TOKEN_ISSUER"),
            id_token_jwks_url=_env(env, "KIDSTEL_ID_TOKEN_JWKS_URL"),
            id_token_jwks_json=_env(env, "KIDSTEL_ID_TOKEN_JWKS_JSON"),
            app_check_issuer=_env(env, "KIDSTEL_APPCHECK_ISSUER"),
            app_check_audience=_env(env, "KIDSTEL_APPCHECK_AUDIENCE"),
            app_check_jwks_url=_env(env, "KIDSTEL_APPCHECK_JWKS_URL"),
            app_check_jwks_json=_env(env, "KIDSTEL_APPCHECK_JWKS_JSON"),
            jwks_ttl_seconds=int_env(
                env, "KIDSTEL_JWKS_TTL_SECONDS", 300, minimum=30, maximum=3600
            ),
            require_illustrate_user_initiated=_env_flag(
                env, "KIDSTEL_REQUIRE_ILLUSTRATE_USER_INITIATED", False
            ),
            revision=_env(env, "KIDSTEL_REVISION") or _env(env, "K_REVISION") or "local",
            service=_env(env, "KIDSTEL_SERVICE") or _env(env, "K_SERVICE") or "kidstel-agent",
            cors_origins=cors_origins,
        )
