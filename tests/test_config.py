from __future__ import annotations

from pathlib import Path

import pytest

from kidstel_agent.config import DEFAULT_CORS_ORIGINS, DEFAULT_DB_PATH, AgentSettings
from kidstel_agent.core.policy import DEFAULT_TEXT_MODEL


def test_defaults_fail_closed_on_auth() -> None:
    settings = AgentSettings.from_env({})
    assert settings.auth_required is True
    assert settings.app_check_required is True
    assert settings.kill_switch is False
    assert settings.policy_mode == "store"
    assert settings.text_model == DEFAULT_TEXT_MODEL
    assert settings.db_path == DEFAULT_DB_PATH
    assert settings.cors_origins == DEFAULT_CORS_ORIGINS


def test_flags_and_clamped_integers_are_parsed() -> None:
    settings = AgentSettings.from_env(
        {
            "KIDSTEL_AUTH_REQUIRED": "false",
            "KIDSTEL_APPCHECK_REQUIRED": "0",
            "KIDSTEL_KILL_SWITCH": "yes",
            "KIDSTEL_MOCK_ENGINE": "maybe",
            "KIDSTEL_POLICY_TTL_SECONDS": "99999",
            "KIDSTEL_JWKS_TTL_SECONDS": "1",
            "KIDSTEL_DB_PATH": "/tmp/agent.db",
        }
    )
    assert settings.auth_required is False
    assert settings.app_check_required is False
    assert settings.kill_switch is True
    assert settings.mock_engine is False
    assert settings.policy_ttl_seconds == 3600
    assert settings.jwks_ttl_seconds == 30
    assert settings.db_path == Path("/tmp/agent.db")


def test_firestore_policy_mode_maps_to_store() -> None:
    assert AgentSettings.from_env({"KIDSTEL_POLICY_MODE": "Firestore"}).policy_mode == "store"
    assert AgentSettings.from_env({"KIDSTEL_POLICY_MODE": "static"}).policy_mode == "static"


def test_unknown_policy_mode_is_rejected() -> None:
    with pytest.raises(RuntimeError, match="KIDSTEL_POLICY_MODE"):
        AgentSettings.from_env({"KIDSTEL_POLICY_MODE": "redis"})


def test_revision_falls_back_to_platform_variables() -> None:
    settings = AgentSettings.from_env({"K_REVISION": "agent-00042", "K_SERVICE": "agent"})
    assert settings.revision == "agent-00042"
    assert settings.service == "agent"
    explicit = AgentSettings.from_env({"KIDSTEL_REVISION": "r1", "K_REVISION": "agent-00042"})
    assert explicit.revision == "r1"


def test_cors_origins_are_split_and_trimmed() -> None:
    settings = AgentSettings.from_env(
        {"KIDSTEL_CORS_ORIGINS": "https://app.example.test, https://admin.example.test,,"}
    )
    assert settings.cors_origins == ("https://app.example.test", "https://admin.example.test")
