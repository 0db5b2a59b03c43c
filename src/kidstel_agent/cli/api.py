"""Serve the story agent over HTTP.

Flags are folded into `KIDSTEL_*` variables before uvicorn imports the app, so
the module-level `app` sees the same settings a deployed container would. The
settings are parsed once up front; a bad policy mode fails here instead of in
a worker.
"""

from __future__ import annotations

import argparse
import os
from collections.abc import MutableMapping

import uvicorn

from kidstel_agent.adapters.observability import configure_runtime_logging
from kidstel_agent.config import AgentSettings, int_env

APP_PATH = "kidstel_agent.api.app:app"


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Serve the kidstel story agent API.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Listen port (default: $PORT, else 8080).",
    )
    parser.add_argument("--reload", action="store_true")
    parser.add_argument("--db-path", default="", help="Sets KIDSTEL_DB_PATH.")
    parser.add_argument(
        "--mock-engine",
        action="store_true",
        help="Answer with the offline mock engine instead of Gemini.",
    )
    parser.add_argument(
        "--policy-file",
        default="",
        help="Serve a static policy document from this JSON file (KIDSTEL_POLICY_MODE=static).",
    )
    parser.add_argument(
        "--insecure-dev",
        action="store_true",
        help="Disable ID token and AppCheck enforcement for local clients.",
    )
    return parser


def apply_overrides(parsed: argparse.Namespace, environ: MutableMapping[str, str]) -> None:
    db_path = str(parsed.db_path).strip()
    if db_path:
        environ["KIDSTEL_DB_PATH"] = db_path
    if parsed.mock_engine:
        environ["KIDSTEL_MOCK_ENGINE"] = "1"
    policy_file = str(parsed.policy_file).strip()
    if policy_file:
        with open(policy_file, encoding="utf-8") as handle:
            environ["KIDSTEL_POLICY_STATIC_JSON"] = handle.read()
        environ["KIDSTEL_POLICY_MODE"] = "static"
    if parsed.insecure_dev:
        environ["KIDSTEL_AUTH_REQUIRED"] = "0"
        environ["KIDSTEL_APPCHECK_REQUIRED"] = "0"


def resolve_port(parsed: argparse.Namespace, environ: MutableMapping[str, str]) -> int:
    if parsed.port is not None:
        return int(parsed.port)
    return int_env(environ, "PORT", 8080, minimum=1, maximum=65535)


def main(argv: list[str] | None = None) -> None:
    configure_runtime_logging()
    parsed = build_arg_parser().parse_args(argv)
    apply_overrides(parsed, os.environ)
    AgentSettings.from_env()
    uvicorn.run(
        APP_PATH,
        host=str(parsed.host),
        port=resolve_port(parsed, os.environ),
        reload=bool(parsed.reload),
        proxy_headers=True,
        log_level=os.environ.get("KIDSTEL_LOG_LEVEL", "info").strip().lower() or "info",
        server_header=False,
    )


if __name__ == "__main__":
    main()
