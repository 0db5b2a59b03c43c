"""CLI helper that validates a runtime policy document and writes it to the store."""

from __future__ import annotations

import argparse
import json
import os
from pathlib import Path

from kidstel_agent.adapters.sqlite_story_store import SQLiteStoryStore
from kidstel_agent.config import DEFAULT_DB_PATH
from kidstel_agent.core.policy import POLICY_DOCUMENT_ID, parse_policy


def build_arg_parser() -> argparse.ArgumentParser:
    """Define CLI flags for seeding the policy document."""
    parser = argparse.ArgumentParser(description="Seed the runtime policy document.")
    parser.add_argument("--input", default="", help="Path to a policy JSON document.")
    parser.add_argument(
        "--enable-generation",
        action="store_true",
        help="Shortcut: seed defaults with story generation enabled.",
    )
    parser.add_argument(
        "--enable-illustrations",
        action="store_true",
        help="Shortcut: seed defaults with illustrations enabled.",
    )
    parser.add_argument(
        "--db-path",
        default="",
        help="SQLite path (default: KIDSTEL_DB_PATH or work/local/kidstel.db).",
    )
    parser.add_argument("--doc-id", default=POLICY_DOCUMENT_ID)
    return parser


def main(argv: list[str] | None = None) -> None:
    """Validate the document strictly, then write it; invalid documents are never stored."""
    parser = build_arg_parser()
    parsed = parser.parse_args(argv)

    raw: dict[str, object] = {}
    input_path = str(parsed.input).strip()
    if input_path:
        loaded = json.loads(Path(input_path).read_text(encoding="utf-8"))
        if not isinstance(loaded, dict):
            parser.error("policy document must be a JSON object")
        raw = dict(loaded)
    if parsed.enable_generation:
        raw["enable_story_generation"] = True
    if parsed.enable_illustrations:
        raw["enable_illustrations"] = True

    policy = parse_policy(raw)
    db_path = Path(
        str(parsed.db_path).strip()
        or os.environ.get("KIDSTEL_DB_PATH", "").strip()
        or DEFAULT_DB_PATH
    )
    store = SQLiteStoryStore(db_path=db_path)
    store.put_admin_document(doc_id=str(parsed.doc_id), body=policy.model_dump(exclude_none=True))
    print(f"Wrote policy document {parsed.doc_id} to {db_path}")
    print(
        "generation={} illustrations={} version={}".format(
            policy.enable_story_generation,
            policy.enable_illustrations,
            policy.policy_version,
        )
    )


if __name__ == "__main__":
    main()
