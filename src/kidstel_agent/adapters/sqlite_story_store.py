"""SQLite-backed document store for stories, chapters, usage counters and audit."""

from __future__ import annotations

import json
import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from kidstel_agent.core.errors import DailyLimitExceeded
from kidstel_agent.domain.models import AuditRecord, ChapterChoice, StoryChapter, StoryMeta


class ChapterConflictError(RuntimeError):
    """A chapter already exists at the requested (story, index) address."""


def _utc_now() -> str:
    return datetime.now(UTC).isoformat()


def _chapter_to_json(chapter: StoryChapter) -> dict[str, Any]:
    return {
        "chapterIndex": chapter.chapter_index,
        "title": chapter.title,
        "text": chapter.text,
        "progress": chapter.progress,
        "choices": [choice.as_dict() for choice in chapter.choices],
        "imageUrl": chapter.image_url,
        "imageStoragePath": chapter.image_storage_path,
        "imagePrompt": chapter.image_prompt,
    }


def _chapter_from_json(payload: dict[str, Any]) -> StoryChapter:
    return StoryChapter(
        chapter_index=int(payload.get("chapterIndex", 0)),
        title=str(payload.get("title", "")),
        text=str(payload.get("text", "")),
        progress=float(payload.get("progress", 0.0)),
        choices=tuple(
            ChapterChoice(
                id=str(choice.get("id", "")),
                label=str(choice.get("label", "")),
                payload=dict(choice.get("payload") or {}),
            )
            for choice in payload.get("choices") or []
            if isinstance(choice, dict)
        ),
        image_url=payload.get("imageUrl"),
        image_storage_path=payload.get("imageStoragePath"),
        image_prompt=payload.get("imagePrompt"),
    )


class SQLiteStoryStore:
    """Persist story sessions, per-day usage and audit rows in one SQLite database."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(str(self._db_path), timeout=10.0)
        connection.row_factory = sqlite3.Row
        return connection

    def _initialize_schema(self) -> None:
        with self._connect() as connection:
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS stories (
                    story_id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    meta_json TEXT NOT NULL,
                    chapters_json TEXT NOT NULL,
                    latest_chapter_index INTEGER,
                    created_at_utc TEXT NOT NULL,
                    updated_at_utc TEXT NOT NULL
                )
                """
            )
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS story_chapters (
                    story_id TEXT NOT NULL,
                    chapter_index INTEGER NOT NULL,
                    owner_id TEXT NOT NULL,
                    chapter_json TEXT NOT NULL,
                    created_at_utc TEXT NOT NULL,
                    updated_at_utc TEXT NOT NULL,
                    PRIMARY KEY (story_id, chapter_index)
                )
                """
            )
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS usage_daily (
                    uid TEXT NOT NULL,
                    day TEXT NOT NULL,
                    count INTEGER NOT NULL,
                    updated_at_utc TEXT NOT NULL,
                    PRIMARY KEY (uid, day)
                )
                """
            )
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS story_audit (
                    audit_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    request_id TEXT NOT NULL,
                    uid TEXT NOT NULL,
                    route TEXT NOT NULL,
                    blocked INTEGER NOT NULL,
                    block_reason TEXT,
                    story_id TEXT,
                    created_at_utc TEXT NOT NULL
                )
                """
            )
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS admin_policy (
                    doc_id TEXT PRIMARY KEY,
                    body_json TEXT NOT NULL,
                    updated_at_utc TEXT NOT NULL
                )
                """
            )
            connection.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_audit_uid_created
                ON story_audit(uid, created_at_utc DESC)
                """
            )

    # -- usage ---------------------------------------------------------------------------

    def enforce_daily_limit(self, *, uid: str, limit: int, day_key: str) -> int:
        """Atomically count one request for (uid, day); raise when the limit is reached."""
        if limit <= 0:
            raise DailyLimitExceeded(uid=uid, day_key=day_key, limit=limit)
        now = _utc_now()
        with self._connect() as connection:
            cursor = connection.execute(
                """
                INSERT INTO usage_daily (uid, day, count, updated_at_utc)
                VALUES (?, ?, 1, ?)
                ON CONFLICT(uid, day) DO UPDATE
                SET count = count + 1, updated_at_utc = excluded.updated_at_utc
                WHERE usage_daily.count < ?
                """,
                (uid, day_key, now, limit),
            )
            if cursor.rowcount == 0:
                raise DailyLimitExceeded(uid=uid, day_key=day_key, limit=limit)
            row = connection.execute(
                "SELECT count FROM usage_daily WHERE uid = ? AND day = ?",
                (uid, day_key),
            ).fetchone()
        return int(row["count"]) if row is not None else 1

    def get_daily_usage(self, *, uid: str, day_key: str) -> int:
        with self._connect() as connection:
            row = connection.execute(
                "SELECT count FROM usage_daily WHERE uid = ? AND day = ?",
                (uid, day_key),
            ).fetchone()
        return int(row["count"]) if row is not None else 0

    # -- stories -------------------------------------------------------------------------

    def get_story_meta(self, *, story_id: str) -> StoryMeta | None:
        with self._connect() as connection:
            row = connection.execute(
                """
                SELECT story_id, owner_id, title, meta_json, latest_chapter_index
                FROM stories
                WHERE story_id = ?
                """,
                (story_id,),
            ).fetchone()
        if row is None:
            return None
        extra = json.loads(row["meta_json"])
        return StoryMeta(
            story_id=row["story_id"],
            owner_id=row["owner_id"],
            title=row["title"],
            lang=extra.get("lang"),
            age_group=extra.get("ageGroup"),
            story_length=extra.get("storyLength"),
            creativity_level=extra.get("creativityLevel"),
            hero=extra.get("hero"),
            location=extra.get("location"),
            style=extra.get("style"),
            idea=extra.get("idea"),
            policy_version=extra.get("policyVersion"),
            latest_chapter_index=row["latest_chapter_index"],
        )

    def upsert_story_session(self, *, meta: StoryMeta, chapters: list[StoryChapter]) -> None:
        """Write the story record and its first chapters; owner never changes on update."""
        now = _utc_now()
        meta_json = json.dumps(
            {
                "lang": meta.lang,
                "ageGroup": meta.age_group,
                "storyLength": meta.story_length,
                "creativityLevel": meta.creativity_level,
                "hero": meta.hero,
                "location": meta.location,
                "style": meta.style,
                "idea": meta.idea,
                "policyVersion": meta.policy_version,
            },
            ensure_ascii=False,
        )
        chapters_json = json.dumps(
            [_chapter_to_json(chapter) for chapter in chapters], ensure_ascii=False
        )
        latest = max((chapter.chapter_index for chapter in chapters), default=None)
        with self._connect() as connection:
            connection.execute(
                """
                INSERT INTO stories (
                    story_id, owner_id, title, meta_json, chapters_json,
                    latest_chapter_index, created_at_utc, updated_at_utc
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(story_id) DO UPDATE SET
                    title = excluded.title,
                    meta_json = excluded.meta_json,
                    chapters_json = excluded.chapters_json,
                    latest_chapter_index = excluded.latest_chapter_index,
                    updated_at_utc = excluded.updated_at_utc
                WHERE stories.owner_id = excluded.owner_id
                """,
                (
                    meta.story_id,
                    meta.owner_id,
                    meta.title,
                    meta_json,
                    chapters_json,
                    latest,
                    now,
                    now,
                ),
            )
            for chapter in chapters:
                connection.execute(
                    """
                    INSERT OR REPLACE INTO story_chapters (
                        story_id, chapter_index, owner_id, chapter_json,
                        created_at_utc, updated_at_utc
                    )
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        meta.story_id,
                        chapter.chapter_index,
                        meta.owner_id,
                        json.dumps(_chapter_to_json(chapter), ensure_ascii=False),
                        now,
                        now,
                    ),
                )

    def write_chapter(self, *, story_id: str, owner_id: str, chapter: StoryChapter) -> None:
        """Insert a new chapter; an existing chapter at the same index is never overwritten."""
        now = _utc_now()
        try:
            with self._connect() as connection:
                connection.execute(
                    """
                    INSERT INTO story_chapters (
                        story_id, chapter_index, owner_id, chapter_json,
                        created_at_utc, updated_at_utc
                    )
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        story_id,
                        chapter.chapter_index,
                        owner_id,
                        json.dumps(_chapter_to_json(chapter), ensure_ascii=False),
                        now,
                        now,
                    ),
                )
                connection.execute(
                    """
                    UPDATE stories
                    SET latest_chapter_index = MAX(COALESCE(latest_chapter_index, -1), ?),
                        updated_at_utc = ?
                    WHERE story_id = ?
                    """,
                    (chapter.chapter_index, now, story_id),
                )
        except sqlite3.IntegrityError as exc:
            raise ChapterConflictError(
                f"chapter {chapter.chapter_index} already exists for {story_id}"
            ) from exc

    def get_story_chapter(self, *, story_id: str, chapter_index: int) -> StoryChapter | None:
        with self._connect() as connection:
            row = connection.execute(
                """
                SELECT chapter_json FROM story_chapters
                WHERE story_id = ? AND chapter_index = ?
                """,
                (story_id, chapter_index),
            ).fetchone()
        if row is not None:
            return _chapter_from_json(json.loads(row["chapter_json"]))
        for chapter in self._embedded_chapters(story_id):
            if chapter.chapter_index == chapter_index:
                return chapter
        return None

    def list_recent_chapters(self, *, story_id: str, limit: int = 4) -> list[StoryChapter]:
        """Most recent chapters in ascending index order, falling back to the embedded list."""
        with self._connect() as connection:
            rows = connection.execute(
                """
                SELECT chapter_json FROM story_chapters
                WHERE story_id = ?
                ORDER BY chapter_index DESC
                LIMIT ?
                """,
                (story_id, limit),
            ).fetchall()
        if rows:
            chapters = [_chapter_from_json(json.loads(row["chapter_json"])) for row in rows]
            return sorted(chapters, key=lambda chapter: chapter.chapter_index)
        embedded = sorted(self._embedded_chapters(story_id), key=lambda c: c.chapter_index)
        return embedded[-limit:] if limit > 0 else []

    def update_chapter_illustration(
        self,
        *,
        story_id: str,
        chapter_index: int,
        image_url: str,
        image_storage_path: str,
        image_prompt: str,
    ) -> bool:
        """Record the illustration wherever the chapter lives: its own row or the embedded list."""
        illustration = {
            "imageUrl": image_url,
            "imageStoragePath": image_storage_path,
            "imagePrompt": image_prompt,
        }
        now = _utc_now()
        with self._connect() as connection:
            row = connection.execute(
                """
                SELECT chapter_json FROM story_chapters
                WHERE story_id = ? AND chapter_index = ?
                """,
                (story_id, chapter_index),
            ).fetchone()
            if row is not None:
                payload = _chapter_to_json(_chapter_from_json(json.loads(row["chapter_json"])))
                payload.update(illustration)
                connection.execute(
                    """
                    UPDATE story_chapters
                    SET chapter_json = ?, updated_at_utc = ?
                    WHERE story_id = ? AND chapter_index = ?
                    """,
                    (json.dumps(payload, ensure_ascii=False), now, story_id, chapter_index),
                )
                return True

            story = connection.execute(
                "SELECT chapters_json FROM stories WHERE story_id = ?",
                (story_id,),
            ).fetchone()
            if story is None:
                return False
            embedded = json.loads(story["chapters_json"] or "[]")
            updated = False
            for item in embedded:
                if isinstance(item, dict) and int(item.get("chapterIndex", -1)) == chapter_index:
                    item.update(illustration)
                    updated = True
            if not updated:
                return False
            connection.execute(
                """
                UPDATE stories
                SET chapters_json = ?, updated_at_utc = ?
                WHERE story_id = ?
                """,
                (json.dumps(embedded, ensure_ascii=False), now, story_id),
            )
        return True

    def _embedded_chapters(self, story_id: str) -> list[StoryChapter]:
        with self._connect() as connection:
            row = connection.execute(
                "SELECT chapters_json FROM stories WHERE story_id = ?",
                (story_id,),
            ).fetchone()
        if row is None:
            return []
        payload = json.loads(row["chapters_json"] or "[]")
        return [_chapter_from_json(item) for item in payload if isinstance(item, dict)]

    # -- audit ---------------------------------------------------------------------------

    def write_audit(self, record: AuditRecord) -> None:
        with self._connect() as connection:
            connection.execute(
                """
                INSERT INTO story_audit (
                    request_id, uid, route, blocked, block_reason, story_id, created_at_utc
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.request_id,
                    record.uid,
                    record.route,
                    1 if record.blocked else 0,
                    record.block_reason,
                    record.story_id,
                    record.created_at_utc or _utc_now(),
                ),
            )

    def list_audit(self, *, uid: str | None = None, limit: int = 100) -> list[AuditRecord]:
        query = """
            SELECT request_id, uid, route, blocked, block_reason, story_id, created_at_utc
            FROM story_audit
        """
        params: tuple[Any, ...] = ()
        if uid is not None:
            query += " WHERE uid = ?"
            params = (uid,)
        query += " ORDER BY audit_id ASC LIMIT ?"
        with self._connect() as connection:
            rows = connection.execute(query, (*params, limit)).fetchall()
        return [
            AuditRecord(
                request_id=row["request_id"],
                uid=row["uid"],
                route=row["route"],
                blocked=bool(row["blocked"]),
                block_reason=row["block_reason"],
                story_id=row["story_id"],
                created_at_utc=row["created_at_utc"],
            )
            for row in rows
        ]

    # -- admin documents -----------------------------------------------------------------

    def get_admin_document(self, *, doc_id: str) -> dict[str, Any] | None:
        with self._connect() as connection:
            row = connection.execute(
                "SELECT body_json FROM admin_policy WHERE doc_id = ?",
                (doc_id,),
            ).fetchone()
        if row is None:
            return None
        payload = json.loads(row["body_json"])
        if not isinstance(payload, dict):
            raise ValueError(f"admin document {doc_id} is not an object")
        return payload

    def put_admin_document(self, *, doc_id: str, body: dict[str, Any]) -> None:
        with self._connect() as connection:
            connection.execute(
                """
                INSERT INTO admin_policy (doc_id, body_json, updated_at_utc)
                VALUES (?, ?, ?)
                ON CONFLICT(doc_id) DO UPDATE SET
                    body_json = excluded.body_json,
                    updated_at_utc = excluded.updated_at_utc
                """,
                (doc_id, json.dumps(body, sort_keys=True), _utc_now()),
            )
