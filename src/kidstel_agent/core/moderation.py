"""Deterministic keyword moderation for child-facing text."""

from __future__ import annotations

import re
from dataclasses import dataclass

REASON_LENGTH = "input too long"


@dataclass(frozen=True)
class ModerationResult:
    allowed: bool
    reason: str | None = None


# Kept conservative: false positives are cheaper than unsafe stories.
BANNED_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\b(sex|porn|nude|naked|erotic)\b", re.IGNORECASE), "sexual content"),
    (
        re.compile(r"\b(suicide|kill\s+myself|self-harm|cut\s+myself)\b", re.IGNORECASE),
        "self-harm",
    ),
    (
        re.compile(r"\b(drugs?|cocaine|heroin|meth|weed|marijuana)\b", re.IGNORECASE),
        "drugs",
    ),
    (re.compile(r"\b(gun|knife|stab|shoot|blood|gore)\b", re.IGNORECASE), "violence"),
    (re.compile(r"\b(hate\s+speech|nazi|kkk)\b", re.IGNORECASE), "hate/extremism"),
)


def moderate_text(text: str | None, max_chars: int) -> ModerationResult:
    """Block over-long text or any match of an unsafe category."""
    value = text or ""
    if len(value) > max_chars:
        return ModerationResult(allowed=False, reason=REASON_LENGTH)
    for pattern, reason in BANNED_PATTERNS:
        if pattern.search(value):
            return ModerationResult(allowed=False, reason=reason)
    return ModerationResult(allowed=True)


KIDS_POLICY_SYSTEM = """
You are KidsTel, a children's interactive story generator.

Hard rules (must ALWAYS be satisfied):
- Audience: children (ages 3-12).
- No explicit violence, gore, weapons, torture, threats.
- No sexual content.
- No self-harm.
- No drugs or alcohol.
- No hate or discrimination.
- No scary horror themes; keep gentle and reassuring.
- No instructions for wrongdoing.
- Use simple, kind, encouraging language.

Output format MUST be valid JSON and MUST match the provided schema.
""".strip()
