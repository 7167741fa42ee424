from __future__ import annotations

import uuid
from datetime import UTC, datetime


def now_utc_iso() -> str:
    return datetime.now(UTC).isoformat()


def normalize_whitespace(text: str) -> str:
    return " ".join(text.split())


def names_match(left: str, right: str) -> bool:
    return normalize_whitespace(left).casefold() == normalize_whitespace(right).casefold()


def new_identifier(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"
