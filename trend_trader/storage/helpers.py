from __future__ import annotations

import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def serialize_for_redis(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, (int, float, str)):
        return str(value)
    if value is None:
        return ""
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)


def normalize_doc_path(doc_path: str, leaf_doc_id: str) -> tuple[str, bool]:
    """Return a document path and whether ``leaf_doc_id`` had to be appended to a collection path."""
    segments = [part for part in doc_path.split("/") if part]
    if not segments:
        raise ValueError("FIRESTORE_CONFIG_DOC must not be empty.")
    if len(segments) % 2 == 0:
        return "/".join(segments), False
    return "/".join([*segments, leaf_doc_id]), True
