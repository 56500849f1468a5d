from __future__ import annotations

import hashlib
import json
from typing import Any


def payload_hash(payload: dict[str, Any]) -> str:
    """Stable content hash; key order does not matter."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def normalize_idempotency_key(raw_key: str | None) -> str | None:
    if raw_key is None:
        return None
    key = raw_key.strip()
    return key or None
