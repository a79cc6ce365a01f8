"""Canonical hashing of JSON-compatible data."""

from __future__ import annotations

import hashlib
import json
from typing import Any


def canonical_json(data: Any) -> str:
    """Stable JSON encoding: sorted keys, no whitespace."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def compute_hash(data: Any) -> str:
    """SHA256 hex digest of the canonical JSON encoding of ``data``.

    Pydantic models are dumped in JSON mode first.
    """
    if hasattr(data, "model_dump"):
        data = data.model_dump(mode="json")
    return hashlib.sha256(canonical_json(data).encode()).hexdigest()


__all__ = ["canonical_json", "compute_hash"]
