"""Content fingerprints for uploads and row generations."""

from __future__ import annotations

import hashlib
import json
from typing import Any, Mapping, Sequence


def sha256_bytes(data: bytes) -> str:
    """Hex SHA-256 of raw bytes; used as the content-addressed upload handle."""
    return hashlib.sha256(data).hexdigest()


def rows_fingerprint(headers: Sequence[str], rows: Sequence[Mapping[str, Any]]) -> str:
    """Fingerprint a materialized generation.

    Rows are serialized positionally in header order, so two fetches with the
    same cells in the same column order always agree while a column reorder
    does not.

    Args:
        headers: Column names in source order.
        rows: Materialized rows keyed by column name.

    Returns:
        Hex-encoded SHA-256 digest.
    """
    h = hashlib.sha256()
    h.update(json.dumps(list(headers), separators=(",", ":")).encode())
    for row in rows:
        cells = [row.get(name) for name in headers]
        h.update(b"\n")
        h.update(json.dumps(cells, separators=(",", ":"), default=str).encode())
    return h.hexdigest()
