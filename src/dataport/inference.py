"""Column type inference over sampled raw rows.

Each sampled value is tested against type predicates in priority order
(boolean, numeric, date).  A column takes the first type whose predicate
classifies at least ``threshold`` of its non-null values, so a handful of
stray footnotes or repeated headers inside a numeric column do not demote
it to text.  Columns that reach the threshold for no predicate are text.
"""

from __future__ import annotations

import math
from datetime import date, datetime
from typing import Any, Callable, Sequence

from dataport.models import ColumnType

DEFAULT_THRESHOLD = 0.9
DEFAULT_SAMPLE_ROWS = 1000

BOOLEAN_LITERALS = frozenset({"true", "false", "yes", "no"})

DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%m/%d/%Y",
    "%d-%b-%Y",
    "%d %b %Y",
    "%b %d, %Y",
    "%B %d, %Y",
)


def is_null(value: Any) -> bool:
    """Return True for None and blank strings."""
    if value is None:
        return True
    return isinstance(value, str) and not value.strip()


def is_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return True
    return isinstance(value, str) and value.strip().lower() in BOOLEAN_LITERALS


def is_numeric(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        try:
            return math.isfinite(value)
        except OverflowError:
            return False
    if isinstance(value, str):
        try:
            return math.isfinite(float(value.strip()))
        except ValueError:
            return False
    return False


def is_date(value: Any) -> bool:
    if isinstance(value, (date, datetime)):
        return True
    if not isinstance(value, str):
        return False
    text = value.strip()
    for fmt in DATE_FORMATS:
        try:
            datetime.strptime(text, fmt)
        except ValueError:
            continue
        return True
    return False


_PREDICATES: tuple[tuple[ColumnType, Callable[[Any], bool]], ...] = (
    (ColumnType.boolean, is_boolean),
    (ColumnType.numeric, is_numeric),
    (ColumnType.date, is_date),
)


def infer_type(values: Sequence[Any], threshold: float = DEFAULT_THRESHOLD) -> ColumnType:
    """Infer the type of a single column from its sampled values.

    Args:
        values: Sampled raw values (nulls included; they are ignored).
        threshold: Minimum fraction of non-null values a predicate must
            classify for its type to be chosen.

    Returns:
        The most specific qualifying type, or ``text``.
    """
    present = [v for v in values if not is_null(v)]
    if not present:
        return ColumnType.text
    total = len(present)
    for col_type, predicate in _PREDICATES:
        hits = sum(1 for v in present if predicate(v))
        if hits / total >= threshold:
            return col_type
    return ColumnType.text


def infer_column_types(
    headers: Sequence[str],
    rows: Sequence[dict[str, Any]],
    *,
    threshold: float = DEFAULT_THRESHOLD,
    sample_size: int = DEFAULT_SAMPLE_ROWS,
) -> list[ColumnType]:
    """Infer one column type per header from a bounded prefix of *rows*.

    Never raises: malformed or missing values only push a column towards
    ``text``.

    Args:
        headers: Column names, in order.
        rows: Row mappings keyed by header.
        threshold: See :func:`infer_type`.
        sample_size: Number of leading rows to examine.

    Returns:
        Inferred types, aligned with *headers*.
    """
    sample = rows[:sample_size]
    return [
        infer_type([row.get(name) for row in sample], threshold)
        for name in headers
    ]
