"""Group-by aggregation over materialized rows.

Pure functions: no I/O, no dataset lookups.  Column validation against a
schema is the caller's job; here a missing column simply reads as null.
"""

from __future__ import annotations

import math
from typing import Any, Sequence

from dataport.models import AggregationKind, AggregationResult, Row


def to_number(value: Any) -> float | None:
    """Coerce a cell to a finite float, or None if it is not numeric.

    Booleans, nulls, NaN/infinity and non-numeric strings all return None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            # int beyond float range
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def group_key(value: Any) -> str:
    """Render a cell as the string key its row is grouped under.

    Null groups under ``""``, integral floats drop their ``.0`` and
    booleans render as ``true``/``false``.
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _reduce(kind: AggregationKind, values: list[float], member_count: int) -> float:
    if kind == AggregationKind.count:
        return float(member_count)
    if not values:
        return 0.0
    if kind == AggregationKind.sum:
        return math.fsum(values)
    if kind == AggregationKind.avg:
        return math.fsum(values) / len(values)
    if kind == AggregationKind.min:
        return min(values)
    if kind == AggregationKind.max:
        return max(values)
    raise ValueError(f"Unhandled aggregation kind: {kind}")


def aggregate(
    rows: Sequence[Row],
    group_by: str,
    value_column: str,
    kind: AggregationKind | str = AggregationKind.sum,
) -> list[AggregationResult]:
    """Group rows by *group_by* and reduce *value_column* per group.

    Groups appear in order of first occurrence.  ``member_count`` is the
    number of rows in the group, including rows whose value was not
    numeric; ``avg`` divides by the numeric values only.  A group with no
    numeric values reduces to 0 (``count`` still counts its rows).

    With ``kind="none"`` no grouping happens: every row yields its own
    result with ``member_count`` 1.

    Args:
        rows: Materialized rows.
        group_by: Column whose value keys the groups.
        value_column: Column to reduce.
        kind: Aggregation to apply.

    Returns:
        One result per group (or per row for ``none``).
    """
    kind = AggregationKind(kind)

    if kind == AggregationKind.none:
        return [
            AggregationResult(
                group_key=group_key(row.get(group_by)),
                aggregated_value=to_number(row.get(value_column)) or 0.0,
                member_count=1,
            )
            for row in rows
        ]

    groups: dict[str, tuple[list[float], list[int]]] = {}
    for row in rows:
        key = group_key(row.get(group_by))
        values, members = groups.setdefault(key, ([], [0]))
        members[0] += 1
        number = to_number(row.get(value_column))
        if number is not None:
            values.append(number)

    return [
        AggregationResult(
            group_key=key,
            aggregated_value=_reduce(kind, values, members[0]),
            member_count=members[0],
        )
        for key, (values, members) in groups.items()
    ]
