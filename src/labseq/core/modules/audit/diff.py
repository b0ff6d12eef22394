"""Field-level diffs over an explicit field list."""

from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any


def get_path(doc: Mapping[str, Any] | None, path: str) -> Any:
    """Read a dotted path (``address.city``) from nested mappings; absent paths read as None."""
    current: Any = doc
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return None
        current = current[part]
    return current


def _normalize_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float | Decimal) and not isinstance(value, bool)


def values_equal(before: Any, after: Any) -> bool:
    """Deep equality: datetimes by instant, numbers by value, containers recursively."""
    if isinstance(before, datetime) and isinstance(after, datetime):
        return _normalize_datetime(before) == _normalize_datetime(after)
    if isinstance(before, date) and isinstance(after, date):
        return before == after
    if _is_number(before) and _is_number(after):
        return Decimal(str(before)) == Decimal(str(after))
    if isinstance(before, bool) or isinstance(after, bool):
        return type(before) is type(after) and before == after
    if isinstance(before, Mapping) and isinstance(after, Mapping):
        if before.keys() != after.keys():
            return False
        return all(values_equal(before[k], after[k]) for k in before)
    if _is_sequence(before) and _is_sequence(after):
        if len(before) != len(after):
            return False
        return all(values_equal(b, a) for b, a in zip(before, after, strict=True))
    if type(before) is not type(after) and not (before is None or after is None):
        return False
    return bool(before == after)


def _is_sequence(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, str | bytes)


def build_diff(
    before: Mapping[str, Any] | None, after: Mapping[str, Any] | None, fields: Iterable[str]
) -> dict[str, dict[str, Any]]:
    """Compare only ``fields`` between two documents.

    Returns ``{field: {"before": ..., "after": ...}}`` for every field whose
    values differ; unchanged fields are omitted.
    """
    diff: dict[str, dict[str, Any]] = {}
    for path in fields:
        old = get_path(before, path)
        new = get_path(after, path)
        if not values_equal(old, new):
            diff[path] = {"before": old, "after": new}
    return diff
