"""Record filters evaluated before transformation."""

from __future__ import annotations

import logging
import re
from typing import Any, Iterable, Mapping, Sequence

from sync_app.engine.mapping.config import MappingFilter
from sync_app.engine.utils import lookup_path

logger = logging.getLogger(__name__)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _compare(value: Any, expected: Any, operator: str) -> bool:
    if not (_is_number(value) and _is_number(expected)):
        return False
    if operator == "gt":
        return value > expected
    if operator == "lt":
        return value < expected
    if operator == "gte":
        return value >= expected
    return value <= expected


def matches_filter(record: Mapping[str, Any], record_filter: MappingFilter) -> bool:
    """
    Test one filter against a record.

    Ordering operators only compare numbers and the text operators only
    strings; a mismatched type never matches. An invalid regex never matches.
    """
    value = lookup_path(record, record_filter.field)
    expected = record_filter.value
    operator = record_filter.operator

    if operator == "eq":
        return value == expected
    if operator == "neq":
        return value != expected
    if operator == "in":
        return isinstance(expected, (list, tuple)) and value in expected
    if operator == "not_in":
        return isinstance(expected, (list, tuple)) and value not in expected
    if operator == "exists":
        return value is not None
    if operator == "not_exists":
        return value is None
    if operator in ("gt", "lt", "gte", "lte"):
        return _compare(value, expected, operator)
    if operator == "contains":
        return isinstance(value, str) and isinstance(expected, str) and expected in value
    if operator == "starts_with":
        return isinstance(value, str) and isinstance(expected, str) and value.startswith(expected)
    if operator == "regex":
        if not isinstance(value, str) or not isinstance(expected, str):
            return False
        try:
            return re.search(expected, value) is not None
        except re.error:
            logger.warning("Invalid filter regex", extra={"sync_filter_pattern": expected})
            return False
    raise ValueError(f"Unknown filter operator: {operator}")


def apply_filters(
    records: Iterable[Mapping[str, Any]],
    filters: Sequence[MappingFilter],
) -> tuple[list[Mapping[str, Any]], int]:
    """Keep records matching every filter; returns the survivors and the number dropped."""
    records = list(records)
    if not filters:
        return records, 0
    kept = [record for record in records if all(matches_filter(record, entry) for entry in filters)]
    return kept, len(records) - len(kept)
