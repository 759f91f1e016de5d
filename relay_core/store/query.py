"""
Declarative query predicates for record stores.

Predicates are plain data (field, operator, value) rather than callables so
the HTTP backend can ship them to the record-store server and both sides
evaluate them with the same code.
"""

import operator
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

# Fixed-width UTC timestamps compare correctly as strings.
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

_OPERATORS = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


def format_timestamp(value: datetime) -> str:
    """Render a datetime in the wire timestamp format (UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """Parse a wire timestamp back into an aware UTC datetime."""
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Condition:
    """A single ``field <op> value`` test against a record's fields."""
    field: str
    op: str
    value: Any

    def __post_init__(self):
        if self.op not in _OPERATORS:
            raise ValueError(f"Unsupported operator: {self.op}")
        if isinstance(self.value, datetime):
            object.__setattr__(self, "value", format_timestamp(self.value))

    def matches(self, fields: Dict[str, Any]) -> bool:
        if self.field not in fields:
            return False
        actual = fields[self.field]
        try:
            return bool(_OPERATORS[self.op](actual, self.value))
        except TypeError:
            # Mixed types (e.g. None vs str) never match an ordering test
            return False

    def to_dict(self) -> Dict:
        return {"field": self.field, "op": self.op, "value": self.value}

    @classmethod
    def from_dict(cls, data: Dict) -> "Condition":
        return cls(field=data["field"], op=data.get("op", "=="), value=data.get("value"))


def where(field: str, op: str, value: Any) -> Condition:
    """Shorthand constructor: ``where("status", "==", "pending")``."""
    return Condition(field, op, value)


def matches_all(fields: Dict[str, Any], conditions: Iterable[Condition]) -> bool:
    return all(c.matches(fields) for c in conditions)


Row = Tuple[str, Dict[str, Any]]


def select_rows(
    rows: Iterable[Row],
    conditions: Iterable[Condition] = (),
    sort_by: Optional[str] = None,
    descending: bool = False,
    limit: Optional[int] = None,
) -> List[Row]:
    """Filter ``(record_id, fields)`` rows, order by one field and truncate.

    Rows missing the sort field go last regardless of direction.
    """
    conditions = list(conditions)
    selected = [row for row in rows if matches_all(row[1], conditions)]
    if sort_by:
        present = [r for r in selected if r[1].get(sort_by) is not None]
        missing = [r for r in selected if r[1].get(sort_by) is None]
        present.sort(key=lambda r: r[1][sort_by], reverse=descending)
        selected = present + missing
    if limit is not None:
        selected = selected[:limit]
    return selected
