"""Select-query builder for remote OData queries.

A SelectQuery is mutable and owned by exactly one party at a time. The pull
populator hands it to each registered query hook in turn (a hook may widen
the selected fields or add conditions and must return the builder), then
calls finalize() to get an immutable FinalizedQuery which is what the remote
transport executes.

Example:
    query = SelectQuery("Products")
    query.set_fields(["Id", "Name", "Modified"])
    query.add_condition("Modified", ">", datetime(2024, 1, 1, tzinfo=timezone.utc))
    query.add_order("Modified")
    str(query.finalize())
    # Products?$select=Id,Name,Modified&$filter=Modified gt 2024-01-01T00:00:00Z&$orderby=Modified asc
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Optional

# Multi-character operators first so "<=" is not read as "<"
OPERATORS = {
    "!=": "ne",
    "<=": "le",
    ">=": "ge",
    "=": "eq",
    ">": "gt",
    "<": "lt",
    "in": "in",
}


def format_value(value: Any) -> str:
    """Render a Python value as an OData literal."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (list, tuple, set, frozenset)):
        return "(" + ",".join(format_value(v) for v in value) + ")"
    escaped = str(value).replace("'", "''")
    return f"'{escaped}'"


@dataclass(frozen=True)
class Condition:
    field: str
    operator: str
    value: Any

    def render(self) -> str:
        return f"{self.field} {OPERATORS[self.operator]} {format_value(self.value)}"


@dataclass(frozen=True)
class FinalizedQuery:
    """Immutable query ready for execution."""
    object_type: str
    fields: tuple[str, ...]
    conditions: tuple[Condition, ...]
    order: tuple[tuple[str, str], ...]
    limit: Optional[int] = None

    def to_params(self) -> dict[str, str]:
        """OData system query options for the HTTP request."""
        params = {"$select": ",".join(self.fields) if self.fields else "*"}
        if self.conditions:
            params["$filter"] = " and ".join(c.render() for c in self.conditions)
        if self.order:
            params["$orderby"] = ", ".join(f"{f} {d}" for f, d in self.order)
        if self.limit:
            params["$top"] = str(int(self.limit))
        return params

    def __str__(self) -> str:
        options = "&".join(f"{k}={v}" for k, v in self.to_params().items())
        return f"{self.object_type}?{options}"


class SelectQuery:
    """Mutable builder for a select query against one remote object type."""

    def __init__(self, object_type: str):
        self.object_type = object_type
        self._fields: list[str] = []
        self._conditions: list[Condition] = []
        self._order: dict[str, str] = {}
        self._limit: Optional[int] = None

    @property
    def fields(self) -> list[str]:
        return list(self._fields)

    @property
    def conditions(self) -> list[Condition]:
        return list(self._conditions)

    def set_fields(self, fields: list[str]) -> "SelectQuery":
        self._fields = []
        for name in fields:
            self.add_field(name)
        return self

    def add_field(self, name: str) -> "SelectQuery":
        if name not in self._fields:
            self._fields.append(name)
        return self

    def add_condition(self, field: str, operator: str, value: Any) -> "SelectQuery":
        """Add a filter condition; list values turn "=" into "in"."""
        if isinstance(value, (list, tuple, set, frozenset)) and operator == "=":
            operator = "in"
        if operator not in OPERATORS:
            raise ValueError(f"Unsupported operator: {operator}")
        self._conditions.append(Condition(field, operator, value))
        return self

    def remove_conditions_for_field(self, field: str) -> "SelectQuery":
        self._conditions = [c for c in self._conditions if c.field != field]
        return self

    def add_order(self, field: str, direction: str = "asc") -> "SelectQuery":
        direction = direction.lower()
        if direction not in ("asc", "desc"):
            raise ValueError(f"Unsupported sort direction: {direction}")
        self._order[field] = direction
        return self

    def set_limit(self, limit: Optional[int]) -> "SelectQuery":
        self._limit = limit
        return self

    def finalize(self) -> FinalizedQuery:
        return FinalizedQuery(
            object_type=self.object_type,
            fields=tuple(self._fields),
            conditions=tuple(self._conditions),
            order=tuple(self._order.items()),
            limit=self._limit,
        )

    def __repr__(self) -> str:
        return f"SelectQuery({self.finalize()})"
