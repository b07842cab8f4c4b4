"""
Column filters shared by table queries and realtime channels.

Rendered in the backend's ``column=op.value`` query syntax.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Literal


@dataclass(frozen=True)
class ColumnFilter:
    column: str
    op: Literal["eq", "in"]
    values: tuple[str, ...]

    @classmethod
    def eq(cls, column: str, value: Any) -> "ColumnFilter":
        return cls(column, "eq", (str(value),))

    @classmethod
    def in_(cls, column: str, values: Iterable[Any]) -> "ColumnFilter":
        # Sorted and de-duplicated so equal id sets compare equal
        return cls(column, "in", tuple(sorted({str(v) for v in values})))

    def to_param(self) -> str:
        """Render as ``column=op.value`` (e.g. ``event_id=in.(1,2)``)."""
        return f"{self.column}={self.op_value()}"

    def op_value(self) -> str:
        if self.op == "eq":
            return f"eq.{self.values[0]}"
        return f"in.({','.join(self.values)})"

    def matches(self, row: dict[str, Any]) -> bool:
        value = row.get(self.column)
        if value is None:
            return False
        return str(value) in self.values

    @classmethod
    def parse(cls, text: str) -> "ColumnFilter":
        """Parse ``column=eq.x`` or ``column=in.(a,b)``."""
        column, _, expr = text.partition("=")
        op, _, raw = expr.partition(".")
        if not column or op not in ("eq", "in"):
            raise ValueError(f"Unsupported filter: {text!r}")
        if op == "eq":
            return cls.eq(column, raw)
        raw = raw.strip()
        if not (raw.startswith("(") and raw.endswith(")")):
            raise ValueError(f"Unsupported filter: {text!r}")
        items = [v.strip() for v in raw[1:-1].split(",") if v.strip()]
        return cls.in_(column, items)
