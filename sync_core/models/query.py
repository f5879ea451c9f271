# =============================================================================
# sync_core/models/query.py
# Filter predicates shared by cache listings and backend queries
# =============================================================================

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Tuple


OPERATORS = ("eq", "neq", "in", "gte", "lte")


@dataclass(frozen=True)
class Condition:
    """One comparison against a record attribute."""
    field: str
    op: str
    value: Any

    def __post_init__(self):
        if self.op not in OPERATORS:
            raise ValueError(f"Unsupported filter operator: {self.op}")

    def test(self, record: Any) -> bool:
        actual = getattr(record, self.field, None)
        if self.op == "eq":
            return actual == self.value
        if self.op == "neq":
            return actual != self.value
        if self.op == "in":
            return actual in self.value
        if actual is None:
            return False
        if self.op == "gte":
            return actual >= self.value
        return actual <= self.value


@dataclass(frozen=True)
class Filter:
    """
    Immutable, hashable filter: AND of `conditions`, plus an optional OR group.

    Built fluently:

        Filter().eq("owner_id", user_id).is_in("status", ["pending", "submitted"])
        Filter().either(Condition("participant_a", "eq", me),
                        Condition("participant_b", "eq", me))
    """
    conditions: Tuple[Condition, ...] = ()
    any_of: Tuple[Condition, ...] = ()

    @classmethod
    def where(cls, **equals: Any) -> Filter:
        return cls(tuple(Condition(k, "eq", v) for k, v in sorted(equals.items())))

    def _with(self, condition: Condition) -> Filter:
        return Filter(self.conditions + (condition,), self.any_of)

    def eq(self, field: str, value: Any) -> Filter:
        return self._with(Condition(field, "eq", value))

    def neq(self, field: str, value: Any) -> Filter:
        return self._with(Condition(field, "neq", value))

    def is_in(self, field: str, values: Iterable[Any]) -> Filter:
        return self._with(Condition(field, "in", tuple(values)))

    def gte(self, field: str, value: Any) -> Filter:
        return self._with(Condition(field, "gte", value))

    def lte(self, field: str, value: Any) -> Filter:
        return self._with(Condition(field, "lte", value))

    def either(self, *conditions: Condition) -> Filter:
        return Filter(self.conditions, tuple(conditions))

    def matches(self, record: Any) -> bool:
        if not all(c.test(record) for c in self.conditions):
            return False
        if self.any_of and not any(c.test(record) for c in self.any_of):
            return False
        return True

    def value_of(self, field: str, op: str = "eq") -> Optional[Any]:
        for condition in self.conditions:
            if condition.field == field and condition.op == op:
                return condition.value
        return None

    def fields(self) -> frozenset:
        return frozenset(c.field for c in self.conditions + self.any_of)

    @property
    def is_empty(self) -> bool:
        return not self.conditions and not self.any_of

    def __str__(self) -> str:
        parts = [f"{c.field} {c.op} {c.value!r}" for c in self.conditions]
        if self.any_of:
            parts.append("(" + " or ".join(f"{c.field} {c.op} {c.value!r}" for c in self.any_of) + ")")
        return " and ".join(parts) or "<all>"


ALL = Filter()
