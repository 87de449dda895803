from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True)
class Filter:
    """Equality clauses joined with AND, optionally AND-ed with an OR group."""

    clauses: tuple[tuple[str, Any], ...] = ()
    any_of: tuple[Filter, ...] = ()

    def matches(self, row: dict[str, Any]) -> bool:
        for name, value in self.clauses:
            if row.get(name) != value:
                return False
        if self.any_of and not any(f.matches(row) for f in self.any_of):
            return False
        return True

    def and_(self, other: Filter) -> Filter:
        if self.any_of and other.any_of:
            return Filter(self.clauses + other.clauses, (Filter(any_of=self.any_of), Filter(any_of=other.any_of)))
        return Filter(self.clauses + other.clauses, self.any_of or other.any_of)

    def to_sql(self) -> tuple[str, list[Any]]:
        parts: list[str] = []
        params: list[Any] = []
        for name, value in self.clauses:
            check_identifier(name)
            if value is None:
                parts.append(f"{name} IS NULL")
            else:
                parts.append(f"{name} = ?")
                params.append(to_sql_value(value))
        if self.any_of:
            alternatives: list[str] = []
            for sub in self.any_of:
                sql, sub_params = sub.to_sql()
                alternatives.append(f"({sql})")
                params.extend(sub_params)
            parts.append("(" + " OR ".join(alternatives) + ")")
        return (" AND ".join(parts) or "1 = 1"), params


@dataclass(frozen=True)
class Order:
    field: str
    descending: bool = False
    nulls_last: bool | None = None

    def to_sql(self) -> str:
        check_identifier(self.field)
        sql = f"{self.field} {'DESC' if self.descending else 'ASC'}"
        if self.nulls_last is True:
            sql += " NULLS LAST"
        elif self.nulls_last is False:
            sql += " NULLS FIRST"
        return sql


def eq(**fields: Any) -> Filter:
    return Filter(tuple(fields.items()))


def or_(*filters: Filter) -> Filter:
    return Filter(any_of=tuple(filters))


def check_identifier(name: str) -> None:
    if not name.replace("_", "").isalnum():
        raise ValueError(f"Invalid field name: {name!r}")


def to_sql_value(value: Any) -> Any:
    if isinstance(value, bool):
        return 1 if value else 0
    if hasattr(value, "value") and isinstance(getattr(value, "value"), str):
        return value.value
    return value


@dataclass(frozen=True)
class FeedEvent:
    collection: str
    type: str
    new: dict[str, Any]
    old: dict[str, Any] | None = None


@runtime_checkable
class RecordStore(Protocol):
    async def select(
        self,
        collection: str,
        filter: Filter | None = None,
        order: Order | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]: ...

    async def insert(self, collection: str, row: dict[str, Any]) -> dict[str, Any]: ...

    async def update(self, collection: str, filter: Filter, patch: dict[str, Any]) -> int:
        """Apply `patch` to matching rows. Returns the number of rows changed."""
        ...

    async def upsert(self, collection: str, row: dict[str, Any]) -> None: ...

    async def delete(self, collection: str, filter: Filter) -> int: ...
