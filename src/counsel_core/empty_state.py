"""Fallback rows for listings that come back empty.

Only presentation code applies these. The stores always return what the
record store holds, empty or not.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class EmptyStateProvider(Protocol):
    def rows_for(self, collection: str) -> list[Any]: ...


class NullEmptyState:
    def rows_for(self, collection: str) -> list[Any]:
        return []


class StaticEmptyState:
    def __init__(self, rows: Mapping[str, Sequence[Any]]):
        self._rows = {name: list(items) for name, items in rows.items()}

    def rows_for(self, collection: str) -> list[Any]:
        return list(self._rows.get(collection, []))


def apply_empty_state(rows: Sequence[Any], collection: str, provider: EmptyStateProvider | None) -> list[Any]:
    if rows or provider is None:
        return list(rows)
    return provider.rows_for(collection)
