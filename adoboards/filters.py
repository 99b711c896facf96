from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import FrozenSet, Iterable, List, Optional

from .models import WorkItem


@dataclass(frozen=True)
class FilterState:
    query: str = ""
    assigned_to_me: bool = False
    types: FrozenSet[str] = field(default_factory=frozenset)   # empty => every type

    @property
    def active(self) -> bool:
        return bool(self.query or self.assigned_to_me or self.types)

    def with_query(self, query: str) -> "FilterState":
        return replace(self, query=query)

    def toggle_assigned_to_me(self) -> "FilterState":
        return replace(self, assigned_to_me=not self.assigned_to_me)

    def toggle_type(self, type_name: str) -> "FilterState":
        if type_name in self.types:
            return replace(self, types=self.types - {type_name})
        return replace(self, types=self.types | {type_name})

    def without_types(self) -> "FilterState":
        return replace(self, types=frozenset())


def matches(item: WorkItem, state: FilterState, me: Optional[str]) -> bool:
    if state.query:
        needle = state.query.lower()
        if needle not in str(item.id) and needle not in item.title.lower():
            return False
    if state.assigned_to_me and (not me or item.assigned_to != me):
        return False
    if state.types and item.type not in state.types:
        return False
    return True


def visible(items: Iterable[WorkItem], state: FilterState, me: Optional[str]) -> List[WorkItem]:
    """Items passing `state`, in their original order."""
    return [item for item in items if matches(item, state, me)]


def available_types(items: Iterable[WorkItem]) -> List[str]:
    return sorted({item.type for item in items if item.type})
