from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, TypeVar

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class OwnerName:
    owner: str
    name: str


def parse_owner_name_id(identifier: str) -> Optional[OwnerName]:
    """Split ``owner/name``; anything else is a free-text search term (None)."""
    parts = identifier.split("/")
    if len(parts) == 2 and parts[0] and parts[1]:
        return OwnerName(owner=parts[0], name=parts[1])
    return None


def _query_forms(query: str) -> set[str]:
    lowered = query.lower()
    return {lowered, lowered.replace("-", " "), lowered.replace(" ", "-")}


def _is_exact(name: str, forms: set[str]) -> bool:
    return name.lower() in forms


def rank_search_results(items: Sequence[T], query: str, key: Callable[[T], str]) -> List[T]:
    """Exact case-insensitive matches first, ties broken alphabetically."""
    forms = _query_forms(query)
    return sorted(items, key=lambda item: (not _is_exact(key(item), forms), key(item).lower()))


def rank_search_results_stable(items: Sequence[T], query: str, key: Callable[[T], str]) -> List[T]:
    """Exact matches first; otherwise keep upstream (relevance) order."""
    forms = _query_forms(query)
    return sorted(items, key=lambda item: not _is_exact(key(item), forms))
