"""How a renter picks up the car."""

from __future__ import annotations

from typing import Iterable, List, Optional

from carshare.models.booking import CollectionMethod

COLLECTION_METHODS = tuple(method.value for method in CollectionMethod)
DEFAULT_COLLECTION_METHOD = CollectionMethod.IN_PERSON.value


def is_collection_method(value: object) -> bool:
    return isinstance(value, str) and value in COLLECTION_METHODS


def normalize_collection_methods(methods: Optional[Iterable[object]]) -> List[str]:
    """Known methods in their original order, de-duplicated; in-person when none remain."""
    normalized: List[str] = []
    for method in methods or ():
        if is_collection_method(method) and method not in normalized:
            normalized.append(str(method))
    return normalized or [DEFAULT_COLLECTION_METHOD]


def resolve_selected_collection_method(
    requested: Optional[str], available: Optional[Iterable[object]]
) -> str:
    options = normalize_collection_methods(available)
    if requested and requested in options:
        return requested
    return options[0]
