from __future__ import annotations

import enum
import typing as t

CacheKey = t.Tuple[str, t.Union[int, str]]


class KeyKind(str, enum.Enum):
    COLLECTION = "collection"
    ITEMS = "items"
    OWNER_COLLECTIONS = "owner_collections"


def collection_key(collection_id: t.Union[int, str]) -> CacheKey:
    return (KeyKind.COLLECTION.value, collection_id)


def items_key(collection_id: t.Union[int, str]) -> CacheKey:
    return (KeyKind.ITEMS.value, collection_id)


def owner_collections_key(owner_id: int) -> CacheKey:
    return (KeyKind.OWNER_COLLECTIONS.value, owner_id)
