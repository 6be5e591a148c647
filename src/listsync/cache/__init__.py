from .expiring_cache import CacheEntry, CacheLookup, ExpiringCache, LookupStatus
from .keys import CacheKey, KeyKind, collection_key, items_key, owner_collections_key

__all__ = [
    "ExpiringCache",
    "CacheEntry",
    "CacheLookup",
    "LookupStatus",
    "CacheKey",
    "KeyKind",
    "collection_key",
    "items_key",
    "owner_collections_key",
]
