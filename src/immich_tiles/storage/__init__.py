from .cache import (
    CacheEntry,
    get_cache_entry,
    get_cache_payload,
    prune_expired_entries,
    set_cache_entry,
)
from .db import initialize_database

__all__ = [
    "CacheEntry",
    "get_cache_entry",
    "get_cache_payload",
    "initialize_database",
    "prune_expired_entries",
    "set_cache_entry",
]
