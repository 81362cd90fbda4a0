"""
Keyed cache package.

``KeyedCache`` is the only entry point callers use. It talks to Redis while
Redis behaves and silently moves to ``MemoryStore`` the first time it does
not. The in-process store is a soft-bounded dict, not an LRU.
"""

from .keyed_cache import CacheBackend, KeyedCache
from .memory_store import CacheEntry, MemoryStore

__all__ = ["CacheBackend", "CacheEntry", "KeyedCache", "MemoryStore"]
