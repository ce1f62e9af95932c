"""
Cache management module with dynamic, TTL-based caching for dependency tracking system.
Supports on-demand cache creation, automatic expiration, and granular invalidation.
"""

import functools
import re
import threading
import time
from typing import Dict, Any, Callable, TypeVar, Optional, List, Tuple
import logging

from .path_utils import normalize_path

logger = logging.getLogger(__name__)

F = TypeVar('F', bound=Callable[..., Any])

DEFAULT_MAX_SIZE = 1000  # Default max items per cache
DEFAULT_TTL = 600  # 10 minutes in seconds
CACHE_SIZES = {
    "grid_decompress": 5000,
    "grid_validation": 500,
    "tracker_data": 200,
    "default": DEFAULT_MAX_SIZE
}


class Cache:
    """A single cache instance with LRU eviction, per-entry TTL, and dependency tracking."""
    def __init__(self, name: str, ttl: int = DEFAULT_TTL, max_size: int = DEFAULT_MAX_SIZE):
        self.name = name
        self.data: Dict[str, Tuple[Any, float, Optional[float]]] = {}  # (value, access_time, expiry_time)
        self.dependencies: Dict[str, List[str]] = {}  # key -> dependent keys
        self.reverse_deps: Dict[str, List[str]] = {}  # key -> keys that depend on it
        self.creation_time = time.time()
        self.default_ttl = ttl
        self.max_size = CACHE_SIZES.get(name, max_size)
        self.hits = 0
        self.misses = 0
        self._lock = threading.RLock()

    def get(self, key: str) -> Any:
        with self._lock:
            if key in self.data:
                value, _, expiry = self.data[key]
                if expiry is None or time.time() < expiry:
                    self.data[key] = (value, time.time(), expiry)
                    self.hits += 1
                    return value
                self._remove_key(key)
            self.misses += 1
            return None

    def set(self, key: str, value: Any, dependencies: Optional[List[str]] = None, ttl: Optional[int] = None) -> None:
        with self._lock:
            if key not in self.data and len(self.data) >= self.max_size:
                self._evict_lru()
            expiry = time.time() + (ttl if ttl is not None else self.default_ttl) if ttl != 0 else None
            self.data[key] = (value, time.time(), expiry)
            for dep in dependencies or []:
                self.dependencies.setdefault(dep, []).append(key)
                self.reverse_deps.setdefault(key, []).append(dep)

    def _evict_lru(self) -> None:
        if not self.data:
            return
        lru_key = min(self.data, key=lambda k: self.data[k][1])
        self._remove_key(lru_key)

    def _remove_key(self, key: str) -> None:
        self.data.pop(key, None)
        # Drop 'key' from the dependency lists it was registered under
        for dep in self.reverse_deps.pop(key, []):
            dependents = self.dependencies.get(dep)
            if dependents and key in dependents:
                dependents.remove(key)
                if not dependents:
                    del self.dependencies[dep]

    def cleanup_expired(self) -> None:
        """Remove all expired entries."""
        with self._lock:
            current_time = time.time()
            expired = [k for k, (_, _, expiry) in self.data.items() if expiry and current_time > expiry]
            for key in expired:
                self._remove_key(key)
            if expired:
                logger.debug(f"Cache '{self.name}': Cleaned up {len(expired)} expired entries.")

    def is_expired(self) -> bool:
        return (time.time() - self.creation_time) > self.default_ttl and not self.data

    def invalidate(self, key_pattern: str) -> None:
        """Invalidate entries matching a key pattern (regex). Also invalidates dependent entries."""
        compiled_pattern = re.compile(key_pattern)
        with self._lock:
            queue = [k for k in self.data if compiled_pattern.match(k)]
            queue.extend(k for k in self.dependencies if compiled_pattern.match(k) and k not in queue)
            processed = set()
            while queue:
                key = queue.pop(0)
                if key in processed:
                    continue
                processed.add(key)
                queue.extend(dep for dep in self.dependencies.pop(key, []) if dep not in processed)
                self._remove_key(key)
        if processed:
            logger.debug(f"Cache '{self.name}': Invalidated {len(processed)} entries matching pattern '{key_pattern}'.")

    def stats(self) -> Dict[str, int]:
        return {"hits": self.hits, "misses": self.misses, "size": len(self.data)}


class CacheManager:
    """Manages multiple named caches and their cleanup."""
    def __init__(self):
        self.caches: Dict[str, Cache] = {}
        self._lock = threading.RLock()

    def get_cache(self, cache_name: str, ttl: int = DEFAULT_TTL) -> Cache:
        """Retrieve or create a cache by name."""
        with self._lock:
            if cache_name not in self.caches or self.caches[cache_name].is_expired():
                self.caches[cache_name] = Cache(cache_name, ttl)
                logger.debug(f"Spun up new cache: {cache_name} with TTL {ttl}s")
            return self.caches[cache_name]

    def cleanup(self) -> None:
        """Remove expired caches and expired entries."""
        with self._lock:
            for name in [n for n, c in self.caches.items() if c.is_expired()]:
                del self.caches[name]
                logger.debug(f"Spun down expired cache: {name}")
            caches = list(self.caches.values())
        for cache in caches:
            cache.cleanup_expired()

    def clear_all(self) -> None:
        with self._lock:
            self.caches.clear()
        logger.debug("All caches cleared.")


cache_manager = CacheManager()


def clear_all_caches() -> None:
    """Clear all caches in the manager."""
    cache_manager.clear_all()


def invalidate_dependent_entries(cache_name: str, key_pattern: str) -> None:
    """Invalidate cache entries matching a key pattern in a specific cache."""
    cache_manager.get_cache(cache_name).invalidate(key_pattern)


def tracker_modified(tracker_path: str) -> None:
    """Invalidate parsed tracker data after a tracker file is written."""
    norm_path = normalize_path(tracker_path)
    invalidate_dependent_entries("tracker_data", rf"^tracker_data:{re.escape(norm_path)}:.*")


def cached(cache_name: str, key_func: Optional[Callable] = None, ttl: Optional[int] = DEFAULT_TTL):
    """
    Decorator for caching function results in a named cache.

    Args:
        cache_name: Name of the cache to store results in
        key_func: Builds the cache key from the call arguments; defaults to
            the function name plus the str() of each argument
        ttl: Entry lifetime in seconds (0 means no expiry)
    """
    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            if key_func is not None:
                key = key_func(*args, **kwargs)
            else:
                key_parts = [str(a) for a in args] + [f"{k}={v}" for k, v in sorted(kwargs.items())]
                key = f"{func.__name__}::{'|'.join(key_parts)}"

            cache_ttl = ttl if ttl is not None else DEFAULT_TTL
            cache = cache_manager.get_cache(cache_name, cache_ttl)
            result = cache.get(key)
            if result is not None:
                return result

            result = func(*args, **kwargs)
            cache.set(key, result, ttl=cache_ttl)
            cache_manager.cleanup()
            return result
        return wrapper
    return decorator


def get_cache_stats(cache_name: str) -> Dict[str, int]:
    """Get hit/miss stats for a cache."""
    return cache_manager.get_cache(cache_name).stats()
