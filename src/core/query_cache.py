"""Per-session query caches for paginated job reads."""
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace

from core.config import Settings, get_settings
from schemas.scheduled_job import ScheduledJob
from schemas.session import DelegatedSession, LocalSession

logger = logging.getLogger(__name__)

# Prefix for invalidation tags. Every page of one partition carries the same tag,
# so a mutation in that partition invalidates all of its pages together.
TAG_PREFIX = "scheduled-jobs"


def partition_tag(partition: str) -> str:
    """Get the invalidation tag for a job partition (e.g. 'scheduled-jobs:NAVI')."""
    return f"{TAG_PREFIX}:{partition}"


@dataclass(frozen=True)
class QueryKey:
    """
    Address of one paginated, filtered read.

    Two keys are equal iff partition, page, page size and search text are all equal.
    """

    partition: str
    page: int
    page_size: int
    search: str = ""


@dataclass(frozen=True)
class CacheEntry:
    """
    Cached result of one read plus its metadata.

    Entries are immutable. Writers build a new entry (see `with_items`) and swap it
    in, so a snapshot taken before a change still holds the exact prior state.
    """

    key: QueryKey
    items: tuple[ScheduledJob, ...]
    total_count: int
    fetched_at: float
    tags: frozenset[str] = field(default_factory=frozenset)
    stale: bool = False

    def with_items(self, items: tuple[ScheduledJob, ...], total_count: int) -> "CacheEntry":
        """Return a copy with replaced items and count, keeping key, tags and fetch time."""
        return replace(self, items=items, total_count=total_count)


class QueryCache:
    """
    Keyed store of query results shared by the job gateway and mutation pipeline.

    An entry is fresh while its age is within `stale_seconds` and its tag has not
    been invalidated. Stale entries stay readable through `peek` until replaced;
    entries older than `gc_seconds` are dropped on the next write.

    All methods are synchronous. Under asyncio no other coroutine can run while
    one executes, so `replace` swaps a whole set of entries atomically.
    """

    def __init__(
        self,
        stale_seconds: float = 60.0,
        gc_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize an empty cache."""
        self._entries: dict[QueryKey, CacheEntry] = {}
        self._stale_seconds = stale_seconds
        self._gc_seconds = gc_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> "QueryCache":
        """Create a cache using the configured freshness and GC windows."""
        return cls(
            stale_seconds=settings.cache_stale_seconds,
            gc_seconds=settings.cache_gc_seconds,
        )

    def __len__(self) -> int:
        return len(self._entries)

    def is_fresh(self, entry: CacheEntry) -> bool:
        """Check whether an entry can be served without a refetch."""
        if entry.stale:
            return False
        return self._clock() - entry.fetched_at <= self._stale_seconds

    def peek(self, key: QueryKey) -> CacheEntry | None:
        """Get the entry for a key regardless of freshness."""
        return self._entries.get(key)

    def get_fresh(self, key: QueryKey) -> CacheEntry | None:
        """
        Get the entry for a key if it is fresh.

        Returns:
            The cached entry, or None on a miss or when the entry is stale.
        """
        entry = self._entries.get(key)
        if entry is None:
            logger.debug("query_cache_miss key=%s", key)
            return None
        if not self.is_fresh(entry):
            logger.debug("query_cache_stale key=%s", key)
            return None
        logger.debug("query_cache_hit key=%s", key)
        return entry

    def put(
        self,
        key: QueryKey,
        items: tuple[ScheduledJob, ...],
        total_count: int,
        tags: frozenset[str],
    ) -> CacheEntry:
        """Store a freshly fetched result, replacing any prior entry for the key."""
        self.collect_garbage()
        entry = CacheEntry(
            key=key,
            items=items,
            total_count=total_count,
            fetched_at=self._clock(),
            tags=tags,
        )
        self._entries[key] = entry
        logger.debug("query_cache_set key=%s count=%s", key, total_count)
        return entry

    def snapshot(self, tag: str) -> dict[QueryKey, CacheEntry]:
        """
        Capture every entry carrying `tag`.

        The returned dict is detached from the cache; because entries are immutable
        it is an exact record of the captured state for a later `restore`.
        """
        return {key: entry for key, entry in self._entries.items() if tag in entry.tags}

    def replace(self, entries: Mapping[QueryKey, CacheEntry]) -> None:
        """Write a set of entries in one step."""
        self._entries.update(entries)

    def restore(
        self,
        snapshot: Mapping[QueryKey, CacheEntry],
        written: Mapping[QueryKey, CacheEntry],
    ) -> int:
        """
        Put back snapshot entries over the entries a writer swapped in.

        A key is restored only while the cache still holds exactly the entry in
        `written`. Keys invalidated, refetched, or cleared since then keep their
        current state.

        Returns:
            Number of entries restored.
        """
        restored = {
            key: entry
            for key, entry in snapshot.items()
            if key in written and self._entries.get(key) is written[key]
        }
        self._entries.update(restored)
        return len(restored)

    def invalidate(self, tag: str) -> int:
        """
        Mark every entry carrying `tag` as stale.

        Returns:
            Number of entries invalidated.
        """
        stale = {
            key: replace(entry, stale=True)
            for key, entry in self._entries.items()
            if tag in entry.tags
        }
        self._entries.update(stale)
        logger.debug("query_cache_invalidate tag=%s entries=%s", tag, len(stale))
        return len(stale)

    def clear(self) -> None:
        """Drop every entry (e.g. on logout)."""
        count = len(self._entries)
        self._entries.clear()
        logger.debug("query_cache_clear entries=%s", count)

    def collect_garbage(self) -> int:
        """Drop entries older than the GC window. Returns the number removed."""
        now = self._clock()
        expired = [
            key for key, entry in self._entries.items()
            if now - entry.fetched_at > self._gc_seconds
        ]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("query_cache_gc removed=%s", len(expired))
        return len(expired)


def session_scope(session: LocalSession | DelegatedSession) -> str:
    """
    Key of the cache owned by one session.

    A new login issues a new session, so it starts from an empty cache even for
    the same subject.
    """
    return f"{session.kind}:{session.subject_id}:{int(session.issued_at.timestamp())}"


class QueryCacheRegistry:
    """
    One query cache per session.

    Pages fetched with one session's credential are never served to another, and
    ending a session drops only that session's cache. Caches left behind by
    sessions that never logged out are dropped once all their entries are
    past the GC window.
    """

    def __init__(self, factory: Callable[[], QueryCache]) -> None:
        self._factory = factory
        self._caches: dict[str, QueryCache] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "QueryCacheRegistry":
        """Create a registry whose caches use the configured windows."""
        return cls(lambda: QueryCache.from_settings(settings))

    def __len__(self) -> int:
        """Total number of entries across every session's cache."""
        return sum(len(cache) for cache in self._caches.values())

    def for_session(self, session: LocalSession | DelegatedSession) -> QueryCache:
        """Get the cache for a session, creating it on first access."""
        scope = session_scope(session)
        self.collect_garbage(keep=scope)
        cache = self._caches.get(scope)
        if cache is None:
            cache = self._factory()
            self._caches[scope] = cache
            logger.debug("query_cache_created scope=%s", scope)
        return cache

    def discard(self, session: LocalSession | DelegatedSession) -> None:
        """Clear and drop the cache of a session. No-op if it has none."""
        cache = self._caches.pop(session_scope(session), None)
        if cache is not None:
            cache.clear()

    def collect_garbage(self, keep: str | None = None) -> int:
        """Drop caches that are empty once expired entries are removed."""
        empty = []
        for scope, cache in self._caches.items():
            if scope == keep:
                continue
            cache.collect_garbage()
            if len(cache) == 0:
                empty.append(scope)
        for scope in empty:
            del self._caches[scope]
        if empty:
            logger.debug("query_cache_dropped scopes=%s", len(empty))
        return len(empty)


# Global registry state using a container to avoid global statement
class _QueryCacheState:
    """Container for the process-wide cache registry."""

    caches: QueryCacheRegistry | None = None


_state = _QueryCacheState()


def get_query_caches() -> QueryCacheRegistry:
    """Get the process-wide cache registry, creating it on first access."""
    if _state.caches is None:
        _state.caches = QueryCacheRegistry.from_settings(get_settings())
    return _state.caches


def set_query_caches(caches: QueryCacheRegistry | None) -> None:
    """Set (or reset) the process-wide cache registry."""
    _state.caches = caches
