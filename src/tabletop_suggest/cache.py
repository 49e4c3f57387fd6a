"""
Local suggestion cache.

SuggestionCache keeps a JSON snapshot of each scope's suggestions in a
key/value CacheStore, with TTL expiry, schema versioning, a per-entry size
cap and eviction when the backend runs out of room. The cache is derived
data: every failure degrades to a miss and is never raised to callers.

Backends:
- MemoryCacheStore: process-local dict with a byte quota.
- SqliteCacheStore: persistent single-table store with a byte quota.
"""

import json
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Protocol

from .errors import CacheError, CacheQuotaExceeded, ValidationError
from .models import Suggestion, format_ts, parse_ts, suggestion_from_dict
from .normalize import CACHE_KEY_PREFIX, cache_key, normalize

logger = logging.getLogger(__name__)

DEFAULT_QUOTA_BYTES = 5 * 1024 * 1024


class CacheStore(Protocol):
    """Minimal string key/value storage used by SuggestionCache.

    Implementations raise CacheQuotaExceeded when a write does not fit and
    CacheError for any other backend failure.
    """

    def get_item(self, key: str) -> str | None: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...

    def keys(self) -> list[str]: ...


class MemoryCacheStore:
    """In-process cache store with a total size quota."""

    def __init__(self, quota_bytes: int = DEFAULT_QUOTA_BYTES):
        self.quota_bytes = quota_bytes
        self._items: dict[str, str] = {}

    def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        used = sum(len(v.encode()) for k, v in self._items.items() if k != key)
        if used + len(value.encode()) > self.quota_bytes:
            raise CacheQuotaExceeded(f"Cache quota of {self.quota_bytes} bytes exceeded")
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._items)


class SqliteCacheStore:
    """Persistent cache store backed by a single SQLite table."""

    def __init__(self, db_path: Path, quota_bytes: int = DEFAULT_QUOTA_BYTES):
        self.db_path = Path(db_path)
        self.quota_bytes = quota_bytes
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = self._connect()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS cache_entries (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)
            conn.commit()
        finally:
            conn.close()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def get_item(self, key: str) -> str | None:
        try:
            conn = self._connect()
            try:
                row = conn.execute(
                    "SELECT value FROM cache_entries WHERE key = ?", (key,)
                ).fetchone()
                return row[0] if row else None
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise CacheError(f"Cache read failed: {e}") from e

    def set_item(self, key: str, value: str) -> None:
        try:
            conn = self._connect()
            try:
                used = conn.execute(
                    "SELECT COALESCE(SUM(length(CAST(value AS BLOB))), 0) FROM cache_entries WHERE key != ?",
                    (key,),
                ).fetchone()[0]
                if used + len(value.encode()) > self.quota_bytes:
                    raise CacheQuotaExceeded(f"Cache quota of {self.quota_bytes} bytes exceeded")
                conn.execute(
                    "INSERT OR REPLACE INTO cache_entries (key, value) VALUES (?, ?)",
                    (key, value),
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise CacheError(f"Cache write failed: {e}") from e

    def remove_item(self, key: str) -> None:
        try:
            conn = self._connect()
            try:
                conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise CacheError(f"Cache delete failed: {e}") from e

    def keys(self) -> list[str]:
        try:
            conn = self._connect()
            try:
                return [row[0] for row in conn.execute("SELECT key FROM cache_entries")]
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise CacheError(f"Cache scan failed: {e}") from e


@dataclass
class CacheEntry:
    """A cached snapshot of one scope's suggestions."""

    data: list[Suggestion]
    cached_at: datetime
    expires_at: datetime
    version: str
    hit_count: int = 0
    type: str = "faction"
    manufacturer: str | None = None
    game: str | None = None
    faction: str | None = None
    last_hit: datetime | None = None

    @property
    def item_count(self) -> int:
        return len(self.data)

    def to_json(self) -> str:
        return json.dumps(
            {
                "data": [s.to_dict() for s in self.data],
                "cached_at": format_ts(self.cached_at),
                "expires_at": format_ts(self.expires_at),
                "version": self.version,
                "hit_count": self.hit_count,
                "type": self.type,
                "manufacturer": self.manufacturer,
                "game": self.game,
                "faction": self.faction,
                "item_count": self.item_count,
                "last_hit": format_ts(self.last_hit),
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> "CacheEntry":
        """Parse a stored entry. Raises ValueError for anything unusable."""
        try:
            parsed = json.loads(raw)
            cached_at = parse_ts(parsed["cached_at"])
            expires_at = parse_ts(parsed["expires_at"])
            if cached_at is None or expires_at is None:
                raise ValueError("Cache entry is missing timestamps")
            hit_count = parsed.get("hit_count") or 0
            if not isinstance(hit_count, int) or isinstance(hit_count, bool):
                raise ValueError(f"Cache entry hit_count is not an integer: {hit_count!r}")
            if not isinstance(parsed["version"], str):
                raise ValueError(f"Cache entry version is not a string: {parsed['version']!r}")
            if not isinstance(parsed["data"], list):
                raise ValueError("Cache entry data is not a list")
            return cls(
                data=[suggestion_from_dict(item) for item in parsed["data"]],
                cached_at=cached_at,
                expires_at=expires_at,
                version=parsed["version"],
                hit_count=hit_count,
                type=parsed.get("type") or "faction",
                manufacturer=parsed.get("manufacturer"),
                game=parsed.get("game"),
                faction=parsed.get("faction"),
                last_hit=parse_ts(parsed.get("last_hit")),
            )
        except (KeyError, TypeError, AttributeError, ValidationError) as e:
            raise ValueError(f"Malformed cache entry: {e}") from e


@dataclass
class CacheStats:
    """Derived view of the cache contents."""

    count: int = 0
    total_items: int = 0
    total_size_bytes: int = 0
    by_type: dict[str, int] = field(default_factory=dict)
    avg_hit_count: int = 0
    oldest_key: str | None = None
    newest_key: str | None = None
    most_used_key: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "total_items": self.total_items,
            "total_size_bytes": self.total_size_bytes,
            "by_type": dict(self.by_type),
            "avg_hit_count": self.avg_hit_count,
            "oldest_key": self.oldest_key,
            "newest_key": self.newest_key,
            "most_used_key": self.most_used_key,
        }


class SuggestionCache:
    """
    TTL/versioned suggestion cache over an injectable CacheStore.

    Reads count as hits: get() increments hit_count on every valid hit via
    record_hit(), which eviction uses as a tie-breaker.
    """

    def __init__(
        self,
        store: CacheStore | None = None,
        ttl_days: int = 14,
        version: str = "1.0",
        max_items: int = 100,
        max_entry_bytes: int = 1024 * 1024,
        evict_count: int = 5,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store if store is not None else MemoryCacheStore()
        self.ttl = timedelta(days=ttl_days)
        self.version = version
        self.max_items = max_items
        self.max_entry_bytes = max_entry_bytes
        self.evict_count = evict_count
        self._clock = clock or (lambda: datetime.now(UTC))

    @staticmethod
    def key_for(
        manufacturer: str,
        game: str,
        faction: str | None = None,
        suggestion_type: str = "faction",
    ) -> str:
        return cache_key(manufacturer, game, faction, suggestion_type)

    def _cache_keys(self) -> list[str]:
        try:
            return [k for k in self.store.keys() if k.startswith(CACHE_KEY_PREFIX)]
        except CacheError as e:
            logger.error(f"Cache scan failed: {e}")
            return []

    def _remove(self, key: str) -> bool:
        try:
            self.store.remove_item(key)
            return True
        except CacheError as e:
            logger.error(f"Failed to remove cache entry {key}: {e}")
            return False

    def _load(self, key: str) -> CacheEntry | None:
        """Read and validate an entry, deleting it if unusable."""
        try:
            raw = self.store.get_item(key)
        except CacheError as e:
            logger.error(f"Cache read failed for {key}: {e}")
            return None

        if raw is None:
            return None

        try:
            entry = CacheEntry.from_json(raw)
        except ValueError as e:
            logger.warning(f"Dropping corrupt cache entry {key}: {e}")
            self._remove(key)
            return None

        if entry.version != self.version:
            logger.debug(f"Dropping cache entry {key} with version {entry.version}")
            self._remove(key)
            return None

        if self._clock() > entry.expires_at:
            logger.debug(f"Dropping expired cache entry {key}")
            self._remove(key)
            return None

        return entry

    def get(self, key: str) -> CacheEntry | None:
        """Return a valid entry, or None. Counts a hit."""
        entry = self._load(key)
        if entry is None:
            return None
        self.record_hit(key, entry)
        return entry

    def record_hit(self, key: str, entry: CacheEntry | None = None) -> int | None:
        """Increment the hit counter of an entry. Returns the new count."""
        if entry is None:
            entry = self._load(key)
            if entry is None:
                return None

        entry.hit_count += 1
        entry.last_hit = self._clock()
        try:
            self.store.set_item(key, entry.to_json())
        except CacheError as e:
            # The entry itself is still valid; only the counter is lost
            logger.debug(f"Could not persist hit count for {key}: {e}")
        return entry.hit_count

    def set(
        self,
        key: str,
        suggestions: list[Suggestion],
        *,
        suggestion_type: str = "faction",
        manufacturer: str | None = None,
        game: str | None = None,
        faction: str | None = None,
    ) -> bool:
        """
        Store a snapshot. Returns False when the write was skipped.

        The list is truncated to max_items. Oversized payloads are rejected.
        On quota errors the oldest entries are evicted and the write is
        retried once; if that fails too, any previous entry for the key is
        dropped so stale data is not served.
        """
        now = self._clock()
        entry = CacheEntry(
            data=list(suggestions)[: self.max_items],
            cached_at=now,
            expires_at=now + self.ttl,
            version=self.version,
            type=suggestion_type,
            manufacturer=normalize(manufacturer) if manufacturer else None,
            game=normalize(game) if game else None,
            faction=normalize(faction) if faction else None,
        )
        payload = entry.to_json()

        size = len(payload.encode())
        if size > self.max_entry_bytes:
            logger.warning(f"Cache entry {key} too large ({size} bytes), skipping")
            return False

        self.clear_expired()

        try:
            self.store.set_item(key, payload)
        except CacheQuotaExceeded:
            logger.warning(f"Cache quota exceeded writing {key}, evicting {self.evict_count} entries")
            self.evict_oldest(self.evict_count)
            try:
                self.store.set_item(key, payload)
            except CacheError as e:
                logger.error(f"Failed to cache {key} even after eviction: {e}")
                self._remove(key)
                return False
        except CacheError as e:
            logger.error(f"Failed to cache {key}: {e}")
            return False

        logger.debug(f"Cached {entry.item_count} suggestions under {key}")
        return True

    def invalidate(self, key: str) -> bool:
        return self._remove(key)

    def clear_all(self) -> int:
        removed = 0
        for key in self._cache_keys():
            if self._remove(key):
                removed += 1
        if removed:
            logger.info(f"Cleared {removed} suggestion caches")
        return removed

    def clear_expired(self) -> int:
        """Remove expired, version-mismatched and unparseable entries."""
        now = self._clock()
        removed = 0

        for key in self._cache_keys():
            try:
                raw = self.store.get_item(key)
            except CacheError as e:
                logger.error(f"Cache read failed for {key}: {e}")
                continue
            if raw is None:
                continue

            try:
                entry = CacheEntry.from_json(raw)
                stale = entry.version != self.version or entry.expires_at < now
            except ValueError:
                stale = True

            if stale and self._remove(key):
                removed += 1

        if removed:
            logger.info(f"Cleaned up {removed} expired/invalid caches")
        return removed

    def evict_oldest(self, count: int = 5) -> int:
        """Remove up to count entries, oldest first, least hit on ties."""
        candidates = []
        epoch = datetime.min.replace(tzinfo=UTC)

        for key in self._cache_keys():
            try:
                raw = self.store.get_item(key)
            except CacheError:
                continue
            if raw is None:
                continue
            try:
                entry = CacheEntry.from_json(raw)
                candidates.append((entry.cached_at, entry.hit_count, key))
            except ValueError:
                candidates.append((epoch, 0, key))

        candidates.sort(key=lambda c: (c[0], c[1]))

        removed = 0
        for _, _, key in candidates[:count]:
            if self._remove(key):
                removed += 1

        logger.info(f"Evicted {removed} oldest caches to free space")
        return removed

    def stats(self) -> CacheStats:
        """Summarize the cache without modifying it."""
        stats = CacheStats()
        total_hits = 0
        oldest = newest = None
        max_hits = 0

        for key in self._cache_keys():
            try:
                raw = self.store.get_item(key)
            except CacheError:
                continue
            if raw is None:
                continue

            stats.count += 1
            stats.total_size_bytes += len(raw.encode())

            try:
                entry = CacheEntry.from_json(raw)
            except ValueError:
                continue

            stats.total_items += entry.item_count
            stats.by_type[entry.type] = stats.by_type.get(entry.type, 0) + 1
            total_hits += entry.hit_count

            if oldest is None or entry.cached_at < oldest:
                oldest = entry.cached_at
                stats.oldest_key = key
            if newest is None or entry.cached_at > newest:
                newest = entry.cached_at
                stats.newest_key = key
            if entry.hit_count > max_hits:
                max_hits = entry.hit_count
                stats.most_used_key = key

        stats.avg_hit_count = round(total_hits / stats.count) if stats.count else 0
        return stats
