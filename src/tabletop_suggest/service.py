"""
High-level suggestion service.

SuggestionService ties the store, the local cache and the quality pipeline
together. Reads and usage recording are best-effort: they never raise and
degrade to empty results or an unrecorded RecordResult. Admin actions are
the exception and raise AdminMutationError.
"""

import logging
import time
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import Any

from .batcher import BatchResult
from .cache import CacheStats, MemoryCacheStore, SqliteCacheStore, SuggestionCache
from .config import SuggestConfig
from .errors import AdminMutationError, RemoteError, ValidationError
from .models import (
    PopularManufacturer,
    RecordResult,
    ScopeStats,
    Suggestion,
    SuggestionType,
    UsageEvent,
)
from .normalize import should_record, validate_moderation, validate_scope
from .quality import (
    apply_filters,
    contextual_filters,
    needs_review,
    should_auto_block,
    should_auto_promote,
    should_show,
)
from .ranking import matches_term, rank
from .remote import HttpSuggestionStore
from .store import SqliteSuggestionStore, SuggestionStore

logger = logging.getLogger(__name__)

GLOBAL_MANUFACTURER = "global"
GLOBAL_MANUFACTURERS_GAME = "manufacturers"
GAMES_SCOPE = "games"

# Candidates fetched per scope snapshot; matches the cache entry cap
SNAPSHOT_LIMIT = 100

POPULAR_THRESHOLD = 3
POPULAR_CACHE_SECONDS = 5 * 60


def resolve_scope(
    suggestion_type: SuggestionType,
    manufacturer: str | None,
    game: str | None,
    faction: str | None = None,
) -> tuple[str | None, str | None, str | None]:
    """Map a suggestion type to the (manufacturer, game, faction) it lives under."""
    if suggestion_type is SuggestionType.MANUFACTURER:
        return GLOBAL_MANUFACTURER, GLOBAL_MANUFACTURERS_GAME, None
    if suggestion_type is SuggestionType.GAME:
        return manufacturer, GAMES_SCOPE, None
    if suggestion_type is SuggestionType.UNIT:
        return manufacturer, game, faction
    return manufacturer, game, None


class SuggestionService:
    """Fetch, record and moderate suggestions."""

    def __init__(
        self,
        store: SuggestionStore,
        cache: SuggestionCache | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.cache = cache
        self._clock = clock or (lambda: datetime.now(UTC))
        self._popular: tuple[float, list[PopularManufacturer]] | None = None

    @classmethod
    def from_config(cls, config: SuggestConfig) -> "SuggestionService":
        """Build a service with the store and cache described by config."""
        if config.store.remote_url:
            store: SuggestionStore = HttpSuggestionStore(
                config.store.remote_url,
                timeout_seconds=config.store.timeout_seconds,
            )
        else:
            store = SqliteSuggestionStore(config.store.db_path)

        cache = None
        if config.cache.enabled:
            if config.cache.db_path:
                backend = SqliteCacheStore(config.cache.db_path, config.cache.quota_bytes)
            else:
                backend = MemoryCacheStore(config.cache.quota_bytes)
            cache = SuggestionCache(
                backend,
                ttl_days=config.cache.ttl_days,
                version=config.cache.version,
                max_items=config.cache.max_items_per_entry,
                max_entry_bytes=config.cache.max_entry_bytes,
                evict_count=config.cache.evict_count,
            )

        return cls(store, cache)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def _scope_snapshot(
        self,
        suggestion_type: SuggestionType,
        manufacturer: str,
        game: str,
        faction: str | None,
        use_cache: bool,
        include_blocked: bool = False,
    ) -> list[Suggestion]:
        """All candidates of a scope, from the cache when possible.

        ``use_cache=False`` skips the cached read but still stores the
        fresh snapshot. Admin reads never touch the cache.
        """
        cache = None if include_blocked else self.cache
        key = None

        if cache is not None:
            key = cache.key_for(manufacturer, game, faction, suggestion_type.value)
            entry = cache.get(key) if use_cache else None
            if entry is not None:
                logger.debug(f"Cache hit for {key} ({entry.item_count} items)")
                return entry.data

        suggestions = await self.store.query_by_scope(
            manufacturer,
            game,
            faction,
            search_term="",
            limit=SNAPSHOT_LIMIT,
            include_blocked=include_blocked,
            suggestion_type=suggestion_type,
        )

        if cache is not None:
            cache.set(
                key,
                suggestions,
                suggestion_type=suggestion_type.value,
                manufacturer=manufacturer,
                game=game,
                faction=faction,
            )

        return suggestions

    async def get_suggestions(
        self,
        suggestion_type: SuggestionType | str,
        manufacturer: str | None,
        game: str | None,
        faction: str | None = None,
        search_term: str = "",
        context: str = "autocomplete",
        max_results: int | None = None,
        use_cache: bool = True,
    ) -> list[Suggestion]:
        """
        Ranked, filtered suggestions for a scope and search term.

        Returns an empty list for invalid scopes and store failures.
        """
        try:
            suggestion_type = SuggestionType(suggestion_type)
        except ValueError:
            logger.warning(f"Unknown suggestion type: {suggestion_type!r}")
            return []

        manufacturer, game, faction = resolve_scope(suggestion_type, manufacturer, game, faction)

        try:
            validate_scope(manufacturer, game, search_term)
            if suggestion_type is SuggestionType.UNIT and not faction:
                raise ValidationError("Faction is required for unit suggestions")
        except ValidationError as e:
            logger.debug(f"Skipping suggestion query: {e}")
            return []

        admin = context == "admin"

        try:
            candidates = await self._scope_snapshot(
                suggestion_type,
                manufacturer,
                game,
                faction,
                use_cache=use_cache,
                include_blocked=admin,
            )
        except (RemoteError, ValidationError) as e:
            logger.error(f"Error getting {suggestion_type.value} suggestions: {e}")
            return []

        total = len(candidates)
        matching = [s for s in candidates if matches_term(s, search_term)]
        if not admin:
            matching = [s for s in matching if should_show(s, total)]

        ranked = rank(matching, search_term)
        results = apply_filters(ranked, contextual_filters(context, max_results), now=self._clock())

        logger.debug(
            f"{suggestion_type.value} suggestions for {manufacturer}/{game}"
            f"{f'/{faction}' if faction else ''} {search_term!r}: "
            f"{total} candidates -> {len(results)} results"
        )
        return results

    async def get_stats(self, manufacturer: str, game: str) -> ScopeStats | None:
        try:
            return await self.store.get_stats(manufacturer, game)
        except (RemoteError, ValidationError) as e:
            logger.error(f"Error getting suggestion stats: {e}")
            return None

    async def popular_manufacturers(self, top_count: int = 5) -> list[PopularManufacturer]:
        """Manufacturers with at least POPULAR_THRESHOLD recorded faction uses."""
        now = time.monotonic()
        if self._popular is not None and now - self._popular[0] < POPULAR_CACHE_SECONDS:
            return self._popular[1][:top_count]

        try:
            usage = await self.store.usage_by_manufacturer()
        except RemoteError as e:
            logger.error(f"Error fetching popular manufacturers: {e}")
            return []

        popular = sorted(
            (
                PopularManufacturer(name=name, usage_count=count)
                for name, count in usage.items()
                if name and name != GLOBAL_MANUFACTURER and count >= POPULAR_THRESHOLD
            ),
            key=lambda p: (-p.usage_count, p.name),
        )
        self._popular = (now, popular)
        logger.info(f"Popular manufacturers (threshold {POPULAR_THRESHOLD}): {len(popular)}")
        return popular[:top_count]

    def clear_popular_cache(self) -> None:
        self._popular = None

    async def review_queue(
        self,
        manufacturer: str,
        game: str,
        faction: str | None = None,
        suggestion_type: SuggestionType | str = SuggestionType.FACTION,
    ) -> list[Suggestion]:
        """Reported suggestions waiting for a moderator, most reported first."""
        suggestion_type = SuggestionType(suggestion_type)
        manufacturer, game, faction = resolve_scope(suggestion_type, manufacturer, game, faction)
        try:
            candidates = await self.store.query_by_scope(
                manufacturer,
                game,
                faction,
                limit=SNAPSHOT_LIMIT,
                include_blocked=True,
                suggestion_type=suggestion_type,
            )
        except (RemoteError, ValidationError) as e:
            logger.error(f"Error loading review queue: {e}")
            return []
        queue = [s for s in candidates if needs_review(s)]
        return sorted(queue, key=lambda s: -s.report_count)

    async def auto_promote_candidates(
        self,
        manufacturer: str,
        game: str,
        faction: str | None = None,
        suggestion_type: SuggestionType | str = SuggestionType.FACTION,
    ) -> list[Suggestion]:
        """Widely used, unreported suggestions that are not promoted yet."""
        suggestion_type = SuggestionType(suggestion_type)
        manufacturer, game, faction = resolve_scope(suggestion_type, manufacturer, game, faction)
        try:
            candidates = await self.store.query_by_scope(
                manufacturer,
                game,
                faction,
                limit=SNAPSHOT_LIMIT,
                suggestion_type=suggestion_type,
            )
        except (RemoteError, ValidationError) as e:
            logger.error(f"Error loading promotion candidates: {e}")
            return []
        return [s for s in candidates if should_auto_promote(s) and not s.is_promoted]

    # -------------------------------------------------------------------------
    # Recording
    # -------------------------------------------------------------------------

    def _invalidate(
        self,
        suggestion_type: SuggestionType,
        manufacturer: str | None,
        game: str | None,
        faction: str | None,
    ) -> None:
        if self.cache is None or not manufacturer or not game:
            return

        if suggestion_type in (SuggestionType.MANUFACTURER, SuggestionType.GAME):
            self.cache.invalidate(self.cache.key_for(manufacturer, game, None, suggestion_type.value))
            return

        # Unit records touch the parent faction, so its list goes stale too
        self.cache.invalidate(self.cache.key_for(manufacturer, game, None, SuggestionType.FACTION.value))
        if suggestion_type is SuggestionType.UNIT and faction:
            self.cache.invalidate(self.cache.key_for(manufacturer, game, faction, SuggestionType.UNIT.value))

    async def _record(
        self,
        suggestion_type: SuggestionType,
        manufacturer: str | None,
        game: str | None,
        faction: str | None,
        value: str,
        metadata: dict[str, Any] | None,
        context: str = "project_creation",
    ) -> RecordResult:
        if not should_record(value):
            logger.debug(f"Skipping {suggestion_type.value} recording - invalid content: {value!r}")
            return RecordResult(recorded=False, reason="Invalid content")

        if suggestion_type is SuggestionType.UNIT and not faction:
            logger.debug("Skipping unit recording - faction required")
            return RecordResult(recorded=False, reason="Faction required")

        merged = {"source": "user_input", "context": context, **(metadata or {})}
        manufacturer, game, faction = resolve_scope(suggestion_type, manufacturer, game, faction)

        try:
            result = await self.store.record_usage(
                manufacturer, game, faction, value, suggestion_type, merged
            )
        except ValidationError as e:
            logger.info(f"Skipping {suggestion_type.value} recording - validation failed: {e}")
            return RecordResult(recorded=False, reason="Validation failed", error=str(e))
        except RemoteError as e:
            logger.error(f"Error recording {suggestion_type.value} usage: {e}")
            return RecordResult(
                recorded=False, reason="Recording failed", error=str(e), retryable=True
            )

        self._invalidate(suggestion_type, manufacturer, game, faction)
        if suggestion_type in (SuggestionType.FACTION, SuggestionType.UNIT):
            self.clear_popular_cache()

        logger.info(
            f"{suggestion_type.value.capitalize()} usage recorded: {value!r} "
            f"({result.action}, count: {result.new_count})"
        )
        return result

    async def record_faction_usage(
        self, manufacturer: str, game: str, faction: str, metadata: dict | None = None
    ) -> RecordResult:
        return await self._record(SuggestionType.FACTION, manufacturer, game, None, faction, metadata)

    async def record_unit_usage(
        self,
        manufacturer: str,
        game: str,
        faction: str | None,
        unit_name: str,
        metadata: dict | None = None,
    ) -> RecordResult:
        return await self._record(SuggestionType.UNIT, manufacturer, game, faction, unit_name, metadata)

    async def record_manufacturer_usage(
        self, manufacturer: str, metadata: dict | None = None, context: str = "general"
    ) -> RecordResult:
        return await self._record(
            SuggestionType.MANUFACTURER, None, None, None, manufacturer, metadata, context=context
        )

    async def record_game_usage(
        self, manufacturer: str, game: str, metadata: dict | None = None
    ) -> RecordResult:
        return await self._record(SuggestionType.GAME, manufacturer, None, None, game, metadata)

    async def record_event(self, event: UsageEvent) -> RecordResult:
        """Record a queued usage event. Used as the batcher's recorder."""
        return await self._record(
            event.type,
            event.manufacturer,
            event.game,
            event.faction,
            event.value,
            event.metadata,
        )

    async def record_project(self, project: dict[str, Any]) -> BatchResult:
        """Record every suggestion value carried by a newly created project."""
        manufacturer = project.get("manufacturer")
        game = project.get("game")
        faction = project.get("faction")
        unit_name = project.get("unit_name")
        metadata = {"context": "project_creation"}

        events = []
        if manufacturer and manufacturer != "custom":
            events.append(UsageEvent(SuggestionType.MANUFACTURER, manufacturer, metadata=dict(metadata)))
        if game:
            events.append(
                UsageEvent(SuggestionType.GAME, game, manufacturer=manufacturer, metadata=dict(metadata))
            )
        if faction:
            events.append(
                UsageEvent(
                    SuggestionType.FACTION,
                    faction,
                    manufacturer=manufacturer,
                    game=game,
                    metadata=dict(metadata),
                )
            )
        if unit_name and faction:
            events.append(
                UsageEvent(
                    SuggestionType.UNIT,
                    unit_name,
                    manufacturer=manufacturer,
                    game=game,
                    faction=faction,
                    metadata=dict(metadata),
                )
            )

        result = BatchResult(total=len(events))
        for event in events:
            outcome = await self.record_event(event)
            result.results.append(outcome)
            if outcome.recorded:
                result.successful += 1
            else:
                result.failed += 1

        logger.info(
            f"Project suggestions recorded for {project.get('name')!r}: "
            f"{result.successful}/{result.total}"
        )
        return result

    # -------------------------------------------------------------------------
    # Admin
    # -------------------------------------------------------------------------

    async def _admin_update(
        self,
        action: str,
        suggestion_type: SuggestionType | str,
        manufacturer: str | None,
        game: str | None,
        faction: str | None,
        suggestion_id: str,
        updates: dict[str, Any],
        reason: str = "",
        actor_id: str = "admin",
    ) -> Suggestion:
        suggestion_type = SuggestionType(suggestion_type)
        try:
            validate_moderation(action, reason)
        except ValidationError as e:
            raise AdminMutationError(str(e)) from e

        manufacturer, game, faction = resolve_scope(suggestion_type, manufacturer, game, faction)
        try:
            suggestion = await self.store.update(
                manufacturer, game, faction, suggestion_id, suggestion_type, updates, actor_id
            )
        except ValidationError as e:
            raise AdminMutationError(str(e)) from e

        self._invalidate(suggestion_type, manufacturer, game, faction)
        logger.info(f"Admin {action} of {suggestion_type.value} {suggestion_id} by {actor_id}")
        return suggestion

    async def promote(
        self,
        manufacturer: str | None,
        game: str | None,
        faction: str | None,
        suggestion_id: str,
        suggestion_type: SuggestionType | str = SuggestionType.FACTION,
        actor_id: str = "admin",
    ) -> Suggestion:
        return await self._admin_update(
            "promote",
            suggestion_type,
            manufacturer,
            game,
            faction,
            suggestion_id,
            {"is_promoted": True, "promoted_at": self._clock()},
            actor_id=actor_id,
        )

    async def unpromote(
        self,
        manufacturer: str | None,
        game: str | None,
        faction: str | None,
        suggestion_id: str,
        suggestion_type: SuggestionType | str = SuggestionType.FACTION,
        actor_id: str = "admin",
    ) -> Suggestion:
        return await self._admin_update(
            "unpromote",
            suggestion_type,
            manufacturer,
            game,
            faction,
            suggestion_id,
            {"is_promoted": False, "promoted_at": None},
            actor_id=actor_id,
        )

    async def block(
        self,
        manufacturer: str | None,
        game: str | None,
        faction: str | None,
        suggestion_id: str,
        reason: str,
        suggestion_type: SuggestionType | str = SuggestionType.FACTION,
        actor_id: str = "admin",
    ) -> Suggestion:
        return await self._admin_update(
            "block",
            suggestion_type,
            manufacturer,
            game,
            faction,
            suggestion_id,
            {"is_blocked": True, "blocked_at": self._clock(), "block_reason": (reason or "").strip()},
            reason=reason,
            actor_id=actor_id,
        )

    async def unblock(
        self,
        manufacturer: str | None,
        game: str | None,
        faction: str | None,
        suggestion_id: str,
        suggestion_type: SuggestionType | str = SuggestionType.FACTION,
        actor_id: str = "admin",
    ) -> Suggestion:
        return await self._admin_update(
            "unblock",
            suggestion_type,
            manufacturer,
            game,
            faction,
            suggestion_id,
            {"is_blocked": False, "blocked_at": None, "block_reason": None},
            actor_id=actor_id,
        )

    async def report(
        self,
        manufacturer: str | None,
        game: str | None,
        faction: str | None,
        suggestion_id: str,
        reason: str = "",
        suggestion_type: SuggestionType | str = SuggestionType.FACTION,
        actor_id: str = "admin",
    ) -> Suggestion:
        """Count a report against a suggestion; enough reports block it."""
        suggestion_type = SuggestionType(suggestion_type)
        try:
            reason = validate_moderation("report", reason)
        except ValidationError as e:
            raise AdminMutationError(str(e)) from e

        manufacturer, game, faction = resolve_scope(suggestion_type, manufacturer, game, faction)
        try:
            suggestion = await self.store.report(
                manufacturer, game, faction, suggestion_id, suggestion_type, actor_id, reason
            )
        except ValidationError as e:
            raise AdminMutationError(str(e)) from e

        self._invalidate(suggestion_type, manufacturer, game, faction)
        if should_auto_block(suggestion):
            logger.warning(
                f"{suggestion_type.value} {suggestion_id} blocked after {suggestion.report_count} reports"
            )
        return suggestion

    async def delete(
        self,
        manufacturer: str | None,
        game: str | None,
        faction: str | None,
        suggestion_id: str,
        reason: str,
        suggestion_type: SuggestionType | str = SuggestionType.FACTION,
        actor_id: str = "admin",
    ) -> None:
        suggestion_type = SuggestionType(suggestion_type)
        try:
            reason = validate_moderation("delete", reason)
        except ValidationError as e:
            raise AdminMutationError(str(e)) from e

        manufacturer, game, faction = resolve_scope(suggestion_type, manufacturer, game, faction)
        try:
            await self.store.delete(
                manufacturer, game, faction, suggestion_id, suggestion_type, actor_id, reason
            )
        except ValidationError as e:
            raise AdminMutationError(str(e)) from e

        self._invalidate(suggestion_type, manufacturer, game, faction)
        logger.info(f"Deleted {suggestion_type.value} {suggestion_id} by {actor_id}: {reason}")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def initialize(self) -> CacheStats | None:
        """Sweep stale cache entries and log what is left."""
        if self.cache is None:
            return None

        cleaned = self.cache.clear_expired()
        stats = self.cache.stats()
        logger.info(
            f"Suggestion cache initialized: {cleaned} cleaned, {stats.count} entries, "
            f"{stats.total_items} items, {stats.total_size_bytes // 1024} KB"
        )
        return stats

    async def warm_cache(
        self, contexts: Iterable[tuple[SuggestionType | str, str, str, str | None]]
    ) -> int:
        """Preload scope snapshots. Returns how many scopes were loaded."""
        if self.cache is None:
            return 0

        warmed = 0
        for suggestion_type, manufacturer, game, faction in contexts:
            suggestion_type = SuggestionType(suggestion_type)
            manufacturer, game, faction = resolve_scope(suggestion_type, manufacturer, game, faction)
            try:
                await self._scope_snapshot(suggestion_type, manufacturer, game, faction, use_cache=True)
            except (RemoteError, ValidationError) as e:
                logger.warning(f"Could not warm cache for {manufacturer}/{game}: {e}")
                continue
            warmed += 1
        return warmed

    async def aclose(self) -> None:
        await self.store.aclose()
