"""
Persistent suggestion store.

SuggestionStore is the async interface every backend implements.
SqliteSuggestionStore keeps suggestions in a migrated SQLite database; the
HTTP client in remote.py talks to a datasette instance that hosts one of
these.

Layout: factions (and manufacturers/games) live in the collection
``{manufacturer}_{game}`` / ``factions``; units live in
``{manufacturer}_{game}_{faction}`` / ``units``. The document id is the
normalized suggestion text.
"""

import asyncio
import json
import logging
import secrets
import sqlite3
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .errors import AdminMutationError, RemoteError, ValidationError
from .models import (
    RecordAction,
    RecordResult,
    ScopeStats,
    Suggestion,
    SuggestionType,
    format_ts,
    suggestion_from_dict,
)
from .normalize import (
    ValidatedInput,
    normalize,
    scope_key,
    to_storage_segment,
    validate_input,
    validate_metadata,
    validate_scope,
)
from .quality import AUTO_BLOCK_REPORTS

logger = logging.getLogger(__name__)

FACTIONS = "factions"
UNITS = "units"

# Fields an admin update may touch. Usage counters are never writable here.
ADMIN_FIELDS = frozenset(
    {"is_promoted", "is_blocked", "report_count", "block_reason", "promoted_at", "blocked_at"}
)


def collection_for(
    manufacturer: str,
    game: str,
    faction: str | None,
    suggestion_type: SuggestionType | str,
) -> tuple[str, str]:
    """Return (scope_key, kind) for a suggestion."""
    suggestion_type = SuggestionType(suggestion_type)
    if suggestion_type is SuggestionType.UNIT:
        if not faction:
            raise ValidationError("Faction is required for unit suggestions")
        return scope_key(manufacturer, game, faction), UNITS
    return scope_key(manufacturer, game), FACTIONS


class SuggestionStore(ABC):
    """Interface for the shared, usage-ranked suggestion store."""

    @abstractmethod
    async def create(
        self,
        manufacturer: str,
        game: str,
        faction: str | None,
        text: str,
        suggestion_type: SuggestionType | str = SuggestionType.FACTION,
        metadata: dict | None = None,
    ) -> Suggestion:
        """Write a fresh suggestion document with count=1."""

    @abstractmethod
    async def record_usage(
        self,
        manufacturer: str,
        game: str,
        faction: str | None,
        text: str,
        suggestion_type: SuggestionType | str = SuggestionType.FACTION,
        metadata: dict | None = None,
    ) -> RecordResult:
        """Atomically create-or-increment a suggestion."""

    @abstractmethod
    async def get(
        self,
        manufacturer: str,
        game: str,
        faction: str | None,
        suggestion_id: str,
        suggestion_type: SuggestionType | str = SuggestionType.FACTION,
    ) -> Suggestion | None:
        """Fetch a single suggestion, or None."""

    @abstractmethod
    async def update(
        self,
        manufacturer: str,
        game: str,
        faction: str | None,
        suggestion_id: str,
        suggestion_type: SuggestionType | str,
        updates: dict[str, Any],
        actor_id: str = "admin",
    ) -> Suggestion:
        """Apply an admin update. Raises AdminMutationError on failure."""

    @abstractmethod
    async def report(
        self,
        manufacturer: str,
        game: str,
        faction: str | None,
        suggestion_id: str,
        suggestion_type: SuggestionType | str,
        actor_id: str = "admin",
        reason: str = "",
    ) -> Suggestion:
        """Increment report_count; auto-block once reports reach the limit."""

    @abstractmethod
    async def delete(
        self,
        manufacturer: str,
        game: str,
        faction: str | None,
        suggestion_id: str,
        suggestion_type: SuggestionType | str = SuggestionType.FACTION,
        actor_id: str = "admin",
        reason: str = "",
    ) -> None:
        """Physically delete a suggestion. Raises AdminMutationError on failure."""

    @abstractmethod
    async def query_by_scope(
        self,
        manufacturer: str,
        game: str,
        faction: str | None = None,
        search_term: str = "",
        limit: int = 50,
        include_blocked: bool = False,
        suggestion_type: SuggestionType | str | None = None,
    ) -> list[Suggestion]:
        """Return unfiltered candidates for a scope, most used first."""

    @abstractmethod
    async def get_stats(self, manufacturer: str, game: str) -> ScopeStats:
        """Aggregate usage figures for a (manufacturer, game) scope."""

    @abstractmethod
    async def usage_by_manufacturer(self) -> dict[str, int]:
        """Total faction usage per manufacturer segment."""

    async def aclose(self) -> None:
        """Release backend resources."""
        return None


def _row_to_suggestion(row: sqlite3.Row) -> Suggestion:
    data = dict(row)
    data["variants"] = json.loads(data.pop("variants_json") or "[]")
    data["metadata"] = json.loads(data.pop("metadata_json") or "{}")
    return suggestion_from_dict(data)


class SqliteSuggestionStore(SuggestionStore):
    """
    SQLite-backed suggestion store.

    Every write runs inside a ``BEGIN IMMEDIATE`` transaction on its own
    connection, so concurrent record_usage calls serialize on the writer
    lock and never lose increments. Blocking sqlite work is pushed to a
    worker thread.
    """

    def __init__(
        self,
        db_path: Path,
        busy_timeout_seconds: float = 30.0,
        clock: Callable[[], datetime] | None = None,
    ):
        self.db_path = Path(db_path)
        self.busy_timeout_seconds = busy_timeout_seconds
        self._clock = clock or (lambda: datetime.now(UTC))

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.busy_timeout_seconds,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self, conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    async def _run(self, func: Callable, *args, error_cls: type[Exception] = RemoteError):
        try:
            return await asyncio.to_thread(func, *args)
        except sqlite3.Error as e:
            logger.error(f"Suggestion store error in {func.__name__}: {e}")
            raise error_cls(f"Suggestion store unavailable: {e}") from e

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def create(
        self,
        manufacturer: str,
        game: str,
        faction: str | None,
        text: str,
        suggestion_type: SuggestionType | str = SuggestionType.FACTION,
        metadata: dict | None = None,
    ) -> Suggestion:
        suggestion_type = SuggestionType(suggestion_type)
        validate_scope(manufacturer, game)
        validated = validate_input(text, suggestion_type.value)
        cleaned = validate_metadata(metadata)
        collection = collection_for(manufacturer, game, faction, suggestion_type)

        return await self._run(
            self._create_sync,
            collection,
            manufacturer,
            game,
            faction,
            validated,
            suggestion_type,
            cleaned,
        )

    def _create_sync(
        self,
        collection: tuple[str, str],
        manufacturer: str,
        game: str,
        faction: str | None,
        validated: ValidatedInput,
        suggestion_type: SuggestionType,
        metadata: dict,
    ) -> Suggestion:
        now = format_ts(self._clock())
        conn = self._connect()
        try:
            with self._transaction(conn):
                conn.execute(
                    "DELETE FROM suggestions WHERE scope_key = ? AND kind = ? AND id = ?",
                    (*collection, validated.normalized),
                )
                self._insert(
                    conn,
                    collection,
                    validated,
                    suggestion_type,
                    manufacturer,
                    game,
                    to_storage_segment(faction) if suggestion_type is SuggestionType.UNIT else None,
                    metadata,
                    now,
                )
                row = self._select(conn, collection, validated.normalized)
            return _row_to_suggestion(row)
        finally:
            conn.close()

    async def record_usage(
        self,
        manufacturer: str,
        game: str,
        faction: str | None,
        text: str,
        suggestion_type: SuggestionType | str = SuggestionType.FACTION,
        metadata: dict | None = None,
    ) -> RecordResult:
        """
        Record one use of a suggestion.

        Existing documents get count+1, a fresh last_used and the original
        text added to variants; missing ones are created with count=1. Unit
        records also record their parent faction and, when the unit is new,
        bump the faction's unit_count, all in the same transaction.
        """
        suggestion_type = SuggestionType(suggestion_type)
        validate_scope(manufacturer, game)
        validated = validate_input(text, suggestion_type.value)
        cleaned = validate_metadata(metadata)

        parent = None
        if suggestion_type is SuggestionType.UNIT:
            if not faction or not str(faction).strip():
                raise ValidationError("Faction is required for unit suggestions")
            parent = validate_input(faction, SuggestionType.FACTION.value)

        return await self._run(
            self._record_usage_sync,
            manufacturer,
            game,
            validated,
            suggestion_type,
            cleaned,
            parent,
        )

    def _record_usage_sync(
        self,
        manufacturer: str,
        game: str,
        validated: ValidatedInput,
        suggestion_type: SuggestionType,
        metadata: dict,
        parent: ValidatedInput | None,
    ) -> RecordResult:
        now = format_ts(self._clock())
        faction_collection = (scope_key(manufacturer, game), FACTIONS)
        parent_segment = None

        if parent is not None:
            parent_segment = to_storage_segment(parent.original)
            collection = (scope_key(manufacturer, game, parent.original), UNITS)
        else:
            collection = faction_collection

        conn = self._connect()
        try:
            with self._transaction(conn):
                if parent is not None:
                    parent_metadata = {"source": "auto_from_unit", "context": "unit_parent_faction"}
                    if "user_id" in metadata:
                        parent_metadata["user_id"] = metadata["user_id"]
                    self._upsert(
                        conn,
                        faction_collection,
                        parent,
                        SuggestionType.FACTION,
                        manufacturer,
                        game,
                        None,
                        parent_metadata,
                        now,
                    )

                action, new_count = self._upsert(
                    conn,
                    collection,
                    validated,
                    suggestion_type,
                    manufacturer,
                    game,
                    parent_segment,
                    metadata,
                    now,
                )

                if parent is not None and action is RecordAction.CREATED:
                    conn.execute(
                        """
                        UPDATE suggestions SET unit_count = unit_count + 1
                        WHERE scope_key = ? AND kind = ? AND id = ?
                        """,
                        (*faction_collection, parent.normalized),
                    )
        finally:
            conn.close()

        logger.debug(
            f"Recorded {suggestion_type.value} {validated.normalized!r} in "
            f"{collection[0]}/{collection[1]} ({action.value}, count: {new_count})"
        )

        return RecordResult(
            recorded=True,
            action=action.value,
            new_count=new_count,
            suggestion_id=validated.normalized,
            parent_faction=parent_segment,
        )

    def _select(
        self, conn: sqlite3.Connection, collection: tuple[str, str], suggestion_id: str
    ) -> sqlite3.Row | None:
        cursor = conn.execute(
            "SELECT * FROM suggestions WHERE scope_key = ? AND kind = ? AND id = ?",
            (*collection, suggestion_id),
        )
        return cursor.fetchone()

    def _insert(
        self,
        conn: sqlite3.Connection,
        collection: tuple[str, str],
        validated: ValidatedInput,
        suggestion_type: SuggestionType,
        manufacturer: str,
        game: str,
        parent_faction: str | None,
        metadata: dict,
        now: str,
    ) -> None:
        conn.execute(
            """
            INSERT INTO suggestions (
                scope_key, kind, id, name, original_name, type,
                manufacturer, game, parent_faction, count, variants_json,
                first_seen, last_used, metadata_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?)
            """,
            (
                *collection,
                validated.normalized,
                validated.normalized,
                validated.original,
                suggestion_type.value,
                to_storage_segment(manufacturer),
                to_storage_segment(game),
                parent_faction,
                json.dumps([validated.original]),
                now,
                now,
                json.dumps(metadata) if metadata else None,
            ),
        )

    def _upsert(
        self,
        conn: sqlite3.Connection,
        collection: tuple[str, str],
        validated: ValidatedInput,
        suggestion_type: SuggestionType,
        manufacturer: str,
        game: str,
        parent_faction: str | None,
        metadata: dict,
        now: str,
    ) -> tuple[RecordAction, int]:
        row = self._select(conn, collection, validated.normalized)

        if row is None:
            self._insert(
                conn,
                collection,
                validated,
                suggestion_type,
                manufacturer,
                game,
                parent_faction,
                metadata,
                now,
            )
            return RecordAction.CREATED, 1

        variants = json.loads(row["variants_json"] or "[]")
        if validated.original not in variants:
            variants.append(validated.original)

        conn.execute(
            """
            UPDATE suggestions SET
                count = count + 1,
                last_used = ?,
                variants_json = ?
            WHERE scope_key = ? AND kind = ? AND id = ?
            """,
            (now, json.dumps(variants), *collection, validated.normalized),
        )
        return RecordAction.UPDATED, row["count"] + 1

    # -------------------------------------------------------------------------
    # Admin mutations
    # -------------------------------------------------------------------------

    def _add_event(
        self,
        conn: sqlite3.Connection,
        collection: tuple[str, str],
        suggestion_id: str,
        actor_id: str,
        event_type: str,
        payload: dict | None,
        now: str,
    ) -> None:
        conn.execute(
            """
            INSERT INTO suggestion_events
                (event_id, scope_key, kind, suggestion_id, ts, actor_id, event_type, payload_json)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                secrets.token_hex(16),
                *collection,
                suggestion_id,
                now,
                actor_id,
                event_type,
                json.dumps(payload) if payload else None,
            ),
        )

    async def update(
        self,
        manufacturer: str,
        game: str,
        faction: str | None,
        suggestion_id: str,
        suggestion_type: SuggestionType | str,
        updates: dict[str, Any],
        actor_id: str = "admin",
    ) -> Suggestion:
        validate_scope(manufacturer, game)
        unknown = set(updates) - ADMIN_FIELDS
        if unknown:
            raise AdminMutationError(f"Unsupported admin fields: {', '.join(sorted(unknown))}")
        if not updates:
            raise AdminMutationError("No updates supplied")

        collection = collection_for(manufacturer, game, faction, suggestion_type)
        return await self._run(
            self._update_sync,
            collection,
            normalize(suggestion_id),
            dict(updates),
            actor_id,
            error_cls=AdminMutationError,
        )

    def _update_sync(
        self,
        collection: tuple[str, str],
        suggestion_id: str,
        updates: dict[str, Any],
        actor_id: str,
    ) -> Suggestion:
        now = format_ts(self._clock())
        payload = {
            key: format_ts(value) if isinstance(value, datetime) else value
            for key, value in updates.items()
        }
        values = {
            key: int(value) if isinstance(value, bool) else value
            for key, value in payload.items()
        }
        values["updated_at"] = now

        set_clause = ", ".join(f"{k} = ?" for k in values)

        conn = self._connect()
        try:
            with self._transaction(conn):
                cursor = conn.execute(
                    f"UPDATE suggestions SET {set_clause} WHERE scope_key = ? AND kind = ? AND id = ?",
                    [*values.values(), *collection, suggestion_id],
                )
                if cursor.rowcount == 0:
                    raise AdminMutationError(f"Suggestion not found: {suggestion_id}")
                self._add_event(
                    conn, collection, suggestion_id, actor_id, "updated", payload, now
                )
                row = self._select(conn, collection, suggestion_id)
            return _row_to_suggestion(row)
        finally:
            conn.close()

    async def report(
        self,
        manufacturer: str,
        game: str,
        faction: str | None,
        suggestion_id: str,
        suggestion_type: SuggestionType | str,
        actor_id: str = "admin",
        reason: str = "",
    ) -> Suggestion:
        validate_scope(manufacturer, game)
        collection = collection_for(manufacturer, game, faction, suggestion_type)
        return await self._run(
            self._report_sync,
            collection,
            normalize(suggestion_id),
            actor_id,
            reason,
            error_cls=AdminMutationError,
        )

    def _report_sync(
        self,
        collection: tuple[str, str],
        suggestion_id: str,
        actor_id: str,
        reason: str,
    ) -> Suggestion:
        now = format_ts(self._clock())
        conn = self._connect()
        try:
            with self._transaction(conn):
                cursor = conn.execute(
                    """
                    UPDATE suggestions SET report_count = report_count + 1, updated_at = ?
                    WHERE scope_key = ? AND kind = ? AND id = ?
                    """,
                    (now, *collection, suggestion_id),
                )
                if cursor.rowcount == 0:
                    raise AdminMutationError(f"Suggestion not found: {suggestion_id}")

                payload = {"reason": reason} if reason else None
                self._add_event(conn, collection, suggestion_id, actor_id, "reported", payload, now)

                row = self._select(conn, collection, suggestion_id)
                if row["report_count"] >= AUTO_BLOCK_REPORTS and not row["is_blocked"]:
                    conn.execute(
                        """
                        UPDATE suggestions SET is_blocked = 1, blocked_at = ?, block_reason = ?
                        WHERE scope_key = ? AND kind = ? AND id = ?
                        """,
                        (now, "auto_blocked_reports", *collection, suggestion_id),
                    )
                    self._add_event(
                        conn,
                        collection,
                        suggestion_id,
                        "system:auto-moderation",
                        "auto_blocked",
                        {"report_count": row["report_count"]},
                        now,
                    )
                    logger.info(f"Auto-blocked {suggestion_id} after {row['report_count']} reports")
                    row = self._select(conn, collection, suggestion_id)
            return _row_to_suggestion(row)
        finally:
            conn.close()

    async def delete(
        self,
        manufacturer: str,
        game: str,
        faction: str | None,
        suggestion_id: str,
        suggestion_type: SuggestionType | str = SuggestionType.FACTION,
        actor_id: str = "admin",
        reason: str = "",
    ) -> None:
        validate_scope(manufacturer, game)
        suggestion_type = SuggestionType(suggestion_type)
        collection = collection_for(manufacturer, game, faction, suggestion_type)
        parent = None
        if suggestion_type is SuggestionType.UNIT:
            parent = ((scope_key(manufacturer, game), FACTIONS), normalize(faction))

        await self._run(
            self._delete_sync,
            collection,
            normalize(suggestion_id),
            parent,
            actor_id,
            reason,
            error_cls=AdminMutationError,
        )

    def _delete_sync(
        self,
        collection: tuple[str, str],
        suggestion_id: str,
        parent: tuple[tuple[str, str], str] | None,
        actor_id: str,
        reason: str,
    ) -> None:
        now = format_ts(self._clock())
        conn = self._connect()
        try:
            with self._transaction(conn):
                cursor = conn.execute(
                    "DELETE FROM suggestions WHERE scope_key = ? AND kind = ? AND id = ?",
                    (*collection, suggestion_id),
                )
                if cursor.rowcount == 0:
                    raise AdminMutationError(f"Suggestion not found: {suggestion_id}")

                if parent is not None:
                    parent_collection, parent_id = parent
                    conn.execute(
                        """
                        UPDATE suggestions SET unit_count = MAX(unit_count - 1, 0)
                        WHERE scope_key = ? AND kind = ? AND id = ?
                        """,
                        (*parent_collection, parent_id),
                    )

                payload = {"reason": reason} if reason else None
                self._add_event(conn, collection, suggestion_id, actor_id, "deleted", payload, now)
        finally:
            conn.close()

        logger.info(f"Deleted suggestion {collection[0]}/{collection[1]}/{suggestion_id}")

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get(
        self,
        manufacturer: str,
        game: str,
        faction: str | None,
        suggestion_id: str,
        suggestion_type: SuggestionType | str = SuggestionType.FACTION,
    ) -> Suggestion | None:
        validate_scope(manufacturer, game)
        collection = collection_for(manufacturer, game, faction, suggestion_type)
        return await self._run(self._get_sync, collection, normalize(suggestion_id))

    def _get_sync(self, collection: tuple[str, str], suggestion_id: str) -> Suggestion | None:
        conn = self._connect()
        try:
            row = self._select(conn, collection, suggestion_id)
            return _row_to_suggestion(row) if row else None
        finally:
            conn.close()

    async def query_by_scope(
        self,
        manufacturer: str,
        game: str,
        faction: str | None = None,
        search_term: str = "",
        limit: int = 50,
        include_blocked: bool = False,
        suggestion_type: SuggestionType | str | None = None,
    ) -> list[Suggestion]:
        validate_scope(manufacturer, game, search_term)

        # Short search terms are too noisy to match on
        if search_term and len(search_term.strip()) < 2:
            return []

        if faction:
            collection = (scope_key(manufacturer, game, faction), UNITS)
        else:
            collection = (scope_key(manufacturer, game), FACTIONS)

        type_value = SuggestionType(suggestion_type).value if suggestion_type else None

        return await self._run(
            self._query_sync,
            collection,
            search_term.strip() if search_term else "",
            limit,
            include_blocked,
            type_value,
        )

    def _query_sync(
        self,
        collection: tuple[str, str],
        search_term: str,
        limit: int,
        include_blocked: bool,
        type_value: str | None,
    ) -> list[Suggestion]:
        clauses = ["scope_key = ?", "kind = ?"]
        params: list[Any] = list(collection)

        if not include_blocked:
            clauses.append("is_blocked = 0")
        if type_value:
            clauses.append("type = ?")
            params.append(type_value)
        if search_term:
            lowered = search_term.lower()
            clauses.append(
                "(instr(lower(name), ?) > 0 OR instr(lower(original_name), ?) > 0"
                " OR instr(name, ?) > 0)"
            )
            params.extend([lowered, lowered, normalize(search_term) or lowered])

        params.append(limit)

        conn = self._connect()
        try:
            cursor = conn.execute(
                f"""
                SELECT * FROM suggestions
                WHERE {" AND ".join(clauses)}
                ORDER BY count DESC, name ASC
                LIMIT ?
                """,
                params,
            )
            return [_row_to_suggestion(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    async def get_stats(self, manufacturer: str, game: str) -> ScopeStats:
        validate_scope(manufacturer, game)
        return await self._run(
            self._stats_sync,
            to_storage_segment(manufacturer),
            to_storage_segment(game),
        )

    def _stats_sync(self, manufacturer: str, game: str) -> ScopeStats:
        conn = self._connect()
        try:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total_factions,
                    COALESCE(SUM(count), 0) AS total_usage,
                    COALESCE(SUM(unit_count), 0) AS total_units
                FROM suggestions
                WHERE scope_key = ? AND kind = ? AND type = ?
                """,
                (f"{manufacturer}_{game}", FACTIONS, SuggestionType.FACTION.value),
            ).fetchone()
        finally:
            conn.close()

        total_factions = row["total_factions"]
        total_usage = row["total_usage"]
        return ScopeStats(
            manufacturer=manufacturer,
            game=game,
            total_factions=total_factions,
            total_units=row["total_units"],
            total_usage=total_usage,
            average_usage_per_faction=round(total_usage / total_factions) if total_factions else 0,
        )

    async def usage_by_manufacturer(self) -> dict[str, int]:
        return await self._run(self._usage_by_manufacturer_sync)

    def _usage_by_manufacturer_sync(self) -> dict[str, int]:
        conn = self._connect()
        try:
            cursor = conn.execute(
                """
                SELECT manufacturer, SUM(count) AS usage FROM suggestions
                WHERE type = ?
                GROUP BY manufacturer
                """,
                (SuggestionType.FACTION.value,),
            )
            return {row["manufacturer"]: row["usage"] for row in cursor.fetchall()}
        finally:
            conn.close()
