"""
HTTP client for a suggestion store hosted by the datasette plugin.

Input is validated locally before any request is made. Transport errors,
timeouts and server errors become RemoteError; admin endpoints raise
AdminMutationError instead. A 400 response tagged ``validation`` is
re-raised as ValidationError.
"""

import logging
from typing import Any

import httpx

from .errors import AdminMutationError, RemoteError, ValidationError
from .models import RecordResult, ScopeStats, Suggestion, SuggestionType, suggestion_from_dict
from .normalize import validate_input, validate_metadata, validate_scope
from .store import SuggestionStore, collection_for

logger = logging.getLogger(__name__)

API_PREFIX = "/-/suggestions"


class HttpSuggestionStore(SuggestionStore):
    """SuggestionStore backed by the plugin's JSON routes."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 5.0,
        headers: dict[str, str] | None = None,
        cookies: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout_seconds,
            headers=headers,
            cookies=cookies,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
        admin: bool = False,
    ) -> dict[str, Any]:
        error_cls = AdminMutationError if admin else RemoteError
        if params:
            params = {k: v for k, v in params.items() if v is not None}

        try:
            response = await self._client.request(
                method, f"{API_PREFIX}/{path}", params=params, json=payload
            )
        except httpx.TimeoutException as e:
            logger.warning(f"Suggestion store timed out on {path}: {e}")
            raise error_cls(f"Suggestion store timed out: {e}") from e
        except httpx.HTTPError as e:
            logger.warning(f"Suggestion store unreachable on {path}: {e}")
            raise error_cls(f"Suggestion store unreachable: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if response.status_code == 400 and data.get("error") == "validation":
            raise ValidationError(data.get("message", "Invalid request"), data.get("errors"))

        if response.is_error:
            message = data.get("message") or f"HTTP {response.status_code}"
            logger.warning(f"Suggestion store error on {path}: {message}")
            raise error_cls(f"Suggestion store error: {message}")

        return data

    @staticmethod
    def _suggestion(data: dict[str, Any] | None) -> Suggestion | None:
        if not data:
            return None
        try:
            return suggestion_from_dict(data)
        except ValidationError as e:
            raise RemoteError(f"Malformed suggestion from store: {e}") from e

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
        validate_input(text, suggestion_type.value)
        collection_for(manufacturer, game, faction, suggestion_type)

        data = await self._request(
            "POST",
            "create",
            payload={
                "manufacturer": manufacturer,
                "game": game,
                "faction": faction,
                "text": text,
                "type": suggestion_type.value,
                "metadata": validate_metadata(metadata),
            },
            admin=True,
        )
        return self._suggestion(data.get("suggestion"))

    async def record_usage(
        self,
        manufacturer: str,
        game: str,
        faction: str | None,
        text: str,
        suggestion_type: SuggestionType | str = SuggestionType.FACTION,
        metadata: dict | None = None,
    ) -> RecordResult:
        suggestion_type = SuggestionType(suggestion_type)
        validate_scope(manufacturer, game)
        validate_input(text, suggestion_type.value)
        cleaned = validate_metadata(metadata)
        if suggestion_type is SuggestionType.UNIT:
            if not faction or not str(faction).strip():
                raise ValidationError("Faction is required for unit suggestions")
            validate_input(faction, SuggestionType.FACTION.value)

        data = await self._request(
            "POST",
            "record",
            payload={
                "manufacturer": manufacturer,
                "game": game,
                "faction": faction,
                "text": text,
                "type": suggestion_type.value,
                "metadata": cleaned,
            },
        )
        return RecordResult.from_dict(data)

    async def get(
        self,
        manufacturer: str,
        game: str,
        faction: str | None,
        suggestion_id: str,
        suggestion_type: SuggestionType | str = SuggestionType.FACTION,
    ) -> Suggestion | None:
        suggestion_type = SuggestionType(suggestion_type)
        validate_scope(manufacturer, game)
        collection_for(manufacturer, game, faction, suggestion_type)

        data = await self._request(
            "GET",
            "get",
            params={
                "manufacturer": manufacturer,
                "game": game,
                "faction": faction,
                "id": suggestion_id,
                "type": suggestion_type.value,
            },
        )
        return self._suggestion(data.get("suggestion"))

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
        suggestion_type = SuggestionType(suggestion_type)
        validate_scope(manufacturer, game)

        serialized = {
            key: value.isoformat() if hasattr(value, "isoformat") else value
            for key, value in updates.items()
        }
        data = await self._request(
            "POST",
            "admin/update",
            payload={
                "manufacturer": manufacturer,
                "game": game,
                "faction": faction,
                "id": suggestion_id,
                "type": suggestion_type.value,
                "updates": serialized,
            },
            admin=True,
        )
        suggestion = self._suggestion(data.get("suggestion"))
        if suggestion is None:
            raise AdminMutationError(f"Suggestion not found: {suggestion_id}")
        return suggestion

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
        suggestion_type = SuggestionType(suggestion_type)
        validate_scope(manufacturer, game)

        data = await self._request(
            "POST",
            "admin/report",
            payload={
                "manufacturer": manufacturer,
                "game": game,
                "faction": faction,
                "id": suggestion_id,
                "type": suggestion_type.value,
                "reason": reason,
            },
            admin=True,
        )
        suggestion = self._suggestion(data.get("suggestion"))
        if suggestion is None:
            raise AdminMutationError(f"Suggestion not found: {suggestion_id}")
        return suggestion

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
        suggestion_type = SuggestionType(suggestion_type)
        validate_scope(manufacturer, game)

        await self._request(
            "POST",
            "admin/delete",
            payload={
                "manufacturer": manufacturer,
                "game": game,
                "faction": faction,
                "id": suggestion_id,
                "type": suggestion_type.value,
                "reason": reason,
            },
            admin=True,
        )

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

        data = await self._request(
            "GET",
            "query",
            params={
                "manufacturer": manufacturer,
                "game": game,
                "faction": faction,
                "q": search_term or None,
                "limit": limit,
                "include_blocked": "1" if include_blocked else None,
                "type": SuggestionType(suggestion_type).value if suggestion_type else None,
            },
        )
        return [self._suggestion(item) for item in data.get("suggestions", [])]

    async def get_stats(self, manufacturer: str, game: str) -> ScopeStats:
        validate_scope(manufacturer, game)
        data = await self._request(
            "GET", "stats", params={"manufacturer": manufacturer, "game": game}
        )
        return ScopeStats(
            manufacturer=data.get("manufacturer", ""),
            game=data.get("game", ""),
            total_factions=data.get("total_factions", 0),
            total_units=data.get("total_units", 0),
            total_usage=data.get("total_usage", 0),
            average_usage_per_faction=data.get("average_usage_per_faction", 0),
        )

    async def usage_by_manufacturer(self) -> dict[str, int]:
        data = await self._request("GET", "manufacturers")
        return {name: int(count) for name, count in data.get("usage", {}).items()}
