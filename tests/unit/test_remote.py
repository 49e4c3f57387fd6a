"""Tests for the HTTP suggestion store client.

Uses httpx.MockTransport so no server is needed.
"""

import json

import httpx
import pytest

from tabletop_suggest.errors import AdminMutationError, RemoteError, ValidationError
from tabletop_suggest.models import SuggestionType
from tabletop_suggest.remote import HttpSuggestionStore

GW = "Games Workshop"
W40K = "Warhammer 40k"

SUGGESTION = {
    "type": "faction",
    "name": "orks",
    "original_name": "Orks",
    "manufacturer": "games_workshop",
    "game": "warhammer_40k",
    "count": 6,
    "variants": ["Orks"],
    "is_promoted": False,
    "is_blocked": False,
    "report_count": 0,
    "unit_count": 0,
}


def make_store(handler) -> HttpSuggestionStore:
    return HttpSuggestionStore("http://suggest.test", transport=httpx.MockTransport(handler))


class TestReads:
    """Tests for query, get and stats calls."""

    @pytest.mark.asyncio
    async def test_query_sends_scope(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={"suggestions": [SUGGESTION]})

        store = make_store(handler)
        results = await store.query_by_scope(GW, W40K, search_term="ork", limit=20)
        await store.aclose()

        assert seen["path"] == "/-/suggestions/query"
        assert seen["params"] == {
            "manufacturer": GW,
            "game": W40K,
            "q": "ork",
            "limit": "20",
        }
        assert [s.name for s in results] == ["orks"]
        assert results[0].count == 6

    @pytest.mark.asyncio
    async def test_get_missing(self):
        store = make_store(lambda request: httpx.Response(200, json={"suggestion": None}))
        assert await store.get(GW, W40K, None, "orks") is None

    @pytest.mark.asyncio
    async def test_stats(self):
        payload = {
            "manufacturer": "games_workshop",
            "game": "warhammer_40k",
            "total_factions": 2,
            "total_units": 1,
            "total_usage": 9,
            "average_usage_per_faction": 5,
        }
        store = make_store(lambda request: httpx.Response(200, json=payload))
        stats = await store.get_stats(GW, W40K)
        assert stats.total_usage == 9
        assert stats.to_dict() == payload

    @pytest.mark.asyncio
    async def test_usage_by_manufacturer(self):
        store = make_store(
            lambda request: httpx.Response(200, json={"usage": {"games_workshop": 12}})
        )
        assert await store.usage_by_manufacturer() == {"games_workshop": 12}


class TestRecord:
    @pytest.mark.asyncio
    async def test_record_posts_cleaned_metadata(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "recorded": True,
                    "action": "created",
                    "new_count": 1,
                    "suggestion_id": "intercessors",
                    "parent_faction": "space_marines",
                },
            )

        store = make_store(handler)
        result = await store.record_usage(
            GW,
            W40K,
            "Space Marines",
            "Intercessors",
            SuggestionType.UNIT,
            {"source": "user_selection", "junk": "x"},
        )

        assert result.recorded is True
        assert result.parent_faction == "space_marines"
        assert seen["body"]["type"] == "unit"
        assert seen["body"]["metadata"] == {"source": "user_selection"}

    @pytest.mark.asyncio
    async def test_invalid_input_never_sent(self):
        def handler(request):
            raise AssertionError("request should not be made")

        store = make_store(handler)
        with pytest.raises(ValidationError):
            await store.record_usage(GW, W40K, None, "qwerty")
        with pytest.raises(ValidationError):
            await store.record_usage(GW, W40K, None, "Intercessors", SuggestionType.UNIT)


class TestErrorMapping:
    """Tests for mapping transport and HTTP failures."""

    @pytest.mark.asyncio
    async def test_timeout_is_remote_error(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(RemoteError):
            await make_store(handler).query_by_scope(GW, W40K)

    @pytest.mark.asyncio
    async def test_connection_error_is_remote_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(RemoteError):
            await make_store(handler).record_usage(GW, W40K, None, "Orks")

    @pytest.mark.asyncio
    async def test_server_error_is_remote_error(self):
        store = make_store(lambda request: httpx.Response(503, json={"message": "down"}))
        with pytest.raises(RemoteError, match="down"):
            await store.query_by_scope(GW, W40K)

    @pytest.mark.asyncio
    async def test_validation_response(self):
        store = make_store(
            lambda request: httpx.Response(
                400,
                json={"error": "validation", "message": "Bad", "errors": ["Game is required"]},
            )
        )
        with pytest.raises(ValidationError) as exc_info:
            await store.query_by_scope(GW, W40K)
        assert exc_info.value.errors == ["Game is required"]

    @pytest.mark.asyncio
    async def test_admin_errors(self):
        store = make_store(lambda request: httpx.Response(403, json={"message": "Staff only"}))
        with pytest.raises(AdminMutationError, match="Staff only"):
            await store.update(GW, W40K, None, "orks", SuggestionType.FACTION, {"is_promoted": True})

    @pytest.mark.asyncio
    async def test_admin_timeout(self):
        def handler(request):
            raise httpx.ConnectTimeout("slow", request=request)

        with pytest.raises(AdminMutationError):
            await make_store(handler).delete(GW, W40K, None, "orks", reason="spam")

    @pytest.mark.asyncio
    async def test_malformed_suggestion(self):
        store = make_store(
            lambda request: httpx.Response(200, json={"suggestions": [{"count": 3}]})
        )
        with pytest.raises(RemoteError):
            await store.query_by_scope(GW, W40K)
