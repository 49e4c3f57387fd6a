"""Tests for the per-field autocomplete controller."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from tabletop_suggest.config import AutocompleteConfig
from tabletop_suggest.controller import AutocompleteController, ControllerState
from tabletop_suggest.models import RecordResult, SuggestionType

GW = "Games Workshop"
W40K = "Warhammer 40k"


@pytest.fixture
def fake_service():
    service = AsyncMock()
    service.get_suggestions.return_value = []
    service.record_event.return_value = RecordResult(recorded=True, action="created", new_count=1)
    return service


def make_controller(service, **kwargs):
    kwargs.setdefault("debounce_ms", 10)
    return AutocompleteController(service, SuggestionType.FACTION, GW, W40K, **kwargs)


class TestStatusMessages:
    """Tests for the text shown under the field."""

    def test_faction_needs_scope(self, fake_service):
        controller = AutocompleteController(fake_service, SuggestionType.FACTION, GW, None)
        assert controller.has_context is False
        assert controller.status_message == "Select manufacturer and game first"

    def test_unit_needs_faction(self, fake_service):
        controller = AutocompleteController(fake_service, SuggestionType.UNIT, GW, W40K)
        assert controller.status_message == "Select faction first"

    def test_game_needs_manufacturer(self, fake_service):
        controller = AutocompleteController(fake_service, SuggestionType.GAME)
        assert controller.status_message == "Select manufacturer first"

    def test_manufacturer_is_always_in_context(self, fake_service):
        controller = AutocompleteController(fake_service, SuggestionType.MANUFACTURER)
        assert controller.has_context is True
        assert controller.status_message == ""

    @pytest.mark.asyncio
    async def test_short_term(self, fake_service):
        controller = make_controller(fake_service)
        controller.handle_search_change("o")
        await controller.wait_until_settled()

        assert controller.status_message == "Type at least 2 characters"
        fake_service.get_suggestions.assert_not_awaited()


class TestFetching:
    """Tests for debounced, cancellable fetching."""

    @pytest.mark.asyncio
    async def test_debounce_coalesces_keystrokes(self, fake_service, make_suggestion):
        fake_service.get_suggestions.return_value = [make_suggestion("orks", count=9)]
        controller = make_controller(fake_service)

        for text in ("or", "ork", "orks"):
            controller.handle_search_change(text)
        assert controller.state is ControllerState.DEBOUNCING

        await controller.wait_until_settled()

        assert fake_service.get_suggestions.await_count == 1
        assert fake_service.get_suggestions.await_args.kwargs["search_term"] == "orks"
        assert controller.state is ControllerState.POPULATED
        assert [s.name for s in controller.suggestions] == ["orks"]
        assert controller.is_loading is False

    @pytest.mark.asyncio
    async def test_stale_results_are_discarded(self, fake_service, make_suggestion):
        async def slow_then_fast(*args, search_term="", **kwargs):
            if search_term == "necr":
                await asyncio.sleep(0.1)
                return [make_suggestion("necrons")]
            return [make_suggestion("orks")]

        fake_service.get_suggestions.side_effect = slow_then_fast
        controller = make_controller(fake_service, debounce_ms=0)

        controller.handle_search_change("necr")
        await asyncio.sleep(0.02)
        controller.handle_search_change("orks")
        await controller.wait_until_settled()
        await asyncio.sleep(0.15)

        assert [s.name for s in controller.suggestions] == ["orks"]

    @pytest.mark.asyncio
    async def test_empty_results(self, fake_service):
        controller = make_controller(fake_service)
        controller.handle_search_change("zzz")
        await controller.wait_until_settled()

        assert controller.is_empty is True
        assert controller.status_message == "No factions found"

    @pytest.mark.asyncio
    async def test_timeout(self, fake_service):
        async def hang(*args, **kwargs):
            await asyncio.sleep(1)
            return []

        fake_service.get_suggestions.side_effect = hang
        controller = make_controller(fake_service, fetch_timeout=0.05)
        controller.handle_search_change("orks")
        await controller.wait_until_settled()

        assert controller.state is ControllerState.ERRORED
        assert controller.error == "Suggestions took too long to load"
        assert controller.view().error_message == "Suggestions took too long to load"

    @pytest.mark.asyncio
    async def test_unexpected_error(self, fake_service):
        """Should leave the loading state even when the service fails unexpectedly."""
        fake_service.get_suggestions.side_effect = TypeError("bad cache entry")
        controller = make_controller(fake_service)
        controller.handle_search_change("orks")
        await controller.wait_until_settled()

        assert controller.state is ControllerState.ERRORED
        assert controller.is_loading is False
        assert controller.error == "Failed to fetch suggestions"

    @pytest.mark.asyncio
    async def test_no_context_clears(self, fake_service):
        controller = AutocompleteController(fake_service, SuggestionType.FACTION, GW, None)
        controller.handle_search_change("orks")
        await controller.wait_until_settled()

        fake_service.get_suggestions.assert_not_awaited()
        assert controller.state is ControllerState.IDLE

    @pytest.mark.asyncio
    async def test_refresh_skips_cache(self, fake_service):
        controller = make_controller(fake_service)
        controller.handle_search_change("orks")
        await controller.wait_until_settled()

        controller.refresh()
        await controller.wait_until_settled()

        assert fake_service.get_suggestions.await_count == 2
        assert fake_service.get_suggestions.await_args.kwargs["use_cache"] is False

    @pytest.mark.asyncio
    async def test_on_change_receives_views(self, fake_service, make_suggestion):
        fake_service.get_suggestions.return_value = [make_suggestion("orks")]
        views = []
        controller = make_controller(fake_service, on_change=views.append)

        controller.handle_search_change("orks")
        await controller.wait_until_settled()

        assert any(v.is_loading for v in views)
        assert views[-1].is_loading is False
        assert [s.name for s in views[-1].suggestions] == ["orks"]


class TestContext:
    @pytest.mark.asyncio
    async def test_set_context_resets(self, fake_service, make_suggestion):
        fake_service.get_suggestions.return_value = [make_suggestion("orks")]
        controller = make_controller(fake_service)
        controller.handle_search_change("orks")
        await controller.wait_until_settled()

        controller.set_context(GW, "Age of Sigmar")
        assert controller.search_term == ""
        assert controller.suggestions == []
        assert controller.state is ControllerState.IDLE

    @pytest.mark.asyncio
    async def test_immediate_field_preloads(self, fake_service, make_suggestion):
        fake_service.get_suggestions.return_value = [make_suggestion("warhammer_40k")]
        controller = AutocompleteController(
            fake_service, SuggestionType.GAME, immediate=True, debounce_ms=10
        )
        assert controller.min_search_length == 0

        controller.set_context(GW, None)
        await controller.wait_until_settled()

        fake_service.get_suggestions.assert_awaited_once()
        assert fake_service.get_suggestions.await_args.kwargs["search_term"] == ""
        assert [s.name for s in controller.suggestions] == ["warhammer_40k"]

    @pytest.mark.asyncio
    async def test_find_suggestion(self, fake_service, make_suggestion):
        fake_service.get_suggestions.return_value = [
            make_suggestion("space_marines", original_name="Space Marines")
        ]
        controller = make_controller(fake_service)
        controller.handle_search_change("space")
        await controller.wait_until_settled()

        assert controller.find_suggestion("space marines").name == "space_marines"
        assert controller.find_suggestion("Orks") is None


class TestRecording:
    """Tests for select and manual-entry recording."""

    @pytest.mark.asyncio
    async def test_select_records_usage(self, fake_service):
        controller = make_controller(fake_service)
        assert controller.select_suggestion("Orks") == "Orks"
        await controller.wait_until_settled()

        event = fake_service.record_event.await_args.args[0]
        assert event.value == "Orks"
        assert event.manufacturer == GW
        assert event.metadata["source"] == "user_selection"
        assert controller.selected_value == "Orks"
        assert controller.suggestions == []

    @pytest.mark.asyncio
    async def test_commit_manual_input(self, fake_service):
        controller = make_controller(fake_service)
        controller.handle_search_change("Necrons")
        assert controller.commit_manual_input() is True
        await controller.wait_until_settled()

        event = fake_service.record_event.await_args.args[0]
        assert event.value == "Necrons"
        assert event.metadata == {"source": "user_input", "context": "manual_entry"}

    @pytest.mark.asyncio
    async def test_commit_skips_junk_and_selected(self, fake_service):
        controller = make_controller(fake_service)
        assert controller.commit_manual_input("asdf") is False
        assert controller.commit_manual_input("   ") is False

        controller.select_suggestion("Orks")
        assert controller.commit_manual_input("Orks") is False
        await controller.wait_until_settled()
        assert fake_service.record_event.await_count == 1

    @pytest.mark.asyncio
    async def test_auto_record_off(self, fake_service):
        controller = make_controller(fake_service, auto_record=False)
        controller.select_suggestion("Orks")
        assert controller.commit_manual_input("Necrons") is False
        await controller.wait_until_settled()
        fake_service.record_event.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_records_through_batcher(self, fake_service):
        batcher = MagicMock()
        batcher.add = AsyncMock(return_value=None)
        controller = make_controller(fake_service, batcher=batcher)

        controller.select_suggestion("Orks")
        await controller.wait_until_settled()

        batcher.add.assert_awaited_once()
        fake_service.record_event.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_aclose_cancels_pending(self, fake_service):
        controller = make_controller(fake_service, debounce_ms=1000)
        controller.handle_search_change("orks")
        await controller.aclose()
        await asyncio.sleep(0)

        fake_service.get_suggestions.assert_not_awaited()


class TestFromConfig:
    def test_uses_config_values(self, fake_service):
        config = AutocompleteConfig(debounce_ms=150, min_search_length=3, max_results=7)
        controller = AutocompleteController.from_config(
            fake_service, config, SuggestionType.UNIT, manufacturer=GW, game=W40K, faction="Orks"
        )
        assert controller.debounce_ms == 150
        assert controller.min_search_length == 3
        assert controller.max_results == 7
        assert controller.has_context is True

    def test_immediate_ignores_min_length(self, fake_service):
        controller = AutocompleteController.from_config(
            fake_service, AutocompleteConfig(), SuggestionType.MANUFACTURER, immediate=True
        )
        assert controller.min_search_length == 0
