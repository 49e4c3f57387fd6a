"""
Per-field autocomplete controller.

An AutocompleteController owns the suggestion state of one input field.
Keystrokes go through handle_search_change(), which debounces and then
fetches through SuggestionService. Every keystroke cancels the pending
task and bumps a generation counter, so a response that arrives after a
newer keystroke is dropped instead of overwriting fresher results.

States::

    IDLE -> DEBOUNCING -> FETCHING -> POPULATED | EMPTY | ERRORED
    any  -> IDLE on select, reset, clear or a context change
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .batcher import RecordingBatcher
from .config import AutocompleteConfig
from .errors import SuggestionError
from .models import Suggestion, SuggestionType, UsageEvent
from .normalize import normalize, should_record
from .service import SuggestionService

logger = logging.getLogger(__name__)

PLURALS = {
    SuggestionType.FACTION: "factions",
    SuggestionType.UNIT: "units",
    SuggestionType.MANUFACTURER: "manufacturers",
    SuggestionType.GAME: "games",
}


class ControllerState(str, Enum):
    IDLE = "idle"
    DEBOUNCING = "debouncing"
    FETCHING = "fetching"
    POPULATED = "populated"
    EMPTY = "empty"
    ERRORED = "errored"


@dataclass(frozen=True)
class ControllerView:
    """What the input widget renders."""

    suggestions: list[Suggestion] = field(default_factory=list)
    is_loading: bool = False
    error_message: str | None = None
    status_message: str = ""


class AutocompleteController:
    """Debounced, cancellable suggestion lookups for one input field."""

    def __init__(
        self,
        service: SuggestionService,
        suggestion_type: SuggestionType | str = SuggestionType.FACTION,
        manufacturer: str | None = None,
        game: str | None = None,
        faction: str | None = None,
        *,
        batcher: RecordingBatcher | None = None,
        debounce_ms: int = 300,
        min_search_length: int | None = None,
        max_results: int = 10,
        fetch_timeout: float = 5.0,
        auto_record: bool = True,
        use_cache: bool = True,
        immediate: bool = False,
        context: str = "autocomplete",
        on_change: Callable[[ControllerView], Any] | None = None,
    ):
        self.service = service
        self.suggestion_type = SuggestionType(suggestion_type)
        self.manufacturer = manufacturer
        self.game = game
        self.faction = faction
        self.batcher = batcher
        self.debounce_ms = debounce_ms
        self.immediate = immediate
        if min_search_length is None:
            min_search_length = 0 if immediate else 2
        self.min_search_length = min_search_length
        self.max_results = max_results
        self.fetch_timeout = fetch_timeout
        self.auto_record = auto_record
        self.use_cache = use_cache
        self.context = context
        self.on_change = on_change

        self.search_term = ""
        self.suggestions: list[Suggestion] = []
        self.is_loading = False
        self.error: str | None = None
        self.selected_value = ""
        self.state = ControllerState.IDLE

        self._generation = 0
        self._task: asyncio.Task | None = None
        self._recordings: set[asyncio.Task] = set()

    @classmethod
    def from_config(
        cls,
        service: SuggestionService,
        config: AutocompleteConfig,
        suggestion_type: SuggestionType | str = SuggestionType.FACTION,
        **kwargs,
    ) -> "AutocompleteController":
        options = {
            "debounce_ms": config.debounce_ms,
            "max_results": config.max_results,
            "fetch_timeout": config.fetch_timeout_seconds,
            "auto_record": config.auto_record,
        }
        if not kwargs.get("immediate"):
            options["min_search_length"] = config.min_search_length
        options.update(kwargs)
        return cls(service, suggestion_type, **options)

    # -------------------------------------------------------------------------
    # Derived state
    # -------------------------------------------------------------------------

    @property
    def has_context(self) -> bool:
        if self.suggestion_type is SuggestionType.MANUFACTURER:
            return True
        if self.suggestion_type is SuggestionType.GAME:
            return bool(self.manufacturer)
        if not self.manufacturer or not self.game:
            return False
        if self.suggestion_type is SuggestionType.UNIT:
            return bool(self.faction)
        return True

    @property
    def is_empty(self) -> bool:
        return self.state is ControllerState.EMPTY

    @property
    def status_message(self) -> str:
        plural = PLURALS[self.suggestion_type]

        if self.suggestion_type is SuggestionType.GAME and not self.manufacturer:
            return "Select manufacturer first"
        if self.suggestion_type in (SuggestionType.FACTION, SuggestionType.UNIT):
            if not self.manufacturer or not self.game:
                return "Select manufacturer and game first"
            if self.suggestion_type is SuggestionType.UNIT and not self.faction:
                return "Select faction first"

        if self.is_loading:
            return f"Loading {plural}..."
        if 0 < len(self.search_term) < self.min_search_length:
            return f"Type at least {self.min_search_length} characters"
        if self.is_empty:
            return f"No {plural} found"
        return ""

    def view(self) -> ControllerView:
        return ControllerView(
            suggestions=list(self.suggestions),
            is_loading=self.is_loading,
            error_message=self.error,
            status_message=self.status_message,
        )

    def _notify(self) -> None:
        if self.on_change is None:
            return
        try:
            self.on_change(self.view())
        except Exception:
            logger.exception("on_change callback failed")

    # -------------------------------------------------------------------------
    # Fetching
    # -------------------------------------------------------------------------

    def _cancel_pending(self) -> None:
        """Cancel the debounce/fetch task and invalidate in-flight results."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        self._generation += 1
        self.is_loading = False

    def _clear_suggestions(self) -> None:
        self.suggestions = []
        self.error = None

    def _schedule_fetch(self, term: str, delay: float, use_cache: bool = True) -> None:
        self._cancel_pending()
        self.state = ControllerState.DEBOUNCING if delay > 0 else ControllerState.FETCHING
        self._task = asyncio.create_task(self._debounced_fetch(term, self._generation, delay, use_cache))

    async def _debounced_fetch(self, term: str, generation: int, delay: float, use_cache: bool) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        await self._fetch(term, generation, use_cache)

    async def _fetch(self, term: str, generation: int, use_cache: bool = True) -> None:
        self.state = ControllerState.FETCHING
        self.is_loading = True
        self.error = None
        self._notify()

        results: list[Suggestion] = []
        error = None
        try:
            results = await asyncio.wait_for(
                self.service.get_suggestions(
                    self.suggestion_type,
                    self.manufacturer,
                    self.game,
                    self.faction,
                    search_term=term,
                    context=self.context,
                    max_results=self.max_results,
                    use_cache=use_cache and self.use_cache,
                ),
                timeout=self.fetch_timeout,
            )
        except TimeoutError:
            error = "Suggestions took too long to load"
        except SuggestionError as e:
            error = str(e) or "Failed to fetch suggestions"
        except Exception:
            logger.exception(f"Unexpected error fetching {self.suggestion_type.value} suggestions")
            error = "Failed to fetch suggestions"

        if generation != self._generation:
            logger.debug(f"Discarding stale {self.suggestion_type.value} results for {term!r}")
            return

        self.is_loading = False
        if error:
            logger.warning(f"Error fetching {self.suggestion_type.value} suggestions: {error}")
            self.error = error
            self.suggestions = []
            self.state = ControllerState.ERRORED
        else:
            self.suggestions = list(results)
            self.state = ControllerState.POPULATED if results else ControllerState.EMPTY
        self._notify()

    def handle_search_change(self, text: str) -> None:
        """Handle a keystroke. Must be called from a running event loop."""
        text = text or ""
        self.search_term = text
        if self.selected_value and text != self.selected_value:
            self.selected_value = ""

        if not self.has_context or (text and len(text) < self.min_search_length):
            self._cancel_pending()
            self._clear_suggestions()
            self.state = ControllerState.IDLE
            self._notify()
            return

        self._schedule_fetch(text, self.debounce_ms / 1000)
        self._notify()

    def preload(self) -> None:
        """Fetch right away without a search term (immediate fields)."""
        if not self.has_context:
            return
        self._schedule_fetch(self.search_term, 0)

    def refresh(self) -> None:
        """Fetch the current term again, skipping the cache."""
        if not self.has_context:
            return
        if self.search_term or self.immediate:
            self._schedule_fetch(self.search_term, 0, use_cache=False)

    def set_context(
        self,
        manufacturer: str | None,
        game: str | None,
        faction: str | None = None,
    ) -> None:
        """Change the scope. Any change resets the field."""
        if (manufacturer, game, faction) == (self.manufacturer, self.game, self.faction):
            return

        self.manufacturer = manufacturer
        self.game = game
        self.faction = faction
        self.reset()

        if self.immediate:
            self.preload()

    def reset(self) -> None:
        self._cancel_pending()
        self.search_term = ""
        self.selected_value = ""
        self._clear_suggestions()
        self.state = ControllerState.IDLE
        self._notify()

    def find_suggestion(self, name: str) -> Suggestion | None:
        """Look up a displayed suggestion by key or original text."""
        key = normalize(name)
        lowered = name.lower()
        for s in self.suggestions:
            if s.name == key or s.original_name.lower() == lowered:
                return s
        return None

    # -------------------------------------------------------------------------
    # Recording
    # -------------------------------------------------------------------------

    def _schedule_record(self, value: str, metadata: dict[str, Any]) -> None:
        task = asyncio.create_task(self._record(value, metadata))
        self._recordings.add(task)
        task.add_done_callback(self._recordings.discard)

    async def _record(self, value: str, metadata: dict[str, Any]) -> None:
        event = UsageEvent(
            type=self.suggestion_type,
            value=value,
            manufacturer=self.manufacturer,
            game=self.game,
            faction=self.faction,
            metadata=metadata,
        )
        try:
            if self.batcher is not None:
                await self.batcher.add(event)
                return
            result = await self.service.record_event(event)
        except Exception:
            logger.exception(f"Error recording {self.suggestion_type.value} {value!r}")
            return

        if not result.recorded:
            logger.info(f"{self.suggestion_type.value} {value!r} not recorded: {result.reason}")

    def select_suggestion(self, value: str, metadata: dict[str, Any] | None = None) -> str:
        """Accept a dropdown item and record its use in the background."""
        self._cancel_pending()
        self.selected_value = value
        self.search_term = value
        self._clear_suggestions()
        self.state = ControllerState.IDLE

        if self.auto_record and self.has_context:
            self._schedule_record(
                value, {"source": "user_selection", "context": "autocomplete", **(metadata or {})}
            )

        self._notify()
        return value

    def commit_manual_input(self, value: str | None = None) -> bool:
        """Record typed text on blur/Enter. Returns True if a record was queued."""
        value = (value if value is not None else self.search_term).strip()
        if not value or value == self.selected_value:
            return False
        if not self.auto_record or not self.has_context or not should_record(value):
            return False

        self._schedule_record(value, {"source": "user_input", "context": "manual_entry"})
        return True

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def wait_until_settled(self) -> None:
        """Wait for the pending fetch and any background recordings."""
        while True:
            pending = [t for t in (self._task, *self._recordings) if t is not None and not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel the pending fetch and background recordings."""
        self._cancel_pending()
        recordings = list(self._recordings)
        for task in recordings:
            task.cancel()
        if recordings:
            await asyncio.gather(*recordings, return_exceptions=True)
        self._recordings.clear()
