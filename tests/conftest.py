"""Shared pytest fixtures for tabletop-suggest tests."""

from datetime import UTC, datetime

import pytest
from datasette.app import Datasette

from tabletop_suggest.cache import MemoryCacheStore, SuggestionCache
from tabletop_suggest.migrations import run_migrations
from tabletop_suggest.models import SUGGESTION_CLASSES, SuggestionType
from tabletop_suggest.service import SuggestionService
from tabletop_suggest.store import SqliteSuggestionStore


@pytest.fixture
def db_path(tmp_path):
    """Create a temporary suggestion database via migrations.

    This is the canonical way to get a test database - uses the same
    migration system as production.
    """
    db_file = tmp_path / "test_suggestions.db"
    run_migrations(db_file, verbose=False)
    return db_file


@pytest.fixture
def store(db_path):
    return SqliteSuggestionStore(db_path)


@pytest.fixture
def cache():
    return SuggestionCache(MemoryCacheStore())


@pytest.fixture
def service(store, cache):
    return SuggestionService(store, cache)


@pytest.fixture
def make_suggestion():
    """Factory for in-memory suggestions with sensible defaults."""

    def _make(name: str, count: int = 1, suggestion_type=SuggestionType.FACTION, **kwargs):
        kwargs.setdefault("original_name", name.replace("_", " ").title())
        kwargs.setdefault("manufacturer", "games_workshop")
        kwargs.setdefault("game", "warhammer_40k")
        kwargs.setdefault("variants", [kwargs["original_name"]])
        if suggestion_type is SuggestionType.UNIT:
            kwargs.setdefault("parent_faction", "space_marines")
        return SUGGESTION_CLASSES[suggestion_type](name=name, count=count, **kwargs)

    return _make


@pytest.fixture
def now():
    return datetime(2025, 6, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def datasette(db_path):
    """Create a Datasette instance with the plugin configured.

    Uses config= (not metadata=) for Datasette v1 compatibility.
    """
    return Datasette(
        [str(db_path)],
        config={
            "plugins": {
                "datasette-tabletop-suggest": {
                    "db_path": str(db_path),
                }
            },
        },
    )


@pytest.fixture
def staff_cookies(datasette):
    actor = {"id": "staff:admin", "principal_type": "staff"}
    return {"ds_actor": datasette.sign({"a": actor}, "actor")}


@pytest.fixture
def user_cookies(datasette):
    actor = {"id": "user:42", "principal_type": "user"}
    return {"ds_actor": datasette.sign({"a": actor}, "actor")}
