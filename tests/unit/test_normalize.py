"""Tests for text normalization and input validation."""

import pytest

from tabletop_suggest.errors import ValidationError
from tabletop_suggest.normalize import (
    MAX_KEY_LENGTH,
    cache_key,
    is_valid_segment,
    normalize,
    scope_key,
    should_record,
    to_storage_segment,
    validate_input,
    validate_metadata,
    validate_moderation,
    validate_scope,
)


class TestNormalize:
    """Tests for normalize()."""

    def test_lowercases_and_joins_words(self):
        """Should lowercase and replace whitespace runs with one underscore."""
        assert normalize("  Space   Marines ") == "space_marines"

    def test_strips_punctuation(self):
        """Should drop characters other than word chars, hyphens and apostrophes."""
        assert normalize("Tau Empire!!") == "tau_empire"
        assert normalize("T'au Empire") == "t'au_empire"
        assert normalize("Adeptus-Mechanicus (AdMech)") == "adeptus-mechanicus_admech"

    def test_collapses_underscores(self):
        """Should collapse repeated underscores and trim them from the ends."""
        assert normalize("__chaos___knights__") == "chaos_knights"

    def test_non_string_input(self):
        """Should map non-string and empty input to an empty string."""
        assert normalize(None) == ""
        assert normalize(42) == ""
        assert normalize("") == ""
        assert normalize("   ") == ""

    def test_truncates_long_input(self):
        """Should cap keys at 100 characters."""
        assert len(normalize("a" * 250)) == MAX_KEY_LENGTH

    def test_idempotent(self):
        """Should give the same key when applied twice."""
        samples = [
            "Space Marines",
            "  Orks & Goblins ",
            "Necrons!!!",
            "T'au  Empire",
            "x" * 99 + " y" * 10,
            "Émpire of Ürk",
        ]
        for text in samples:
            once = normalize(text)
            assert normalize(once) == once

    def test_keeps_unicode_letters(self):
        """Should keep accented letters as word characters."""
        assert normalize("Élan Vital") == "élan_vital"


class TestShouldRecord:
    """Tests for should_record()."""

    @pytest.mark.parametrize(
        "text",
        ["Space Marines", "Orks", "Adeptus Custodes", "Tyranids"],
    )
    def test_accepts_real_names(self, text):
        assert should_record(text) is True

    @pytest.mark.parametrize(
        "text",
        [
            "test faction",
            "asdfgh",
            "qwerty",
            "12345",
            "ab",
            "a",
            "aaaaaaa",
            "spam bot",
            "delete me",
            "admin",
            "",
            None,
        ],
    )
    def test_rejects_junk(self, text):
        assert should_record(text) is False


class TestStorageSegments:
    """Tests for storage segment helpers."""

    def test_is_valid_segment(self):
        assert is_valid_segment("space_marines") is True
        assert is_valid_segment("") is False
        assert is_valid_segment(None) is False
        assert is_valid_segment("a/b") is False
        assert is_valid_segment("__reserved__") is False
        assert is_valid_segment("x" * 1501) is False

    def test_to_storage_segment_is_always_valid(self):
        """Should always produce a valid segment, even for empty input."""
        for text in ["Space Marines", "", "!!!", "__x__", "a/b/c", None]:
            assert is_valid_segment(to_storage_segment(text))

    def test_empty_input_gets_placeholder(self):
        assert to_storage_segment("!!!") == "unnamed"

    def test_scope_key(self):
        assert scope_key("Games Workshop", "Warhammer 40k") == "games_workshop_warhammer_40k"
        assert (
            scope_key("Games Workshop", "Warhammer 40k", "Space Marines")
            == "games_workshop_warhammer_40k_space_marines"
        )

    def test_cache_key(self):
        assert (
            cache_key("Games Workshop", "Warhammer 40k")
            == "suggestions_cache_games_workshop_warhammer_40k_faction"
        )
        assert (
            cache_key("gw", "40k", "Orks", "unit") == "suggestions_cache_gw_40k_orks_unit"
        )


class TestValidateInput:
    """Tests for validate_input()."""

    def test_valid_input(self):
        validated = validate_input("  Space Marines ", "faction")
        assert validated.normalized == "space_marines"
        assert validated.original == "Space Marines"

    def test_rejects_non_string(self):
        with pytest.raises(ValidationError):
            validate_input(None)

    def test_rejects_short_input(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_input("a")
        assert any("at least 2" in e for e in exc_info.value.errors)

    def test_rejects_blocked_patterns(self):
        with pytest.raises(ValidationError):
            validate_input("test faction")

    def test_applies_type_length_limit(self):
        """Should reject manufacturers longer than 40 normalized characters."""
        name = "Very Long Manufacturer Name Incorporated Ltd"
        validate_input(name, "faction")
        with pytest.raises(ValidationError) as exc_info:
            validate_input(name, "manufacturer")
        assert any("at most 40" in e for e in exc_info.value.errors)


class TestValidateScope:
    """Tests for validate_scope()."""

    def test_valid_scope(self):
        validate_scope("Games Workshop", "Warhammer 40k", "space")

    def test_missing_parts(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_scope("", None)
        assert exc_info.value.errors == ["Manufacturer is required", "Game is required"]

    def test_search_term_too_long(self):
        with pytest.raises(ValidationError):
            validate_scope("gw", "40k", "x" * 101)


class TestValidateMetadata:
    """Tests for validate_metadata()."""

    def test_defaults_source(self):
        assert validate_metadata(None) == {"source": "user_input"}

    def test_keeps_known_keys_only(self):
        cleaned = validate_metadata(
            {"source": "import", "context": " bulk ", "user_id": "u1", "extra": "dropped"}
        )
        assert cleaned == {"source": "import", "context": "bulk", "user_id": "u1"}

    def test_rejects_unknown_source(self):
        with pytest.raises(ValidationError):
            validate_metadata({"source": "scraper"})

    def test_rejects_long_context(self):
        with pytest.raises(ValidationError):
            validate_metadata({"context": "x" * 201})


class TestValidateModeration:
    """Tests for validate_moderation()."""

    def test_block_requires_reason(self):
        with pytest.raises(ValidationError):
            validate_moderation("block", "  ")

    def test_delete_requires_reason(self):
        with pytest.raises(ValidationError):
            validate_moderation("delete")

    def test_promote_without_reason(self):
        assert validate_moderation("promote") == ""

    def test_unknown_action(self):
        with pytest.raises(ValidationError):
            validate_moderation("archive", "why not")

    def test_reason_length(self):
        with pytest.raises(ValidationError):
            validate_moderation("block", "x" * 501)
