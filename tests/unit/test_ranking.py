"""Tests for suggestion ranking and term matching."""

from tabletop_suggest.ranking import matches_term, rank


def names(suggestions):
    return [s.name for s in suggestions]


class TestRank:
    """Tests for display ordering."""

    def test_exact_then_prefix_then_count(self, make_suggestion):
        """'war' ranks exact 'war' first, then prefixes by count."""
        suggestions = [
            make_suggestion("warhammer", count=5),
            make_suggestion("warband", count=10),
            make_suggestion("war", count=1),
            make_suggestion("tau_war_council", count=50),
        ]
        assert names(rank(suggestions, "war")) == [
            "war",
            "warband",
            "warhammer",
            "tau_war_council",
        ]

    def test_promoted_before_count(self, make_suggestion):
        suggestions = [
            make_suggestion("orks", count=100),
            make_suggestion("necrons", count=1, is_promoted=True),
        ]
        assert names(rank(suggestions)) == ["necrons", "orks"]

    def test_alphabetical_tie_break(self, make_suggestion):
        suggestions = [
            make_suggestion("tyranids", count=3),
            make_suggestion("aeldari", count=3),
            make_suggestion("necrons", count=3),
        ]
        assert names(rank(suggestions)) == ["aeldari", "necrons", "tyranids"]

    def test_search_term_is_normalized(self, make_suggestion):
        suggestions = [
            make_suggestion("space_wolves", count=9),
            make_suggestion("space_marines", count=2),
        ]
        assert names(rank(suggestions, "Space Marines")) == ["space_marines", "space_wolves"]

    def test_returns_new_list(self, make_suggestion):
        suggestions = [make_suggestion("orks", count=1), make_suggestion("necrons", count=2)]
        ranked = rank(suggestions)
        assert ranked is not suggestions
        assert names(suggestions) == ["orks", "necrons"]


class TestMatchesTerm:
    """Tests for substring matching."""

    def test_empty_term_matches_everything(self, make_suggestion):
        assert matches_term(make_suggestion("orks"), "") is True
        assert matches_term(make_suggestion("orks"), "   ") is True

    def test_matches_original_name(self, make_suggestion):
        suggestion = make_suggestion("tau_empire", original_name="T'au Empire")
        assert matches_term(suggestion, "t'au") is True

    def test_matches_normalized_term(self, make_suggestion):
        suggestion = make_suggestion("space_marines", original_name="Space-Marines")
        assert matches_term(suggestion, "space marines") is True

    def test_no_match(self, make_suggestion):
        assert matches_term(make_suggestion("orks"), "eldar") is False
