"""
Display ordering for suggestions.
"""

from .models import Suggestion
from .normalize import normalize


def matches_term(suggestion: Suggestion, search_term: str) -> bool:
    """Substring match of the term on name or original_name."""
    if not search_term or not search_term.strip():
        return True

    lowered = search_term.strip().lower()
    if lowered in suggestion.name.lower() or lowered in suggestion.original_name.lower():
        return True

    normalized = normalize(search_term)
    return bool(normalized) and normalized in suggestion.name


def rank(suggestions: list[Suggestion], search_term: str = "") -> list[Suggestion]:
    """
    Order suggestions for display.

    Exact name match first, then prefix matches, then promoted entries,
    then most used, then alphabetical by original_name. Returns a new list.
    """
    term = normalize(search_term)

    def sort_key(s: Suggestion):
        name = s.name.lower()
        return (
            not (term and name == term),
            not (term and name.startswith(term)),
            not s.is_promoted,
            -s.count,
            s.original_name.lower(),
        )

    return sorted(suggestions, key=sort_key)
