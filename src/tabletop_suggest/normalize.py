"""
Text normalization and input validation for suggestions.

Every value that becomes a storage key, a cache key or a ranking key goes
through normalize() first, so the functions here must be total and
deterministic.
"""

import re
from dataclasses import dataclass
from typing import Any

from .errors import ValidationError

MAX_KEY_LENGTH = 100
MAX_SEGMENT_LENGTH = 1500
EMPTY_SEGMENT = "unnamed"
CACHE_KEY_PREFIX = "suggestions_cache_"

# Normalized length limits per suggestion type
TYPE_LENGTH_LIMITS = {
    "faction": 50,
    "unit": 60,
    "manufacturer": 40,
    "game": 50,
}

METADATA_SOURCES = (
    "user_input",
    "user_selection",
    "auto_from_unit",
    "import",
    "admin",
    "api",
)
MAX_CONTEXT_LENGTH = 200

MODERATION_ACTIONS = ("promote", "unpromote", "block", "unblock", "delete", "report")
MAX_REASON_LENGTH = 500

_WHITESPACE = re.compile(r"\s+")
_DISALLOWED = re.compile(r"[^\w'-]")
_UNDERSCORE_RUNS = re.compile(r"_{2,}")

# Test data, keyboard mashing and reserved words
BLOCKED_PATTERNS = [
    re.compile(r"^test", re.IGNORECASE),
    re.compile(r"^asdf", re.IGNORECASE),
    re.compile(r"^qwerty", re.IGNORECASE),
    re.compile(r"^\d+$"),
    re.compile(r"^[a-z]{1,2}$", re.IGNORECASE),
    re.compile(r"(.)\1{4,}"),
    re.compile(r"^spam", re.IGNORECASE),
    re.compile(r"^delete", re.IGNORECASE),
    re.compile(r"^admin", re.IGNORECASE),
]


def normalize(text: Any) -> str:
    """Turn raw text into a canonical suggestion key.

    Lowercases, trims, turns whitespace runs into a single underscore,
    drops everything except word characters, underscores, hyphens and
    apostrophes, collapses repeated underscores, strips leading/trailing
    underscores and truncates to 100 characters.

    Non-string input maps to "".
    """
    if not text or not isinstance(text, str):
        return ""

    key = text.lower().strip()
    key = _WHITESPACE.sub("_", key)
    key = _DISALLOWED.sub("", key)
    key = _UNDERSCORE_RUNS.sub("_", key)
    key = key.strip("_")
    # Truncation can expose a trailing underscore; strip again so the
    # function stays idempotent.
    return key[:MAX_KEY_LENGTH].rstrip("_")


def should_record(text: Any) -> bool:
    """Return False for text that looks like test input or spam."""
    if not text or not isinstance(text, str):
        return False

    normalized = normalize(text)
    if len(normalized) < 2:
        return False

    return not any(pattern.search(normalized) for pattern in BLOCKED_PATTERNS)


def is_valid_segment(segment: Any) -> bool:
    """Check that a value is usable as a storage path segment."""
    if not segment or not isinstance(segment, str):
        return False
    if len(segment) > MAX_SEGMENT_LENGTH:
        return False
    if "/" in segment:
        return False
    if segment.startswith("__") and segment.endswith("__"):
        return False
    return True


def to_storage_segment(text: Any) -> str:
    """Normalize text into a safe storage path segment.

    The result never both starts and ends with a double underscore, never
    contains a path separator and is never empty.
    """
    segment = normalize(text)

    if segment.startswith("__"):
        segment = "x" + segment
    if segment.endswith("__"):
        segment = segment + "x"

    if not segment:
        segment = EMPTY_SEGMENT

    return segment[:MAX_SEGMENT_LENGTH]


def scope_key(manufacturer: str, game: str, faction: str | None = None) -> str:
    """Collection key for a scope: {manufacturer}_{game}[_{faction}]."""
    parts = [to_storage_segment(manufacturer), to_storage_segment(game)]
    if faction:
        parts.append(to_storage_segment(faction))
    return "_".join(parts)


def cache_key(
    manufacturer: str,
    game: str,
    faction: str | None = None,
    suggestion_type: str = "faction",
) -> str:
    """Local cache key: suggestions_cache_{m}_{g}[_{f}]_{type}."""
    parts = [normalize(p) for p in (manufacturer, game, faction) if p]
    return f"{CACHE_KEY_PREFIX}{'_'.join(parts)}_{suggestion_type}"


# -----------------------------------------------------------------------------
# Validation
# -----------------------------------------------------------------------------


@dataclass
class ValidatedInput:
    """Suggestion text that passed validation."""

    normalized: str
    original: str


def validate_input(text: Any, suggestion_type: str = "faction") -> ValidatedInput:
    """Validate suggestion text before recording.

    Raises ValidationError listing every problem found.
    """
    if not text or not isinstance(text, str):
        raise ValidationError("Input must be a non-empty string")

    normalized = normalize(text)
    errors = []

    if len(normalized) < 2:
        errors.append("Input must be at least 2 characters long")
    if len(normalized) > MAX_KEY_LENGTH:
        errors.append(f"Input must be less than {MAX_KEY_LENGTH} characters")
    if not should_record(text):
        errors.append("Input contains invalid content or patterns")

    limit = TYPE_LENGTH_LIMITS.get(suggestion_type)
    if limit is not None and len(normalized) > limit:
        errors.append(f"{suggestion_type.capitalize()} names must be at most {limit} characters")

    if errors:
        raise ValidationError(f"Invalid suggestion: {', '.join(errors)}", errors)

    return ValidatedInput(normalized=normalized, original=text.strip())


def validate_scope(manufacturer: Any, game: Any, search_term: Any = None) -> None:
    """Reject queries and writes that lack a manufacturer/game scope."""
    errors = []

    if not manufacturer or not isinstance(manufacturer, str) or not manufacturer.strip():
        errors.append("Manufacturer is required")
    if not game or not isinstance(game, str) or not game.strip():
        errors.append("Game is required")

    if search_term:
        if not isinstance(search_term, str):
            errors.append("Search term must be a string")
        elif len(search_term) > MAX_KEY_LENGTH:
            errors.append("Search term too long")

    if errors:
        raise ValidationError(f"Invalid scope: {', '.join(errors)}", errors)


def validate_metadata(metadata: dict | None = None) -> dict[str, str]:
    """Validate recording metadata and return the cleaned copy.

    Unknown keys are dropped. ``source`` defaults to ``user_input``.
    """
    metadata = metadata or {}
    errors = []
    cleaned: dict[str, str] = {}

    context = metadata.get("context")
    if context:
        if not isinstance(context, str):
            errors.append("Context must be a string")
        elif len(context) > MAX_CONTEXT_LENGTH:
            errors.append(f"Context too long (max {MAX_CONTEXT_LENGTH} characters)")
        else:
            cleaned["context"] = context.strip()

    source = metadata.get("source")
    if source:
        if source not in METADATA_SOURCES:
            errors.append(f"Invalid source. Must be one of: {', '.join(METADATA_SOURCES)}")
        else:
            cleaned["source"] = source
    else:
        cleaned["source"] = "user_input"

    user_id = metadata.get("user_id")
    if user_id:
        if not isinstance(user_id, str):
            errors.append("User ID must be a string")
        else:
            cleaned["user_id"] = user_id

    if errors:
        raise ValidationError(f"Invalid metadata: {', '.join(errors)}", errors)

    return cleaned


def validate_moderation(action: str, reason: str = "") -> str:
    """Validate an admin moderation action. Returns the trimmed reason."""
    reason = (reason or "").strip()
    errors = []

    if action not in MODERATION_ACTIONS:
        errors.append(f"Invalid action. Must be one of: {', '.join(MODERATION_ACTIONS)}")
    if action in ("block", "delete") and not reason:
        errors.append("Reason is required for blocking or deleting suggestions")
    if len(reason) > MAX_REASON_LENGTH:
        errors.append(f"Reason too long (max {MAX_REASON_LENGTH} characters)")

    if errors:
        raise ValidationError(f"Invalid moderation: {', '.join(errors)}", errors)

    return reason
