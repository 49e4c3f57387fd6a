"""
Error taxonomy for tabletop-suggest.

Only AdminMutationError is meant to reach callers; the other classes are
caught at the query/record boundary and turned into empty results or
logged recording failures.
"""


class SuggestionError(Exception):
    """Base class for all suggestion engine errors."""


class ValidationError(SuggestionError):
    """Input rejected before any I/O (bad text, missing scope, bad metadata)."""

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or [message]


class RemoteError(SuggestionError):
    """The backing store failed (network, transaction conflict, unavailable)."""


class CacheError(SuggestionError):
    """Local cache failure. Always contained inside the cache layer."""


class CacheQuotaExceeded(CacheError):
    """A cache backend ran out of room for a write."""


class AdminMutationError(SuggestionError):
    """A promote/block/delete style action failed."""


class MigrationError(SuggestionError):
    """A schema migration file is misnamed, duplicated or failed to apply."""
