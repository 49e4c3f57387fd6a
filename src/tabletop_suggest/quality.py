"""
Quality control for suggestions.

Two layers decide what a user gets to see:

- a dynamic usage threshold that scales with the size of the candidate
  corpus (threshold/should_show), and
- the preset filter chain (apply_filters) selected by usage context:
  static threshold, quality floor, inappropriate content, recency, size.

Blocked suggestions never pass either layer; promoted ones bypass the
usage thresholds unless they are also blocked.
"""

import logging
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta

from .models import Suggestion
from .normalize import should_record

logger = logging.getLogger(__name__)

AUTO_PROMOTE_COUNT = 25
AUTO_BLOCK_REPORTS = 5


def threshold(total_candidates: int) -> int:
    """Minimum usage count for a corpus of the given size."""
    if total_candidates < 10:
        return 1
    if total_candidates < 50:
        return 2
    if total_candidates < 200:
        return 3
    if total_candidates < 500:
        return 5
    return 8


def should_show(suggestion: Suggestion, total_candidates: int) -> bool:
    """Blocked always loses, promoted always wins, otherwise count decides."""
    if suggestion.is_blocked:
        return False
    if suggestion.is_promoted:
        return True
    return suggestion.count >= threshold(total_candidates)


def _most_recent(suggestion: Suggestion) -> datetime | None:
    dates = [d for d in (suggestion.last_used, suggestion.first_seen) if d is not None]
    return max(dates) if dates else None


def quality_score(suggestion: Suggestion, now: datetime | None = None) -> int:
    """
    Composite 0-100 score blending usage, curation and reports.

    usage (count*2, capped at 60) + promotion (20) - reports (5 each,
    capped at 20) + recency (10 under a week, 5 under a month) + variant
    diversity (one per extra variant, capped at 10).
    """
    now = now or datetime.now(UTC)

    score = min(60, suggestion.count * 2)
    if suggestion.is_promoted:
        score += 20
    score -= min(20, suggestion.report_count * 5)

    if suggestion.last_used:
        age = now - suggestion.last_used
        if age < timedelta(days=7):
            score += 10
        elif age < timedelta(days=30):
            score += 5

    score += max(0, min(10, len(suggestion.variants) - 1))

    return max(0, min(100, score))


# -----------------------------------------------------------------------------
# Preset filter chain
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class FilterOptions:
    """Options for apply_filters. None disables a step."""

    min_threshold: int | None = 5
    min_quality: int = 0
    filter_inappropriate: bool = True
    max_age_days: int | None = 365
    max_results: int = 10


CONTEXT_PRESETS: dict[str, FilterOptions] = {
    "autocomplete": FilterOptions(
        min_threshold=5,
        min_quality=0,
        filter_inappropriate=True,
        max_age_days=365,
        max_results=10,
    ),
    "public": FilterOptions(
        min_threshold=10,
        min_quality=10,
        filter_inappropriate=True,
        max_age_days=180,
        max_results=20,
    ),
    "admin": FilterOptions(
        min_threshold=None,
        min_quality=0,
        filter_inappropriate=False,
        max_age_days=None,
        max_results=100,
    ),
}


def contextual_filters(context: str = "autocomplete", max_results: int | None = None) -> FilterOptions:
    """Return the named preset, optionally with a different result cap."""
    options = CONTEXT_PRESETS.get(context)
    if options is None:
        logger.warning(f"Unknown filter context {context!r}, using autocomplete")
        options = CONTEXT_PRESETS["autocomplete"]
    if max_results is not None:
        options = replace(options, max_results=max_results)
    return options


def filter_by_threshold(suggestions: list[Suggestion], min_count: int) -> list[Suggestion]:
    filtered = [
        s
        for s in suggestions
        if not s.is_blocked and (s.is_promoted or s.count >= min_count)
    ]
    logger.debug(f"Threshold filter ({min_count}): {len(suggestions)} -> {len(filtered)}")
    return filtered


def filter_by_quality(
    suggestions: list[Suggestion], min_score: int, now: datetime | None = None
) -> list[Suggestion]:
    filtered = [s for s in suggestions if quality_score(s, now) >= min_score]
    logger.debug(f"Quality filter ({min_score}): {len(suggestions)} -> {len(filtered)}")
    return filtered


def filter_inappropriate(suggestions: list[Suggestion]) -> list[Suggestion]:
    filtered = [
        s for s in suggestions if not s.is_blocked and should_record(s.original_name or s.name)
    ]
    logger.debug(f"Inappropriate content filter: {len(suggestions)} -> {len(filtered)}")
    return filtered


def filter_by_recency(
    suggestions: list[Suggestion], max_age_days: int, now: datetime | None = None
) -> list[Suggestion]:
    """Drop entries last seen before the cutoff. Undated entries pass."""
    cutoff = (now or datetime.now(UTC)) - timedelta(days=max_age_days)
    filtered = []
    for s in suggestions:
        most_recent = _most_recent(s)
        if most_recent is not None and most_recent < cutoff:
            continue
        filtered.append(s)
    logger.debug(f"Recency filter ({max_age_days}d): {len(suggestions)} -> {len(filtered)}")
    return filtered


def apply_filters(
    suggestions: list[Suggestion],
    options: FilterOptions | None = None,
    now: datetime | None = None,
) -> list[Suggestion]:
    """
    Run the filter chain in order and truncate.

    Returns a new list; the input is never modified. Order is preserved,
    so rank before filtering if the truncation should keep the best.
    """
    options = options or FilterOptions()
    filtered = list(suggestions)

    if options.min_threshold is not None:
        filtered = filter_by_threshold(filtered, options.min_threshold)

    if options.min_quality > 0:
        filtered = filter_by_quality(filtered, options.min_quality, now)

    if options.filter_inappropriate:
        filtered = filter_inappropriate(filtered)

    if options.max_age_days:
        filtered = filter_by_recency(filtered, options.max_age_days, now)

    return filtered[: options.max_results]


# -----------------------------------------------------------------------------
# Moderation helpers
# -----------------------------------------------------------------------------


def should_auto_promote(suggestion: Suggestion) -> bool:
    """Widely used and never reported."""
    return suggestion.count >= AUTO_PROMOTE_COUNT and suggestion.report_count == 0


def should_auto_block(suggestion: Suggestion) -> bool:
    return suggestion.report_count >= AUTO_BLOCK_REPORTS


def needs_review(suggestion: Suggestion) -> bool:
    """Reported, but not enough to be blocked automatically."""
    return 0 < suggestion.report_count < AUTO_BLOCK_REPORTS
