"""
Data models for tabletop-suggest.

Suggestions are a tagged union over a shared base record. Raw records
(from SQLite rows, HTTP payloads or cache JSON) are validated once by
suggestion_from_dict(); everything downstream works with typed objects.
"""

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, ClassVar

from .errors import ValidationError


class SuggestionType(str, Enum):
    """Kinds of suggestion values."""

    FACTION = "faction"
    UNIT = "unit"
    MANUFACTURER = "manufacturer"
    GAME = "game"


class RecordAction(str, Enum):
    """What record_usage did to the target document."""

    CREATED = "created"
    UPDATED = "updated"


def parse_ts(value: Any) -> datetime | None:
    """Parse an ISO timestamp into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(str(value))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts


def format_ts(value: datetime | None) -> str | None:
    """Format a datetime for storage."""
    return value.isoformat() if value else None


@dataclass
class Suggestion:
    """A usage-ranked suggestion value within a scope."""

    type: ClassVar[SuggestionType]

    name: str
    original_name: str
    manufacturer: str
    game: str
    count: int = 1
    variants: list[str] = field(default_factory=list)
    first_seen: datetime | None = None
    last_used: datetime | None = None
    is_promoted: bool = False
    is_blocked: bool = False
    report_count: int = 0
    block_reason: str | None = None
    promoted_at: datetime | None = None
    blocked_at: datetime | None = None
    updated_at: datetime | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def id(self) -> str:
        """Document id within the scope (the normalized name)."""
        return self.name

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "type": self.type.value,
            "name": self.name,
            "original_name": self.original_name,
            "manufacturer": self.manufacturer,
            "game": self.game,
            "count": self.count,
            "variants": list(self.variants),
            "first_seen": format_ts(self.first_seen),
            "last_used": format_ts(self.last_used),
            "is_promoted": self.is_promoted,
            "is_blocked": self.is_blocked,
            "report_count": self.report_count,
        }
        if self.block_reason:
            result["block_reason"] = self.block_reason
        if self.promoted_at:
            result["promoted_at"] = format_ts(self.promoted_at)
        if self.blocked_at:
            result["blocked_at"] = format_ts(self.blocked_at)
        if self.updated_at:
            result["updated_at"] = format_ts(self.updated_at)
        if self.metadata:
            result["metadata"] = dict(self.metadata)
        return result


@dataclass
class FactionSuggestion(Suggestion):
    """A faction name, scoped by (manufacturer, game)."""

    type: ClassVar[SuggestionType] = SuggestionType.FACTION

    unit_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["unit_count"] = self.unit_count
        return result


@dataclass
class UnitSuggestion(Suggestion):
    """A unit name, scoped by (manufacturer, game, faction)."""

    type: ClassVar[SuggestionType] = SuggestionType.UNIT

    parent_faction: str = ""

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["parent_faction"] = self.parent_faction
        return result


@dataclass
class ManufacturerSuggestion(Suggestion):
    """A manufacturer name, recorded under the global scope."""

    type: ClassVar[SuggestionType] = SuggestionType.MANUFACTURER


@dataclass
class GameSuggestion(Suggestion):
    """A game name, recorded under its manufacturer."""

    type: ClassVar[SuggestionType] = SuggestionType.GAME


SUGGESTION_CLASSES: dict[SuggestionType, type[Suggestion]] = {
    SuggestionType.FACTION: FactionSuggestion,
    SuggestionType.UNIT: UnitSuggestion,
    SuggestionType.MANUFACTURER: ManufacturerSuggestion,
    SuggestionType.GAME: GameSuggestion,
}


def suggestion_from_dict(data: dict[str, Any]) -> Suggestion:
    """Build a typed suggestion from a raw record.

    Raises ValidationError for records that cannot be a valid suggestion.
    """
    errors = []

    try:
        suggestion_type = SuggestionType(data.get("type") or "faction")
    except ValueError:
        raise ValidationError(f"Unknown suggestion type: {data.get('type')!r}") from None

    name = data.get("name")
    if not name or not isinstance(name, str):
        errors.append("Suggestion name is required")

    count = data.get("count", 1)
    if not isinstance(count, int) or count < 0:
        errors.append("Count must be a non-negative integer")

    report_count = data.get("report_count") or 0
    if not isinstance(report_count, int) or report_count < 0:
        errors.append("Report count must be a non-negative integer")

    if suggestion_type is SuggestionType.UNIT and not data.get("parent_faction"):
        errors.append("Unit suggestions require a parent faction")

    if errors:
        raise ValidationError(f"Invalid suggestion record: {', '.join(errors)}", errors)

    variants = data.get("variants") or []
    if isinstance(variants, str):
        variants = json.loads(variants)

    metadata = data.get("metadata") or {}
    if isinstance(metadata, str):
        metadata = json.loads(metadata)

    kwargs: dict[str, Any] = {
        "name": name,
        "original_name": data.get("original_name") or name,
        "manufacturer": data.get("manufacturer") or "",
        "game": data.get("game") or "",
        "count": count,
        "variants": list(variants),
        "first_seen": parse_ts(data.get("first_seen")),
        "last_used": parse_ts(data.get("last_used")),
        "is_promoted": bool(data.get("is_promoted")),
        "is_blocked": bool(data.get("is_blocked")),
        "report_count": report_count,
        "block_reason": data.get("block_reason"),
        "promoted_at": parse_ts(data.get("promoted_at")),
        "blocked_at": parse_ts(data.get("blocked_at")),
        "updated_at": parse_ts(data.get("updated_at")),
        "metadata": dict(metadata),
    }

    if suggestion_type is SuggestionType.FACTION:
        kwargs["unit_count"] = data.get("unit_count") or 0
    elif suggestion_type is SuggestionType.UNIT:
        kwargs["parent_faction"] = data["parent_faction"]

    return SUGGESTION_CLASSES[suggestion_type](**kwargs)


@dataclass
class RecordResult:
    """Outcome of a usage recording."""

    recorded: bool
    action: str | None = None
    new_count: int | None = None
    suggestion_id: str | None = None
    reason: str | None = None
    error: str | None = None
    parent_faction: str | None = None
    retryable: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {"recorded": self.recorded}
        if self.action:
            result["action"] = self.action
        if self.new_count is not None:
            result["new_count"] = self.new_count
        if self.suggestion_id:
            result["suggestion_id"] = self.suggestion_id
        if self.reason:
            result["reason"] = self.reason
        if self.error:
            result["error"] = self.error
        if self.parent_faction:
            result["parent_faction"] = self.parent_faction
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RecordResult":
        """Create from dictionary."""
        return cls(
            recorded=bool(data.get("recorded")),
            action=data.get("action"),
            new_count=data.get("new_count"),
            suggestion_id=data.get("suggestion_id"),
            reason=data.get("reason"),
            error=data.get("error"),
            parent_faction=data.get("parent_faction"),
        )


@dataclass
class ScopeStats:
    """Aggregate usage figures for one (manufacturer, game) scope."""

    manufacturer: str
    game: str
    total_factions: int = 0
    total_units: int = 0
    total_usage: int = 0
    average_usage_per_faction: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "manufacturer": self.manufacturer,
            "game": self.game,
            "total_factions": self.total_factions,
            "total_units": self.total_units,
            "total_usage": self.total_usage,
            "average_usage_per_faction": self.average_usage_per_faction,
        }


@dataclass
class UsageEvent:
    """A single usage signal waiting to be recorded."""

    type: SuggestionType
    value: str
    manufacturer: str | None = None
    game: str | None = None
    faction: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    attempts: int = 0
    added_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class PopularManufacturer:
    """A manufacturer ranked by total faction usage."""

    name: str
    usage_count: int

    @property
    def display_name(self) -> str:
        return " ".join(word.capitalize() for word in self.name.split("_"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "usage_count": self.usage_count,
            "display_name": self.display_name,
        }
