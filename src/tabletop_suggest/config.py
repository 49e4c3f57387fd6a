"""
Configuration for tabletop-suggest.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

PLUGIN_NAME = "datasette-tabletop-suggest"


@dataclass
class StoreConfig:
    """Where suggestions are persisted."""

    db_path: Path = field(default_factory=lambda: Path("suggestions.db"))
    remote_url: str | None = None  # Use the HTTP store instead of db_path when set
    timeout_seconds: float = 5.0


@dataclass
class CacheConfig:
    """Local suggestion cache settings."""

    enabled: bool = True
    db_path: Path | None = None  # None keeps the cache in memory
    ttl_days: int = 14
    version: str = "1.0"
    max_items_per_entry: int = 100
    max_entry_bytes: int = 1024 * 1024
    evict_count: int = 5
    quota_bytes: int = 5 * 1024 * 1024


@dataclass
class BatchConfig:
    """Usage recording batch settings."""

    batch_delay: float = 1.0  # Seconds of inactivity before a flush
    max_batch_size: int = 10
    max_attempts: int = 3


@dataclass
class AutocompleteConfig:
    """Per-field controller defaults."""

    debounce_ms: int = 300
    min_search_length: int = 2
    max_results: int = 10
    fetch_timeout_seconds: float = 5.0
    auto_record: bool = True


@dataclass
class SuggestConfig:
    """Complete tabletop-suggest configuration."""

    store: StoreConfig = field(default_factory=StoreConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    autocomplete: AutocompleteConfig = field(default_factory=AutocompleteConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SuggestConfig":
        """Create config from a dictionary (e.g., from YAML)."""
        config = cls()

        if "store" in data:
            store = data["store"]
            config.store = StoreConfig(
                db_path=Path(store.get("db_path", "suggestions.db")),
                remote_url=store.get("remote_url"),
                timeout_seconds=store.get("timeout_seconds", 5.0),
            )

        if "cache" in data:
            cache = data["cache"]
            cache_db = cache.get("db_path")
            config.cache = CacheConfig(
                enabled=cache.get("enabled", True),
                db_path=Path(cache_db) if cache_db else None,
                ttl_days=cache.get("ttl_days", 14),
                version=str(cache.get("version", "1.0")),
                max_items_per_entry=cache.get("max_items_per_entry", 100),
                max_entry_bytes=cache.get("max_entry_bytes", 1024 * 1024),
                evict_count=cache.get("evict_count", 5),
                quota_bytes=cache.get("quota_bytes", 5 * 1024 * 1024),
            )

        if "batch" in data:
            batch = data["batch"]
            config.batch = BatchConfig(
                batch_delay=batch.get("batch_delay", 1.0),
                max_batch_size=batch.get("max_batch_size", 10),
                max_attempts=batch.get("max_attempts", 3),
            )

        if "autocomplete" in data:
            ac = data["autocomplete"]
            config.autocomplete = AutocompleteConfig(
                debounce_ms=ac.get("debounce_ms", 300),
                min_search_length=ac.get("min_search_length", 2),
                max_results=ac.get("max_results", 10),
                fetch_timeout_seconds=ac.get("fetch_timeout_seconds", 5.0),
                auto_record=ac.get("auto_record", True),
            )

        return config

    @classmethod
    def from_yaml(cls, path: Path) -> "SuggestConfig":
        """Load config from a YAML file (datasette.yaml format)."""
        path = Path(path)
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        # Settings live under plugins.datasette-tabletop-suggest
        plugin_config = (data.get("plugins") or {}).get(PLUGIN_NAME) or {}
        config = cls.from_dict(plugin_config)

        # The plugin's own db_path doubles as the store path
        if "store" not in plugin_config and "db_path" in plugin_config:
            config.store.db_path = Path(plugin_config["db_path"])

        return config

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary for JSON serialization."""
        return {
            "store": {
                "db_path": str(self.store.db_path),
                "remote_url": self.store.remote_url,
                "timeout_seconds": self.store.timeout_seconds,
            },
            "cache": {
                "enabled": self.cache.enabled,
                "db_path": str(self.cache.db_path) if self.cache.db_path else None,
                "ttl_days": self.cache.ttl_days,
                "version": self.cache.version,
                "max_items_per_entry": self.cache.max_items_per_entry,
                "max_entry_bytes": self.cache.max_entry_bytes,
                "evict_count": self.cache.evict_count,
                "quota_bytes": self.cache.quota_bytes,
            },
            "batch": {
                "batch_delay": self.batch.batch_delay,
                "max_batch_size": self.batch.max_batch_size,
                "max_attempts": self.batch.max_attempts,
            },
            "autocomplete": {
                "debounce_ms": self.autocomplete.debounce_ms,
                "min_search_length": self.autocomplete.min_search_length,
                "max_results": self.autocomplete.max_results,
                "fetch_timeout_seconds": self.autocomplete.fetch_timeout_seconds,
                "auto_record": self.autocomplete.auto_record,
            },
        }
