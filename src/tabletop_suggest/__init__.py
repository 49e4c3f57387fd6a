"""
tabletop-suggest: usage-ranked typeahead suggestions for tabletop projects.

Faction, unit, manufacturer and game names are recorded as they are used,
filtered for quality, ranked for relevance and served through a local
cache and a debounced per-field controller.
"""

__version__ = "0.1.0"
