"""Datasette plugin hosting a shared tabletop suggestion store."""

from datasette_tabletop_suggest.plugin import register_routes, skip_csrf, startup

__all__ = [
    "register_routes",
    "skip_csrf",
    "startup",
]
