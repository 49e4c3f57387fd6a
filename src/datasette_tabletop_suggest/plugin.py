"""
Datasette plugin hosting a shared tabletop suggestion store.

Exposes the SQLite suggestion store as JSON routes under /-/suggestions/:

- GET  query, get, stats, manufacturers
- POST record
- POST create, admin/update, admin/report, admin/delete (staff only)
"""

import json
import logging
from collections.abc import Awaitable, Callable
from functools import wraps
from pathlib import Path
from typing import Any

from datasette import Response, hookimpl
from datasette.utils.asgi import Request

from tabletop_suggest.config import PLUGIN_NAME
from tabletop_suggest.errors import AdminMutationError, RemoteError, ValidationError
from tabletop_suggest.migrations import run_migrations
from tabletop_suggest.models import SuggestionType
from tabletop_suggest.normalize import validate_moderation
from tabletop_suggest.store import SqliteSuggestionStore

logger = logging.getLogger(__name__)

MAX_QUERY_LIMIT = 100

# -----------------------------------------------------------------------------
# Plugin Configuration
# -----------------------------------------------------------------------------


def get_plugin_config(datasette) -> dict[str, Any]:
    """Get plugin configuration from datasette.yaml."""
    config = datasette.plugin_config(PLUGIN_NAME) or {}
    return {
        "db_path": config.get("db_path", "suggestions.db"),
    }


def get_db_path(datasette) -> Path:
    return Path(get_plugin_config(datasette)["db_path"])


def get_store(datasette) -> SqliteSuggestionStore:
    return SqliteSuggestionStore(get_db_path(datasette))


# -----------------------------------------------------------------------------
# Actor Helpers
# -----------------------------------------------------------------------------


def is_staff(request: Request) -> bool:
    """Check if the current user is staff."""
    actor = request.actor
    return actor is not None and actor.get("principal_type") == "staff"


def actor_id(request: Request) -> str:
    actor = request.actor or {}
    return str(actor.get("id") or "anonymous")


# -----------------------------------------------------------------------------
# Request Helpers
# -----------------------------------------------------------------------------


def validation_response(message: str, errors: list[str] | None = None) -> Response:
    return Response.json(
        {"error": "validation", "message": message, "errors": errors or [message]},
        status=400,
    )


def json_route(method: str, staff_only: bool = False):
    """Wrap a route handler with method/auth checks and error mapping."""

    def decorator(handler: Callable[..., Awaitable[Any]]):
        @wraps(handler)
        async def route(request: Request, datasette) -> Response:
            if staff_only and not is_staff(request):
                return Response.json({"error": "forbidden", "message": "Staff only"}, status=403)
            if request.method != method:
                return Response.json(
                    {"error": "method_not_allowed", "message": f"Use {method}"}, status=405
                )

            try:
                result = await handler(request, datasette)
            except ValidationError as e:
                return validation_response(str(e), e.errors)
            except AdminMutationError as e:
                logger.warning(f"Admin action failed: {e}")
                return Response.json({"error": "admin", "message": str(e)}, status=409)
            except RemoteError as e:
                logger.error(f"Suggestion store failure: {e}")
                return Response.json({"error": "store", "message": str(e)}, status=503)

            if isinstance(result, Response):
                return result
            return Response.json(result)

        return route

    return decorator


async def read_json(request: Request) -> dict[str, Any]:
    body = await request.post_body()
    if not body:
        return {}
    try:
        data = json.loads(body)
    except ValueError:
        raise ValidationError("Request body must be JSON") from None
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def parse_type(value: Any) -> SuggestionType:
    try:
        return SuggestionType(value or SuggestionType.FACTION.value)
    except ValueError:
        raise ValidationError(f"Unknown suggestion type: {value!r}") from None


def parse_limit(value: str | None) -> int:
    if not value:
        return 50
    try:
        limit = int(value)
    except ValueError:
        raise ValidationError("Limit must be an integer") from None
    return max(1, min(limit, MAX_QUERY_LIMIT))


def parse_target(data: dict[str, Any]) -> tuple[str, str, str | None, str, SuggestionType]:
    """Pull (manufacturer, game, faction, id, type) out of an admin payload."""
    suggestion_id = data.get("id")
    if not suggestion_id or not isinstance(suggestion_id, str):
        raise ValidationError("Suggestion id is required")
    return (
        data.get("manufacturer"),
        data.get("game"),
        data.get("faction") or None,
        suggestion_id,
        parse_type(data.get("type")),
    )


# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------


@json_route("GET")
async def suggestions_query(request: Request, datasette):
    include_blocked = request.args.get("include_blocked") in ("1", "true") and is_staff(request)
    type_value = request.args.get("type")

    suggestions = await get_store(datasette).query_by_scope(
        request.args.get("manufacturer"),
        request.args.get("game"),
        request.args.get("faction") or None,
        search_term=request.args.get("q", ""),
        limit=parse_limit(request.args.get("limit")),
        include_blocked=include_blocked,
        suggestion_type=parse_type(type_value) if type_value else None,
    )
    return {"suggestions": [s.to_dict() for s in suggestions]}


@json_route("GET")
async def suggestions_get(request: Request, datasette):
    suggestion_id = request.args.get("id")
    if not suggestion_id:
        raise ValidationError("Suggestion id is required")

    suggestion = await get_store(datasette).get(
        request.args.get("manufacturer"),
        request.args.get("game"),
        request.args.get("faction") or None,
        suggestion_id,
        parse_type(request.args.get("type")),
    )
    return {"suggestion": suggestion.to_dict() if suggestion else None}


@json_route("GET")
async def suggestions_stats(request: Request, datasette):
    stats = await get_store(datasette).get_stats(
        request.args.get("manufacturer"),
        request.args.get("game"),
    )
    return stats.to_dict()


@json_route("GET")
async def suggestions_manufacturers(request: Request, datasette):
    return {"usage": await get_store(datasette).usage_by_manufacturer()}


@json_route("POST")
async def suggestions_record(request: Request, datasette):
    data = await read_json(request)

    metadata = data.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise ValidationError("Metadata must be an object")
    if request.actor and "user_id" not in metadata:
        metadata["user_id"] = actor_id(request)

    result = await get_store(datasette).record_usage(
        data.get("manufacturer"),
        data.get("game"),
        data.get("faction") or None,
        data.get("text"),
        parse_type(data.get("type")),
        metadata,
    )
    return result.to_dict()


@json_route("POST", staff_only=True)
async def suggestions_create(request: Request, datasette):
    data = await read_json(request)
    suggestion = await get_store(datasette).create(
        data.get("manufacturer"),
        data.get("game"),
        data.get("faction") or None,
        data.get("text"),
        parse_type(data.get("type")),
        data.get("metadata") or {},
    )
    return {"suggestion": suggestion.to_dict()}


@json_route("POST", staff_only=True)
async def suggestions_admin_update(request: Request, datasette):
    data = await read_json(request)
    manufacturer, game, faction, suggestion_id, suggestion_type = parse_target(data)

    updates = data.get("updates")
    if not updates or not isinstance(updates, dict):
        raise ValidationError("Updates must be a non-empty object")

    suggestion = await get_store(datasette).update(
        manufacturer,
        game,
        faction,
        suggestion_id,
        suggestion_type,
        updates,
        actor_id=actor_id(request),
    )
    return {"suggestion": suggestion.to_dict()}


@json_route("POST", staff_only=True)
async def suggestions_admin_report(request: Request, datasette):
    data = await read_json(request)
    manufacturer, game, faction, suggestion_id, suggestion_type = parse_target(data)
    reason = validate_moderation("report", data.get("reason", ""))

    suggestion = await get_store(datasette).report(
        manufacturer,
        game,
        faction,
        suggestion_id,
        suggestion_type,
        actor_id=actor_id(request),
        reason=reason,
    )
    return {"suggestion": suggestion.to_dict()}


@json_route("POST", staff_only=True)
async def suggestions_admin_delete(request: Request, datasette):
    data = await read_json(request)
    manufacturer, game, faction, suggestion_id, suggestion_type = parse_target(data)
    reason = validate_moderation("delete", data.get("reason", ""))

    await get_store(datasette).delete(
        manufacturer,
        game,
        faction,
        suggestion_id,
        suggestion_type,
        actor_id=actor_id(request),
        reason=reason,
    )
    return {"deleted": True, "id": suggestion_id}


# -----------------------------------------------------------------------------
# Datasette Hooks
# -----------------------------------------------------------------------------


@hookimpl
def register_routes():
    """Register plugin routes with Datasette."""
    return [
        (r"^/-/suggestions/query$", suggestions_query),
        (r"^/-/suggestions/get$", suggestions_get),
        (r"^/-/suggestions/stats$", suggestions_stats),
        (r"^/-/suggestions/manufacturers$", suggestions_manufacturers),
        (r"^/-/suggestions/record$", suggestions_record),
        (r"^/-/suggestions/create$", suggestions_create),
        (r"^/-/suggestions/admin/update$", suggestions_admin_update),
        (r"^/-/suggestions/admin/report$", suggestions_admin_report),
        (r"^/-/suggestions/admin/delete$", suggestions_admin_delete),
    ]


@hookimpl
def skip_csrf(datasette, scope):
    """JSON API routes are called by clients, not forms."""
    if scope.get("path", "").startswith("/-/suggestions/"):
        return True
    return None


@hookimpl
def startup(datasette):
    """Bring the suggestion database schema up to date."""
    run_migrations(get_db_path(datasette), verbose=False)
