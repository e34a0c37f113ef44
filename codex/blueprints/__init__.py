"""
Codex Structure
Blueprint registry and shared request helpers.
"""

from flask import current_app, request


def actor_id() -> str | None:
    """Actor identifier supplied by the auth layer (trusted, never verified here)."""
    return request.headers.get("X-User-Id") or None


def json_body() -> dict:
    """JSON object body, or {} for a missing / non-object body."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def page_args() -> tuple[int, int]:
    """Parse ``page`` / ``per_page`` query params (per_page capped by config).

    Returns:
        (page, per_page)
    """
    default = current_app.config.get("CHANGELOG_PER_PAGE", 50)
    max_per_page = current_app.config.get("CHANGELOG_MAX_PER_PAGE", 200)
    try:
        page = max(int(request.args.get("page", 1)), 1)
    except (ValueError, TypeError):
        page = 1
    try:
        per_page = min(max(int(request.args.get("per_page", default)), 1), max_per_page)
    except (ValueError, TypeError):
        per_page = default
    return page, per_page
