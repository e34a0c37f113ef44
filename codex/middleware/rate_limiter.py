"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in codex/__init__.py with no default limits;
this module applies granular limits per route category.

Usage:
    from codex.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

# Authenticated blueprints that carry mutation routes.
_WRITE_BLUEPRINTS = ("schema", "objects", "workflow", "share_links")


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Public share endpoints: SHARE_RATE_LIMIT (anonymous callers)
        - Write blueprints:       WRITE_RATE_LIMIT
        - Health check:           exempt (registered on the app, not a blueprint)

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    share_limit = app.config.get("SHARE_RATE_LIMIT", "30/minute")
    write_limit = app.config.get("WRITE_RATE_LIMIT", "120/minute")

    bp = app.blueprints.get("public_share")
    if bp:
        limiter.limit(share_limit)(bp)

    for bp_name in _WRITE_BLUEPRINTS:
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(write_limit)(bp)

    app.logger.info(
        "Rate limiter configured: public share %s, write %s", share_limit, write_limit
    )
