"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in studyport/__init__.py with no default
limits; this module applies the limit for the import/export routes.

Usage:
    from studyport.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request as flask_request

logger = logging.getLogger(__name__)

# Uploads unpack whole archives; exports pack whole asset trees
IMPORT_EXPORT_LIMIT = "30/minute"


def rate_limit_key():
    """Rate limit key: acting user's email if resolved, else remote IP."""
    email = getattr(g, "current_user_email", None)
    if email:
        return f"user:{email}"
    return flask_request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per acting user):
        - Import/export endpoints: 30/minute
        - Health check:            exempt (not in a blueprint)

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("import_export")
    if bp:
        limiter.limit(IMPORT_EXPORT_LIMIT, key_func=rate_limit_key)(bp)

    app.logger.info("Rate limiter configured, import/export: %s", IMPORT_EXPORT_LIMIT)
