"""
Study Import/Export Service
Authentication & acting-identity middleware.

Provides:
    - API key authentication via X-API-Key header or ?api_key= query param
    - Resolution of the acting user (email) for every /api/v1/* request
    - CSRF mitigation for state-changing requests (JSON or multipart only)

Security model:
    - All /api/v1/* endpoints require a valid API key (except /api/v1/health)
    - Each API key maps to one user email; study membership decides the rest
    - API keys are configured via environment variables

Configuration (env vars):
    API_KEYS         : comma-separated list of "<key>:<email>" entries
                        e.g. "k1:alice@example.org,k2:bob@example.org"
    API_AUTH_ENABLED : set to "false" to disable auth (development only).
                        The acting user then comes from the X-User-Email
                        header, falling back to DEV_USER_EMAIL.
"""

import logging
import os
from typing import Optional

from flask import current_app, g, jsonify, request

from studyport.models import db
from studyport.models.study import User

logger = logging.getLogger(__name__)

# Body types accepted on state-changing requests
_ALLOWED_CONTENT_TYPES = ("application/json", "multipart/form-data")


def _parse_api_keys() -> dict[str, str]:
    """
    Parse API_KEYS env var into {key: email} mapping.

    Format: "key1:alice@example.org,key2:bob@example.org"
    Entries without an email are ignored.
    """
    raw = os.getenv("API_KEYS", "")
    if not raw.strip():
        return {}

    keys = {}
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        if ":" not in entry:
            logger.warning("API key entry without email ignored: %s...", entry[:4])
            continue
        key, email = entry.split(":", 1)
        email = email.strip().lower()
        if key.strip() and email:
            keys[key.strip()] = email
    return keys


def _is_auth_enabled() -> bool:
    """Check whether authentication is enabled (env var or app config)."""
    # Check env var first
    env_val = os.getenv("API_AUTH_ENABLED", "")
    if env_val:
        return env_val.lower() not in ("false", "0", "no", "off")
    # Fall back to Flask app config
    try:
        return current_app.config.get("API_AUTH_ENABLED", "true").lower() not in ("false", "0", "no", "off")
    except RuntimeError:
        # Outside app context
        return True


def _get_api_key_from_request() -> Optional[str]:
    """Extract API key from request header or query parameter."""
    # Prefer header
    key = request.headers.get("X-API-Key", "").strip()
    if key:
        return key
    # Fallback to query param (less secure, for quick testing)
    return request.args.get("api_key", "").strip() or None


def _check_content_type():
    """
    For state-changing requests with a body, require JSON or multipart.
    Plain form posts and text bodies are rejected with 415.
    """
    if request.method in ("POST", "PUT", "PATCH", "DELETE"):
        ct = request.content_type or ""
        if request.content_length and request.content_length > 0 and not any(
            allowed in ct for allowed in _ALLOWED_CONTENT_TYPES
        ):
            return jsonify({
                "error": "Content-Type must be application/json or multipart/form-data",
            }), 415
    return None


def get_acting_user() -> User:
    """Return the User row for the current request's identity, creating it on first sight.

    Must be called inside a request that passed ``init_auth``'s hook.
    """
    email = getattr(g, "current_user_email", None)
    if not email:
        raise RuntimeError("No acting identity on this request")
    user = User.query.filter_by(email=email).first()
    if user is None:
        user = User(email=email, name=email.split("@", 1)[0])
        db.session.add(user)
        db.session.commit()
        logger.info("Registered user %s", email, extra={"user_email": email})
    return user


def init_auth(app):
    """
    Install authentication middleware on the Flask app.

    - Attaches a before_request hook for API routes
    - Skips the health check and CORS pre-flight requests
    """
    @app.before_request
    def _before_request_auth():
        if not request.path.startswith("/api/v1/"):
            return None
        if request.path == "/api/v1/health":
            return None
        # OPTIONS pre-flight requests don't need auth
        if request.method == "OPTIONS":
            return None

        # CSRF check (Content-Type enforcement)
        csrf_error = _check_content_type()
        if csrf_error:
            return csrf_error

        if not _is_auth_enabled():
            email = request.headers.get("X-User-Email", "").strip().lower()
            g.current_user_email = email or current_app.config.get("DEV_USER_EMAIL", "admin@localhost")
            g.api_key = "dev-mode"
            return None

        api_key = _get_api_key_from_request()
        if not api_key:
            return jsonify({"error": "Authentication required. Provide X-API-Key header."}), 401

        api_keys = _parse_api_keys()
        if not api_keys:
            logger.error("API_KEYS env var is not configured but API_AUTH_ENABLED=true")
            return jsonify({"error": "Server authentication not configured"}), 500

        email = api_keys.get(api_key)
        if email is None:
            logger.warning("Invalid API key attempt: %s...", api_key[:8])
            return jsonify({"error": "Invalid API key"}), 401

        g.current_user_email = email
        g.api_key = api_key
        return None
