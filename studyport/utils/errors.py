"""Standardised API error responses.

Usage
-----
    from studyport.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Study not found")
    return api_error(E.STAGING_EXPIRED, str(exc))
    return api_error(E.DATABASE, str(exc), details=exc.details)
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants (``ERR_`` prefix)."""

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    ARCHIVE_CORRUPT = "ERR_ARCHIVE_CORRUPT"

    # Permissions – HTTP 403
    FORBIDDEN = "ERR_FORBIDDEN"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Staged import gone – HTTP 410
    STAGING_EXPIRED = "ERR_STAGING_EXPIRED"

    # Server – HTTP 500
    DATABASE = "ERR_DATABASE"
    FILESYSTEM = "ERR_FILESYSTEM"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.ARCHIVE_CORRUPT: 400,
    E.FORBIDDEN: 403,
    E.NOT_FOUND: 404,
    E.STAGING_EXPIRED: 410,
    E.DATABASE: 500,
    E.FILESYSTEM: 500,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (field errors, reconciliation facts, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status
