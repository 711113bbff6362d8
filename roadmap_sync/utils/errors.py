"""Standardised API error responses.

Usage
-----
    from roadmap_sync.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Workspace not found")
    return api_error(E.VALIDATION_INVALID, "max_depth must be between 1 and 10")
    return api_error(E.SYNC_BUSY, str(exc), details={"workspace_id": wid})
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_  prefix for standard application errors
     • SYNC_ prefix for hierarchy-sync specific errors
    """

    # Validation – HTTP 422
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_STATE = "ERR_CONFLICT_STATE"

    # Server – HTTP 500
    INTERNAL = "ERR_INTERNAL"

    # Hierarchy sync
    SYNC_BUSY = "SYNC_BUSY"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_INVALID: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_STATE: 409,
    E.INTERNAL: 500,
    E.SYNC_BUSY: 409,
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
        Human-readable explanation for operators / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (field errors, workspace id, etc.).

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
