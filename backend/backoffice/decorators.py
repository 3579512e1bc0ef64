# Overview: Request decorators for API routes.

from functools import wraps

from flask import g, jsonify, request


def _parse_actor_id(raw: str | None) -> int | None:
    if raw is None:
        return None
    raw = raw.strip()
    if not raw.isdigit():
        return None
    value = int(raw)
    return value if value > 0 else None


def require_actor(f):
    """
    Require an acting user id on mutating calls.

    Identity is established upstream; this service only records who did
    what. Sets:
    - g.actor_id: the positive integer from the X-Actor-Id header

    Returns 401 when the header is missing or not a positive integer.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        actor_id = _parse_actor_id(request.headers.get("X-Actor-Id"))
        if actor_id is None:
            return jsonify({
                "error": "actor_required",
                "message": "X-Actor-Id header with a positive integer is required",
            }), 401

        g.actor_id = actor_id
        return f(*args, **kwargs)

    return decorated_function
