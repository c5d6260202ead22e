# Overview: Request decorators for API routes.

from functools import wraps
from flask import request, jsonify, g


ACTOR_HEADER = "X-Actor"
MAX_ACTOR_LENGTH = 120


def with_actor(f):
    """
    Resolve who is performing the request and expose it as g.actor.

    The actor comes from the X-Actor header, falling back to an "actor" field
    in the JSON body. It is recorded on history entries and documents; it is
    attribution only, not authentication. Missing actor leaves g.actor None.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        actor = request.headers.get(ACTOR_HEADER)
        if actor is None:
            payload = request.get_json(silent=True)
            if isinstance(payload, dict):
                actor = payload.get("actor")

        if actor is not None:
            if not isinstance(actor, str):
                return jsonify({"error": "actor must be a string"}), 400
            actor = actor.strip() or None
            if actor and len(actor) > MAX_ACTOR_LENGTH:
                return jsonify({"error": f"actor must be at most {MAX_ACTOR_LENGTH} characters"}), 400

        g.actor = actor
        return f(*args, **kwargs)

    return decorated_function


def require_json(f):
    """Reject requests whose body is not a JSON object with a 400."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            return jsonify({"error": "Request body must be a JSON object"}), 400
        return f(*args, **kwargs)

    return decorated_function
