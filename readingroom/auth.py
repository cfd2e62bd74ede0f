"""Bearer-token authentication and role checks for the API."""
from __future__ import annotations

from functools import wraps

from flask import current_app, g, jsonify, request
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from .extensions import db
from .models import User


def _serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt="auth-token")


def build_token(user: User) -> str:
    return _serializer().dumps({"user_id": user.user_id, "role": user.role})


def get_token_identity() -> int | None:
    """Extract and validate user_id from the Authorization header.

    Returns None when the header is missing, malformed, tampered with or
    older than AUTH_TOKEN_MAX_AGE.
    """
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None

    token = auth_header[7:]
    try:
        payload = _serializer().loads(token, max_age=current_app.config.get("AUTH_TOKEN_MAX_AGE", 86400))
    except (BadSignature, SignatureExpired):
        return None
    return payload.get("user_id")


def get_current_user() -> User | None:
    user_id = get_token_identity()
    if user_id is None:
        return None
    return db.session.get(User, user_id)


def require_roles(*roles: str):
    """Require a valid bearer token, optionally restricted to some roles.

    The resolved user is stored on ``g.current_user``.

    Usage:
        @require_roles("Admin", "Manager")
        def list_inventory():
            ...
    """
    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            user = get_current_user()
            if user is None:
                return jsonify({"error": "unauthorized", "message": "valid bearer token required"}), 401
            if roles and user.role not in roles:
                return jsonify({"error": "forbidden", "message": "insufficient role"}), 403
            g.current_user = user
            return view(*args, **kwargs)
        return wrapped
    return decorator


def allowed_location_ids(user: User) -> list[int] | None:
    """Locations the user may act on, or None for unrestricted."""
    if user.role == "Manager" and user.locations:
        return user.location_ids
    return None


def can_access_location(user: User, location_id: int | None) -> bool:
    allowed = allowed_location_ids(user)
    return allowed is None or location_id in allowed


def scope_to_locations(query, column, user: User):
    allowed = allowed_location_ids(user)
    if allowed is None:
        return query
    return query.filter(column.in_(allowed))
