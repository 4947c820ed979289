# Overview: Request decorators for API routes.

import hmac
from functools import wraps

from flask import current_app, jsonify, request


def require_admin(f):
    """
    Require the shared admin bearer token.

    Returns 401 if the Authorization header is missing or malformed, and 403
    if the token does not match ADMIN_API_TOKEN. An empty ADMIN_API_TOKEN
    disables admin routes entirely.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1].strip()
        expected = current_app.config.get("ADMIN_API_TOKEN") or ""
        if not expected or not hmac.compare_digest(token.encode(), expected.encode()):
            current_app.logger.warning("Rejected admin request to %s from %s", request.path, request.remote_addr)
            return jsonify({"error": "Admin access required"}), 403

        return f(*args, **kwargs)

    return decorated_function
