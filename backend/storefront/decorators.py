# Overview: Request decorators for API routes (bearer auth, roles, webhook signatures).

import hashlib
import hmac
from functools import wraps

from flask import current_app, g, jsonify, request

from .services import session_service


def _is_authenticated() -> bool:
    return hasattr(g, "current_user")


def require_auth(f):
    """
    Require a valid bearer token.

    Sets g.current_user and g.session_context. Returns 401 when the
    Authorization header is missing, or the token is unknown, expired,
    idle or belongs to a deactivated user.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1]
        context = session_service.validate_session(token)
        if not context:
            return jsonify({"error": "Invalid or expired token"}), 401

        g.current_user = context.user
        g.session_context = context
        return f(*args, **kwargs)

    return decorated_function


def require_role(role: str):
    """Require the authenticated user to hold `role`. Use after @require_auth."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _is_authenticated():
                return jsonify({"error": "Authentication required"}), 401
            if g.current_user.role != role:
                current_app.logger.warning(
                    "User %s denied %s %s (requires %s)",
                    g.current_user.id, request.method, request.path, role,
                )
                return jsonify({"error": "Permission denied", "required_role": role}), 403
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def sign_payload(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_webhook_signature(f):
    """
    Check X-Webhook-Signature (hex HMAC-SHA256 of the raw body) when
    PAYMENT_WEBHOOK_SECRET is configured.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        secret = current_app.config.get("PAYMENT_WEBHOOK_SECRET")
        if not secret:
            current_app.logger.warning("PAYMENT_WEBHOOK_SECRET not set; accepting unsigned webhook")
            return f(*args, **kwargs)

        provided = request.headers.get("X-Webhook-Signature", "")
        expected = sign_payload(secret, request.get_data())
        if not provided or not hmac.compare_digest(provided, expected):
            current_app.logger.warning("Rejected webhook with bad signature from %s", request.remote_addr)
            return jsonify({"error": "Invalid signature", "code": "INVALID_SIGNATURE"}), 401
        return f(*args, **kwargs)

    return decorated_function
