# Overview: Flask API routes for the notification bell and the live event stream.

# backend/storefront/routes/notifications.py
"""
Notification routes.

- GET  /api/notifications               history (own + admin rows for admins)
- GET  /api/notifications/unread-count
- POST /api/notifications/<id>/read
- GET  /api/notifications/stream        Server-Sent Events

The stream subscribes the caller's session to its scopes (user:<id>, plus
admin for admins). Each event is one `event:`/`data:` frame; a comment frame
is sent every NOTIFICATION_HEARTBEAT_SECONDS so proxies keep the connection
open. Events missed while disconnected are not replayed; clients refetch.
"""

import json

from flask import Blueprint, Response, request, jsonify, g, current_app, stream_with_context

from ..validation import ValidationError, coerce_int
from ..decorators import require_auth
from ..services import notification_service


notifications_bp = Blueprint("notifications", __name__, url_prefix="/api/notifications")


def format_sse(envelope: dict) -> str:
    return f"event: {envelope['event']}\ndata: {json.dumps(envelope, default=str)}\n\n"


@notifications_bp.get("")
@require_auth
def list_notifications_route():
    try:
        page = coerce_int(request.args.get("page", "1"), "page")
        limit = coerce_int(request.args.get("limit", "20"), "limit")
        unread_only = request.args.get("unread_only", "false").lower() == "true"
    except ValidationError as e:
        return jsonify(e.to_dict()), e.status_code

    return jsonify(notification_service.list_notifications(
        g.current_user,
        page=page,
        limit=limit,
        unread_only=unread_only,
    )), 200


@notifications_bp.get("/unread-count")
@require_auth
def unread_count_route():
    return jsonify({"unread_count": notification_service.unread_count(g.current_user)}), 200


@notifications_bp.post("/<int:notification_id>/read")
@require_auth
def mark_read_route(notification_id: int):
    notification = notification_service.mark_read(g.current_user, notification_id)
    if notification is None:
        return jsonify({"error": "Notification not found"}), 404
    return jsonify({"notification": notification.to_dict()}), 200


@notifications_bp.get("/stream")
@require_auth
def stream_route():
    """
    Live event stream (text/event-stream).

    Query params:
    - once=true: flush whatever is queued and close (used by tests/tools)
    """
    fanout = notification_service.get_fanout()
    scopes = notification_service.scopes_for_user(g.current_user)
    subscription = fanout.subscribe(*scopes)
    heartbeat = float(current_app.config.get("NOTIFICATION_HEARTBEAT_SECONDS", 15))
    once = request.args.get("once", "false").lower() == "true"
    user_id = g.current_user.id
    current_app.logger.info("User %s subscribed to %s", user_id, ", ".join(scopes))

    def generate():
        try:
            yield ": connected\n\n"
            if once:
                for envelope in subscription.drain():
                    yield format_sse(envelope)
                return
            while True:
                envelope = subscription.get(timeout=heartbeat)
                if envelope is None:
                    yield ": heartbeat\n\n"
                    continue
                yield format_sse(envelope)
        finally:
            fanout.unsubscribe(subscription)

    return Response(
        stream_with_context(generate()),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
