from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z


class Notification(db.Model):
    """
    Persisted copy of a fanout event, for the notification bell.

    recipient_scope is "admin" (shared by every admin) or "user:<id>".
    Best-effort: nothing in the order/payment workflow reads these rows.
    """
    __tablename__ = "notifications"
    __table_args__ = (
        db.Index("ix_notifications_scope_read", "recipient_scope", "is_read"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    recipient_scope = db.Column(db.String(32), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    type = db.Column(db.String(32), nullable=False)
    title = db.Column(db.String(255), nullable=True)
    message = db.Column(db.Text, nullable=True)
    payload = db.Column(db.JSON, nullable=True)

    is_read = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "recipient_scope": self.recipient_scope,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "payload": self.payload,
            "is_read": self.is_read,
            "created_at": to_utc_z(self.created_at),
        }
