from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class WebhookEvent(db.Model):
    """Delivery log for gateway callbacks; event_id uniqueness makes redelivery a no-op."""
    __tablename__ = "webhook_events"

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(32), nullable=False)
    event_id = db.Column(db.String(128), nullable=False, unique=True)
    reference = db.Column(db.String(128), nullable=True, index=True)
    status = db.Column(db.String(32), nullable=False, default="received")  # received, processed, ignored, failed
    payload_json = db.Column(db.JSON, nullable=True)
    error = db.Column(db.Text, nullable=True)
    processed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "provider": self.provider,
            "event_id": self.event_id,
            "reference": self.reference or "",
            "status": self.status,
            "error": self.error or "",
            "processed_at": to_utc_z(self.processed_at),
            "created_at": to_utc_z(self.created_at),
        }
