"""
WebhookEvent model for tracking processed payment provider webhooks.

Used for idempotency - ensures webhooks are processed exactly once.
"""

from sqlalchemy import Column, String, DateTime, func

from bookgate.db_base import Base
from bookgate.models.base import generate_uuid, utcnow


class WebhookEvent(Base):
    """
    Ledger of processed provider events.

    The provider retries deliveries until acknowledged, so the same event
    id can arrive several times and out of order. A row is written in the
    same transaction as the entitlement changes it caused.
    """

    __tablename__ = "webhook_events"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    provider_event_id = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="Provider event id"
    )

    event_type = Column(String(255), nullable=False, index=True)

    payload_hash = Column(
        String(64),
        nullable=True,
        comment="SHA-256 hash of payload for debugging"
    )

    outcome = Column(String(64), nullable=True, comment="processed or skip reason")

    processed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<WebhookEvent(id={self.provider_event_id}, type={self.event_type})>"
