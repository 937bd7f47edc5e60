import uuid

from sqlalchemy import Column, String, UniqueConstraint, Uuid
from sqlalchemy.types import DateTime

from engage.database import Base


class InboundReceipt(Base):
    """Idempotency reservation for one broker message."""

    __tablename__ = "inbound_receipts"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "channel_instance_id",
            "external_message_id",
            name="uq_inbound_receipts_event",
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=False)
    channel_instance_id = Column(String(128), nullable=False)
    external_message_id = Column(String(255), nullable=False)
    message_id = Column(Uuid)
    received_at = Column(DateTime(timezone=True), nullable=False)
