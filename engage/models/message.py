import uuid

from sqlalchemy import JSON, Column, ForeignKey, Index, String, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.types import DateTime

from engage.database import Base

DIRECTION_INBOUND = "INBOUND"
DIRECTION_OUTBOUND = "OUTBOUND"


class Message(Base):
    """Immutable unit of content.

    Only the delivery columns (external_id, dispatch_status, dispatch_error)
    are written after insert.
    """

    __tablename__ = "messages"
    __table_args__ = (Index("ix_messages_ticket_created", "ticket_id", "created_at"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=False)
    ticket_id = Column(Uuid, ForeignKey("tickets.id"), nullable=False)
    direction = Column(String(8), nullable=False)
    content = Column(Text)  # NULL for media-only deliveries
    message_metadata = Column("metadata", JSON().with_variant(JSONB, "postgresql"), nullable=False, default=dict)
    external_id = Column(String(255))
    dispatch_status = Column(String(16))  # pending, sent, delivered, read, failed; NULL for inbound
    dispatch_error = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False)

    ticket = relationship("Ticket", back_populates="messages")
