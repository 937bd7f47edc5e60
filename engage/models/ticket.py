import uuid
from enum import Enum

from sqlalchemy import Column, ForeignKey, Index, String, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.types import DateTime

from engage.database import Base


class TicketStatus(str, Enum):
    OPEN = "OPEN"
    PENDING = "PENDING"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


TERMINAL_STATUSES = (TicketStatus.RESOLVED.value, TicketStatus.CLOSED.value)


class Ticket(Base):
    __tablename__ = "tickets"
    __table_args__ = (Index("ix_tickets_contact_status", "contact_id", "status"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=False)
    contact_id = Column(Uuid, ForeignKey("contacts.id"), nullable=False)
    channel_instance_id = Column(String(128), nullable=False)
    queue_id = Column(String(64))
    status = Column(String(16), nullable=False, default=TicketStatus.OPEN.value)
    automation_mode = Column(String(16))  # ticket-level override, NULL = inherit
    created_at = Column(DateTime(timezone=True), nullable=False)
    last_activity_at = Column(DateTime(timezone=True))
    closed_at = Column(DateTime(timezone=True))

    contact = relationship("Contact", back_populates="tickets")
    messages = relationship("Message", back_populates="ticket", order_by="Message.created_at")
