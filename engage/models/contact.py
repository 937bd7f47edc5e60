import uuid

from sqlalchemy import Column, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.types import DateTime

from engage.database import Base


class Contact(Base):
    __tablename__ = "contacts"
    __table_args__ = (
        UniqueConstraint("tenant_id", "channel_instance_id", "address", name="uq_contacts_natural_key"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=False)
    channel_instance_id = Column(String(128), nullable=False)
    address = Column(String(255), nullable=False)  # phone digits or broker handle
    display_name = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False)
    last_seen_at = Column(DateTime(timezone=True))

    tickets = relationship("Ticket", back_populates="contact")
