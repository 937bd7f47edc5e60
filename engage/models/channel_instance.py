from sqlalchemy import Column, String, Text
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from engage.database import Base


class ChannelInstance(Base):
    """A connected WhatsApp number; carries the routing rule for new tickets."""

    __tablename__ = "channel_instances"

    id = Column(String(128), primary_key=True)  # broker instance id
    tenant_id = Column(String(64), nullable=False, index=True)
    name = Column(Text)
    default_queue_id = Column(String(64))
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
