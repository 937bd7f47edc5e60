import uuid

from sqlalchemy import Column, String, UniqueConstraint, Uuid
from sqlalchemy.types import DateTime

from engage.database import Base

SCOPE_TENANT = "tenant"
SCOPE_QUEUE = "queue"
TENANT_SCOPE_KEY = "__global__"


class AutomationPreference(Base):
    """Tenant- and queue-level automation mode. Ticket overrides live on tickets."""

    __tablename__ = "automation_preferences"
    __table_args__ = (
        UniqueConstraint("tenant_id", "scope", "scope_key", name="uq_automation_preferences_scope"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=False)
    scope = Column(String(16), nullable=False)  # tenant, queue
    scope_key = Column(String(64), nullable=False)  # queue id, or __global__ for tenant scope
    mode = Column(String(16), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
