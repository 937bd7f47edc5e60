from typing import Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, Field


class ModeUpdateRequest(BaseModel):
    # Validated against the mode synonyms in the service so the error can list them
    mode: str
    queueId: Optional[str] = Field(default=None, validation_alias=AliasChoices("queueId", "queue_id"))


class ModeResponse(BaseModel):
    tenantId: str
    queueId: Optional[str] = None
    mode: str
    scope: str
    aiEnabled: bool


class TicketModeResponse(BaseModel):
    ticketId: UUID
    tenantId: str
    queueId: Optional[str] = None
    status: str
    automationMode: Optional[str] = None
    mode: str
    scope: str
    aiEnabled: bool
