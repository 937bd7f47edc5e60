from typing import Optional
from uuid import UUID

from pydantic import BaseModel


class WebhookEventOutcome(BaseModel):
    externalMessageId: str
    status: str  # accepted, duplicate
    ticketId: Optional[UUID] = None
    messageId: Optional[UUID] = None


class WebhookAcceptedResponse(BaseModel):
    accepted: int
    duplicates: int
    ignored: int
    acknowledged: int = 0
    events: list[WebhookEventOutcome] = []
