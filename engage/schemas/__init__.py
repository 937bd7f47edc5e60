from engage.schemas.automation import ModeResponse, ModeUpdateRequest, TicketModeResponse
from engage.schemas.webhook import WebhookAcceptedResponse, WebhookEventOutcome

__all__ = [
    "ModeUpdateRequest",
    "ModeResponse",
    "TicketModeResponse",
    "WebhookAcceptedResponse",
    "WebhookEventOutcome",
]
