from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

DIRECTION_INBOUND = "INBOUND"


@dataclass
class InboundEvent:
    """One broker message in canonical form."""

    tenant_id: Optional[str]
    channel_instance_id: str
    external_message_id: str
    sender_address: str
    content: Optional[str]  # None for media-only; "" is a real (empty) text
    timestamp: datetime
    sender_display_name: Optional[str] = None
    broker_kind: str = ""
    raw_payload: dict[str, Any] = field(default_factory=dict)
    direction: str = DIRECTION_INBOUND


@dataclass
class DeliveryAck:
    """Broker acknowledgement (sent, delivered, read) for a message we sent."""

    tenant_id: Optional[str]
    channel_instance_id: Optional[str]
    external_message_id: str
    status: str
    timestamp: datetime


@dataclass
class IgnoredMessage:
    """A message deliberately skipped by the normalizer (echoes, group chats, unreadable records)."""

    index: int
    reason: str
    external_message_id: Optional[str] = None
    detail: Optional[str] = None


@dataclass
class NormalizationResult:
    broker_kind: str
    events: list[InboundEvent] = field(default_factory=list)
    ignored: list[IgnoredMessage] = field(default_factory=list)
    acks: list[DeliveryAck] = field(default_factory=list)


class ReplyOutcome(str, Enum):
    SENT = "SENT"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


@dataclass
class ReplyAttempt:
    """Observability record of one orchestration run. Not a source of truth."""

    conversation_id: UUID
    outcome: ReplyOutcome
    reason: Optional[str] = None
    latency_ms: int = 0
    context_window: list[dict[str, str]] = field(default_factory=list)
    message_id: Optional[UUID] = None
    confidence: Optional[float] = None

    def as_log_context(self) -> dict[str, Any]:
        return {
            "ticket_id": str(self.conversation_id),
            "outcome": self.outcome.value,
            "reason": self.reason,
            "latency_ms": self.latency_ms,
            "context_size": len(self.context_window),
            "message_id": str(self.message_id) if self.message_id else None,
        }
