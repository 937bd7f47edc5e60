"""In-process tenant-scoped pub/sub for dashboard subscribers.

Delivery is at-most-once and best-effort: the database write always
happens first, and a slow subscriber loses events instead of blocking
the publisher.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional

from engage.logging_config import get_logger
from engage.models import Message, Ticket
from engage.services.state_service import ModeResolution

logger = get_logger("realtime")

TOPIC_MESSAGE_PERSISTED = "message.persisted"
TOPIC_TICKET_UPDATED = "ticket.updated"
TOPIC_MESSAGE_UPDATED = "message.updated"


@dataclass(eq=False)
class Subscription:
    tenant_id: str
    ticket_id: Optional[str] = None
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    dropped: int = 0

    def wants(self, payload: dict[str, Any]) -> bool:
        # events without a ticketId (tenant or queue mode changes) reach every subscriber
        ticket_id = payload.get("ticketId")
        return self.ticket_id is None or ticket_id is None or ticket_id == self.ticket_id

    async def next_event(self) -> dict[str, Any]:
        return await self.queue.get()


class RealtimeHub:
    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._rooms: dict[str, set[Subscription]] = {}

    def subscribe(self, tenant_id: str, ticket_id: Optional[str] = None) -> Subscription:
        subscription = Subscription(tenant_id=tenant_id, ticket_id=ticket_id, queue=asyncio.Queue(maxsize=self.queue_size))
        self._rooms.setdefault(tenant_id, set()).add(subscription)
        logger.debug(f"Subscriber joined tenant room {tenant_id}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        room = self._rooms.get(subscription.tenant_id)
        if not room:
            return
        room.discard(subscription)
        if not room:
            del self._rooms[subscription.tenant_id]

    def subscriber_count(self, tenant_id: str) -> int:
        return len(self._rooms.get(tenant_id, ()))

    def publish(self, tenant_id: str, topic: str, payload: dict[str, Any]) -> int:
        """Fan out to the tenant room. Returns how many subscribers received the event."""
        event = {"topic": topic, "tenantId": tenant_id, "payload": payload}
        delivered = 0
        for subscription in list(self._rooms.get(tenant_id, ())):
            if not subscription.wants(payload):
                continue
            try:
                subscription.queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                subscription.dropped += 1
                logger.warning(
                    "Realtime subscriber queue full, event dropped",
                    extra={"context": {"tenant_id": tenant_id, "topic": topic, "dropped": subscription.dropped}},
                )
        return delivered


def message_payload(message: Message) -> dict[str, Any]:
    return {
        "messageId": str(message.id),
        "ticketId": str(message.ticket_id),
        "direction": message.direction,
        "content": message.content,
        "metadata": {key: value for key, value in (message.message_metadata or {}).items() if key != "rawPayload"},
        "dispatchStatus": message.dispatch_status,
        "createdAt": message.created_at.isoformat() if message.created_at else None,
    }


def ticket_payload(ticket: Ticket, mode: Optional[str] = None, scope: Optional[str] = None) -> dict[str, Any]:
    payload = {
        "ticketId": str(ticket.id),
        "contactId": str(ticket.contact_id),
        "queueId": ticket.queue_id,
        "status": ticket.status,
        "automationMode": ticket.automation_mode,
    }
    if mode is not None:
        payload["effectiveMode"] = mode
        payload["modeScope"] = scope
    return payload


def mode_change_payload(resolution: ModeResolution) -> dict[str, Any]:
    """Tenant or queue wide override; every ticket under it may have changed mode."""
    return {
        "ticketId": None,
        "queueId": resolution.queue_id,
        "effectiveMode": resolution.mode.value,
        "modeScope": resolution.scope.value,
    }
