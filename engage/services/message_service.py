from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from engage.models import Message, Ticket
from engage.models.message import DIRECTION_INBOUND, DIRECTION_OUTBOUND

ROLE_BY_DIRECTION = {DIRECTION_INBOUND: "user", DIRECTION_OUTBOUND: "assistant"}

# broker acks only move a message forward; a late "delivered" never undoes "read"
DISPATCH_STATUS_RANK = {"pending": 0, "failed": 0, "sent": 1, "delivered": 2, "read": 3}


def has_usable_text(content: Optional[str]) -> bool:
    return content is not None and bool(content.strip())


async def save_message(
    session: AsyncSession,
    ticket: Ticket,
    direction: str,
    content: Optional[str],
    message_metadata: Optional[dict] = None,
    created_at: Optional[datetime] = None,
    dispatch_status: Optional[str] = None,
) -> Message:
    """Save message to database."""
    message = Message(
        tenant_id=ticket.tenant_id,
        ticket_id=ticket.id,
        direction=direction,
        content=content,
        message_metadata=message_metadata or {},
        dispatch_status=dispatch_status,
        created_at=created_at or datetime.now(timezone.utc),
    )
    session.add(message)
    await session.flush()
    return message


async def get_message(session: AsyncSession, message_id: UUID) -> Optional[Message]:
    return await session.get(Message, message_id)


async def get_recent_messages(session: AsyncSession, ticket_id: UUID, limit: int) -> list[Message]:
    """Last ``limit`` messages of a ticket, oldest first."""
    result = await session.execute(
        select(Message)
        .where(Message.ticket_id == ticket_id)
        .order_by(Message.created_at.desc(), Message.id.desc())
        .limit(limit)
    )
    return list(reversed(result.scalars().all()))


def build_context_window(messages: list[Message]) -> list[dict[str, str]]:
    """Role-tagged history for the generation backend. Messages without text are left out."""
    window = []
    for message in messages:
        if not has_usable_text(message.content):
            continue
        window.append({"role": ROLE_BY_DIRECTION.get(message.direction, "user"), "content": message.content})
    return window


async def get_last_ai_confidence(session: AsyncSession, ticket_id: UUID) -> Optional[float]:
    """Confidence of the most recent automated reply, or None if there is none or it carried none."""
    result = await session.execute(
        select(Message)
        .where(Message.ticket_id == ticket_id, Message.direction == DIRECTION_OUTBOUND)
        .order_by(Message.created_at.desc(), Message.id.desc())
    )
    for message in result.scalars():
        metadata = message.message_metadata or {}
        if not metadata.get("aiGenerated"):
            continue
        confidence = metadata.get("confidence")
        if isinstance(confidence, (int, float)) and not isinstance(confidence, bool):
            return float(confidence)
        return None
    return None


async def mark_dispatch(
    session: AsyncSession,
    message_id: UUID,
    status: str,
    external_id: Optional[str] = None,
    error: Optional[str] = None,
) -> None:
    """Record the delivery outcome. Content and metadata stay untouched."""
    await session.execute(
        update(Message)
        .where(Message.id == message_id)
        .values(dispatch_status=status, external_id=external_id, dispatch_error=error)
    )


async def apply_delivery_ack(
    session: AsyncSession, tenant_id: str, external_id: str, status: str
) -> Optional[Message]:
    """Advance the outbound message the broker knows as ``external_id``.

    Returns the message when its status moved, None when it is unknown or
    already at (or past) ``status``.
    """
    result = await session.execute(
        select(Message)
        .where(
            Message.tenant_id == tenant_id,
            Message.external_id == external_id,
            Message.direction == DIRECTION_OUTBOUND,
        )
        .order_by(Message.created_at.desc())
        .limit(1)
    )
    message = result.scalar_one_or_none()
    if message is None:
        return None
    current = DISPATCH_STATUS_RANK.get(message.dispatch_status or "pending", 0)
    if DISPATCH_STATUS_RANK.get(status, 0) <= current:
        return None
    message.dispatch_status = status
    message.dispatch_error = None
    await session.flush()
    return message
