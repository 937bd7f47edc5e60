"""Attach a canonical inbound event to its contact, ticket and message rows."""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from engage.database import dialect_insert
from engage.logging_config import get_logger
from engage.models import ChannelInstance, Contact, Message, Ticket, TicketStatus
from engage.models.message import DIRECTION_INBOUND
from engage.models.ticket import TERMINAL_STATUSES
from engage.services.errors import PersistenceFailure
from engage.services.events import InboundEvent
from engage.services.message_service import save_message

logger = get_logger("conversation_service")


@dataclass
class ResolvedConversation:
    contact: Contact
    ticket: Ticket
    message: Message
    ticket_created: bool = False


async def get_channel_instance(session: AsyncSession, instance_id: str) -> Optional[ChannelInstance]:
    return await session.get(ChannelInstance, instance_id)


async def _find_contact(session: AsyncSession, tenant_id: str, instance_id: str, address: str) -> Optional[Contact]:
    result = await session.execute(
        select(Contact).where(
            Contact.tenant_id == tenant_id,
            Contact.channel_instance_id == instance_id,
            Contact.address == address,
        )
    )
    return result.scalar_one_or_none()


async def get_or_create_contact(session: AsyncSession, event: InboundEvent) -> Contact:
    """Upsert by (tenant, channel instance, address).

    Losing the insert race to a concurrent delivery is expected; the row
    the other writer created is read back once.
    """
    contact = await _find_contact(session, event.tenant_id, event.channel_instance_id, event.sender_address)

    if contact is None:
        insert = dialect_insert(session)
        result = await session.execute(
            insert(Contact)
            .values(
                id=uuid.uuid4(),
                tenant_id=event.tenant_id,
                channel_instance_id=event.channel_instance_id,
                address=event.sender_address,
                display_name=event.sender_display_name,
                created_at=datetime.now(timezone.utc),
            )
            .on_conflict_do_nothing(index_elements=["tenant_id", "channel_instance_id", "address"])
        )
        if result.rowcount == 0:
            logger.info(
                "Contact insert lost a concurrent race, reading it back",
                extra={"context": {"tenant_id": event.tenant_id, "address": event.sender_address}},
            )
        contact = await _find_contact(session, event.tenant_id, event.channel_instance_id, event.sender_address)
        if contact is None:
            raise PersistenceFailure(f"Contact {event.sender_address} could not be created or read back")

    if event.sender_display_name and contact.display_name != event.sender_display_name:
        contact.display_name = event.sender_display_name
    contact.last_seen_at = datetime.now(timezone.utc)
    return contact


async def find_active_ticket(session: AsyncSession, contact_id: uuid.UUID) -> Optional[Ticket]:
    """Most recent ticket of the contact that is not RESOLVED or CLOSED."""
    result = await session.execute(
        select(Ticket)
        .where(Ticket.contact_id == contact_id, Ticket.status.notin_(TERMINAL_STATUSES))
        .order_by(Ticket.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def open_ticket(session: AsyncSession, contact: Contact, event: InboundEvent) -> Ticket:
    """New OPEN ticket routed to the channel's default queue. No mode is carried over."""
    instance = await get_channel_instance(session, event.channel_instance_id)
    ticket = Ticket(
        tenant_id=contact.tenant_id,
        contact_id=contact.id,
        channel_instance_id=event.channel_instance_id,
        queue_id=instance.default_queue_id if instance else None,
        status=TicketStatus.OPEN.value,
        created_at=datetime.now(timezone.utc),
        last_activity_at=event.timestamp,
    )
    session.add(ticket)
    await session.flush()
    return ticket


async def touch_ticket_activity(session: AsyncSession, ticket_id: uuid.UUID, activity_at: datetime) -> bool:
    """Advance last_activity_at only forward. Returns False when a later event already won."""
    result = await session.execute(
        update(Ticket)
        .where(
            Ticket.id == ticket_id,
            or_(Ticket.last_activity_at.is_(None), Ticket.last_activity_at < activity_at),
        )
        .values(last_activity_at=activity_at)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


async def resolve(session: AsyncSession, event: InboundEvent) -> ResolvedConversation:
    """Contact upsert, ticket selection, inbound message insert.

    A message for a contact whose tickets are all terminal opens a new
    ticket; terminal tickets are never reopened here.
    """
    try:
        contact = await get_or_create_contact(session, event)

        ticket = await find_active_ticket(session, contact.id)
        ticket_created = ticket is None
        if ticket is None:
            ticket = await open_ticket(session, contact, event)
        else:
            await touch_ticket_activity(session, ticket.id, event.timestamp)

        message = await save_message(
            session,
            ticket,
            DIRECTION_INBOUND,
            event.content,
            message_metadata={
                "brokerKind": event.broker_kind,
                "externalMessageId": event.external_message_id,
                "senderDisplayName": event.sender_display_name,
                "rawPayload": event.raw_payload,
            },
            created_at=event.timestamp,
        )
    except SQLAlchemyError as e:
        logger.error(
            f"Failed to persist inbound event: {e}",
            extra={
                "context": {
                    "tenant_id": event.tenant_id,
                    "instance_id": event.channel_instance_id,
                    "external_message_id": event.external_message_id,
                }
            },
        )
        raise PersistenceFailure(str(e)) from e

    logger.info(
        "Inbound message persisted",
        extra={
            "context": {
                "tenant_id": event.tenant_id,
                "ticket_id": str(ticket.id),
                "message_id": str(message.id),
                "ticket_created": ticket_created,
            }
        },
    )
    return ResolvedConversation(contact=contact, ticket=ticket, message=message, ticket_created=ticket_created)
