from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from engage.config import settings
from engage.database import dialect_insert
from engage.logging_config import get_logger
from engage.models import AutomationPreference, Ticket
from engage.models.automation_preference import SCOPE_QUEUE, SCOPE_TENANT, TENANT_SCOPE_KEY
from engage.services.errors import InvalidModeError
from engage.services.message_service import get_last_ai_confidence
from engage.services.result import Result
from engage.services.state_machine import (
    AutomationMode,
    ModeScope,
    accepted_mode_values,
    give_back_refusal,
    parse_mode,
    resolve_mode,
    take_over as take_over_mode,
)

logger = get_logger("state_service")


@dataclass
class ModeResolution:
    tenant_id: str
    queue_id: Optional[str]
    mode: AutomationMode
    scope: ModeScope


async def get_preference(session: AsyncSession, tenant_id: str, scope: str, scope_key: str) -> Optional[str]:
    result = await session.execute(
        select(AutomationPreference.mode).where(
            AutomationPreference.tenant_id == tenant_id,
            AutomationPreference.scope == scope,
            AutomationPreference.scope_key == scope_key,
        )
    )
    return result.scalar_one_or_none()


async def get_tenant_mode(session: AsyncSession, tenant_id: str) -> Optional[str]:
    """Stored tenant preference, else the configured tenant default."""
    stored = await get_preference(session, tenant_id, SCOPE_TENANT, TENANT_SCOPE_KEY)
    if parse_mode(stored) is not None:
        return stored
    return settings.tenant_default_mode


async def resolve_effective_mode(
    session: AsyncSession,
    tenant_id: str,
    queue_id: Optional[str] = None,
    ticket_mode: Optional[str] = None,
) -> ModeResolution:
    """Read all three levels and apply ticket > queue > tenant > default."""
    queue_mode = await get_preference(session, tenant_id, SCOPE_QUEUE, queue_id) if queue_id else None
    tenant_mode = await get_tenant_mode(session, tenant_id)
    mode, scope = resolve_mode(ticket_mode, queue_mode, tenant_mode)
    return ModeResolution(tenant_id=tenant_id, queue_id=queue_id, mode=mode, scope=scope)


async def resolve_mode_for_ticket(session: AsyncSession, ticket: Ticket) -> ModeResolution:
    return await resolve_effective_mode(session, ticket.tenant_id, ticket.queue_id, ticket.automation_mode)


async def set_mode_preference(
    session: AsyncSession,
    tenant_id: str,
    mode_value: object,
    queue_id: Optional[str] = None,
) -> ModeResolution:
    """Write the tenant-level (queue_id None) or queue-level preference.

    Synonyms are stored as their canonical mode. Raises InvalidModeError.
    """
    mode = parse_mode(mode_value)
    if mode is None:
        raise InvalidModeError(mode_value, accepted_mode_values())

    scope, scope_key = (SCOPE_QUEUE, queue_id) if queue_id else (SCOPE_TENANT, TENANT_SCOPE_KEY)
    now = datetime.now(timezone.utc)
    insert = dialect_insert(session)
    stmt = insert(AutomationPreference).values(
        tenant_id=tenant_id,
        scope=scope,
        scope_key=scope_key,
        mode=mode.value,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["tenant_id", "scope", "scope_key"],
        set_={"mode": mode.value, "updated_at": now},
    )
    await session.execute(stmt)

    logger.info(
        "Automation mode preference updated",
        extra={"context": {"tenant_id": tenant_id, "queue_id": queue_id, "scope": scope, "mode": mode.value}},
    )
    return ModeResolution(
        tenant_id=tenant_id,
        queue_id=queue_id,
        mode=mode,
        scope=ModeScope.QUEUE if queue_id else ModeScope.TENANT,
    )


async def get_ticket(session: AsyncSession, tenant_id: str, ticket_id: UUID) -> Optional[Ticket]:
    ticket = await session.get(Ticket, ticket_id)
    if ticket is None or ticket.tenant_id != tenant_id:
        return None
    return ticket


async def take_over(session: AsyncSession, tenant_id: str, ticket_id: UUID) -> Result[Ticket]:
    """Agent takes the conversation: ticket override becomes MANUAL."""
    ticket = await get_ticket(session, tenant_id, ticket_id)
    if ticket is None:
        return Result.failure(f"Ticket {ticket_id} not found", "not_found")

    ticket.automation_mode = take_over_mode().value
    await session.flush()

    logger.info("Ticket taken over by agent", extra={"context": {"tenant_id": tenant_id, "ticket_id": str(ticket_id)}})
    return Result.success(ticket)


async def give_back(
    session: AsyncSession,
    tenant_id: str,
    ticket_id: UUID,
    threshold: Optional[float] = None,
) -> Result[Ticket]:
    """Clear the ticket override, if the last automated reply was confident enough."""
    ticket = await get_ticket(session, tenant_id, ticket_id)
    if ticket is None:
        return Result.failure(f"Ticket {ticket_id} not found", "not_found")

    threshold = settings.give_back_confidence_threshold if threshold is None else threshold
    confidence = await get_last_ai_confidence(session, ticket.id)
    refusal = give_back_refusal(confidence, threshold)
    if refusal is not None:
        logger.info(
            "Give back refused",
            extra={
                "context": {
                    "tenant_id": tenant_id,
                    "ticket_id": str(ticket_id),
                    "reason": refusal,
                    "confidence": confidence,
                    "threshold": threshold,
                }
            },
        )
        if refusal == "no_confidence":
            return Result.failure("No confidence signal from a previous automated reply", refusal)
        return Result.failure(f"Last automated reply confidence {confidence} is below {threshold}", refusal)

    ticket.automation_mode = None
    await session.flush()

    logger.info("Ticket given back to automation", extra={"context": {"tenant_id": tenant_id, "ticket_id": str(ticket_id)}})
    return Result.success(ticket)
