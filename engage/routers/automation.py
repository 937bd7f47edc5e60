from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from engage.config import settings
from engage.database import get_db
from engage.dependencies import get_hub, require_tenant
from engage.logging_config import get_logger
from engage.models import Ticket
from engage.schemas.automation import ModeResponse, ModeUpdateRequest, TicketModeResponse
from engage.services import state_service
from engage.services.errors import InvalidModeError
from engage.services.realtime import TOPIC_TICKET_UPDATED, RealtimeHub, mode_change_payload, ticket_payload
from engage.services.result import Result

logger = get_logger("automation")

router = APIRouter()


def _mode_response(resolution: state_service.ModeResolution) -> ModeResponse:
    return ModeResponse(
        tenantId=resolution.tenant_id,
        queueId=resolution.queue_id,
        mode=resolution.mode.value,
        scope=resolution.scope.value,
        aiEnabled=settings.automation_enabled,
    )


async def _ticket_mode_response(db: AsyncSession, ticket: Ticket) -> TicketModeResponse:
    resolution = await state_service.resolve_mode_for_ticket(db, ticket)
    return TicketModeResponse(
        ticketId=ticket.id,
        tenantId=ticket.tenant_id,
        queueId=ticket.queue_id,
        status=ticket.status,
        automationMode=ticket.automation_mode,
        mode=resolution.mode.value,
        scope=resolution.scope.value,
        aiEnabled=settings.automation_enabled,
    )


@router.get("/automation/mode", response_model=ModeResponse)
async def get_automation_mode(
    queue_id: Optional[str] = Query(default=None),
    tenant_id: str = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
):
    """Effective mode for the tenant, or for one queue with fallback to the tenant."""
    resolution = await state_service.resolve_effective_mode(db, tenant_id, queue_id)
    return _mode_response(resolution)


@router.post("/automation/mode", response_model=ModeResponse)
async def set_automation_mode(
    payload: ModeUpdateRequest,
    tenant_id: str = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
    hub: RealtimeHub = Depends(get_hub),
):
    try:
        resolution = await state_service.set_mode_preference(db, tenant_id, payload.mode, payload.queueId)
    except InvalidModeError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    await db.commit()
    hub.publish(tenant_id, TOPIC_TICKET_UPDATED, mode_change_payload(resolution))
    return _mode_response(resolution)


@router.get("/tickets/{ticket_id}/mode", response_model=TicketModeResponse)
async def get_ticket_mode(
    ticket_id: UUID,
    tenant_id: str = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
):
    ticket = await state_service.get_ticket(db, tenant_id, ticket_id)
    if ticket is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Ticket not found")
    return await _ticket_mode_response(db, ticket)


async def _finish_ticket_change(
    result: Result[Ticket],
    db: AsyncSession,
    hub: RealtimeHub,
) -> TicketModeResponse:
    if not result.ok:
        await db.rollback()
        if result.error_code == "not_found":
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=result.error)
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"reason": result.error_code, "message": result.error},
        )

    ticket = result.value
    response = await _ticket_mode_response(db, ticket)
    await db.commit()
    hub.publish(ticket.tenant_id, TOPIC_TICKET_UPDATED, ticket_payload(ticket, response.mode, response.scope))
    return response


@router.post("/tickets/{ticket_id}/take-over", response_model=TicketModeResponse)
async def take_over_ticket(
    ticket_id: UUID,
    tenant_id: str = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
    hub: RealtimeHub = Depends(get_hub),
):
    result = await state_service.take_over(db, tenant_id, ticket_id)
    return await _finish_ticket_change(result, db, hub)


@router.post("/tickets/{ticket_id}/give-back", response_model=TicketModeResponse)
async def give_back_ticket(
    ticket_id: UUID,
    tenant_id: str = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
    hub: RealtimeHub = Depends(get_hub),
):
    """Refused with 409 when the last automated reply was absent or not confident enough."""
    result = await state_service.give_back(db, tenant_id, ticket_id)
    return await _finish_ticket_change(result, db, hub)
