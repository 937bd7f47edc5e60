from __future__ import annotations

import uuid
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from engage.database import dialect_insert
from engage.logging_config import get_logger
from engage.models import InboundReceipt
from engage.services.events import InboundEvent

logger = get_logger("idempotency")

_CONFLICT_KEYS = ["tenant_id", "channel_instance_id", "external_message_id"]


class IdempotencyGuard:
    """Atomic check-and-reserve on (tenant, channel instance, external message id).

    The reservation is written in the caller's transaction: if the caller
    rolls back, the broker's retry is processed again.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def should_process(self, event: InboundEvent) -> bool:
        if not event.tenant_id:
            raise ValueError("tenant_id must be resolved before reserving an event")

        insert = dialect_insert(self.session)
        stmt = (
            insert(InboundReceipt)
            .values(
                id=uuid.uuid4(),
                tenant_id=event.tenant_id,
                channel_instance_id=event.channel_instance_id,
                external_message_id=event.external_message_id,
                received_at=datetime.now(timezone.utc),
            )
            .on_conflict_do_nothing(index_elements=_CONFLICT_KEYS)
        )
        result = await self.session.execute(stmt)
        reserved = result.rowcount > 0
        if not reserved:
            logger.info(
                "Duplicate delivery skipped",
                extra={
                    "context": {
                        "tenant_id": event.tenant_id,
                        "instance_id": event.channel_instance_id,
                        "external_message_id": event.external_message_id,
                    }
                },
            )
        return reserved

    async def attach_message(self, event: InboundEvent, message_id: UUID) -> None:
        """Point the reservation at the message it produced."""
        await self.session.execute(
            update(InboundReceipt)
            .where(
                InboundReceipt.tenant_id == event.tenant_id,
                InboundReceipt.channel_instance_id == event.channel_instance_id,
                InboundReceipt.external_message_id == event.external_message_id,
            )
            .values(message_id=message_id)
        )
