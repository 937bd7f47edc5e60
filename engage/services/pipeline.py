"""Webhook delivery to committed inbound messages, then detached replies."""

import asyncio
from collections.abc import Coroutine
from dataclasses import dataclass, field
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from engage.config import Settings, settings as default_settings
from engage.logging_config import get_logger
from engage.models import Message
from engage.services import conversation_service
from engage.services.alert_service import alert_error
from engage.services.errors import PersistenceFailure, ValidationError
from engage.services.events import DeliveryAck, InboundEvent, NormalizationResult
from engage.services.idempotency import IdempotencyGuard
from engage.services.message_service import apply_delivery_ack
from engage.services.normalizer import normalize
from engage.services.realtime import (
    TOPIC_MESSAGE_PERSISTED,
    TOPIC_MESSAGE_UPDATED,
    TOPIC_TICKET_UPDATED,
    RealtimeHub,
    message_payload,
    ticket_payload,
)
from engage.services.reply_service import ReplyOrchestrator

logger = get_logger("pipeline")

STATUS_ACCEPTED = "accepted"
STATUS_DUPLICATE = "duplicate"


class TaskScheduler:
    """Owns fire-and-forget tasks so they are not garbage collected mid-flight.

    Exceptions escaping a task are logged here and go no further.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                f"Background task {task.get_name()} failed: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for the tasks spawned so far."""
        if not self._tasks:
            return
        await asyncio.wait(list(self._tasks), timeout=timeout)

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Cancelled {len(tasks)} background tasks on shutdown")


@dataclass
class EventOutcome:
    external_message_id: str
    status: str
    ticket_id: Optional[UUID] = None
    message_id: Optional[UUID] = None


@dataclass
class PipelineReport:
    broker_kind: str
    outcomes: list[EventOutcome] = field(default_factory=list)
    ignored: int = 0
    acknowledged: int = 0

    @property
    def accepted(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == STATUS_ACCEPTED)

    @property
    def duplicates(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == STATUS_DUPLICATE)


class InboundPipeline:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        orchestrator: ReplyOrchestrator,
        hub: Optional[RealtimeHub] = None,
        scheduler: Optional[TaskScheduler] = None,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.orchestrator = orchestrator
        self.hub = hub
        self.scheduler = scheduler or TaskScheduler()
        self.settings = settings or default_settings

    async def accept(self, raw_payload: Any, broker_kind: str, tenant_hint: Optional[str] = None) -> PipelineReport:
        """``process`` with the acknowledgement deadline on the database work.

        Past the deadline the transaction is abandoned and rolled back, and
        the caller gets a PersistenceFailure so the broker retries. Once the
        commit has started the delivery is stored and the rest always runs.
        """
        return await self.process(
            raw_payload, broker_kind, tenant_hint, deadline=self.settings.webhook_ack_timeout_seconds
        )

    async def process(
        self,
        raw_payload: Any,
        broker_kind: str,
        tenant_hint: Optional[str] = None,
        deadline: Optional[float] = None,
    ) -> PipelineReport:
        normalized = normalize(raw_payload, broker_kind, tenant_hint)
        report = PipelineReport(broker_kind=normalized.broker_kind, ignored=len(normalized.ignored))
        if not normalized.events and not normalized.acks:
            logger.info(
                "Delivery carried no processable messages",
                extra={"context": {"broker_kind": normalized.broker_kind, "ignored": report.ignored}},
            )
            return report

        async with self.session_factory() as session:
            try:
                try:
                    persisted, acknowledged = await asyncio.wait_for(
                        self._stage(session, normalized, report), timeout=deadline
                    )
                except asyncio.TimeoutError as e:
                    logger.error(
                        f"Webhook acknowledgement exceeded {deadline}s",
                        extra={"context": {"broker_kind": normalized.broker_kind}},
                    )
                    raise PersistenceFailure("acknowledgement deadline exceeded") from e
                await session.commit()
            except SQLAlchemyError as e:
                await self._report_persistence_failure(normalized, e)
                raise PersistenceFailure(str(e)) from e
            except PersistenceFailure as e:
                await self._report_persistence_failure(normalized, e)
                raise

        for event, resolved in persisted:
            if self.hub is not None:
                if resolved.ticket_created:
                    self.hub.publish(event.tenant_id, TOPIC_TICKET_UPDATED, ticket_payload(resolved.ticket))
                self.hub.publish(event.tenant_id, TOPIC_MESSAGE_PERSISTED, message_payload(resolved.message))
            self.scheduler.spawn(
                self.orchestrator.maybe_reply(resolved.ticket.id, resolved.message.id),
                name=f"reply:{resolved.ticket.id}",
            )
        if self.hub is not None:
            for message in acknowledged:
                self.hub.publish(message.tenant_id, TOPIC_MESSAGE_UPDATED, message_payload(message))

        logger.info(
            "Delivery processed",
            extra={
                "context": {
                    "broker_kind": report.broker_kind,
                    "accepted": report.accepted,
                    "duplicates": report.duplicates,
                    "acknowledged": report.acknowledged,
                    "ignored": report.ignored,
                }
            },
        )
        return report

    async def _stage(
        self, session: AsyncSession, normalized: NormalizationResult, report: PipelineReport
    ) -> tuple[list[tuple[InboundEvent, conversation_service.ResolvedConversation]], list[Message]]:
        """Everything before the commit. Nothing here is visible to others until then."""
        await self._assign_tenants(session, normalized)
        persisted = []
        guard = IdempotencyGuard(session)
        for event in normalized.events:
            if not await guard.should_process(event):
                report.outcomes.append(EventOutcome(event.external_message_id, STATUS_DUPLICATE))
                continue
            resolved = await conversation_service.resolve(session, event)
            await guard.attach_message(event, resolved.message.id)
            persisted.append((event, resolved))
            report.outcomes.append(
                EventOutcome(
                    event.external_message_id,
                    STATUS_ACCEPTED,
                    ticket_id=resolved.ticket.id,
                    message_id=resolved.message.id,
                )
            )

        acknowledged = []
        for ack in normalized.acks:
            tenant_id = await self._ack_tenant(session, ack)
            if tenant_id is None:
                logger.info(
                    "Delivery ack for an unknown instance skipped",
                    extra={"context": {"instance_id": ack.channel_instance_id, "external_id": ack.external_message_id}},
                )
                continue
            message = await apply_delivery_ack(session, tenant_id, ack.external_message_id, ack.status)
            if message is not None:
                acknowledged.append(message)
        report.acknowledged = len(acknowledged)
        return persisted, acknowledged

    async def _ack_tenant(self, session: AsyncSession, ack: DeliveryAck) -> Optional[str]:
        if ack.tenant_id:
            return ack.tenant_id
        if self.settings.default_tenant_id:
            return self.settings.default_tenant_id
        if not ack.channel_instance_id:
            return None
        instance = await conversation_service.get_channel_instance(session, ack.channel_instance_id)
        return instance.tenant_id if instance is not None else None

    async def _assign_tenants(self, session: AsyncSession, normalized: NormalizationResult) -> None:
        """Header or payload tenant first, then the configured default, then the instance owner."""
        for event in normalized.events:
            if event.tenant_id:
                continue
            if self.settings.default_tenant_id:
                event.tenant_id = self.settings.default_tenant_id
                continue
            instance = await conversation_service.get_channel_instance(session, event.channel_instance_id)
            if instance is None:
                raise ValidationError(
                    f"Tenant could not be determined for instance '{event.channel_instance_id}'"
                )
            event.tenant_id = instance.tenant_id

    async def _report_persistence_failure(self, normalized: NormalizationResult, error: Exception) -> None:
        first: Optional[InboundEvent] = normalized.events[0] if normalized.events else None
        context = {
            "broker_kind": normalized.broker_kind,
            "events": len(normalized.events),
            "tenant_id": first.tenant_id if first else None,
            "external_message_id": first.external_message_id if first else None,
            "error": str(error)[:300],
        }
        logger.error("Inbound delivery could not be persisted", extra={"context": context})
        await alert_error("Inbound WhatsApp delivery could not be persisted", context)
