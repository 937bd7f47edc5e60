"""Automated reply for a ticket whose effective mode is AUTONOMOUS."""

import asyncio
import time
from typing import Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from engage.config import Settings, settings as default_settings
from engage.logging_config import bind_logger
from engage.models import Contact, Message, Ticket
from engage.models.message import DIRECTION_INBOUND, DIRECTION_OUTBOUND
from engage.services.alert_service import alert_warning
from engage.services.conversation_service import touch_ticket_activity
from engage.services.dispatch_service import BrokerDispatcher
from engage.services.errors import DispatchFailure, GenerationFailure
from engage.services.events import ReplyAttempt, ReplyOutcome
from engage.services.llm.base import LLMProvider, LLMResponse
from engage.services.message_service import (
    build_context_window,
    get_message,
    get_recent_messages,
    has_usable_text,
    mark_dispatch,
    save_message,
)
from engage.services.realtime import TOPIC_MESSAGE_PERSISTED, RealtimeHub, message_payload
from engage.services.state_machine import AutomationMode
from engage.services.state_service import resolve_mode_for_ticket

SKIP_AUTOMATION_DISABLED = "automation_disabled"
SKIP_MODE_NOT_AUTONOMOUS = "mode_not_autonomous"
SKIP_NO_CONTENT = "no_content"
SKIP_TICKET_NOT_FOUND = "ticket_not_found"
FAIL_TIMEOUT = "timeout"
FAIL_DISPATCH = "dispatch_failed"
FAIL_PERSISTENCE = "persistence_error"
FAIL_GENERATION = "generation_error"
FAIL_UNEXPECTED = "unexpected_error"


class ReplyOrchestrator:
    """Decides whether to answer, generates the answer, stores it, sends it.

    Generation is attempted once per trigger. A timeout, a backend error or a
    rejected send all end as a FAILED attempt; nothing here raises into the
    inbound pipeline.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider: Optional[LLMProvider],
        dispatcher: Optional[BrokerDispatcher] = None,
        hub: Optional[RealtimeHub] = None,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.provider = provider
        self.dispatcher = dispatcher
        self.hub = hub
        self.settings = settings or default_settings

    async def maybe_reply(self, ticket_id: UUID, trigger_message_id: Optional[UUID] = None) -> ReplyAttempt:
        started = time.monotonic()
        log = bind_logger("reply_service", ticket_id=str(ticket_id))

        try:
            attempt = await self._run(ticket_id, trigger_message_id, log)
        except SQLAlchemyError as e:
            log.error(f"Reply attempt aborted by database error: {e}")
            attempt = ReplyAttempt(conversation_id=ticket_id, outcome=ReplyOutcome.FAILED, reason=FAIL_PERSISTENCE)
        except Exception as e:
            log.error(f"Reply attempt aborted: {e}", exc_info=True)
            attempt = ReplyAttempt(conversation_id=ticket_id, outcome=ReplyOutcome.FAILED, reason=FAIL_UNEXPECTED)

        attempt.latency_ms = int((time.monotonic() - started) * 1000)
        log.info("Reply attempt finished", context=attempt.as_log_context())
        return attempt

    async def _run(self, ticket_id: UUID, trigger_message_id: Optional[UUID], log) -> ReplyAttempt:
        if not self.settings.automation_enabled or self.provider is None:
            return self._attempt(ticket_id, ReplyOutcome.SKIPPED, SKIP_AUTOMATION_DISABLED)

        async with self.session_factory() as session:
            ticket = await session.get(Ticket, ticket_id)
            if ticket is None:
                return self._attempt(ticket_id, ReplyOutcome.SKIPPED, SKIP_TICKET_NOT_FOUND)

            resolution = await resolve_mode_for_ticket(session, ticket)
            if resolution.mode != AutomationMode.AUTONOMOUS:
                log.debug(f"Mode {resolution.mode.value} from {resolution.scope.value} scope, not replying")
                return self._attempt(ticket_id, ReplyOutcome.SKIPPED, SKIP_MODE_NOT_AUTONOMOUS)

            trigger = await self._trigger_message(session, ticket_id, trigger_message_id)
            if trigger is None or not has_usable_text(trigger.content):
                return self._attempt(ticket_id, ReplyOutcome.SKIPPED, SKIP_NO_CONTENT)
            trigger_id = trigger.id

            history = await get_recent_messages(session, ticket_id, self.settings.context_window_size)
            context_window = build_context_window(history)

        try:
            response = await self._generate(context_window)
        except asyncio.TimeoutError:
            log.warning(f"Generation timed out after {self.settings.generation_timeout_seconds}s")
            return self._attempt(ticket_id, ReplyOutcome.FAILED, FAIL_TIMEOUT, context_window)
        except GenerationFailure as e:
            log.warning(f"Generation failed: {e}", context={"reason": e.reason})
            return self._attempt(ticket_id, ReplyOutcome.FAILED, e.reason, context_window)
        except Exception as e:
            log.error(f"Generation backend error: {e}", exc_info=True)
            return self._attempt(ticket_id, ReplyOutcome.FAILED, FAIL_GENERATION, context_window)

        async with self.session_factory() as session:
            ticket = await session.get(Ticket, ticket_id)
            outbound = await save_message(
                session,
                ticket,
                DIRECTION_OUTBOUND,
                response.content,
                message_metadata=self._reply_metadata(response, trigger_id),
                dispatch_status="pending",
            )
            await touch_ticket_activity(session, ticket.id, outbound.created_at)
            contact = await session.get(Contact, ticket.contact_id)
            await session.commit()
            self._publish(ticket.tenant_id, outbound)

            failure = await self._dispatch(session, ticket, contact, outbound, log)
            await session.commit()

        attempt = self._attempt(
            ticket_id,
            ReplyOutcome.FAILED if failure else ReplyOutcome.SENT,
            FAIL_DISPATCH if failure else None,
            context_window,
        )
        attempt.message_id = outbound.id
        attempt.confidence = response.confidence
        return attempt

    async def _trigger_message(
        self, session: AsyncSession, ticket_id: UUID, trigger_message_id: Optional[UUID]
    ) -> Optional[Message]:
        if trigger_message_id is not None:
            message = await get_message(session, trigger_message_id)
            return message if message is not None and message.ticket_id == ticket_id else None
        for message in reversed(await get_recent_messages(session, ticket_id, self.settings.context_window_size)):
            if message.direction == DIRECTION_INBOUND:
                return message
        return None

    async def _generate(self, context_window: list[dict[str, str]]) -> LLMResponse:
        messages = [{"role": "system", "content": self.settings.reply_system_prompt}, *context_window]
        return await asyncio.wait_for(
            self.provider.generate(
                messages,
                model=self.settings.generation_model,
                temperature=self.settings.generation_temperature,
                max_tokens=self.settings.generation_max_tokens,
            ),
            timeout=self.settings.generation_timeout_seconds,
        )

    def _reply_metadata(self, response: LLMResponse, trigger_id: UUID) -> dict:
        metadata = {
            "aiGenerated": True,
            "aiMode": "auto",
            "model": response.model,
            "usage": response.usage or {},
            "triggeredByMessageId": str(trigger_id),
        }
        if response.confidence is not None:
            metadata["confidence"] = response.confidence
        return metadata

    async def _dispatch(
        self,
        session: AsyncSession,
        ticket: Ticket,
        contact: Optional[Contact],
        outbound: Message,
        log,
    ) -> Optional[DispatchFailure]:
        """Send the stored reply. The row stays either way; only its delivery columns change."""
        failure: Optional[DispatchFailure] = None
        try:
            if self.dispatcher is None:
                raise DispatchFailure("not_configured", "no outbound dispatcher")
            if contact is None:
                raise DispatchFailure("no_recipient", f"contact {ticket.contact_id} not found")
            receipt = await self.dispatcher.send(
                ticket.channel_instance_id,
                contact.address,
                outbound.content,
                idempotency_key=str(outbound.id),
            )
        except DispatchFailure as e:
            failure = e
        except Exception as e:
            log.error(f"Dispatcher raised: {e}", exc_info=True)
            failure = DispatchFailure("dispatch_error", f"{type(e).__name__}: {e}")
        else:
            await mark_dispatch(session, outbound.id, "sent", external_id=receipt.external_id)
            return None

        await mark_dispatch(session, outbound.id, "failed", error=str(failure))
        log.warning(f"Reply dispatch failed: {failure}", context={"message_id": str(outbound.id), "reason": failure.reason})
        await alert_warning(
            "Automated reply could not be delivered",
            {"ticket_id": str(ticket.id), "message_id": str(outbound.id), "reason": failure.reason},
        )
        return failure

    def _publish(self, tenant_id: str, message: Message) -> None:
        if self.hub is not None:
            self.hub.publish(tenant_id, TOPIC_MESSAGE_PERSISTED, message_payload(message))

    @staticmethod
    def _attempt(
        ticket_id: UUID,
        outcome: ReplyOutcome,
        reason: Optional[str] = None,
        context_window: Optional[list[dict[str, str]]] = None,
    ) -> ReplyAttempt:
        return ReplyAttempt(
            conversation_id=ticket_id,
            outcome=outcome,
            reason=reason,
            context_window=context_window or [],
        )
