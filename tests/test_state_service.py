import asyncio

import pytest
from sqlalchemy import func, select

from conftest import at
from engage.models import AutomationPreference, Contact, Ticket
from engage.models.message import DIRECTION_INBOUND, DIRECTION_OUTBOUND
from engage.services import state_service
from engage.services.errors import InvalidModeError
from engage.services.message_service import save_message
from engage.services.state_machine import AutomationMode, ModeScope


async def make_ticket(session, queue_id="queue-sales", automation_mode=None, tenant_id="tenant-1"):
    contact = Contact(tenant_id=tenant_id, channel_instance_id="inst-1", address="5511999990001", created_at=at(0))
    session.add(contact)
    await session.flush()
    ticket = Ticket(
        tenant_id=tenant_id,
        contact_id=contact.id,
        channel_instance_id="inst-1",
        queue_id=queue_id,
        status="OPEN",
        automation_mode=automation_mode,
        created_at=at(0),
    )
    session.add(ticket)
    await session.flush()
    return ticket


async def add_ai_reply(session, ticket, confidence, minute):
    metadata = {"aiGenerated": True, "model": "gpt-4o-mini", "usage": {}}
    if confidence is not None:
        metadata["confidence"] = confidence
    return await save_message(session, ticket, DIRECTION_OUTBOUND, "resposta", metadata, created_at=at(minute))


class TestModePreferences:
    def test_nothing_stored_resolves_to_assisted(self, session_factory, no_ai_settings):
        async def scenario():
            async with session_factory() as session:
                return await state_service.resolve_effective_mode(session, "tenant-1")

        resolution = asyncio.run(scenario())
        assert resolution.mode == AutomationMode.ASSISTED
        assert resolution.scope == ModeScope.DEFAULT

    def test_configured_tenant_default(self, session_factory, no_ai_settings, monkeypatch):
        monkeypatch.setattr(no_ai_settings, "tenant_default_mode", "IA_AUTO")

        async def scenario():
            async with session_factory() as session:
                return await state_service.resolve_effective_mode(session, "tenant-1")

        resolution = asyncio.run(scenario())
        assert resolution.mode == AutomationMode.AUTONOMOUS
        assert resolution.scope == ModeScope.TENANT

    def test_synonym_is_stored_canonically(self, session_factory, no_ai_settings):
        async def scenario():
            async with session_factory() as session:
                await state_service.set_mode_preference(session, "tenant-1", "copiloto")
                await session.commit()
                return await session.scalar(select(AutomationPreference.mode))

        assert asyncio.run(scenario()) == "ASSISTED"

    def test_update_overwrites_existing_row(self, session_factory, no_ai_settings):
        async def scenario():
            async with session_factory() as session:
                await state_service.set_mode_preference(session, "tenant-1", "MANUAL")
                await state_service.set_mode_preference(session, "tenant-1", "AUTONOMOUS")
                await session.commit()
                rows = await session.scalar(select(func.count()).select_from(AutomationPreference))
                resolution = await state_service.resolve_effective_mode(session, "tenant-1")
                return rows, resolution

        rows, resolution = asyncio.run(scenario())
        assert rows == 1
        assert resolution.mode == AutomationMode.AUTONOMOUS

    def test_queue_without_row_falls_back_to_tenant(self, session_factory, no_ai_settings):
        async def scenario():
            async with session_factory() as session:
                await state_service.set_mode_preference(session, "tenant-1", "MANUAL")
                await state_service.set_mode_preference(session, "tenant-1", "AUTO", queue_id="queue-vip")
                await session.commit()
                vip = await state_service.resolve_effective_mode(session, "tenant-1", "queue-vip")
                sales = await state_service.resolve_effective_mode(session, "tenant-1", "queue-sales")
                return vip, sales

        vip, sales = asyncio.run(scenario())
        assert (vip.mode, vip.scope) == (AutomationMode.AUTONOMOUS, ModeScope.QUEUE)
        assert (sales.mode, sales.scope) == (AutomationMode.MANUAL, ModeScope.TENANT)

    def test_preferences_are_tenant_scoped(self, session_factory, no_ai_settings):
        async def scenario():
            async with session_factory() as session:
                await state_service.set_mode_preference(session, "tenant-1", "AUTONOMOUS")
                return await state_service.resolve_effective_mode(session, "tenant-2")

        assert asyncio.run(scenario()).scope == ModeScope.DEFAULT

    def test_invalid_mode_is_rejected(self, session_factory, no_ai_settings):
        async def scenario():
            async with session_factory() as session:
                await state_service.set_mode_preference(session, "tenant-1", "TURBO")

        with pytest.raises(InvalidModeError) as exc_info:
            asyncio.run(scenario())
        assert "IA_AUTO" in str(exc_info.value)

    def test_ticket_override_beats_queue_and_tenant(self, session_factory, no_ai_settings):
        async def scenario():
            async with session_factory() as session:
                await state_service.set_mode_preference(session, "tenant-1", "AUTONOMOUS")
                await state_service.set_mode_preference(session, "tenant-1", "AUTONOMOUS", queue_id="queue-sales")
                ticket = await make_ticket(session, automation_mode="MANUAL")
                return await state_service.resolve_mode_for_ticket(session, ticket)

        resolution = asyncio.run(scenario())
        assert (resolution.mode, resolution.scope) == (AutomationMode.MANUAL, ModeScope.TICKET)


class TestTakeOverAndGiveBack:
    def test_take_over_sets_manual_override(self, session_factory, no_ai_settings):
        async def scenario():
            async with session_factory() as session:
                ticket = await make_ticket(session)
                result = await state_service.take_over(session, "tenant-1", ticket.id)
                return result

        result = asyncio.run(scenario())
        assert result.ok is True
        assert result.value.automation_mode == "MANUAL"

    def test_take_over_unknown_ticket(self, session_factory, no_ai_settings):
        async def scenario():
            async with session_factory() as session:
                ticket = await make_ticket(session)
                return await state_service.take_over(session, "tenant-2", ticket.id)

        result = asyncio.run(scenario())
        assert result.ok is False
        assert result.error_code == "not_found"

    def test_give_back_refused_without_ai_reply(self, session_factory, no_ai_settings):
        async def scenario():
            async with session_factory() as session:
                ticket = await make_ticket(session, automation_mode="MANUAL")
                await save_message(session, ticket, DIRECTION_INBOUND, "oi", created_at=at(1))
                result = await state_service.give_back(session, "tenant-1", ticket.id, threshold=0.7)
                return result, ticket.automation_mode

        result, mode = asyncio.run(scenario())
        assert result.error_code == "no_confidence"
        assert mode == "MANUAL"

    def test_give_back_refused_when_last_reply_has_no_confidence(self, session_factory, no_ai_settings):
        async def scenario():
            async with session_factory() as session:
                ticket = await make_ticket(session, automation_mode="MANUAL")
                await add_ai_reply(session, ticket, 0.9, minute=1)
                await add_ai_reply(session, ticket, None, minute=2)
                return await state_service.give_back(session, "tenant-1", ticket.id, threshold=0.7)

        assert asyncio.run(scenario()).error_code == "no_confidence"

    def test_give_back_refused_below_threshold(self, session_factory, no_ai_settings):
        async def scenario():
            async with session_factory() as session:
                ticket = await make_ticket(session, automation_mode="MANUAL")
                await add_ai_reply(session, ticket, 0.9, minute=1)
                await add_ai_reply(session, ticket, 0.42, minute=2)
                return await state_service.give_back(session, "tenant-1", ticket.id, threshold=0.7)

        result = asyncio.run(scenario())
        assert result.ok is False
        assert result.error_code == "low_confidence"

    def test_give_back_clears_override(self, session_factory, no_ai_settings):
        async def scenario():
            async with session_factory() as session:
                ticket = await make_ticket(session, automation_mode="MANUAL")
                await add_ai_reply(session, ticket, 0.82, minute=1)
                # a human reply afterwards does not hide the last automated one
                await save_message(session, ticket, DIRECTION_OUTBOUND, "agente aqui", {}, created_at=at(2))
                result = await state_service.give_back(session, "tenant-1", ticket.id, threshold=0.7)
                resolution = await state_service.resolve_mode_for_ticket(session, ticket)
                return result, resolution

        result, resolution = asyncio.run(scenario())
        assert result.ok is True
        assert result.value.automation_mode is None
        assert resolution.scope == ModeScope.DEFAULT

    def test_give_back_uses_configured_threshold(self, session_factory, no_ai_settings, monkeypatch):
        monkeypatch.setattr(no_ai_settings, "give_back_confidence_threshold", 0.9)

        async def scenario():
            async with session_factory() as session:
                ticket = await make_ticket(session, automation_mode="MANUAL")
                await add_ai_reply(session, ticket, 0.82, minute=1)
                return await state_service.give_back(session, "tenant-1", ticket.id)

        assert asyncio.run(scenario()).error_code == "low_confidence"
