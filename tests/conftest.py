import asyncio
from datetime import datetime, timezone
from typing import Optional

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from engage.config import settings
from engage.database import init_models
from engage.models import ChannelInstance
from engage.services.errors import DispatchFailure
from engage.services.dispatch_service import DispatchReceipt
from engage.services.llm.base import LLMProvider, LLMResponse


class FakeProvider(LLMProvider):
    """Scripted generation backend."""

    def __init__(self, content: str = "ok", confidence: Optional[float] = None, error=None, hang: bool = False):
        self.content = content
        self.confidence = confidence
        self.error = error
        self.hang = hang
        self.calls = []

    async def generate(self, messages, model=None, temperature=0.3, max_tokens=500):
        self.calls.append(messages)
        if self.hang:
            await asyncio.Event().wait()
        if self.error is not None:
            raise self.error
        return LLMResponse(
            content=self.content,
            model=model or "fake-model",
            usage={"prompt_tokens": 12, "completion_tokens": 7, "total_tokens": 19},
            confidence=self.confidence,
        )


class FakeDispatcher:
    def __init__(self, fail_with: Optional[DispatchFailure] = None):
        self.fail_with = fail_with
        self.sent = []

    async def send(self, channel_instance_id, recipient_address, content, idempotency_key=None):
        self.sent.append((channel_instance_id, recipient_address, content))
        if self.fail_with is not None:
            raise self.fail_with
        return DispatchReceipt(external_id=f"wamid-{len(self.sent)}", status="sent")

    async def aclose(self):
        return None


@pytest.fixture
def session_factory(tmp_path):
    """Real schema on a throwaway sqlite file; NullPool keeps connections off any one event loop."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'engage.db'}", poolclass=NullPool)
    asyncio.run(init_models(engine))
    yield async_sessionmaker(engine, expire_on_commit=False, autoflush=False)
    asyncio.run(engine.dispose())


@pytest.fixture
def seed_instance(session_factory):
    async def _seed(instance_id: str = "inst-1", tenant_id: str = "tenant-1", default_queue_id: str = "queue-sales"):
        async with session_factory() as session:
            session.add(ChannelInstance(id=instance_id, tenant_id=tenant_id, name="Main", default_queue_id=default_queue_id))
            await session.commit()

    asyncio.run(_seed())
    return _seed


@pytest.fixture
def ai_settings(monkeypatch):
    """Automation enabled with fast timeouts."""
    monkeypatch.setattr(settings, "openai_api_key", "test-key")
    monkeypatch.setattr(settings, "generation_timeout_seconds", 0.2)
    monkeypatch.setattr(settings, "tenant_default_mode", None)
    monkeypatch.setattr(settings, "default_tenant_id", None)
    monkeypatch.setattr(settings, "alert_bot_token", None)
    monkeypatch.setattr(settings, "alert_chat_id", None)
    return settings


@pytest.fixture
def no_ai_settings(monkeypatch):
    monkeypatch.setattr(settings, "openai_api_key", None)
    monkeypatch.setattr(settings, "tenant_default_mode", None)
    monkeypatch.setattr(settings, "default_tenant_id", None)
    monkeypatch.setattr(settings, "alert_bot_token", None)
    monkeypatch.setattr(settings, "alert_chat_id", None)
    monkeypatch.setattr(settings, "webhook_api_key", None)
    monkeypatch.setattr(settings, "webhook_signature_secret", None)
    return settings


def contract_event(
    message_id: str = "wamid-1",
    text: Optional[str] = "oi",
    phone: str = "5511999990001",
    instance_id: str = "inst-1",
    tenant_id: Optional[str] = "tenant-1",
    timestamp: str = "2024-05-01T10:00:00Z",
    event_type: str = "MESSAGE_INBOUND",
) -> dict:
    message = {"id": message_id}
    if text is not None:
        message["text"] = text
    envelope = {
        "id": message_id,
        "type": event_type,
        "instanceId": instance_id,
        "timestamp": timestamp,
        "payload": {
            "instanceId": instance_id,
            "timestamp": timestamp,
            "direction": "inbound" if event_type == "MESSAGE_INBOUND" else "outbound",
            "contact": {"phone": phone, "name": "Maria"},
            "message": message,
            "metadata": {},
        },
    }
    if tenant_id:
        envelope["tenantId"] = tenant_id
    return envelope


def at(minute: int) -> datetime:
    return datetime(2024, 5, 1, 10, minute, tzinfo=timezone.utc)
