from typing import Optional

from fastapi import Depends, FastAPI
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from engage.config import settings
from engage.database import dispose_engine, get_db, get_session_factory
from engage.logging_config import get_logger, setup_logging
from engage.models import Contact, Message, Ticket
from engage.routers import automation, realtime, webhook
from engage.services.dispatch_service import BrokerDispatcher
from engage.services.llm import LLMProvider, OpenAIProvider
from engage.services.pipeline import InboundPipeline, TaskScheduler
from engage.services.realtime import RealtimeHub
from engage.services.reply_service import ReplyOrchestrator

setup_logging(settings.log_level)

logger = get_logger("main")

app = FastAPI(
    title="Engage API",
    description="Inbound WhatsApp pipeline with automated replies",
    version="0.1.0",
)

app.include_router(webhook.router)
app.include_router(automation.router)
app.include_router(realtime.router)


def install_components(
    target: FastAPI,
    session_factory: async_sessionmaker[AsyncSession],
    provider: Optional[LLMProvider] = None,
    dispatcher: Optional[BrokerDispatcher] = None,
    hub: Optional[RealtimeHub] = None,
) -> InboundPipeline:
    """Wire hub, scheduler, orchestrator and pipeline onto ``target.state``."""
    hub = hub or RealtimeHub(queue_size=settings.realtime_queue_size)
    scheduler = TaskScheduler()
    orchestrator = ReplyOrchestrator(session_factory, provider, dispatcher=dispatcher, hub=hub, settings=settings)
    pipeline = InboundPipeline(session_factory, orchestrator, hub=hub, scheduler=scheduler, settings=settings)

    target.state.hub = hub
    target.state.scheduler = scheduler
    target.state.provider = provider
    target.state.dispatcher = dispatcher
    target.state.pipeline = pipeline
    return pipeline


@app.on_event("startup")
async def start_components() -> None:
    provider = None
    if settings.openai_api_key:
        provider = OpenAIProvider(
            settings.openai_api_key,
            default_model=settings.generation_model,
            base_url=settings.openai_base_url,
            timeout_seconds=settings.generation_timeout_seconds,
        )
    else:
        logger.warning("OPENAI_API_KEY not set, automated replies are disabled")

    dispatcher = BrokerDispatcher(
        settings.broker_api_url,
        settings.broker_api_key,
        timeout_seconds=settings.dispatch_timeout_seconds,
    )
    install_components(app, get_session_factory(), provider=provider, dispatcher=dispatcher)
    logger.info("Pipeline started", extra={"context": {"ai_enabled": settings.automation_enabled}})


@app.on_event("shutdown")
async def stop_components() -> None:
    scheduler: Optional[TaskScheduler] = getattr(app.state, "scheduler", None)
    if scheduler is not None:
        await scheduler.shutdown()
    for component in (getattr(app.state, "provider", None), getattr(app.state, "dispatcher", None)):
        if component is not None:
            await component.aclose()
    await dispose_engine()


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
async def db_check(db: AsyncSession = Depends(get_db)):
    contacts_count = await db.scalar(select(func.count()).select_from(Contact))
    tickets_count = await db.scalar(select(func.count()).select_from(Ticket))
    messages_count = await db.scalar(select(func.count()).select_from(Message))
    return {
        "status": "ok",
        "contacts": contacts_count,
        "tickets": tickets_count,
        "messages": messages_count,
    }
