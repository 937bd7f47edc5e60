"""
Realtime feed for dashboards.

Protocol:
  Server sends JSON frames:
    { "topic": "message.persisted" | "ticket.updated", "tenantId": "...", "payload": {...} }
    { "type": "pong" }

  Client may send:
    { "type": "ping" }

Subscribe with ws://host/ws/tenants/{tenant_id}, optionally ?ticket_id=... to
receive one ticket's events only.
"""

import asyncio
import json
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from engage.logging_config import get_logger
from engage.services.realtime import RealtimeHub, Subscription

logger = get_logger("realtime.ws")

router = APIRouter()


async def _forward_events(websocket: WebSocket, subscription: Subscription) -> None:
    while True:
        event = await subscription.next_event()
        await websocket.send_json(event)


async def _read_client(websocket: WebSocket) -> None:
    while True:
        try:
            raw = await websocket.receive_text()
        except WebSocketDisconnect:
            return
        try:
            msg = json.loads(raw)
        except json.JSONDecodeError:
            await websocket.send_json({"type": "error", "message": "Invalid JSON"})
            continue
        if isinstance(msg, dict) and msg.get("type") == "ping":
            await websocket.send_json({"type": "pong"})


@router.websocket("/ws/tenants/{tenant_id}")
async def ws_tenant_feed(
    websocket: WebSocket,
    tenant_id: str,
    ticket_id: Optional[str] = Query(None),
):
    hub: RealtimeHub = websocket.app.state.hub
    await websocket.accept()
    subscription = hub.subscribe(tenant_id, ticket_id)
    logger.info(f"[WS] Subscriber connected to tenant {tenant_id}", extra={"context": {"ticket_id": ticket_id}})

    sender = asyncio.create_task(_forward_events(websocket, subscription))
    reader = asyncio.create_task(_read_client(websocket))
    try:
        done, pending = await asyncio.wait({sender, reader}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            if not task.cancelled() and task.exception() is not None and not isinstance(
                task.exception(), WebSocketDisconnect
            ):
                logger.warning(f"[WS] Feed for tenant {tenant_id} ended with error: {task.exception()}")
    finally:
        hub.unsubscribe(subscription)
        logger.info(f"[WS] Subscriber left tenant {tenant_id}")
