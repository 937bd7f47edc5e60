"""Operational alerts to a Telegram chat."""

from typing import Optional

import httpx

from engage.config import settings
from engage.logging_config import get_logger

logger = get_logger("alert_service")

LEVEL_EMOJI = {"INFO": "ℹ️", "WARNING": "⚠️", "ERROR": "❌", "CRITICAL": "🔥"}


def format_alert(level: str, message: str, context: Optional[dict] = None) -> str:
    text = f"{LEVEL_EMOJI.get(level, '📢')} *{level}*\n\n{message}"
    if context:
        context_str = "\n".join(f"  {k}: {v}" for k, v in context.items())
        text += f"\n\n```\n{context_str}\n```"
    return text


async def send_alert(
    level: str,
    message: str,
    context: Optional[dict] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> bool:
    """Send alert to Telegram.

    Args:
        level: INFO, WARNING, ERROR, CRITICAL
        message: Alert message
        context: Optional context dict
        client: Optional shared client, mostly for tests

    Returns:
        True if sent successfully. Never raises.
    """
    if not settings.alert_bot_token or not settings.alert_chat_id:
        logger.warning(f"Alert not configured: {level} - {message}", extra={"context": context or {}})
        return False

    url = f"https://api.telegram.org/bot{settings.alert_bot_token}/sendMessage"
    body = {"chat_id": settings.alert_chat_id, "text": format_alert(level, message, context), "parse_mode": "Markdown"}
    try:
        if client is not None:
            response = await client.post(url, json=body)
        else:
            async with httpx.AsyncClient(timeout=10) as own_client:
                response = await own_client.post(url, json=body)
        return response.status_code == 200
    except httpx.HTTPError as e:
        logger.error(f"Failed to send alert: {e}")
        return False


async def alert_error(message: str, context: Optional[dict] = None) -> bool:
    return await send_alert("ERROR", message, context)


async def alert_critical(message: str, context: Optional[dict] = None) -> bool:
    return await send_alert("CRITICAL", message, context)


async def alert_warning(message: str, context: Optional[dict] = None) -> bool:
    return await send_alert("WARNING", message, context)
