from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

import httpx

from engage.logging_config import get_logger
from engage.services.errors import DispatchFailure

logger = get_logger("dispatch_service")


@dataclass
class DispatchReceipt:
    external_id: Optional[str]
    status: str


class BrokerDispatcher:
    """Sends text back through the broker's instance HTTP API."""

    def __init__(
        self,
        base_url: Optional[str],
        api_key: Optional[str] = None,
        timeout_seconds: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def send(
        self,
        channel_instance_id: str,
        recipient_address: str,
        content: str,
        idempotency_key: Optional[str] = None,
    ) -> DispatchReceipt:
        if not self.base_url:
            raise DispatchFailure("not_configured", "broker_api_url is not set")

        url = f"{self.base_url}/instances/{quote(channel_instance_id, safe='')}/send-text"
        body = {"to": recipient_address.lstrip("+"), "text": content}
        if idempotency_key:
            body["externalId"] = idempotency_key
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key

        try:
            response = await self._client.post(url, json=body, headers=headers)
        except httpx.TimeoutException as e:
            raise DispatchFailure("timeout", str(e)) from e
        except httpx.HTTPError as e:
            raise DispatchFailure("transport_error", str(e)) from e

        logger.info(
            f"Broker send response: status={response.status_code}",
            extra={"context": {"instance_id": channel_instance_id, "to": recipient_address}},
        )
        if response.status_code >= 400:
            raise DispatchFailure(f"http_{response.status_code}", response.text[:500])

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        external_id = data.get("externalId") or data.get("messageId") or data.get("id")
        status = data.get("status") or "sent"
        return DispatchReceipt(external_id=str(external_id) if external_id else None, status=str(status).lower())

    async def aclose(self) -> None:
        await self._client.aclose()
