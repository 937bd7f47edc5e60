import asyncio
import json

import httpx
import pytest

from engage.services.dispatch_service import BrokerDispatcher
from engage.services.errors import DispatchFailure


def make_dispatcher(handler, base_url="https://broker.example.com/api/", api_key="broker-key"):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return BrokerDispatcher(base_url, api_key=api_key, client=client)


def send(dispatcher, **kwargs):
    async def scenario():
        try:
            return await dispatcher.send("inst 1", "+5511999990001", "Olá!", **kwargs)
        finally:
            await dispatcher.aclose()

    return asyncio.run(scenario())


def test_request_shape():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["key"] = request.headers.get("X-API-Key")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"externalId": "wamid-77", "status": "QUEUED"})

    receipt = send(make_dispatcher(handler), idempotency_key="msg-1")

    assert seen["url"] == "https://broker.example.com/api/instances/inst%201/send-text"
    assert seen["key"] == "broker-key"
    assert seen["body"] == {"to": "5511999990001", "text": "Olá!", "externalId": "msg-1"}
    assert (receipt.external_id, receipt.status) == ("wamid-77", "queued")


def test_message_id_fallback_and_no_key():
    seen = {}

    def handler(request):
        seen["headers"] = request.headers
        return httpx.Response(201, json={"messageId": 12345})

    receipt = send(make_dispatcher(handler, api_key=None))

    assert "X-API-Key" not in seen["headers"]
    assert (receipt.external_id, receipt.status) == ("12345", "sent")


def test_empty_body_is_still_a_success():
    receipt = send(make_dispatcher(lambda request: httpx.Response(204)))
    assert receipt.external_id is None


def test_http_error():
    with pytest.raises(DispatchFailure) as exc_info:
        send(make_dispatcher(lambda request: httpx.Response(502, text="bad gateway")))

    assert exc_info.value.reason == "http_502"
    assert exc_info.value.detail == "bad gateway"


def test_timeout():
    def handler(request):
        raise httpx.ConnectTimeout("slow", request=request)

    with pytest.raises(DispatchFailure) as exc_info:
        send(make_dispatcher(handler))
    assert exc_info.value.reason == "timeout"


def test_not_configured():
    with pytest.raises(DispatchFailure) as exc_info:
        send(make_dispatcher(lambda request: httpx.Response(200), base_url=None))
    assert exc_info.value.reason == "not_configured"
