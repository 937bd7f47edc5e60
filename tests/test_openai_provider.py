import asyncio
import json

import httpx
import pytest

from engage.services.errors import GenerationFailure
from engage.services.llm import OpenAIProvider
from engage.services.llm.openai_provider import parse_structured_reply

MESSAGES = [{"role": "system", "content": "be nice"}, {"role": "user", "content": "oi"}]


def completion(content, model="gpt-4o-mini"):
    return {
        "model": model,
        "choices": [{"message": {"role": "assistant", "content": content}}],
        "usage": {"prompt_tokens": 20, "completion_tokens": 8, "total_tokens": 28},
    }


def make_provider(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OpenAIProvider(api_key="sk-test", client=client)


def generate(provider):
    async def scenario():
        try:
            return await provider.generate(MESSAGES)
        finally:
            await provider.aclose()

    return asyncio.run(scenario())


class TestParseStructuredReply:
    def test_json_reply_with_confidence(self):
        assert parse_structured_reply('{"reply": " Olá! ", "confidence": 0.82}') == ("Olá!", 0.82)

    def test_plain_text(self):
        assert parse_structured_reply("Olá, tudo bem?") == ("Olá, tudo bem?", None)

    def test_confidence_is_clamped(self):
        assert parse_structured_reply('{"reply": "x", "confidence": 7}')[1] == 1.0
        assert parse_structured_reply('{"reply": "x", "confidence": -1}')[1] == 0.0

    def test_non_numeric_confidence_is_dropped(self):
        assert parse_structured_reply('{"reply": "x", "confidence": "high"}') == ("x", None)
        assert parse_structured_reply('{"reply": "x", "confidence": true}') == ("x", None)

    def test_missing_reply_is_malformed(self):
        with pytest.raises(GenerationFailure) as exc_info:
            parse_structured_reply('{"answer": "x"}')
        assert exc_info.value.reason == "malformed_response"


class TestOpenAIProvider:
    def test_success(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=completion('{"reply": "Olá!", "confidence": 0.9}'))

        response = generate(make_provider(handler))

        assert response.content == "Olá!"
        assert response.confidence == 0.9
        assert response.usage["total_tokens"] == 28
        assert seen["url"] == "https://api.openai.com/v1/chat/completions"
        assert seen["auth"] == "Bearer sk-test"
        assert seen["body"]["response_format"] == {"type": "json_object"}
        assert seen["body"]["messages"][1:] == MESSAGES

    def test_plain_text_completion(self):
        response = generate(make_provider(lambda request: httpx.Response(200, json=completion("Oi!"))))

        assert response.content == "Oi!"
        assert response.confidence is None

    @pytest.mark.parametrize(
        "response, reason",
        [
            (httpx.Response(500, text="upstream down"), "http_500"),
            (httpx.Response(200, text="<html>"), "malformed_response"),
            (httpx.Response(200, json={"choices": []}), "malformed_response"),
            (httpx.Response(200, json=completion("   ")), "empty_response"),
            (httpx.Response(200, json=completion('{"reply": ""}')), "empty_response"),
        ],
    )
    def test_backend_errors(self, response, reason):
        with pytest.raises(GenerationFailure) as exc_info:
            generate(make_provider(lambda request: response))
        assert exc_info.value.reason == reason

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(GenerationFailure) as exc_info:
            generate(make_provider(handler))
        assert exc_info.value.reason == "timeout"

    def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(GenerationFailure) as exc_info:
            generate(make_provider(handler))
        assert exc_info.value.reason == "transport_error"
