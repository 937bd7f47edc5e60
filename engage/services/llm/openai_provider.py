import json
from typing import List, Optional

import httpx

from engage.logging_config import get_logger
from engage.services.errors import GenerationFailure
from engage.services.llm.base import LLMProvider, LLMResponse

logger = get_logger("llm.openai")

STRUCTURED_REPLY_INSTRUCTION = (
    'Respond with a JSON object {"reply": string, "confidence": number between 0 and 1} '
    "where confidence is how sure you are the reply fully answers the customer."
)


def parse_structured_reply(content: str) -> tuple[str, Optional[float]]:
    """Split a {"reply", "confidence"} body. Plain text is taken as the reply with no confidence."""
    try:
        data = json.loads(content)
    except ValueError:
        return content.strip(), None
    if not isinstance(data, dict):
        return content.strip(), None

    reply = data.get("reply")
    if not isinstance(reply, str):
        raise GenerationFailure("malformed_response", "structured reply has no 'reply' string")

    confidence = data.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        confidence = None
    else:
        confidence = min(max(float(confidence), 0.0), 1.0)
    return reply.strip(), confidence


class OpenAIProvider(LLMProvider):
    """OpenAI chat completions over httpx."""

    def __init__(
        self,
        api_key: str,
        default_model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 20.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = f"{base_url.rstrip('/')}/chat/completions"
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 500,
    ) -> LLMResponse:
        model = model or self.default_model
        payload = {
            "model": model,
            "messages": [{"role": "system", "content": STRUCTURED_REPLY_INSTRUCTION}, *messages],
            "temperature": temperature,
            "max_tokens": max_tokens,
            "response_format": {"type": "json_object"},
        }
        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}")

        try:
            response = await self._client.post(
                self.base_url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json=payload,
            )
        except httpx.TimeoutException as e:
            raise GenerationFailure("timeout", str(e)) from e
        except httpx.HTTPError as e:
            raise GenerationFailure("transport_error", str(e)) from e

        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.status_code} - {response.text[:500]}")
            raise GenerationFailure(f"http_{response.status_code}", response.text[:500])

        try:
            data = response.json()
            message = data["choices"][0]["message"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise GenerationFailure("malformed_response", str(e)) from e

        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str) or not content.strip():
            raise GenerationFailure("empty_response")

        reply, confidence = parse_structured_reply(content)
        if not reply:
            raise GenerationFailure("empty_response")

        logger.debug(f"OpenAI content: {reply[:100]}")
        return LLMResponse(
            content=reply,
            model=data.get("model", model),
            usage=data.get("usage"),
            confidence=confidence,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
