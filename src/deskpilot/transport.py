# transport.py
# LLM transport contract and the OpenRouter implementation.
#
# The core never talks to a provider SDK directly. It calls
#   send(messages, system_prompt, tools, model, max_tokens) -> LLMResponse
# and expects one of the TransportError subclasses on failure, which
# retry.classify() knows how to read.
#
# Messages use a neutral block format:
#   {"role": "user", "content": [
#       {"type": "text", "text": "..."},
#       {"type": "image", "media_type": "image/jpeg", "data": "<base64>"},
#   ]}

import json
import logging
from typing import Any, Protocol

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, Field

from deskpilot.models import ChatMessage

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class TransportError(Exception):
    """Base class for every failure the transport reports."""


class Unauthenticated(TransportError):
    """No API key, or the provider rejected it."""


class InvalidResponse(TransportError):
    """The provider answered with something that is not a usable completion."""


class ResponseParseError(TransportError):
    """A request or response body could not be (de)serialized."""


class HTTPStatusError(TransportError):
    """Non-2xx answer from the provider."""

    def __init__(self, status_code: int, body: str = "") -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"HTTP {status_code}: {body[:200]}")


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class LLMResponse(BaseModel):
    text: str = ""
    tool_calls: list[dict[str, Any]] = Field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0


class Transport(Protocol):
    async def send(
        self,
        messages: list[dict[str, Any]],
        system_prompt: str,
        tools: list[dict[str, Any]],
        model: str,
        max_tokens: int,
    ) -> LLMResponse: ...


def user_message(text: str, image_b64: str | None = None, media_type: str = "image/jpeg") -> dict:
    """Build one neutral user turn with optional image."""
    content: list[dict[str, Any]] = [{"type": "text", "text": text}]
    if image_b64:
        content.append({"type": "image", "media_type": media_type, "data": image_b64})
    return ChatMessage(role="user", content=content).model_dump()


# ---------------------------------------------------------------------------
# OpenRouter
# ---------------------------------------------------------------------------


class OpenRouterTransport:
    """
    OpenAI-compatible chat transport pointed at OpenRouter.

    Example:
        transport = OpenRouterTransport(api_key=os.getenv("OPENROUTER_API_KEY"))
        response = await transport.send(
            [user_message("hi")], "You are terse.", [], "anthropic/claude-3.5-haiku", 64
        )
    """

    def __init__(self, api_key: str | None, base_url: str = "https://openrouter.ai/api/v1") -> None:
        self._api_key = api_key
        self._base_url = base_url
        self._client: AsyncOpenAI | None = None

    def _get_client(self) -> AsyncOpenAI:
        if not self._api_key:
            raise Unauthenticated("OPENROUTER_API_KEY is not set.")
        if self._client is None:
            # Retries are owned by retry.RetryStrategy.
            self._client = AsyncOpenAI(base_url=self._base_url, api_key=self._api_key, max_retries=0)
        return self._client

    # ------------------------------------------------------------------
    # Format conversion
    # ------------------------------------------------------------------

    @staticmethod
    def _convert_block(block: dict[str, Any]) -> dict[str, Any]:
        if block.get("type") == "image":
            url = f"data:{block.get('media_type', 'image/jpeg')};base64,{block['data']}"
            return {"type": "image_url", "image_url": {"url": url}}
        return {"type": "text", "text": block.get("text", "")}

    def _convert_messages(self, messages: list[dict[str, Any]], system_prompt: str) -> list[dict]:
        converted: list[dict] = []
        if system_prompt:
            converted.append({"role": "system", "content": system_prompt})
        for raw in messages:
            message = ChatMessage.model_validate(raw)
            content = message.content
            if isinstance(content, list):
                content = [self._convert_block(b) for b in content]
            converted.append({"role": message.role, "content": content})
        return converted

    @staticmethod
    def _convert_tools(tools: list[dict[str, Any]]) -> list[dict] | None:
        if not tools:
            return None
        return [
            {
                "type": "function",
                "function": {
                    "name": t["name"],
                    "description": t.get("description", ""),
                    "parameters": t.get("input_schema", {"type": "object"}),
                },
            }
            for t in tools
        ]

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    async def send(
        self,
        messages: list[dict[str, Any]],
        system_prompt: str,
        tools: list[dict[str, Any]],
        model: str,
        max_tokens: int,
    ) -> LLMResponse:
        client = self._get_client()
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": self._convert_messages(messages, system_prompt),
            "max_tokens": max_tokens,
        }
        converted_tools = self._convert_tools(tools)
        if converted_tools:
            kwargs["tools"] = converted_tools

        logger.debug("chat completion model=%s max_tokens=%d", model, max_tokens)
        try:
            response = await client.chat.completions.create(**kwargs)
        except openai.AuthenticationError as exc:
            raise Unauthenticated(str(exc)) from exc
        except openai.APIStatusError as exc:
            raise HTTPStatusError(exc.status_code, _body_text(exc)) from exc
        # APIConnectionError / APITimeoutError propagate untouched; the
        # classifier treats them as transient network failures.

        if not response.choices:
            raise InvalidResponse("Completion contained no choices.")

        message = response.choices[0].message
        tool_calls: list[dict[str, Any]] = []
        for call in message.tool_calls or []:
            try:
                arguments = json.loads(call.function.arguments or "{}")
            except json.JSONDecodeError as exc:
                raise ResponseParseError(f"Tool call arguments are not JSON: {exc}") from exc
            tool_calls.append({"id": call.id, "name": call.function.name, "input": arguments})

        usage = response.usage
        return LLMResponse(
            text=(message.content or "").strip(),
            tool_calls=tool_calls,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )


def _body_text(exc: "openai.APIStatusError") -> str:
    body = exc.body
    if body is None:
        return exc.message
    if isinstance(body, str):
        return body
    try:
        return json.dumps(body)
    except (TypeError, ValueError):
        return str(body)
