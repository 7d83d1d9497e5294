"""Chat-completion client that turns a history window into a reply draft."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

import httpx
import msgspec

from .logging import get_logger
from .model import (
    AuthFailure,
    Draft,
    DraftResult,
    EmptyCompletion,
    MalformedResponse,
    Message,
    ModelParams,
    RateLimited,
    TransportFailure,
)

logger = get_logger(__name__)

DEFAULT_API_URL = "https://api.groq.com/openai/v1/chat/completions"


class ChatMessage(msgspec.Struct):
    role: str
    content: str


class CompletionRequest(msgspec.Struct):
    model: str
    temperature: float
    messages: list[ChatMessage]


class _CompletionMessage(msgspec.Struct, forbid_unknown_fields=False):
    content: str | None = None


class _Choice(msgspec.Struct, forbid_unknown_fields=False):
    message: _CompletionMessage


class CompletionResponse(msgspec.Struct, forbid_unknown_fields=False):
    choices: list[_Choice]


class DraftGenerator(Protocol):
    async def generate(
        self,
        system_prompt: str,
        history: Sequence[Message],
        model_params: ModelParams,
    ) -> DraftResult: ...


def role_for(message: Message) -> str:
    return "user" if message.is_incoming else "assistant"


def build_messages(system_prompt: str, history: Sequence[Message]) -> list[ChatMessage]:
    messages = [ChatMessage(role="system", content=system_prompt)]
    messages.extend(
        ChatMessage(role=role_for(message), content=message.text)
        for message in history
        if message.text
    )
    return messages


def build_request(
    system_prompt: str, history: Sequence[Message], model_params: ModelParams
) -> CompletionRequest:
    return CompletionRequest(
        model=model_params.model,
        temperature=model_params.temperature,
        messages=build_messages(system_prompt, history),
    )


def _retry_after_from_response(resp: httpx.Response) -> float | None:
    value = resp.headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class DraftClient:
    """Stateless wrapper around an OpenAI-compatible chat-completion endpoint.

    Every call returns either a `Draft` or one of the `DraftFailure` kinds.
    Nothing is retried here; the caller decides whether a retry is still
    worth it for the current generation.
    """

    def __init__(
        self,
        api_key: str,
        *,
        api_url: str = DEFAULT_API_URL,
        timeout_s: float = 60,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("LLM api key is empty")
        self._api_key = api_key
        self._api_url = api_url
        self._client = client or httpx.AsyncClient(timeout=timeout_s)
        self._owns_client = client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def generate(
        self,
        system_prompt: str,
        history: Sequence[Message],
        model_params: ModelParams,
    ) -> DraftResult:
        request = build_request(system_prompt, history, model_params)
        logger.debug(
            "llm.request",
            model=model_params.model,
            temperature=model_params.temperature,
            history_len=len(history),
        )
        try:
            resp = await self._client.post(
                self._api_url,
                content=msgspec.json.encode(request),
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                },
            )
        except httpx.HTTPError as e:
            logger.error(
                "llm.network_error",
                url=self._api_url,
                error=str(e),
                error_type=e.__class__.__name__,
            )
            return TransportFailure(message=f"{e.__class__.__name__}: {e}")

        status = resp.status_code
        if status in (401, 403):
            logger.error("llm.auth_error", status=status, body=resp.text)
            return AuthFailure(
                message=f"credentials rejected (HTTP {status})", status=status
            )
        if status == 429:
            retry_after = _retry_after_from_response(resp)
            logger.warning(
                "llm.rate_limited",
                model=model_params.model,
                retry_after=retry_after,
            )
            return RateLimited(
                message=f"rate limited for model {model_params.model}",
                retry_after=retry_after,
            )
        if not resp.is_success:
            logger.error("llm.http_error", status=status, body=resp.text)
            return TransportFailure(
                message=f"API error {status}: {resp.text[:200]}", status=status
            )

        try:
            payload = msgspec.json.decode(resp.content, type=CompletionResponse)
        except (msgspec.DecodeError, msgspec.ValidationError) as e:
            logger.error("llm.bad_response", status=status, error=str(e), body=resp.text)
            return MalformedResponse(message=str(e))

        if not payload.choices:
            return EmptyCompletion(message="no choices in response")
        content = payload.choices[0].message.content
        if content is None or not content.strip():
            return EmptyCompletion(message="completion text is empty")

        logger.debug("llm.response", model=model_params.model, length=len(content))
        return Draft(text=content.strip(), model=model_params.model)
