"""Generative-AI service boundary: OpenAI chat client plus shared JSON parsing."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterator
from json import JSONDecodeError
from typing import Any, Protocol

import openai
from openai import OpenAI

from config import Settings
from errors import (
    AIServiceError,
    ContentPolicyError,
    MalformedResponseError,
    SafetyBlockedError,
)

LOGGER = logging.getLogger(__name__)

_CODE_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")

RATE_LIMIT_MESSAGE = "You have exceeded the API rate limit. Please wait a moment before trying again."
OVERLOADED_MESSAGE = "The AI service is currently overloaded. Please try again later."
TOKEN_LIMIT_MESSAGE = (
    "The request exceeded the token limit. Please try a more focused query or reduce "
    "the number of articles to analyze."
)
SAFETY_MESSAGE = (
    "The AI's response was blocked due to safety settings. Please modify your query and try again."
)
CONTENT_POLICY_MESSAGE = (
    "The AI's response was blocked by the provider's content policy. Please try a different query."
)


class ChatClient(Protocol):
    """What the pipeline phases need from an AI provider."""

    def complete_json(
        self,
        *,
        system: str,
        user: str,
        schema: dict[str, Any] | None = None,
        schema_name: str = "response",
        temperature: float | None = None,
    ) -> Any: ...

    def stream_text(
        self, *, system: str, user: str, temperature: float | None = None
    ) -> Iterator[str]: ...


class OpenAIChatClient:
    """Chat Completions client. JSON mode for structured calls, SSE for streaming."""

    def __init__(self, settings: Settings, client: OpenAI | None = None) -> None:
        if client is None:
            if not settings.openai_api_key:
                raise RuntimeError("OPENAI_API_KEY environment variable is required")
            client = OpenAI(api_key=settings.openai_api_key, timeout=settings.ai_timeout_seconds)
        self._client = client
        self._model = settings.openai_model
        self._temperature = settings.temperature

    def complete_json(
        self,
        *,
        system: str,
        user: str,
        schema: dict[str, Any] | None = None,
        schema_name: str = "response",
        temperature: float | None = None,
    ) -> Any:
        if schema is not None:
            response_format: dict[str, Any] = {
                "type": "json_schema",
                "json_schema": {"name": schema_name, "schema": schema},
            }
        else:
            response_format = {"type": "json_object"}

        LOGGER.debug("Calling OpenAI model=%s schema=%s", self._model, schema_name)
        try:
            response = self._client.chat.completions.create(
                model=self._model,
                temperature=self._temperature if temperature is None else temperature,
                response_format=response_format,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
            )
        except openai.OpenAIError as exc:
            raise translate_openai_error(exc) from exc

        choice = response.choices[0]
        _check_finish_reason(choice.finish_reason)
        refusal = getattr(choice.message, "refusal", None)
        if refusal:
            raise SafetyBlockedError(f"{SAFETY_MESSAGE} ({refusal})")

        content = choice.message.content
        if not content:
            raise MalformedResponseError("Empty response from AI")
        return parse_json_payload(content)

    def stream_text(
        self, *, system: str, user: str, temperature: float | None = None
    ) -> Iterator[str]:
        LOGGER.debug("Streaming OpenAI model=%s", self._model)
        try:
            with self._client.chat.completions.create(
                model=self._model,
                temperature=self._temperature if temperature is None else temperature,
                stream=True,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
            ) as stream:
                for chunk in stream:
                    if not chunk.choices:
                        continue
                    choice = chunk.choices[0]
                    text = choice.delta.content if choice.delta is not None else None
                    if text:
                        yield text
                    _check_finish_reason(choice.finish_reason)
        except openai.OpenAIError as exc:
            raise translate_openai_error(exc) from exc


def build_llm_client(settings: Settings) -> ChatClient:
    """Return the chat client for settings.llm_provider."""
    if settings.llm_provider == "openai":
        return OpenAIChatClient(settings)
    if settings.llm_provider == "anthropic":
        from anthropic_client import AnthropicChatClient  # noqa: PLC0415

        return AnthropicChatClient(settings)
    raise RuntimeError(f"Unsupported LLM_PROVIDER: {settings.llm_provider!r}")


def translate_openai_error(exc: openai.OpenAIError) -> AIServiceError:
    """Map an OpenAI SDK exception onto the pipeline error taxonomy."""
    if isinstance(exc, openai.RateLimitError):
        return AIServiceError(RATE_LIMIT_MESSAGE)
    if isinstance(exc, openai.APITimeoutError):
        return AIServiceError(f"The AI service timed out: {exc}")
    if isinstance(exc, openai.APIConnectionError):
        return AIServiceError(f"Could not reach the AI service: {exc}")
    if isinstance(exc, openai.APIStatusError):
        if exc.status_code == 503:
            return AIServiceError(OVERLOADED_MESSAGE)
        return AIServiceError(f"AI service error (HTTP {exc.status_code}): {exc}")
    return AIServiceError(str(exc) or "An unknown AI error occurred.")


def _check_finish_reason(finish_reason: str | None) -> None:
    if finish_reason == "content_filter":
        raise ContentPolicyError(CONTENT_POLICY_MESSAGE)
    if finish_reason == "length":
        raise AIServiceError(TOKEN_LIMIT_MESSAGE)


def parse_json_payload(content: str) -> Any:
    """Parse possibly noisy model output into a JSON object or array.

    Markdown code fences are unwrapped first; if the text still is not valid
    JSON, the first decodable object or array embedded in it is returned.
    """
    if not content or not content.strip():
        raise MalformedResponseError("Empty response from AI")

    cleaned = _CODE_FENCE_RE.sub(r"\1", content).strip()
    try:
        return json.loads(cleaned)
    except JSONDecodeError:
        pass

    decoder = json.JSONDecoder()
    for index, char in enumerate(cleaned):
        if char not in "{[":
            continue
        try:
            candidate, _ = decoder.raw_decode(cleaned[index:])
        except JSONDecodeError:
            continue
        if isinstance(candidate, (dict, list)):
            return candidate

    LOGGER.error("Could not parse JSON from AI output: %.200s", content)
    raise MalformedResponseError(
        "AI response did not contain valid JSON. The model may have been interrupted."
    )


def expect_object(payload: Any, required_keys: set[str]) -> dict[str, Any]:
    """Check that payload is a JSON object carrying every required key."""
    if not isinstance(payload, dict):
        raise MalformedResponseError("Expected a JSON object from the AI response")
    missing = required_keys - payload.keys()
    if missing:
        raise MalformedResponseError(f"AI response missing required keys: {sorted(missing)}")
    return payload
