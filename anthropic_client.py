"""Thin wrapper around the Anthropic Messages API."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from typing import Any

import anthropic

from config import Settings
from errors import AIServiceError, SafetyBlockedError
from llm_client import (
    OVERLOADED_MESSAGE,
    RATE_LIMIT_MESSAGE,
    SAFETY_MESSAGE,
    TOKEN_LIMIT_MESSAGE,
    parse_json_payload,
)

LOGGER = logging.getLogger(__name__)

_JSON_ONLY_INSTRUCTION = "Respond ONLY with valid JSON. No prose, no markdown."


class AnthropicChatClient:
    """Claude-backed implementation of the chat client contract.

    Claude has no JSON response mode, so the schema (when given) is appended
    to the system prompt and the reply goes through parse_json_payload.
    """

    def __init__(self, settings: Settings, client: anthropic.Anthropic | None = None) -> None:
        if client is None:
            if not settings.anthropic_api_key:
                raise RuntimeError("ANTHROPIC_API_KEY environment variable is required")
            client = anthropic.Anthropic(
                api_key=settings.anthropic_api_key, timeout=settings.ai_timeout_seconds
            )
        self._client = client
        self._model = settings.claude_model
        self._max_tokens = settings.claude_max_tokens
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
        system_prompt = f"{system}\n\n{_JSON_ONLY_INSTRUCTION}"
        if schema is not None:
            system_prompt += f"\n\nRequired JSON schema ({schema_name}):\n{json.dumps(schema, indent=2)}"

        LOGGER.debug("Calling Claude model=%s max_tokens=%s", self._model, self._max_tokens)
        try:
            response = self._client.messages.create(
                model=self._model,
                max_tokens=self._max_tokens,
                temperature=self._temperature if temperature is None else temperature,
                system=system_prompt,
                messages=[{"role": "user", "content": user}],
            )
        except anthropic.AnthropicError as exc:
            raise translate_anthropic_error(exc) from exc

        _check_stop_reason(response.stop_reason)
        text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        return parse_json_payload(text)

    def stream_text(
        self, *, system: str, user: str, temperature: float | None = None
    ) -> Iterator[str]:
        LOGGER.debug("Streaming Claude model=%s", self._model)
        try:
            with self._client.messages.stream(
                model=self._model,
                max_tokens=self._max_tokens,
                temperature=self._temperature if temperature is None else temperature,
                system=system,
                messages=[{"role": "user", "content": user}],
            ) as stream:
                for text in stream.text_stream:
                    if text:
                        yield text
                final = stream.get_final_message()
        except anthropic.AnthropicError as exc:
            raise translate_anthropic_error(exc) from exc
        _check_stop_reason(final.stop_reason)


def translate_anthropic_error(exc: anthropic.AnthropicError) -> AIServiceError:
    """Map an Anthropic SDK exception onto the pipeline error taxonomy."""
    if isinstance(exc, anthropic.RateLimitError):
        return AIServiceError(RATE_LIMIT_MESSAGE)
    if isinstance(exc, anthropic.APITimeoutError):
        return AIServiceError(f"The AI service timed out: {exc}")
    if isinstance(exc, anthropic.APIConnectionError):
        return AIServiceError(f"Could not reach the AI service: {exc}")
    if isinstance(exc, anthropic.APIStatusError):
        if exc.status_code in (503, 529):
            return AIServiceError(OVERLOADED_MESSAGE)
        return AIServiceError(f"AI service error (HTTP {exc.status_code}): {exc}")
    return AIServiceError(str(exc) or "An unknown AI error occurred.")


def _check_stop_reason(stop_reason: str | None) -> None:
    if stop_reason == "refusal":
        raise SafetyBlockedError(SAFETY_MESSAGE)
    if stop_reason == "max_tokens":
        raise AIServiceError(TOKEN_LIMIT_MESSAGE)
