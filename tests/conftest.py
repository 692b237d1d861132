from __future__ import annotations

from collections.abc import Iterator
from typing import Any

import pytest

from config import Settings


class FakeChatClient:
    """Scripted ChatClient: returns queued JSON payloads and streams fixed chunks."""

    def __init__(self, payloads: list[Any] | None = None, chunks: list[str] | None = None) -> None:
        self.payloads = list(payloads or [])
        self.chunks = list(chunks or [])
        self.json_calls: list[dict[str, Any]] = []
        self.stream_calls: list[dict[str, Any]] = []

    def complete_json(self, **kwargs: Any) -> Any:
        self.json_calls.append(kwargs)
        payload = self.payloads.pop(0)
        if isinstance(payload, Exception):
            raise payload
        return payload

    def stream_text(self, **kwargs: Any) -> Iterator[str]:
        self.stream_calls.append(kwargs)
        for chunk in self.chunks:
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk


@pytest.fixture
def settings() -> Settings:
    return Settings(openai_api_key="test-key", anthropic_api_key="test-key")


@pytest.fixture
def fake_llm() -> FakeChatClient:
    return FakeChatClient()
