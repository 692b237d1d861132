"""Phase 5: streamed narrative synthesis over the ranked articles."""

from __future__ import annotations

import logging
from collections.abc import Iterator

from config import Settings
from llm_client import ChatClient
from models import ArticleRecord
from query_planner import research_system_instruction

LOGGER = logging.getLogger(__name__)


def build_synthesis_prompt(articles: list[ArticleRecord], focus: str) -> str:
    blocks = []
    for article in articles:
        blocks.append(
            "---\n"
            f"PMID: {article.identifier}\n"
            f"Title: {article.title}\n"
            f"Summary: {article.ai_summary or article.abstract}\n"
            f"Relevance Score: {article.relevance_score}/100\n"
            f"Keywords: {', '.join(article.keywords)}\n"
            "---"
        )
    return (
        f'Based on the following articles, write a comprehensive synthesis focusing on "{focus}". '
        "This should be a well-structured narrative in markdown format.\n\n"
        "Articles:\n" + "\n".join(blocks)
    )


class SynthesisStreamer:
    """Yields text increments exactly as the AI service emits them."""

    def __init__(self, llm: ChatClient, settings: Settings) -> None:
        self._llm = llm
        self._settings = settings

    def stream(self, articles: list[ArticleRecord], focus: str) -> Iterator[str]:
        """Lazy, finite and single-use; stop iterating to abandon the stream."""
        prompt = build_synthesis_prompt(articles, focus)
        chunks = 0
        for chunk in self._llm.stream_text(
            system=research_system_instruction(self._settings), user=prompt
        ):
            chunks += 1
            yield chunk
        LOGGER.info("Synthesis: streamed %s chunks", chunks)
