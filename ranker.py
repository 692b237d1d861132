"""Phase 4: AI ranking of candidate articles, with identifier validation."""

from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass, field, replace
from typing import Any

from config import Settings
from errors import RankingValidationError
from llm_client import ChatClient, expect_object
from models import ArticleRecord, Insight, KeywordFrequency
from query_planner import research_system_instruction

LOGGER = logging.getLogger(__name__)

MAX_KEYWORDS = 10

RANKING_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "rankedArticles": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "pmid": {"type": "string"},
                    "relevanceScore": {"type": "integer"},
                    "relevanceExplanation": {"type": "string"},
                    "keywords": {"type": "array", "items": {"type": "string"}},
                    "articleType": {"type": "string"},
                    "aiSummary": {
                        "type": "string",
                        "description": "A concise summary of the article's methodology, key findings, and limitations.",
                    },
                },
                "required": [
                    "pmid",
                    "relevanceScore",
                    "relevanceExplanation",
                    "keywords",
                    "articleType",
                    "aiSummary",
                ],
            },
        },
        "aiGeneratedInsights": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "question": {"type": "string"},
                    "answer": {"type": "string"},
                    "supportingArticles": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["question", "answer", "supportingArticles"],
            },
        },
        "overallKeywords": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "keyword": {"type": "string"},
                    "frequency": {"type": "integer"},
                },
                "required": ["keyword", "frequency"],
            },
        },
    },
    "required": ["rankedArticles", "aiGeneratedInsights", "overallKeywords"],
}

_PROMPT_TEMPLATE = """From the provided list of articles, please perform the following analysis based on the original research topic: "{topic}".
1. Rank the top {top_n} articles based on their relevance to the topic. For each, provide its PMID, a relevance score (1-100), a brief explanation for the score, 3-5 keywords from its summary, classify its article type, and write a new, concise summary (as 'aiSummary') that extracts the core methodology, key findings, and limitations of the study. Ensure you ONLY use PMIDs from the provided list.
2. Generate 3-5 AI-powered insights based on the provided articles. Each insight should be a question/answer pair. List the PMIDs from the provided list that support each insight.
3. Analyze the keywords from all ranked articles to identify overall themes. List the top 5-10 keywords and their frequency.

Article List (JSON format):
{articles}
"""


@dataclass(frozen=True, slots=True)
class RankingResult:
    ranked_articles: list[ArticleRecord]
    insights: list[Insight] = field(default_factory=list)
    overall_keywords: list[KeywordFrequency] = field(default_factory=list)
    rejected_identifiers: tuple[str, ...] = ()


class RelevanceRanker:
    """One AI call over every candidate; only identifiers from the candidate set survive."""

    def __init__(self, llm: ChatClient, settings: Settings) -> None:
        self._llm = llm
        self._settings = settings

    def rank(self, topic: str, candidates: list[ArticleRecord], top_n: int) -> RankingResult:
        article_list = json.dumps(
            [
                {"pmid": a.identifier, "title": a.title, "summary": a.abstract}
                for a in candidates
            ],
            ensure_ascii=False,
        )
        payload = self._llm.complete_json(
            system=research_system_instruction(self._settings),
            user=_PROMPT_TEMPLATE.format(topic=topic, top_n=top_n, articles=article_list),
            schema=RANKING_SCHEMA,
            schema_name="ranking",
        )
        return validate_ranking(payload, candidates, top_n)


def validate_ranking(payload: Any, candidates: list[ArticleRecord], top_n: int) -> RankingResult:
    """Check a raw ranking payload against the candidate set.

    Ranked items with unknown identifiers are rejected, scores are clamped to
    0-100, duplicates keep their first occurrence and the result is sorted by
    score (descending) and capped at top_n.
    """
    data = expect_object(payload, {"rankedArticles"})
    by_id = {a.identifier: a for a in candidates}

    raw_ranked = data.get("rankedArticles")
    if not isinstance(raw_ranked, list):
        raw_ranked = []

    ranked: list[ArticleRecord] = []
    rejected: list[str] = []
    seen: set[str] = set()
    for item in raw_ranked:
        if not isinstance(item, dict):
            continue
        identifier = str(item.get("pmid", "")).strip()
        candidate = by_id.get(identifier)
        if candidate is None:
            rejected.append(identifier)
            continue
        if identifier in seen:
            continue
        score = coerce_score(item.get("relevanceScore"))
        if score is None:
            LOGGER.warning("Ranker: dropping pmid=%s with unusable score %r", identifier, item.get("relevanceScore"))
            continue
        seen.add(identifier)
        ranked.append(
            replace(
                candidate,
                relevance_score=score,
                relevance_explanation=_as_text(item.get("relevanceExplanation")),
                keywords=_as_str_tuple(item.get("keywords")),
                article_type=_as_text(item.get("articleType")) or None,
                ai_summary=_as_text(item.get("aiSummary")) or None,
            )
        )

    if rejected:
        LOGGER.warning("Ranker: rejected %s identifiers not in candidate set: %s", len(rejected), rejected)

    ranked.sort(key=lambda a: a.relevance_score, reverse=True)
    ranked = ranked[:top_n]
    if not ranked:
        raise RankingValidationError(
            "The AI ranking did not reference any article from the search results."
        )

    insights = _validate_insights(data.get("aiGeneratedInsights"), set(by_id))
    keywords = _validate_keywords(data.get("overallKeywords")) or keyword_frequencies(ranked)

    LOGGER.info(
        "Ranker: kept=%s rejected=%s insights=%s keywords=%s",
        len(ranked),
        len(rejected),
        len(insights),
        len(keywords),
    )
    return RankingResult(
        ranked_articles=ranked,
        insights=insights,
        overall_keywords=keywords,
        rejected_identifiers=tuple(rejected),
    )


def keyword_frequencies(articles: list[ArticleRecord], limit: int = MAX_KEYWORDS) -> list[KeywordFrequency]:
    """Count keywords (case-insensitively) across articles, most frequent first."""
    counts: Counter[str] = Counter()
    display: dict[str, str] = {}
    for article in articles:
        per_article = {k.strip().lower(): k.strip() for k in reversed(article.keywords) if k.strip()}
        for key, keyword in per_article.items():
            display.setdefault(key, keyword)
            counts[key] += 1
    return [KeywordFrequency(keyword=display[key], frequency=n) for key, n in counts.most_common(limit)]


def _validate_insights(raw: Any, valid_ids: set[str]) -> list[Insight]:
    if not isinstance(raw, list):
        return []
    insights: list[Insight] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        question = _as_text(item.get("question"))
        answer = _as_text(item.get("answer"))
        if not question or not answer:
            continue
        raw_cited = item.get("supportingArticles")
        if not isinstance(raw_cited, list):
            raw_cited = []
        cited = [str(i).strip() for i in raw_cited if str(i).strip()]
        supporting = tuple(dict.fromkeys(i for i in cited if i in valid_ids))
        if cited and not supporting:
            LOGGER.warning("Ranker: dropping insight with no valid supporting ids: %s", question)
            continue
        insights.append(Insight(question=question, answer=answer, supporting_identifiers=supporting))
    return insights


def _validate_keywords(raw: Any) -> list[KeywordFrequency]:
    if not isinstance(raw, list):
        return []
    keywords: list[KeywordFrequency] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        keyword = _as_text(item.get("keyword"))
        try:
            frequency = int(item.get("frequency"))
        except (TypeError, ValueError):
            continue
        if keyword and frequency > 0:
            keywords.append(KeywordFrequency(keyword=keyword, frequency=frequency))
    keywords.sort(key=lambda k: k.frequency, reverse=True)
    return keywords[:MAX_KEYWORDS]


def coerce_score(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        score = int(round(float(value)))
    except (TypeError, ValueError, OverflowError):
        return None
    return max(0, min(100, score))


def _as_text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _as_str_tuple(value: Any) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(v.strip() for v in value if isinstance(v, str) and v.strip())
