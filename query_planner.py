"""Phase 1: turn a research request into an executable PubMed query."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from config import Settings
from errors import PlanningError
from llm_client import ChatClient
from models import GeneratedQuery, ResearchRequest

LOGGER = logging.getLogger(__name__)

PLANNER_TEMPERATURE = 0.1

QUERY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "generatedQueries": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "query": {"type": "string"},
                    "explanation": {"type": "string"},
                },
                "required": ["query", "explanation"],
            },
        },
    },
    "required": ["generatedQueries"],
}

_PROMPT_TEMPLATE = """Based on the user's research topic, generate a single, complete, and advanced PubMed search query.
- Use PubMed-specific syntax like MeSH terms ([MeSH]), field tags ([Title/Abstract]), and boolean operators (AND, OR, NOT) to create a precise query for the topic.
- The query MUST incorporate the following filters by using the AND operator: {filters}
- Ensure the main topic part of the query is enclosed in parentheses if it contains OR operators, before you AND the filters.
- For example, for the topic "effects of aspirin on heart attack" with a filter for "Randomized Controlled Trial", a good query would be: (("aspirin"[MeSH Terms] OR "aspirin"[Title/Abstract]) AND ("myocardial infarction"[MeSH Terms] OR "heart attack"[Title/Abstract])) AND ("Randomized Controlled Trial"[Publication Type])

Respond with JSON: {{"generatedQueries": [{{"query": "...", "explanation": "..."}}]}}

Research Topic: "{topic}"
"""


def build_filter_clauses(request: ResearchRequest, today: datetime | None = None) -> list[str]:
    """Return the PubMed clauses that must be ANDed onto the topic expression."""
    clauses: list[str] = []
    if request.date_range != "any":
        current_year = (today or datetime.now(UTC)).year
        start_year = current_year - int(request.date_range)
        clauses.append(
            f'("{start_year}/01/01"[Date - Publication] : "3000/12/31"[Date - Publication])'
        )
    if request.article_types:
        types = " OR ".join(f'"{t}"[Publication Type]' for t in request.article_types)
        clauses.append(f"({types})")
    return clauses


def enforce_filters(query: str, clauses: list[str]) -> str:
    """AND any filter clause the model left out onto the query."""
    compact = " ".join(query.split())
    missing = [clause for clause in clauses if clause not in compact]
    if not missing:
        return compact
    LOGGER.info("Planner: appending %s filter clause(s) missing from AI query", len(missing))
    return " AND ".join([f"({compact})", *missing])


def research_system_instruction(settings: Settings) -> str:
    """System instruction shared by the planning, ranking and synthesis calls."""
    return (
        f"{settings.system_preamble()} You are an expert AI research assistant. "
        "Your goal is to conduct a literature review on PubMed based on the user's "
        "criteria, rank the articles, and synthesize the findings."
    )


class QueryPlanner:
    """Calls the AI service once; fails fast with PlanningError on unusable output."""

    def __init__(self, llm: ChatClient, settings: Settings) -> None:
        self._llm = llm
        self._settings = settings

    def plan(self, request: ResearchRequest, today: datetime | None = None) -> list[GeneratedQuery]:
        """Return the generated queries; the first one is the one to execute."""
        clauses = build_filter_clauses(request, today=today)
        filter_lines = "".join(f"\n- {clause}" for clause in clauses)
        prompt = _PROMPT_TEMPLATE.format(
            filters=filter_lines or "No additional filters required.",
            topic=request.research_topic,
        )

        payload = self._llm.complete_json(
            system=research_system_instruction(self._settings),
            user=prompt,
            schema=QUERY_SCHEMA,
            schema_name="generated_queries",
            temperature=PLANNER_TEMPERATURE,
        )
        queries = _parse_generated_queries(payload)
        if not queries:
            raise PlanningError("The AI failed to generate any search queries.")

        first, *rest = queries
        executable = GeneratedQuery(
            query=enforce_filters(first.query, clauses), explanation=first.explanation
        )
        LOGGER.info("Planner: generated %s queries; executing: %s", len(queries), executable.query)
        return [executable, *rest]


def _parse_generated_queries(payload: Any) -> list[GeneratedQuery]:
    if isinstance(payload, dict):
        items = payload.get("generatedQueries")
    else:
        items = payload
    if not isinstance(items, list):
        return []

    queries: list[GeneratedQuery] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        query = item.get("query")
        if not isinstance(query, str) or not query.strip():
            # Only the first query is executed, so an unusable first item is fatal.
            if not queries:
                return []
            continue
        explanation = item.get("explanation")
        queries.append(
            GeneratedQuery(
                query=query.strip(),
                explanation=explanation.strip() if isinstance(explanation, str) else "",
            )
        )
    return queries
