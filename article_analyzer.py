"""Quick-add: analyze one article given its PMID, PubMed URL or DOI."""

from __future__ import annotations

import logging
import re
from dataclasses import replace
from typing import Any

from config import Settings
from errors import DetailsFetchError, EmptyResultError
from llm_client import ChatClient, expect_object
from models import ArticleRecord
from pubmed_client import PubMedClient
from ranker import coerce_score

LOGGER = logging.getLogger(__name__)

ANALYSIS_TEMPERATURE = 0.1

_PUBMED_URL_RE = re.compile(r"pubmed\.ncbi\.nlm\.nih\.gov/(\d+)/?", re.IGNORECASE)
_DOI_RE = re.compile(r"^(?:https?://(?:dx\.)?doi\.org/|doi:\s*)?(10\.\d{4,9}/\S+)$", re.IGNORECASE)

ANALYSIS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "relevanceScore": {"type": "integer", "description": "Score from 1 to 100."},
        "relevanceExplanation": {"type": "string", "description": "Brief explanation for the score."},
        "keywords": {"type": "array", "items": {"type": "string"}},
        "articleType": {"type": "string", "description": "Type of the article."},
    },
    "required": ["relevanceScore", "relevanceExplanation", "keywords", "articleType"],
}

_PROMPT_TEMPLATE = """Analyze the following article abstract and title. Provide a relevance score for how well the abstract matches the title, extract keywords, and classify the article type.
Title: {title}
Abstract: {abstract}

Provide the following in a single JSON object:
1. relevanceScore: A number from 1-100 of how relevant the abstract is to the title.
2. relevanceExplanation: A brief (1-2 sentences) explanation for the score.
3. keywords: An array of 3-5 relevant keywords from the text.
4. articleType: Classify the article into one of: 'Randomized Controlled Trial', 'Meta-Analysis', 'Systematic Review', 'Observational Study', or 'Other'.
"""


def extract_pmid(identifier: str) -> str | None:
    """Return the PMID embedded in identifier, or None when it is a DOI.

    Accepts a bare PMID or a pubmed.ncbi.nlm.nih.gov URL. Raises ValueError
    for anything that is neither of those nor a DOI.
    """
    value = identifier.strip()
    if value.isdigit():
        return value
    match = _PUBMED_URL_RE.search(value)
    if match:
        return match.group(1)
    if _DOI_RE.match(value):
        return None
    raise ValueError(f"Not a PMID, PubMed URL or DOI: {identifier!r}")


class ArticleAnalyzer:
    def __init__(self, llm: ChatClient, search_client: PubMedClient, settings: Settings) -> None:
        self._llm = llm
        self._search = search_client
        self._settings = settings

    def resolve(self, identifier: str) -> str:
        pmid = extract_pmid(identifier)
        if pmid is not None:
            return pmid
        doi = _DOI_RE.match(identifier.strip()).group(1)
        try:
            ids = self._search.search(f"{doi}[DOI]", 1)
        except EmptyResultError as exc:
            raise DetailsFetchError(f"DOI not found in PubMed: {doi}") from exc
        LOGGER.info("Resolved DOI %s to pmid=%s", doi, ids[0])
        return ids[0]

    def analyze(self, identifier: str) -> ArticleRecord:
        """Fetch one article's details and annotate it with an AI relevance assessment."""
        pmid = self.resolve(identifier)
        records = self._search.fetch_details([pmid])
        article = records[0]

        payload = self._llm.complete_json(
            system=self._settings.system_preamble(),
            user=_PROMPT_TEMPLATE.format(title=article.title, abstract=article.abstract),
            schema=ANALYSIS_SCHEMA,
            schema_name="article_analysis",
            temperature=ANALYSIS_TEMPERATURE,
        )
        data = expect_object(payload, {"relevanceScore"})
        score = coerce_score(data.get("relevanceScore"))

        analyzed = replace(
            article,
            relevance_score=score if score is not None else 0,
            relevance_explanation=str(data.get("relevanceExplanation") or "").strip(),
            keywords=tuple(
                k.strip() for k in data.get("keywords") or [] if isinstance(k, str) and k.strip()
            ),
            article_type=str(data.get("articleType") or "").strip() or None,
        )
        LOGGER.info("Analyzed pmid=%s score=%s", analyzed.identifier, analyzed.relevance_score)
        return analyzed
