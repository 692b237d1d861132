"""PubMed E-utilities client: identifier search and detail record fetch."""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from typing import Any

import requests

from config import Settings
from errors import DetailsFetchError, EmptyResultError, SearchServiceError
from models import ArticleRecord

ESEARCH_URL = "https://eutils.ncbi.nlm.nih.gov/entrez/eutils/esearch.fcgi"
EFETCH_URL = "https://eutils.ncbi.nlm.nih.gov/entrez/eutils/efetch.fcgi"
USER_AGENT = "litreview-pipeline/1.0"
TOOL_NAME = "litreview-pipeline"
NO_ABSTRACT = "No abstract available."

LOGGER = logging.getLogger(__name__)


class PubMedClient:
    """Stateless I/O boundary around ESearch and EFetch.

    Both calls are idempotent GET/POST requests with an explicit timeout and
    no retries; transport failures surface as SearchServiceError.
    """

    def __init__(
        self,
        timeout_seconds: float = 30.0,
        api_key: str | None = None,
        email: str | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.api_key = api_key
        self.email = email

    @classmethod
    def from_settings(cls, settings: Settings) -> PubMedClient:
        return cls(
            timeout_seconds=settings.request_timeout_seconds,
            api_key=settings.ncbi_api_key,
            email=settings.ncbi_email,
        )

    def search(self, query: str, max_results: int) -> list[str]:
        """Return PMIDs for query, most relevant first. Raises EmptyResultError on zero hits."""
        params = self._common_params()
        params.update({
            "term": query,
            "retmax": max_results,
            "sort": "relevance",
            "retmode": "json",
        })

        LOGGER.info("PubMed search: query=%s max_results=%s", query, max_results)
        try:
            response = requests.get(
                ESEARCH_URL,
                params=params,
                headers={"User-Agent": USER_AGENT},
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
            body = response.json()
        except requests.RequestException as exc:
            raise SearchServiceError(f"Failed to fetch from PubMed: {exc}") from exc
        except ValueError as exc:
            raise SearchServiceError("PubMed returned a non-JSON search response") from exc

        result = body.get("esearchresult") if isinstance(body, dict) else None
        if not isinstance(result, dict):
            raise SearchServiceError("Unexpected PubMed search payload shape")
        if result.get("ERROR"):
            raise SearchServiceError(f"PubMed rejected the query: {result['ERROR']}")

        ids = [str(pmid) for pmid in result.get("idlist") or [] if str(pmid).strip()]
        if not ids:
            raise EmptyResultError(query)

        LOGGER.info("PubMed search: found %s ids (total hits=%s)", len(ids), result.get("count"))
        return ids

    def fetch_details(self, identifiers: list[str]) -> list[ArticleRecord]:
        """Fetch detail records for identifiers.

        Best effort: records that cannot be parsed are dropped. Raises
        DetailsFetchError when nothing at all could be resolved.
        """
        if not identifiers:
            raise DetailsFetchError("No identifiers given to fetch details for.")

        data = self._common_params()
        data.update({"id": ",".join(identifiers), "retmode": "xml"})

        try:
            response = requests.post(
                EFETCH_URL,
                data=data,
                headers={"User-Agent": USER_AGENT},
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise SearchServiceError(f"PubMed detail fetch failed: {exc}") from exc

        records = parse_efetch_xml(response.text)
        LOGGER.info(
            "PubMed details: requested=%s parsed=%s dropped=%s",
            len(identifiers),
            len(records),
            len(identifiers) - len(records),
        )
        if not records:
            raise DetailsFetchError("Could not fetch details for the articles found on PubMed.")
        return records

    def _common_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {"db": "pubmed", "tool": TOOL_NAME}
        if self.api_key:
            params["api_key"] = self.api_key
        if self.email:
            params["email"] = self.email
        return params


def parse_efetch_xml(text: str) -> list[ArticleRecord]:
    """Parse an EFetch PubmedArticleSet document into partial ArticleRecords."""
    try:
        root = ET.fromstring(text)
    except ET.ParseError as exc:
        LOGGER.warning("PubMed details: unparseable EFetch document: %s", exc)
        return []

    records: list[ArticleRecord] = []
    for node in root.iter("PubmedArticle"):
        record = _parse_article(node)
        if record is None:
            continue
        records.append(record)
    return records


def _parse_article(node: ET.Element) -> ArticleRecord | None:
    citation = node.find("MedlineCitation")
    if citation is None:
        LOGGER.debug("Dropping PubmedArticle without MedlineCitation")
        return None

    pmid = (citation.findtext("PMID") or "").strip()
    article = citation.find("Article")
    if not pmid or article is None:
        LOGGER.debug("Dropping PubmedArticle without PMID or Article block")
        return None

    title = _text_of(article.find("ArticleTitle"))
    if not title:
        LOGGER.debug("Dropping pmid=%s: no title", pmid)
        return None

    pmc_id = None
    for article_id in node.findall("./PubmedData/ArticleIdList/ArticleId"):
        if article_id.get("IdType") == "pmc" and article_id.text:
            pmc_id = article_id.text.strip()
            break

    abstract_parts = [_text_of(part) for part in article.findall("./Abstract/AbstractText")]
    abstract = " ".join(part for part in abstract_parts if part)

    return ArticleRecord(
        identifier=pmid,
        title=title,
        authors=_format_authors(article),
        venue=(article.findtext("./Journal/Title") or "").strip(),
        year=_publication_year(article),
        abstract=abstract or NO_ABSTRACT,
        is_open_access=pmc_id is not None,
        pmc_id=pmc_id,
    )


def _format_authors(article: ET.Element) -> str:
    names: list[str] = []
    for author in article.findall("./AuthorList/Author"):
        collective = author.findtext("CollectiveName")
        if collective:
            names.append(collective.strip())
            continue
        last_name = (author.findtext("LastName") or "").strip()
        initials = (author.findtext("Initials") or "").strip()
        if last_name:
            names.append(f"{last_name} {initials}".strip())
    return ", ".join(names)


def _publication_year(article: ET.Element) -> str:
    pub_date = article.find("./Journal/JournalIssue/PubDate")
    if pub_date is None:
        return ""
    year = pub_date.findtext("Year")
    if year:
        return year.strip()
    # MedlineDate looks like "2019 Nov-Dec" or "2019-2020".
    medline_date = (pub_date.findtext("MedlineDate") or "").strip()
    return medline_date[:4] if medline_date[:4].isdigit() else ""


def _text_of(element: ET.Element | None) -> str:
    if element is None:
        return ""
    return " ".join("".join(element.itertext()).split())
