"""Shared typed models for the research pipeline and the knowledge base."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, ClassVar

ARTICLE_TYPES: tuple[str, ...] = (
    "Randomized Controlled Trial",
    "Meta-Analysis",
    "Systematic Review",
    "Observational Study",
)


@dataclass(frozen=True, slots=True)
class ArticleRecord:
    """One bibliographic record. ``identifier`` (the PMID) is the dedup key."""

    identifier: str
    title: str = ""
    authors: str = ""
    venue: str = ""
    year: str = ""
    abstract: str = ""
    relevance_score: int = 0
    relevance_explanation: str = ""
    keywords: tuple[str, ...] = ()
    is_open_access: bool = False
    pmc_id: str | None = None
    article_type: str | None = None
    ai_summary: str | None = None
    custom_tags: tuple[str, ...] = ()

    def with_tags(self, tags: tuple[str, ...]) -> ArticleRecord:
        return replace(self, custom_tags=tuple(tags))

    def to_dict(self) -> dict[str, Any]:
        return {
            "identifier": self.identifier,
            "title": self.title,
            "authors": self.authors,
            "venue": self.venue,
            "year": self.year,
            "abstract": self.abstract,
            "relevance_score": self.relevance_score,
            "relevance_explanation": self.relevance_explanation,
            "keywords": list(self.keywords),
            "is_open_access": self.is_open_access,
            "pmc_id": self.pmc_id,
            "article_type": self.article_type,
            "ai_summary": self.ai_summary,
            "custom_tags": list(self.custom_tags),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArticleRecord:
        return cls(
            identifier=str(data["identifier"]),
            title=data.get("title") or "",
            authors=data.get("authors") or "",
            venue=data.get("venue") or "",
            year=data.get("year") or "",
            abstract=data.get("abstract") or "",
            relevance_score=int(data.get("relevance_score") or 0),
            relevance_explanation=data.get("relevance_explanation") or "",
            keywords=tuple(data.get("keywords") or ()),
            is_open_access=bool(data.get("is_open_access", False)),
            pmc_id=data.get("pmc_id"),
            article_type=data.get("article_type"),
            ai_summary=data.get("ai_summary"),
            custom_tags=tuple(data.get("custom_tags") or ()),
        )


@dataclass(frozen=True, slots=True)
class GeneratedQuery:
    """A PubMed query string plus the model's rationale for it."""

    query: str
    explanation: str = ""


@dataclass(frozen=True, slots=True)
class Insight:
    question: str
    answer: str
    supporting_identifiers: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class KeywordFrequency:
    keyword: str
    frequency: int


@dataclass(slots=True)
class Report:
    """Ranked, synthesized result of one pipeline run.

    The synthesis text grows while the report is streaming; once ``freeze()``
    has been called the report is final and the narrative can no longer change.
    """

    generated_queries: list[GeneratedQuery] = field(default_factory=list)
    ranked_articles: list[ArticleRecord] = field(default_factory=list)
    synthesis: str = ""
    insights: list[Insight] = field(default_factory=list)
    overall_keywords: list[KeywordFrequency] = field(default_factory=list)
    is_final: bool = False

    def append_synthesis(self, chunk: str) -> None:
        if self.is_final:
            raise RuntimeError("Cannot append synthesis to a finalized report")
        self.synthesis += chunk

    def freeze(self) -> Report:
        self.is_final = True
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "generated_queries": [
                {"query": q.query, "explanation": q.explanation} for q in self.generated_queries
            ],
            "ranked_articles": [a.to_dict() for a in self.ranked_articles],
            "synthesis": self.synthesis,
            "insights": [
                {
                    "question": i.question,
                    "answer": i.answer,
                    "supporting_identifiers": list(i.supporting_identifiers),
                }
                for i in self.insights
            ],
            "overall_keywords": [
                {"keyword": k.keyword, "frequency": k.frequency} for k in self.overall_keywords
            ],
            "is_final": self.is_final,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Report:
        return cls(
            generated_queries=[
                GeneratedQuery(query=q["query"], explanation=q.get("explanation", ""))
                for q in data.get("generated_queries", [])
            ],
            ranked_articles=[ArticleRecord.from_dict(a) for a in data.get("ranked_articles", [])],
            synthesis=data.get("synthesis", ""),
            insights=[
                Insight(
                    question=i["question"],
                    answer=i["answer"],
                    supporting_identifiers=tuple(i.get("supporting_identifiers", ())),
                )
                for i in data.get("insights", [])
            ],
            overall_keywords=[
                KeywordFrequency(keyword=k["keyword"], frequency=int(k["frequency"]))
                for k in data.get("overall_keywords", [])
            ],
            is_final=bool(data.get("is_final", True)),
        )


@dataclass(frozen=True, slots=True)
class ResearchRequest:
    """User input for one research run."""

    research_topic: str
    date_range: str = "5"
    article_types: tuple[str, ...] = ()
    synthesis_focus: str = "overview"
    max_articles_to_scan: int = 50
    top_n_to_synthesize: int = 5

    def __post_init__(self) -> None:
        if not self.research_topic.strip():
            raise ValueError("research_topic must not be empty")
        if self.max_articles_to_scan < 1 or self.top_n_to_synthesize < 1:
            raise ValueError("max_articles_to_scan and top_n_to_synthesize must be positive")
        if self.top_n_to_synthesize > self.max_articles_to_scan:
            raise ValueError("top_n_to_synthesize cannot exceed max_articles_to_scan")
        if self.date_range != "any" and not self.date_range.isdigit():
            raise ValueError("date_range must be 'any' or a number of years")

    def to_dict(self) -> dict[str, Any]:
        return {
            "research_topic": self.research_topic,
            "date_range": self.date_range,
            "article_types": list(self.article_types),
            "synthesis_focus": self.synthesis_focus,
            "max_articles_to_scan": self.max_articles_to_scan,
            "top_n_to_synthesize": self.top_n_to_synthesize,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResearchRequest:
        return cls(
            research_topic=data["research_topic"],
            date_range=str(data.get("date_range", "5")),
            article_types=tuple(data.get("article_types", ())),
            synthesis_focus=data.get("synthesis_focus", "overview"),
            max_articles_to_scan=int(data.get("max_articles_to_scan", 50)),
            top_n_to_synthesize=int(data.get("top_n_to_synthesize", 5)),
        )


@dataclass(frozen=True, slots=True)
class AuthorProfile:
    name: str
    affiliations: tuple[str, ...] = ()
    orcid: str | None = None
    metrics: dict[str, Any] = field(default_factory=dict)
    career_summary: str = ""
    core_concepts: tuple[KeywordFrequency, ...] = ()
    publications: tuple[ArticleRecord, ...] = ()


@dataclass(frozen=True, slots=True)
class JournalProfile:
    name: str
    issn: str = ""
    description: str = ""
    oa_policy: str = ""
    focus_areas: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Knowledge base entries
# ---------------------------------------------------------------------------


def new_entry_id() -> str:
    return uuid.uuid4().hex


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class Entry:
    """Common fields of every knowledge base entry.

    ``articles`` is a denormalized copy of the article list held by the
    variant payload; ``with_articles`` keeps both in step.
    """

    source_type: ClassVar[str] = ""

    id: str
    title: str
    created_at: datetime
    articles: tuple[ArticleRecord, ...]

    def payload_articles(self) -> tuple[ArticleRecord, ...]:
        return self.articles

    def with_articles(self, articles: list[ArticleRecord] | tuple[ArticleRecord, ...]) -> Entry:
        return replace(self, articles=tuple(articles))

    def renamed(self, title: str) -> Entry:
        return replace(self, title=title)


@dataclass(frozen=True, slots=True)
class ResearchEntry(Entry):
    source_type: ClassVar[str] = "research"

    request: ResearchRequest
    report: Report

    def payload_articles(self) -> tuple[ArticleRecord, ...]:
        return tuple(self.report.ranked_articles)

    def with_articles(self, articles: list[ArticleRecord] | tuple[ArticleRecord, ...]) -> Entry:
        report = replace(self.report, ranked_articles=list(articles))
        return replace(self, articles=tuple(articles), report=report)

    def renamed(self, title: str) -> Entry:
        return replace(self, title=title, request=replace(self.request, research_topic=title))


@dataclass(frozen=True, slots=True)
class AuthorProfileEntry(Entry):
    source_type: ClassVar[str] = "author"

    author_name: str
    profile: AuthorProfile

    def payload_articles(self) -> tuple[ArticleRecord, ...]:
        return tuple(self.profile.publications)

    def with_articles(self, articles: list[ArticleRecord] | tuple[ArticleRecord, ...]) -> Entry:
        profile = replace(self.profile, publications=tuple(articles))
        return replace(self, articles=tuple(articles), profile=profile)

    def renamed(self, title: str) -> Entry:
        return replace(self, title=title, author_name=title)


@dataclass(frozen=True, slots=True)
class JournalEntry(Entry):
    source_type: ClassVar[str] = "journal"

    journal_profile: JournalProfile


@dataclass(frozen=True, slots=True)
class AggregatedArticle:
    """Best-scoring instance of one identifier, tagged with its owning entry."""

    article: ArticleRecord
    source_id: str
    source_title: str

    @property
    def identifier(self) -> str:
        return self.article.identifier

    @property
    def relevance_score(self) -> int:
        return self.article.relevance_score


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def entry_to_dict(entry: Entry) -> dict[str, Any]:
    """Serialize an entry of any variant into a JSON-compatible dict."""
    data: dict[str, Any] = {
        "source_type": entry.source_type,
        "id": entry.id,
        "title": entry.title,
        "created_at": entry.created_at.isoformat(),
        "articles": [a.to_dict() for a in entry.articles],
    }
    if isinstance(entry, ResearchEntry):
        data["request"] = entry.request.to_dict()
        data["report"] = entry.report.to_dict()
    elif isinstance(entry, AuthorProfileEntry):
        profile = entry.profile
        data["author_name"] = entry.author_name
        data["profile"] = {
            "name": profile.name,
            "affiliations": list(profile.affiliations),
            "orcid": profile.orcid,
            "metrics": profile.metrics,
            "career_summary": profile.career_summary,
            "core_concepts": [
                {"keyword": c.keyword, "frequency": c.frequency} for c in profile.core_concepts
            ],
        }
    elif isinstance(entry, JournalEntry):
        journal = entry.journal_profile
        data["journal_profile"] = {
            "name": journal.name,
            "issn": journal.issn,
            "description": journal.description,
            "oa_policy": journal.oa_policy,
            "focus_areas": list(journal.focus_areas),
        }
    return data


def entry_from_dict(data: dict[str, Any]) -> Entry:
    """Inverse of entry_to_dict. Raises ValueError on an unknown source_type."""
    articles = tuple(ArticleRecord.from_dict(a) for a in data.get("articles", []))
    common = {
        "id": data["id"],
        "title": data.get("title", ""),
        "created_at": _parse_datetime(data.get("created_at")),
        "articles": articles,
    }
    source_type = data.get("source_type")

    if source_type == ResearchEntry.source_type:
        report = Report.from_dict(data.get("report", {}))
        report.ranked_articles = list(articles)
        return ResearchEntry(
            **common,
            request=ResearchRequest.from_dict(data["request"]),
            report=report,
        )
    if source_type == AuthorProfileEntry.source_type:
        raw = data.get("profile", {})
        profile = AuthorProfile(
            name=raw.get("name", common["title"]),
            affiliations=tuple(raw.get("affiliations", ())),
            orcid=raw.get("orcid"),
            metrics=dict(raw.get("metrics", {})),
            career_summary=raw.get("career_summary", ""),
            core_concepts=tuple(
                KeywordFrequency(keyword=c["keyword"], frequency=int(c["frequency"]))
                for c in raw.get("core_concepts", [])
            ),
            publications=articles,
        )
        return AuthorProfileEntry(
            **common, author_name=data.get("author_name", profile.name), profile=profile
        )
    if source_type == JournalEntry.source_type:
        raw = data.get("journal_profile", {})
        journal = JournalProfile(
            name=raw.get("name", common["title"]),
            issn=raw.get("issn", ""),
            description=raw.get("description", ""),
            oa_policy=raw.get("oa_policy", ""),
            focus_areas=tuple(raw.get("focus_areas", ())),
        )
        return JournalEntry(**common, journal_profile=journal)

    raise ValueError(f"Unknown entry source_type: {source_type!r}")


def _parse_datetime(raw: str | None) -> datetime:
    if not raw:
        return utc_now()
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)
