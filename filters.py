"""Knowledge-base article filtering and sorting (no LLM calls)."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from models import AggregatedArticle

SORT_ORDERS: frozenset[str] = frozenset({"relevance", "newest"})


@dataclass(frozen=True, slots=True)
class ArticleFilter:
    """Criteria for narrowing the unique article view.

    Empty selections mean "no restriction"; every non-empty criterion must match.
    """

    search_term: str = ""
    topics: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    article_types: tuple[str, ...] = ()
    journals: tuple[str, ...] = ()
    open_access_only: bool = False


def matches(article: AggregatedArticle, flt: ArticleFilter) -> bool:
    """Return True if the article passes every active criterion.

    - search_term: case-insensitive substring of title, authors or abstract.
    - topics: the owning entry's title is one of them.
    - tags: at least one selected tag is on the article.
    - article_types / journals: exact membership; untyped articles never match a type filter.
    """
    record = article.article
    term = flt.search_term.strip().lower()
    if term and not any(term in field.lower() for field in (record.title, record.authors, record.abstract)):
        return False
    if flt.topics and article.source_title not in flt.topics:
        return False
    if flt.tags and not any(tag in record.custom_tags for tag in flt.tags):
        return False
    if flt.article_types and record.article_type not in flt.article_types:
        return False
    if flt.journals and record.venue not in flt.journals:
        return False
    if flt.open_access_only and not record.is_open_access:
        return False
    return True


def filter_articles(articles: Iterable[AggregatedArticle], flt: ArticleFilter) -> list[AggregatedArticle]:
    return [article for article in articles if matches(article, flt)]


def sort_articles(articles: Iterable[AggregatedArticle], order: str = "relevance") -> list[AggregatedArticle]:
    """Sort by relevance score or by publication year, highest first."""
    if order not in SORT_ORDERS:
        raise ValueError(f"Unknown sort order {order!r}; expected one of {sorted(SORT_ORDERS)}")
    if order == "newest":
        return sorted(articles, key=lambda a: _year(a.article.year), reverse=True)
    return sorted(articles, key=lambda a: a.relevance_score, reverse=True)


def _year(raw: str) -> int:
    return int(raw[:4]) if raw[:4].isdigit() else 0
