"""De-duplicated article view over the knowledge base, plus bulk maintenance.

Every bulk operation goes through KnowledgeStore.update_entry/delete_entries
inside one ``store.batch()``, and an entry whose article list becomes empty is
deleted in the same batch.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from knowledge_store import KnowledgeStore
from models import (
    AggregatedArticle,
    ArticleRecord,
    AuthorProfileEntry,
    Entry,
    JournalEntry,
    ResearchEntry,
)

LOGGER = logging.getLogger(__name__)

SOURCE_TYPES: dict[str, type[Entry] | None] = {
    "all": None,
    "research": ResearchEntry,
    "author": AuthorProfileEntry,
    "journal": JournalEntry,
}

ArticleTransform = Callable[[Entry], tuple[ArticleRecord, ...]]


def compute_unique_articles(entries: Iterable[Entry]) -> list[AggregatedArticle]:
    """One row per identifier, holding the highest-scoring instance.

    Entries are scanned in the order given; on equal scores the instance
    scanned last wins.
    """
    best: dict[str, AggregatedArticle] = {}
    for entry in entries:
        for article in entry.articles:
            current = best.get(article.identifier)
            if current is None or article.relevance_score >= current.relevance_score:
                best[article.identifier] = AggregatedArticle(
                    article=article, source_id=entry.id, source_title=entry.title
                )
    return list(best.values())


class AggregationEngine:
    def __init__(self, store: KnowledgeStore) -> None:
        self._store = store

    def compute_unique_articles(self, entries: Iterable[Entry] | None = None) -> list[AggregatedArticle]:
        """Unique view over entries (default: the whole store, newest entry first)."""
        if entries is None:
            entries = self._store.list_entries()
        return compute_unique_articles(entries)

    def get_articles(self, source_type: str = "all") -> list[AggregatedArticle]:
        """Unique view restricted to one entry variant ("research", "author", "journal") or "all"."""
        try:
            variant = SOURCE_TYPES[source_type]
        except KeyError:
            raise ValueError(
                f"Unknown source type {source_type!r}; expected one of {sorted(SOURCE_TYPES)}"
            ) from None
        entries = self._store.list_entries()
        if variant is not None:
            entries = [entry for entry in entries if isinstance(entry, variant)]
        return compute_unique_articles(entries)

    def merge_duplicates(self) -> int:
        """Keep each identifier only in the entry owning its best instance.

        Returns the number of article instances removed; 0 means nothing was
        duplicated and nothing was written.
        """
        with self._store.batch():
            winners = {
                row.identifier: row for row in compute_unique_articles(self._store.list_entries())
            }

            def keep_winners(entry: Entry) -> tuple[ArticleRecord, ...]:
                kept: list[ArticleRecord] = []
                placed: set[str] = set()
                for article in entry.articles:
                    winner = winners[article.identifier]
                    if winner.source_id != entry.id or article.identifier in placed:
                        continue
                    if article.relevance_score != winner.relevance_score:
                        continue
                    placed.add(article.identifier)
                    kept.append(article)
                return tuple(kept)

            removed, deleted = self._rewrite(keep_winners)
        LOGGER.info("Merge duplicates: removed=%s entries_deleted=%s", removed, deleted)
        return removed

    def prune_by_relevance(self, threshold: int) -> int:
        """Delete every article instance scoring below threshold; returns how many were removed."""
        with self._store.batch():
            removed, deleted = self._rewrite(
                lambda entry: tuple(a for a in entry.articles if a.relevance_score >= threshold)
            )
        LOGGER.info(
            "Prune by relevance < %s: removed=%s entries_deleted=%s", threshold, removed, deleted
        )
        return removed

    def update_tags(self, identifier: str, tags: Iterable[str]) -> int:
        """Set custom tags, exactly as given, on every live copy of identifier.

        Returns the number of entries touched.
        """
        new_tags = tuple(tags)
        touched = 0
        with self._store.batch():
            for entry in self._store.list_entries():
                if not any(a.identifier == identifier for a in entry.articles):
                    continue
                articles = [
                    a.with_tags(new_tags) if a.identifier == identifier else a
                    for a in entry.articles
                ]
                self._store.update_entry(entry.id, {"articles": articles})
                touched += 1
        LOGGER.info("Updated tags for %s in %s entries: %s", identifier, touched, list(new_tags))
        return touched

    def delete_articles(self, identifiers: Iterable[str]) -> int:
        """Remove identifiers from every entry; returns the number of article instances removed."""
        doomed = set(identifiers)
        if not doomed:
            return 0
        with self._store.batch():
            removed, deleted = self._rewrite(
                lambda entry: tuple(a for a in entry.articles if a.identifier not in doomed)
            )
        LOGGER.info("Deleted %s article instances; entries_deleted=%s", removed, deleted)
        return removed

    def _rewrite(self, transform: ArticleTransform) -> tuple[int, int]:
        """Apply transform to every entry's articles, cascading deletes of emptied entries.

        Must be called inside ``store.batch()``. Returns (articles removed, entries deleted).
        """
        removed = 0
        emptied: list[str] = []
        for entry in self._store.list_entries():
            articles = transform(entry)
            if len(articles) == len(entry.articles):
                continue
            removed += len(entry.articles) - len(articles)
            if articles:
                self._store.update_entry(entry.id, {"articles": articles})
            else:
                emptied.append(entry.id)
        deleted = self._store.delete_entries(emptied) if emptied else 0
        return removed, deleted
