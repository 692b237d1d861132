"""Persistent knowledge base of research, author and journal entries.

Every mutation is written to the backend first and only then applied to the
in-memory entry map and broadcast to subscribers, so a failed write leaves
the visible state untouched.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Any, Protocol

from errors import EntryNotFoundError, StoreIOError
from models import (
    ArticleRecord,
    AuthorProfile,
    AuthorProfileEntry,
    Entry,
    JournalEntry,
    JournalProfile,
    KeywordFrequency,
    Report,
    ResearchEntry,
    ResearchRequest,
    entry_from_dict,
    entry_to_dict,
    new_entry_id,
    utc_now,
)

LOGGER = logging.getLogger(__name__)

STORE_FORMAT_VERSION = 1

# Entry fields holding the article list that ``Entry.articles`` mirrors.
PAYLOAD_FIELDS = frozenset({"report", "profile"})

Subscriber = Callable[[list[Entry]], None]


class StorageBackend(Protocol):
    """Key-value entry storage keyed by entry id."""

    def get_all(self) -> list[dict[str, Any]]: ...

    def put(self, record: dict[str, Any]) -> None: ...

    def bulk_put(self, records: list[dict[str, Any]]) -> None: ...

    def delete_many(self, ids: list[str]) -> None: ...

    def clear(self) -> None: ...


class InMemoryBackend:
    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}

    def get_all(self) -> list[dict[str, Any]]:
        return list(self._records.values())

    def put(self, record: dict[str, Any]) -> None:
        self._records[record["id"]] = record

    def bulk_put(self, records: list[dict[str, Any]]) -> None:
        for record in records:
            self.put(record)

    def delete_many(self, ids: list[str]) -> None:
        for entry_id in ids:
            self._records.pop(entry_id, None)

    def clear(self) -> None:
        self._records.clear()


class JsonFileBackend:
    """Single JSON document on disk, rewritten atomically on every change."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def get_all(self) -> list[dict[str, Any]]:
        return list(self._load().values())

    def put(self, record: dict[str, Any]) -> None:
        records = self._load()
        records[record["id"]] = record
        self._save(records)

    def bulk_put(self, records: list[dict[str, Any]]) -> None:
        current = self._load()
        for record in records:
            current[record["id"]] = record
        self._save(current)

    def delete_many(self, ids: list[str]) -> None:
        records = self._load()
        for entry_id in ids:
            records.pop(entry_id, None)
        self._save(records)

    def clear(self) -> None:
        self._save({})

    def _load(self) -> dict[str, dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open(encoding="utf-8") as fh:
                document = json.load(fh)
        except (OSError, ValueError) as exc:
            raise StoreIOError(f"Failed to read knowledge base {self.path}: {exc}") from exc

        entries = document.get("entries") if isinstance(document, dict) else None
        if not isinstance(entries, list):
            raise StoreIOError(f"Knowledge base {self.path} has an unexpected layout")
        return {record["id"]: record for record in entries if isinstance(record, dict) and record.get("id")}

    def _save(self, records: dict[str, dict[str, Any]]) -> None:
        document = {"version": STORE_FORMAT_VERSION, "entries": list(records.values())}
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("w", encoding="utf-8") as fh:
                json.dump(document, fh, ensure_ascii=False, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise StoreIOError(f"Failed to write knowledge base {self.path}: {exc}") from exc


class KnowledgeStore:
    """Single-writer CRUD over entries; the only place entries are mutated."""

    def __init__(self, backend: StorageBackend) -> None:
        self._backend = backend
        self._lock = threading.RLock()
        self._subscribers: list[Subscriber] = []
        self._batch_depth = 0
        self._dirty = False
        self._entries: dict[str, Entry] = {}
        for record in backend.get_all():
            try:
                entry = entry_from_dict(record)
            except (KeyError, TypeError, ValueError) as exc:
                LOGGER.warning("Skipping unreadable knowledge base record id=%s: %s", record.get("id"), exc)
                continue
            self._entries[entry.id] = entry
        LOGGER.info("Knowledge base loaded: %s entries", len(self._entries))

    @classmethod
    def open(cls, path: str | Path) -> KnowledgeStore:
        return cls(JsonFileBackend(path))

    # -- reads ---------------------------------------------------------------

    def list_entries(self) -> list[Entry]:
        """All entries, newest first (ties broken by id)."""
        with self._lock:
            entries = list(self._entries.values())
        return sorted(entries, key=lambda e: (e.created_at, e.id), reverse=True)

    def get_entry(self, entry_id: str) -> Entry:
        with self._lock:
            try:
                return self._entries[entry_id]
            except KeyError:
                raise EntryNotFoundError(f"No knowledge base entry with id {entry_id}") from None

    def recent_research_entries(self, count: int) -> list[ResearchEntry]:
        research = [e for e in self.list_entries() if isinstance(e, ResearchEntry)]
        return research[:count]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # -- writes --------------------------------------------------------------

    def add_entry(self, entry: Entry) -> Entry:
        with self._lock:
            self._backend.put(entry_to_dict(entry))
            self._entries[entry.id] = entry
            LOGGER.info("Saved %s entry id=%s title=%s", entry.source_type, entry.id, entry.title)
            self._changed()
        return entry

    def update_entry(self, entry_id: str, changes: dict[str, Any]) -> Entry:
        """Apply partial changes to one entry.

        An ``articles`` change is routed through ``Entry.with_articles`` so the
        variant payload stays in step with the denormalized article list. A
        ``report`` or ``profile`` change re-derives ``articles`` from the new
        payload instead; the two kinds cannot be combined.
        """
        if "id" in changes:
            raise ValueError("An entry's id cannot be changed")
        if "articles" in changes and PAYLOAD_FIELDS.intersection(changes):
            raise ValueError("Change either articles or the entry payload, not both")
        with self._lock:
            current = self.get_entry(entry_id)
            changes = dict(changes)
            updated = current
            if "articles" in changes:
                updated = updated.with_articles(changes.pop("articles"))
            if changes:
                updated = replace(updated, **changes)
                if PAYLOAD_FIELDS.intersection(changes):
                    updated = updated.with_articles(updated.payload_articles())

            self._backend.put(entry_to_dict(updated))
            self._entries[entry_id] = updated
            self._changed()
        return updated

    def delete_entries(self, entry_ids: Iterable[str]) -> int:
        with self._lock:
            ids = [entry_id for entry_id in dict.fromkeys(entry_ids) if entry_id in self._entries]
            if not ids:
                return 0
            self._backend.delete_many(ids)
            for entry_id in ids:
                del self._entries[entry_id]
            LOGGER.info("Deleted %s knowledge base entries", len(ids))
            self._changed()
        return len(ids)

    def import_entries(self, entries: Iterable[Entry]) -> int:
        """Bulk-add entries (e.g. from an export); entries without an id are skipped."""
        valid = [entry for entry in entries if entry.id]
        if not valid:
            return 0
        with self._lock:
            self._backend.bulk_put([entry_to_dict(entry) for entry in valid])
            for entry in valid:
                self._entries[entry.id] = entry
            LOGGER.info("Imported %s knowledge base entries", len(valid))
            self._changed()
        return len(valid)

    def clear(self) -> None:
        with self._lock:
            self._backend.clear()
            self._entries.clear()
            LOGGER.info("Knowledge base cleared")
            self._changed()

    @contextmanager
    def batch(self) -> Iterator[KnowledgeStore]:
        """Hold the writer lock across several mutations and broadcast once at the end."""
        with self._lock:
            self._batch_depth += 1
            try:
                yield self
            finally:
                self._batch_depth -= 1
                if self._batch_depth == 0 and self._dirty:
                    self._dirty = False
                    self._broadcast()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register callback for post-persist change notifications; returns an unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    # -- entry helpers -------------------------------------------------------

    def save_report(self, request: ResearchRequest, report: Report) -> ResearchEntry:
        entry = ResearchEntry(
            id=new_entry_id(),
            title=request.research_topic,
            created_at=utc_now(),
            articles=tuple(report.ranked_articles),
            request=request,
            report=report,
        )
        self.add_entry(entry)
        return entry

    def save_author_profile(self, profile: AuthorProfile) -> AuthorProfileEntry:
        entry = AuthorProfileEntry(
            id=new_entry_id(),
            title=profile.name,
            created_at=utc_now(),
            articles=tuple(profile.publications),
            author_name=profile.name,
            profile=profile,
        )
        self.add_entry(entry)
        return entry

    def save_journal_profile(
        self, profile: JournalProfile, articles: Iterable[ArticleRecord]
    ) -> JournalEntry:
        entry = JournalEntry(
            id=new_entry_id(),
            title=profile.name,
            created_at=utc_now(),
            articles=tuple(articles),
            journal_profile=profile,
        )
        self.add_entry(entry)
        return entry

    def add_single_article_report(self, article: ArticleRecord) -> ResearchEntry:
        """Store one analyzed article as its own research entry."""
        report = Report(
            ranked_articles=[article],
            synthesis=f'This is a single-article report for "{article.title}".',
            overall_keywords=[KeywordFrequency(keyword=k, frequency=1) for k in article.keywords],
            is_final=True,
        )
        request = ResearchRequest(
            research_topic=f"Single Article: {article.title}",
            date_range="any",
            article_types=(),
            synthesis_focus="overview",
            max_articles_to_scan=1,
            top_n_to_synthesize=1,
        )
        return self.save_report(request, report)

    def update_entry_title(self, entry_id: str, title: str) -> Entry:
        title = title.strip()
        if not title:
            raise ValueError("Entry title must not be empty")
        with self._lock:
            updated = self.get_entry(entry_id).renamed(title)
            self._backend.put(entry_to_dict(updated))
            self._entries[entry_id] = updated
            self._changed()
        return updated

    # -- internals -----------------------------------------------------------

    def _changed(self) -> None:
        if self._batch_depth:
            self._dirty = True
            return
        self._broadcast()

    def _broadcast(self) -> None:
        snapshot = self.list_entries()
        for callback in list(self._subscribers):
            callback(snapshot)
