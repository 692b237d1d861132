from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from errors import EntryNotFoundError, StoreIOError
from knowledge_store import InMemoryBackend, JsonFileBackend, KnowledgeStore
from models import (
    ArticleRecord,
    AuthorProfile,
    AuthorProfileEntry,
    JournalEntry,
    JournalProfile,
    Report,
    ResearchEntry,
    ResearchRequest,
)

_ARTICLE = ArticleRecord(
    identifier="123",
    title="Aspirin trial",
    relevance_score=70,
    keywords=("aspirin", "MI"),
    custom_tags=("to-read",),
)


def _report(*articles: ArticleRecord) -> Report:
    return Report(ranked_articles=list(articles), synthesis="text", is_final=True)


def test_save_report_persists_across_restart(tmp_path: Path) -> None:
    path = tmp_path / "kb.json"
    store = KnowledgeStore.open(path)
    entry = store.save_report(ResearchRequest(research_topic="aspirin"), _report(_ARTICLE))

    reopened = KnowledgeStore.open(path)

    loaded = reopened.get_entry(entry.id)
    assert isinstance(loaded, ResearchEntry)
    assert loaded.title == "aspirin"
    assert loaded.articles == (_ARTICLE,)
    assert loaded.report.ranked_articles == [_ARTICLE]
    assert loaded.report.synthesis == "text"
    assert loaded.created_at == entry.created_at


def test_all_entry_variants_round_trip_through_file(tmp_path: Path) -> None:
    path = tmp_path / "kb.json"
    store = KnowledgeStore.open(path)
    author = store.save_author_profile(AuthorProfile(name="Jane Doe", publications=(_ARTICLE,)))
    journal = store.save_journal_profile(JournalProfile(name="The Lancet", issn="0140-6736"), [_ARTICLE])

    reopened = KnowledgeStore.open(path)

    loaded_author = reopened.get_entry(author.id)
    loaded_journal = reopened.get_entry(journal.id)
    assert isinstance(loaded_author, AuthorProfileEntry)
    assert loaded_author.profile.publications == (_ARTICLE,)
    assert isinstance(loaded_journal, JournalEntry)
    assert loaded_journal.journal_profile.issn == "0140-6736"


def test_file_is_written_atomically(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "kb.json"
    store = KnowledgeStore.open(path)
    store.save_report(ResearchRequest(research_topic="aspirin"), _report(_ARTICLE))

    document = json.loads(path.read_text(encoding="utf-8"))
    assert document["version"] == 1
    assert len(document["entries"]) == 1
    assert not (tmp_path / "nested" / "kb.json.tmp").exists()


def test_corrupt_file_raises_store_io_error(tmp_path: Path) -> None:
    path = tmp_path / "kb.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(StoreIOError):
        KnowledgeStore.open(path)


def test_backend_failure_leaves_memory_and_subscribers_untouched() -> None:
    backend = InMemoryBackend()
    store = KnowledgeStore(backend)
    entry = store.save_report(ResearchRequest(research_topic="aspirin"), _report(_ARTICLE))
    callback = MagicMock()
    store.subscribe(callback)

    backend.put = MagicMock(side_effect=StoreIOError("disk full"))
    with pytest.raises(StoreIOError):
        store.update_entry(entry.id, {"articles": []})
    with pytest.raises(StoreIOError):
        store.save_report(ResearchRequest(research_topic="other"), _report(_ARTICLE))

    assert store.get_entry(entry.id).articles == (_ARTICLE,)
    assert len(store) == 1
    callback.assert_not_called()


def test_update_entry_syncs_variant_payload() -> None:
    store = KnowledgeStore(InMemoryBackend())
    entry = store.save_report(ResearchRequest(research_topic="aspirin"), _report(_ARTICLE))
    other = ArticleRecord(identifier="456", title="Other", relevance_score=50)

    updated = store.update_entry(entry.id, {"articles": [other], "title": "renamed"})

    assert updated.articles == (other,)
    assert updated.report.ranked_articles == [other]
    assert updated.title == "renamed"


def test_update_entry_payload_change_rederives_articles() -> None:
    store = KnowledgeStore(InMemoryBackend())
    research = store.save_report(ResearchRequest(research_topic="aspirin"), _report(_ARTICLE))
    author = store.save_author_profile(AuthorProfile(name="Jane Doe", publications=(_ARTICLE,)))
    other = ArticleRecord(identifier="456", title="Other", relevance_score=50)

    updated_research = store.update_entry(research.id, {"report": _report(other)})
    updated_author = store.update_entry(
        author.id, {"profile": AuthorProfile(name="Jane Doe", publications=(other, _ARTICLE))}
    )

    assert updated_research.articles == (other,)
    assert updated_author.articles == (other, _ARTICLE)
    with pytest.raises(ValueError):
        store.update_entry(research.id, {"articles": [_ARTICLE], "report": _report(other)})
    assert store.get_entry(research.id).articles == (other,)


def test_update_entry_rejects_unknown_id_and_id_changes() -> None:
    store = KnowledgeStore(InMemoryBackend())
    entry = store.save_report(ResearchRequest(research_topic="aspirin"), _report(_ARTICLE))

    with pytest.raises(EntryNotFoundError):
        store.update_entry("missing", {"title": "x"})
    with pytest.raises(KeyError):
        store.get_entry("missing")
    with pytest.raises(ValueError):
        store.update_entry(entry.id, {"id": "new"})


def test_update_entry_title_also_renames_research_topic() -> None:
    store = KnowledgeStore(InMemoryBackend())
    entry = store.save_report(ResearchRequest(research_topic="aspirin"), _report(_ARTICLE))

    updated = store.update_entry_title(entry.id, "  Aspirin in MI  ")

    assert updated.title == "Aspirin in MI"
    assert updated.request.research_topic == "Aspirin in MI"
    with pytest.raises(ValueError):
        store.update_entry_title(entry.id, "   ")


def test_list_entries_newest_first_and_recent_research() -> None:
    store = KnowledgeStore(InMemoryBackend())
    base = datetime(2026, 1, 1, tzinfo=UTC)
    entries = [
        ResearchEntry(
            id=f"r{i}",
            title=f"topic {i}",
            created_at=base + timedelta(days=i),
            articles=(_ARTICLE,),
            request=ResearchRequest(research_topic=f"topic {i}"),
            report=_report(_ARTICLE),
        )
        for i in range(3)
    ]
    journal = JournalEntry(
        id="j",
        title="Journal",
        created_at=base + timedelta(days=10),
        articles=(_ARTICLE,),
        journal_profile=JournalProfile(name="Journal"),
    )
    assert store.import_entries([*entries, journal]) == 4

    assert [e.id for e in store.list_entries()] == ["j", "r2", "r1", "r0"]
    assert [e.id for e in store.recent_research_entries(2)] == ["r2", "r1"]


def test_import_entries_skips_entries_without_id() -> None:
    store = KnowledgeStore(InMemoryBackend())
    nameless = JournalEntry(
        id="",
        title="x",
        created_at=datetime(2026, 1, 1, tzinfo=UTC),
        articles=(),
        journal_profile=JournalProfile(name="x"),
    )
    assert store.import_entries([nameless]) == 0
    assert len(store) == 0


def test_add_single_article_report_shape() -> None:
    store = KnowledgeStore(InMemoryBackend())

    entry = store.add_single_article_report(_ARTICLE)

    assert entry.title == "Single Article: Aspirin trial"
    assert entry.request.max_articles_to_scan == 1
    assert entry.request.date_range == "any"
    assert entry.report.synthesis == 'This is a single-article report for "Aspirin trial".'
    assert [(k.keyword, k.frequency) for k in entry.report.overall_keywords] == [("aspirin", 1), ("MI", 1)]


def test_delete_entries_and_clear() -> None:
    store = KnowledgeStore(InMemoryBackend())
    a = store.save_report(ResearchRequest(research_topic="a"), _report(_ARTICLE))
    store.save_report(ResearchRequest(research_topic="b"), _report(_ARTICLE))

    assert store.delete_entries([a.id, a.id, "missing"]) == 1
    assert len(store) == 1

    store.clear()
    assert store.list_entries() == []


def test_batch_broadcasts_once_after_persisting() -> None:
    backend = InMemoryBackend()
    store = KnowledgeStore(backend)
    snapshots: list[int] = []
    unsubscribe = store.subscribe(lambda entries: snapshots.append(len(entries)))

    with store.batch():
        store.save_report(ResearchRequest(research_topic="a"), _report(_ARTICLE))
        store.save_report(ResearchRequest(research_topic="b"), _report(_ARTICLE))
        assert snapshots == []
        assert len(backend.get_all()) == 2

    assert snapshots == [2]
    unsubscribe()
    store.clear()
    assert snapshots == [2]


def test_json_file_backend_operations(tmp_path: Path) -> None:
    backend = JsonFileBackend(tmp_path / "kb.json")
    assert backend.get_all() == []

    backend.bulk_put([{"id": "a", "x": 1}, {"id": "b", "x": 2}])
    backend.put({"id": "a", "x": 3})
    backend.delete_many(["b", "zzz"])

    assert backend.get_all() == [{"id": "a", "x": 3}]
    backend.clear()
    assert backend.get_all() == []
