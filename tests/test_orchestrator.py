"""End-to-end pipeline tests with a scripted AI client and a mocked PubMed client."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from errors import AIServiceError, EmptyResultError, RunInProgressError
from models import ArticleRecord, ResearchRequest
from orchestrator import (
    PHASE_LABELS,
    STREAMING_LABEL,
    Phase,
    PipelineOrchestrator,
    RunRegistry,
    request_fingerprint,
)
from query_planner import QueryPlanner
from ranker import RelevanceRanker
from synthesis import SynthesisStreamer

CANDIDATES = [
    ArticleRecord(identifier="11", title="Aspirin RCT", abstract="abstract 11"),
    ArticleRecord(identifier="22", title="Aspirin meta-analysis", abstract="abstract 22"),
    ArticleRecord(identifier="33", title="Unrelated", abstract="abstract 33"),
]

QUERY_PAYLOAD = {"generatedQueries": [{"query": '"aspirin"[MeSH Terms]', "explanation": "MeSH"}]}
RANKING_PAYLOAD = {
    "rankedArticles": [
        {"pmid": "22", "relevanceScore": 88, "relevanceExplanation": "meta", "keywords": ["aspirin"],
         "articleType": "Meta-Analysis", "aiSummary": "pooled"},
        {"pmid": "77777", "relevanceScore": 99, "relevanceExplanation": "made up", "keywords": [],
         "articleType": "Other", "aiSummary": "hallucinated"},
        {"pmid": "11", "relevanceScore": 75, "relevanceExplanation": "trial", "keywords": ["aspirin", "MI"],
         "articleType": "Randomized Controlled Trial", "aiSummary": "trial summary"},
    ],
    "aiGeneratedInsights": [{"question": "Does it work?", "answer": "Yes", "supportingArticles": ["11", "22"]}],
    "overallKeywords": [{"keyword": "aspirin", "frequency": 2}],
}
CHUNKS = ["## Synthesis\n", "Aspirin ", "reduces ", "risk."]

REQUEST = ResearchRequest(
    research_topic="aspirin and myocardial infarction",
    date_range="any",
    article_types=(),
    max_articles_to_scan=10,
    top_n_to_synthesize=3,
)


def _orchestrator(fake_llm, settings, search: MagicMock | None = None, registry: RunRegistry | None = None):
    if search is None:
        search = MagicMock()
        search.search.return_value = ["11", "22", "33"]
        search.fetch_details.return_value = list(CANDIDATES)
    return PipelineOrchestrator(
        planner=QueryPlanner(fake_llm, settings),
        search_client=search,
        ranker=RelevanceRanker(fake_llm, settings),
        synthesizer=SynthesisStreamer(fake_llm, settings),
        registry=registry,
    )


@pytest.fixture
def scripted_llm(fake_llm):
    fake_llm.payloads = [QUERY_PAYLOAD, RANKING_PAYLOAD]
    fake_llm.chunks = list(CHUNKS)
    return fake_llm


def test_events_follow_phase_order_and_partial_report_precedes_synthesis(scripted_llm, settings) -> None:
    events = _orchestrator(scripted_llm, settings).run_events(REQUEST)

    seen = []
    synthesis_at_first_report = None
    for event in events:
        seen.append((event.phase, event.label, event.text))
        if event.phase is Phase.STREAMING_SYNTHESIS and event.text is None:
            synthesis_at_first_report = event.report.synthesis
            assert event.report.is_final is False
            assert [a.identifier for a in event.report.ranked_articles] == ["22", "11"]

    assert [phase for phase, _, _ in seen] == [
        Phase.PLANNING,
        Phase.SEARCHING,
        Phase.FETCHING_DETAILS,
        Phase.RANKING,
        Phase.STREAMING_SYNTHESIS,
        *([Phase.STREAMING_SYNTHESIS] * len(CHUNKS)),
        Phase.DONE,
    ]
    assert seen[0][1] == PHASE_LABELS[Phase.PLANNING]
    assert all(label == STREAMING_LABEL for _, label, text in seen if text is not None)
    assert synthesis_at_first_report == ""


def test_streaming_reconstruction_and_frozen_report(scripted_llm, settings) -> None:
    texts: list[str] = []

    report = _orchestrator(scripted_llm, settings).run(
        REQUEST, on_event=lambda e: texts.append(e.text) if e.text is not None else None
    )

    assert texts == CHUNKS
    assert report.synthesis == "".join(CHUNKS)
    assert report.is_final is True
    with pytest.raises(RuntimeError):
        report.append_synthesis("more")
    assert report.generated_queries[0].query == '"aspirin"[MeSH Terms]'
    assert report.insights[0].supporting_identifiers == ("11", "22")


def test_hallucinated_identifier_never_emitted(scripted_llm, settings) -> None:
    emitted: set[str] = set()

    def collect(event) -> None:
        if event.report is not None:
            emitted.update(a.identifier for a in event.report.ranked_articles)

    report = _orchestrator(scripted_llm, settings).run(REQUEST, on_event=collect)

    assert "77777" not in emitted
    assert [a.identifier for a in report.ranked_articles] == ["22", "11"]


def test_search_uses_first_query_and_max_articles(scripted_llm, settings) -> None:
    search = MagicMock()
    search.search.return_value = ["11"]
    search.fetch_details.return_value = list(CANDIDATES)

    _orchestrator(scripted_llm, settings, search=search).run(REQUEST)

    search.search.assert_called_once_with('"aspirin"[MeSH Terms]', 10)
    search.fetch_details.assert_called_once_with(["11"])


def test_phase_error_is_surfaced_unchanged_and_lock_released(scripted_llm, settings) -> None:
    error = EmptyResultError("q")
    search = MagicMock()
    search.search.side_effect = error
    registry = RunRegistry()
    orchestrator = _orchestrator(scripted_llm, settings, search=search, registry=registry)
    run_ids: list[str] = []

    with pytest.raises(EmptyResultError) as excinfo:
        orchestrator.run(REQUEST, on_event=lambda e: run_ids.append(e.run_id))

    assert excinfo.value is error
    assert registry.active_runs() == {}
    assert registry.state(run_ids[0]) is Phase.FAILED
    search.fetch_details.assert_not_called()


def test_failure_mid_stream_leaves_partial_report_non_final(fake_llm, settings) -> None:
    fake_llm.payloads = [QUERY_PAYLOAD, RANKING_PAYLOAD]
    fake_llm.chunks = ["partial ", AIServiceError("stream dropped")]
    reports = []

    with pytest.raises(AIServiceError, match="stream dropped"):
        _orchestrator(fake_llm, settings).run(
            REQUEST, on_event=lambda e: reports.append(e.report) if e.report is not None else None
        )

    assert reports[-1].synthesis == "partial "
    assert reports[-1].is_final is False


def test_consumer_cancellation_releases_lock(scripted_llm, settings) -> None:
    registry = RunRegistry()
    orchestrator = _orchestrator(scripted_llm, settings, registry=registry)
    events = orchestrator.run_events(REQUEST)

    for event in events:
        if event.text is not None:
            break
    assert registry.active_runs() == {request_fingerprint(REQUEST): event.run_id}

    events.close()

    assert registry.active_runs() == {}
    assert registry.state(event.run_id) is Phase.STREAMING_SYNTHESIS
    assert event.report.is_final is False


def test_identical_concurrent_run_is_rejected(fake_llm, settings) -> None:
    fake_llm.payloads = [QUERY_PAYLOAD, RANKING_PAYLOAD, QUERY_PAYLOAD, RANKING_PAYLOAD]
    fake_llm.chunks = list(CHUNKS)
    orchestrator = _orchestrator(fake_llm, settings)

    first = orchestrator.run_events(REQUEST)
    next(first)
    with pytest.raises(RunInProgressError):
        next(orchestrator.run_events(REQUEST))

    first.close()
    report = orchestrator.run(REQUEST)
    assert report.is_final is True


def test_request_fingerprint_normalizes_topic_and_types() -> None:
    a = ResearchRequest(research_topic="Aspirin  and MI", article_types=("Meta-Analysis", "Systematic Review"))
    b = ResearchRequest(research_topic="aspirin and mi", article_types=("Systematic Review", "Meta-Analysis"))
    c = ResearchRequest(research_topic="aspirin and mi", top_n_to_synthesize=3)

    assert request_fingerprint(a) == request_fingerprint(b)
    assert request_fingerprint(a) != request_fingerprint(c)


def test_unexpected_error_also_marks_run_failed(scripted_llm, settings) -> None:
    error = KeyError("esearchresult")
    search = MagicMock()
    search.search.side_effect = error
    registry = RunRegistry()
    orchestrator = _orchestrator(scripted_llm, settings, search=search, registry=registry)
    run_ids: list[str] = []

    with pytest.raises(KeyError) as excinfo:
        orchestrator.run(REQUEST, on_event=lambda e: run_ids.append(e.run_id))

    assert excinfo.value is error
    assert registry.active_runs() == {}
    assert registry.state(run_ids[0]) is Phase.FAILED


def test_registry_forgets_oldest_finished_runs() -> None:
    registry = RunRegistry(max_retained=3)
    registry.acquire("still-running", "active")

    for i in range(10):
        registry.acquire(f"fp{i}", f"run{i}")
        registry.transition(f"run{i}", Phase.DONE)
        registry.release(f"fp{i}", f"run{i}")

    assert registry.state("active") is Phase.IDLE
    assert registry.state("run0") is None
    assert registry.state("run7") is None
    assert registry.state("run8") is Phase.DONE
    assert registry.state("run9") is Phase.DONE
