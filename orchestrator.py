"""Sequential research pipeline: plan -> search -> fetch -> rank -> stream synthesis.

``PipelineOrchestrator.run_events`` is a generator. Each phase yields a
``PipelineEvent`` before its network call; the first report is yielded as soon
as ranking finishes, then every synthesis increment is appended to that same
report and re-yielded. Consumers cancel by simply not pulling any more events
(or calling ``close()``); the run's fingerprint lock is released either way.

Any phase error is raised to the consumer unchanged. There are no retries.
"""

from __future__ import annotations

import contextlib
import hashlib
import json
import logging
import threading
import uuid
from collections import OrderedDict
from collections.abc import Callable, Generator
from dataclasses import dataclass
from enum import Enum

from config import Settings
from errors import RunInProgressError
from llm_client import ChatClient, build_llm_client
from models import Report, ResearchRequest
from pubmed_client import PubMedClient
from query_planner import QueryPlanner
from ranker import RelevanceRanker
from synthesis import SynthesisStreamer

LOGGER = logging.getLogger(__name__)

MAX_RETAINED_RUN_STATES = 256


class Phase(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    SEARCHING = "searching"
    FETCHING_DETAILS = "fetching_details"
    RANKING = "ranking"
    STREAMING_SYNTHESIS = "streaming_synthesis"
    DONE = "done"
    FAILED = "failed"


PHASE_LABELS: dict[Phase, str] = {
    Phase.PLANNING: "Phase 1: AI Generating PubMed Queries...",
    Phase.SEARCHING: "Phase 2: Executing Real-time PubMed Search...",
    Phase.FETCHING_DETAILS: "Phase 3: Fetching Article Details from PubMed...",
    Phase.RANKING: "Phase 4: AI Ranking & Analysis of Real Articles...",
    Phase.STREAMING_SYNTHESIS: "Phase 5: Synthesizing Top Findings...",
    Phase.DONE: "Finalizing Report...",
}
STREAMING_LABEL = "Streaming Synthesis..."


@dataclass(frozen=True, slots=True)
class PipelineEvent:
    """One step of a run: a phase label, optionally the report and a text increment."""

    run_id: str
    phase: Phase
    label: str
    report: Report | None = None
    text: str | None = None


def request_fingerprint(request: ResearchRequest) -> str:
    """Stable key for 'the same research request', used to refuse duplicate runs."""
    normalized = {
        "topic": " ".join(request.research_topic.lower().split()),
        "date_range": request.date_range,
        "article_types": sorted(t.lower() for t in request.article_types),
        "focus": " ".join(request.synthesis_focus.lower().split()),
        "max": request.max_articles_to_scan,
        "top_n": request.top_n_to_synthesize,
    }
    return hashlib.sha256(json.dumps(normalized, sort_keys=True).encode("utf-8")).hexdigest()


class RunRegistry:
    """At most one active run per request fingerprint (fingerprint -> run id).

    Also records the current phase of recent runs, keyed by run id. Finished
    runs beyond max_retained are forgotten, oldest first; active runs never are.
    """

    def __init__(self, max_retained: int = MAX_RETAINED_RUN_STATES) -> None:
        self._lock = threading.Lock()
        self._max_retained = max_retained
        self._active: dict[str, str] = {}
        self._states: OrderedDict[str, Phase] = OrderedDict()

    def acquire(self, fingerprint: str, run_id: str) -> None:
        with self._lock:
            existing = self._active.get(fingerprint)
            if existing is not None:
                raise RunInProgressError(
                    f"An identical research run is already in progress (run_id={existing})."
                )
            self._active[fingerprint] = run_id
            self._states[run_id] = Phase.IDLE

    def release(self, fingerprint: str, run_id: str) -> None:
        with self._lock:
            if self._active.get(fingerprint) == run_id:
                del self._active[fingerprint]
            self._evict_finished()

    def active_runs(self) -> dict[str, str]:
        with self._lock:
            return dict(self._active)

    def transition(self, run_id: str, phase: Phase) -> None:
        with self._lock:
            self._states[run_id] = phase

    def state(self, run_id: str) -> Phase | None:
        with self._lock:
            return self._states.get(run_id)

    def _evict_finished(self) -> None:
        active = set(self._active.values())
        for run_id in list(self._states):
            if len(self._states) <= self._max_retained:
                return
            if run_id not in active:
                del self._states[run_id]


class PipelineOrchestrator:
    def __init__(
        self,
        planner: QueryPlanner,
        search_client: PubMedClient,
        ranker: RelevanceRanker,
        synthesizer: SynthesisStreamer,
        registry: RunRegistry | None = None,
    ) -> None:
        self._planner = planner
        self._search = search_client
        self._ranker = ranker
        self._synthesizer = synthesizer
        self._registry = registry or RunRegistry()

    @classmethod
    def from_settings(
        cls, settings: Settings, llm: ChatClient | None = None
    ) -> PipelineOrchestrator:
        llm = llm or build_llm_client(settings)
        return cls(
            planner=QueryPlanner(llm, settings),
            search_client=PubMedClient.from_settings(settings),
            ranker=RelevanceRanker(llm, settings),
            synthesizer=SynthesisStreamer(llm, settings),
        )

    def run_events(self, request: ResearchRequest) -> Generator[PipelineEvent, None, Report]:
        """Drive one run, yielding events; the generator's return value is the final report."""
        run_id = uuid.uuid4().hex
        fingerprint = request_fingerprint(request)
        self._registry.acquire(fingerprint, run_id)
        state = Phase.IDLE

        def event(phase: Phase, report: Report | None = None, text: str | None = None,
                  label: str | None = None) -> PipelineEvent:
            self._registry.transition(run_id, phase)
            return PipelineEvent(
                run_id=run_id,
                phase=phase,
                label=label or PHASE_LABELS[phase],
                report=report,
                text=text,
            )

        LOGGER.info("Run %s started: topic=%s", run_id, request.research_topic)
        try:
            state = Phase.PLANNING
            yield event(state)
            queries = self._planner.plan(request)

            state = Phase.SEARCHING
            yield event(state)
            identifiers = self._search.search(queries[0].query, request.max_articles_to_scan)

            state = Phase.FETCHING_DETAILS
            yield event(state)
            candidates = self._search.fetch_details(identifiers)

            state = Phase.RANKING
            yield event(state)
            ranking = self._ranker.rank(
                request.research_topic, candidates, request.top_n_to_synthesize
            )

            report = Report(
                generated_queries=list(queries),
                ranked_articles=list(ranking.ranked_articles),
                insights=list(ranking.insights),
                overall_keywords=list(ranking.overall_keywords),
            )
            state = Phase.STREAMING_SYNTHESIS
            yield event(state, report=report)

            with contextlib.closing(
                self._synthesizer.stream(report.ranked_articles, request.synthesis_focus)
            ) as chunks:
                for chunk in chunks:
                    report.append_synthesis(chunk)
                    yield event(state, report=report, text=chunk, label=STREAMING_LABEL)

            report.freeze()
            state = Phase.DONE
            LOGGER.info(
                "Run %s done: ranked=%s synthesis_chars=%s",
                run_id,
                len(report.ranked_articles),
                len(report.synthesis),
            )
            yield event(state, report=report)
            return report
        except GeneratorExit:
            LOGGER.info("Run %s cancelled by consumer during %s", run_id, state.value)
            raise
        except Exception as exc:
            LOGGER.error("Run %s failed during %s: %s", run_id, state.value, exc)
            self._registry.transition(run_id, Phase.FAILED)
            raise
        finally:
            self._registry.release(fingerprint, run_id)

    def run(
        self,
        request: ResearchRequest,
        on_event: Callable[[PipelineEvent], None] | None = None,
    ) -> Report:
        """Consume run_events to completion and return the frozen report."""
        events = self.run_events(request)
        while True:
            try:
                item = next(events)
            except StopIteration as stop:
                return stop.value
            if on_event is not None:
                on_event(item)
