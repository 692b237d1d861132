"""Error taxonomy for the research pipeline and the knowledge store."""

from __future__ import annotations


class PipelineError(RuntimeError):
    """Base class for every phase-level pipeline failure."""


class PlanningError(PipelineError):
    """The AI service did not produce a usable search query."""


class SearchServiceError(PipelineError):
    """Transport or protocol failure talking to the bibliographic search service."""


class EmptyResultError(PipelineError):
    """The search succeeded but returned zero identifiers."""

    def __init__(self, query: str) -> None:
        super().__init__(
            "Your search returned no results from PubMed. This can be due to a very "
            "specific topic or strict filters. Try broadening your topic, adjusting "
            "the date range, or changing article types."
        )
        self.query = query


class DetailsFetchError(PipelineError):
    """Identifiers were found but no detail record could be resolved."""


class RankingValidationError(PipelineError):
    """Every ranked article was rejected by identifier validation."""


class AIServiceError(PipelineError):
    """The generative-AI service failed or refused to answer."""


class SafetyBlockedError(AIServiceError):
    """The provider withheld the response because of safety settings."""


class ContentPolicyError(AIServiceError):
    """The provider withheld the response under a content policy (filter, recitation)."""


class MalformedResponseError(AIServiceError):
    """The AI response could not be parsed into the expected JSON shape."""


class RunInProgressError(PipelineError):
    """An identical research run is already active in this process."""


class KnowledgeStoreError(RuntimeError):
    """Base class for knowledge store failures."""


class StoreIOError(KnowledgeStoreError):
    """The persistent store could not be read or written."""


class EntryNotFoundError(KnowledgeStoreError, KeyError):
    """No entry exists with the requested id."""

    def __str__(self) -> str:
        return RuntimeError.__str__(self)
