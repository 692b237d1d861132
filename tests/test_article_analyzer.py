from unittest.mock import MagicMock

import pytest

from article_analyzer import ANALYSIS_TEMPERATURE, ArticleAnalyzer, extract_pmid
from errors import DetailsFetchError, EmptyResultError
from models import ArticleRecord

_RECORD = ArticleRecord(identifier="31415926", title="Aspirin trial", abstract="We randomized patients.")


@pytest.mark.parametrize(
    ("identifier", "expected"),
    [
        ("31415926", "31415926"),
        ("  31415926 ", "31415926"),
        ("https://pubmed.ncbi.nlm.nih.gov/31415926/", "31415926"),
        ("pubmed.ncbi.nlm.nih.gov/31415926", "31415926"),
        ("https://doi.org/10.1056/NEJMoa1234567", None),
        ("10.1056/NEJMoa1234567", None),
    ],
)
def test_extract_pmid(identifier: str, expected: str | None) -> None:
    assert extract_pmid(identifier) == expected


def test_extract_pmid_rejects_garbage() -> None:
    with pytest.raises(ValueError):
        extract_pmid("aspirin trial")


def test_analyze_pmid_annotates_fetched_record(settings, fake_llm) -> None:
    search = MagicMock()
    search.fetch_details.return_value = [_RECORD]
    fake_llm.payloads.append({
        "relevanceScore": 88,
        "relevanceExplanation": "Abstract matches title.",
        "keywords": ["aspirin", " trial ", 7],
        "articleType": "Randomized Controlled Trial",
    })

    article = ArticleAnalyzer(fake_llm, search, settings).analyze("https://pubmed.ncbi.nlm.nih.gov/31415926/")

    search.search.assert_not_called()
    search.fetch_details.assert_called_once_with(["31415926"])
    assert article.identifier == "31415926"
    assert article.relevance_score == 88
    assert article.keywords == ("aspirin", "trial")
    assert article.article_type == "Randomized Controlled Trial"
    assert fake_llm.json_calls[0]["temperature"] == ANALYSIS_TEMPERATURE
    assert "Title: Aspirin trial" in fake_llm.json_calls[0]["user"]


def test_analyze_doi_resolves_through_search(settings, fake_llm) -> None:
    search = MagicMock()
    search.search.return_value = ["31415926"]
    search.fetch_details.return_value = [_RECORD]
    fake_llm.payloads.append({"relevanceScore": 50})

    ArticleAnalyzer(fake_llm, search, settings).analyze("https://doi.org/10.1056/NEJMoa1234567")

    search.search.assert_called_once_with("10.1056/NEJMoa1234567[DOI]", 1)
    search.fetch_details.assert_called_once_with(["31415926"])


def test_analyze_unknown_doi_is_details_fetch_error(settings, fake_llm) -> None:
    search = MagicMock()
    search.search.side_effect = EmptyResultError("10.1/x[DOI]")

    with pytest.raises(DetailsFetchError, match="DOI not found"):
        ArticleAnalyzer(fake_llm, search, settings).analyze("10.1000/xyz123")
