import pytest

from colqueue.dedupe import (
    DuplicateCheckError,
    DuplicateDetector,
    build_dedup_key,
    record_dedup_key,
    topic_keyword,
)
from colqueue.models import BudgetMode, ComparisonMode
from colqueue.queue import build_item

PUBLISHED = {
    "_id": "doc-1",
    "title": "Cost of Living in Lisbon 2026",
    "slug": "cost-of-living-in-lisbon-2026",
    "city": "Lisbon",
    "citySlug": "lisbon",
    "country": "Portugal",
    "countryCode": "PT",
    "year": 2026,
}


def _item(**fields):
    return build_item({"subject": "Lisbon", "qualifier": "Portugal", **fields})


def _never_called(keyword, articles):
    raise AssertionError("similarity function should not run")


def test_dedup_key_normalizes_fields():
    assert build_dedup_key("New York", "United States", "city", 2026) == "new-york-city|US|city|2026"
    assert (
        build_dedup_key("Milan", "Italy", "comparison", 2026, "Rome") == "milan|IT|comparison|2026|rome"
    )


def test_record_key_infers_mode_from_slug():
    record = dict(PUBLISHED, slug="how-much-to-live-in-lisbon-2026")

    assert record_dedup_key(record) == "lisbon|PT|budget|2026"
    assert record_dedup_key({"title": "No topic fields"}) is None


def test_empty_corpus_proceeds():
    verdict = DuplicateDetector(similarity_fn=_never_called).is_duplicate(_item(), [])

    assert not verdict.is_duplicate
    assert verdict.rationale == "no existing articles"


def test_exact_match_short_circuits_semantic_check():
    verdict = DuplicateDetector(similarity_fn=_never_called).is_duplicate(_item(), [PUBLISHED])

    assert verdict.is_duplicate
    assert verdict.exact
    assert verdict.similarity == 100.0
    assert verdict.match["slug"] == PUBLISHED["slug"]


def test_other_year_is_not_an_exact_match():
    verdict = DuplicateDetector().is_duplicate(_item(year=2027), [PUBLISHED])

    assert not verdict.is_duplicate


def test_semantic_duplicate_needs_threshold():
    calls = []

    def similarity(keyword, articles):
        calls.append((keyword, len(articles)))
        return {
            "isDuplicate": True,
            "maxSimilarity": 97,
            "recommendation": "skip",
            "mostSimilarArticle": {"slug": "lisbon-budget", "reason": "same city"},
        }

    detector = DuplicateDetector(similarity_fn=similarity, threshold=98, max_compare=1)
    verdict = detector.is_duplicate(_item(mode="budget"), [PUBLISHED, dict(PUBLISHED, _id="doc-2")])

    assert not verdict.is_duplicate
    assert verdict.similarity == 97
    assert calls == [("how much to live in Lisbon 2026", 1)]


def test_semantic_duplicate_above_threshold():
    def similarity(keyword, articles):
        return {
            "isDuplicate": True,
            "maxSimilarity": 99,
            "recommendation": "skip",
            "mostSimilarArticle": {"slug": "lisbon-guide", "reason": "same topic"},
        }

    verdict = DuplicateDetector(similarity_fn=similarity).is_duplicate(_item(mode="budget"), [PUBLISHED])

    assert verdict.is_duplicate
    assert not verdict.exact
    assert verdict.rationale == "same topic"
    assert verdict.match["slug"] == "lisbon-guide"


def test_semantic_failure_fails_open():
    def broken(keyword, articles):
        raise RuntimeError("provider down")

    verdict = DuplicateDetector(similarity_fn=broken).is_duplicate(_item(mode="budget"), [PUBLISHED])

    assert not verdict.is_duplicate
    assert "provider down" in verdict.rationale


def test_semantic_failure_raises_when_strict():
    def broken(keyword, articles):
        raise RuntimeError("provider down")

    detector = DuplicateDetector(similarity_fn=broken, strict=True)

    with pytest.raises(DuplicateCheckError):
        detector.is_duplicate(_item(mode="budget"), [PUBLISHED])


def test_topic_keyword_per_mode():
    assert topic_keyword("Lisbon", BudgetMode(), 2026) == "how much to live in Lisbon 2026"
    assert topic_keyword("Milan", ComparisonMode("Rome"), 2026) == "Milan vs Rome cost of living 2026"
