from __future__ import annotations

import logging
from typing import Any, Callable, Iterable

from .models import BudgetMode, ComparisonMode, DuplicateVerdict, Mode, WorkItem, second_subject_of
from .normalize import normalize_city_name, normalize_country_code
from .utils import log_event

SimilarityFn = Callable[[str, list[dict[str, Any]]], dict[str, Any]]


class DuplicateContentError(Exception):
    """Equivalent content already exists; the work item is terminal."""

    def __init__(self, verdict: DuplicateVerdict) -> None:
        super().__init__(verdict.rationale)
        self.verdict = verdict


class DuplicateCheckError(RuntimeError):
    pass


def build_dedup_key(
    subject: str,
    qualifier: str,
    mode: str,
    year: int | str,
    second_subject: str | None = None,
) -> str:
    parts = [
        normalize_city_name(subject),
        normalize_country_code(qualifier),
        (mode or "city").lower(),
        str(year),
    ]
    if second_subject:
        parts.append(normalize_city_name(second_subject))
    return "|".join(parts)


def item_dedup_key(item: WorkItem) -> str:
    return build_dedup_key(
        item.subject,
        item.qualifier,
        item.mode.name,
        item.year,
        second_subject_of(item.mode),
    )


def record_mode(record: dict[str, Any]) -> str:
    if record.get("mode"):
        return str(record["mode"])
    if record.get("comparisonCitySlug") or record.get("comparisonCity"):
        return ComparisonMode.name
    slug = str(record.get("slug") or "")
    if slug.startswith("how-much-to-live-in-"):
        return BudgetMode.name
    return "city"


def record_dedup_key(record: dict[str, Any]) -> str | None:
    """Key for a published document, or None when it lacks topic fields."""
    subject = record.get("citySlug") or record.get("city")
    qualifier = record.get("countryCode") or record.get("country")
    year = record.get("year")
    if not subject or not qualifier or not year:
        return None
    second = record.get("comparisonCitySlug") or record.get("comparisonCity")
    return build_dedup_key(str(subject), str(qualifier), record_mode(record), year, second)


def topic_keyword(subject: str, mode: Mode, year: int) -> str:
    if isinstance(mode, ComparisonMode):
        return f"{subject} vs {mode.second_subject} cost of living {year}"
    if isinstance(mode, BudgetMode):
        return f"how much to live in {subject} {year}"
    return f"{subject} cost of living {year}"


class DuplicateDetector:
    def __init__(
        self,
        similarity_fn: SimilarityFn | None = None,
        threshold: int = 98,
        max_compare: int = 30,
        strict: bool = False,
        logger: logging.Logger | None = None,
    ) -> None:
        self.similarity_fn = similarity_fn
        self.threshold = threshold
        self.max_compare = max_compare
        self.strict = strict
        self.logger = logger or logging.getLogger("colqueue.dedupe")

    def is_duplicate(self, candidate: WorkItem, corpus: Iterable[dict[str, Any]]) -> DuplicateVerdict:
        records = list(corpus)
        if not records:
            return DuplicateVerdict(is_duplicate=False, exact=False, rationale="no existing articles")

        key = item_dedup_key(candidate)
        for record in records:
            if record_dedup_key(record) == key:
                log_event(
                    self.logger,
                    logging.INFO,
                    "duplicate_exact",
                    key=key,
                    slug=record.get("slug"),
                )
                return DuplicateVerdict(
                    is_duplicate=True,
                    exact=True,
                    rationale=f"exact match on {key}",
                    match=record,
                    similarity=100.0,
                    recommendation="skip",
                )

        if self.similarity_fn is None:
            return DuplicateVerdict(is_duplicate=False, exact=False, rationale="no exact match")
        return self._semantic(candidate, records)

    def _semantic(self, candidate: WorkItem, records: list[dict[str, Any]]) -> DuplicateVerdict:
        keyword = topic_keyword(candidate.subject, candidate.mode, candidate.year)
        try:
            analysis = self.similarity_fn(keyword, records[: self.max_compare])
        except Exception as exc:  # noqa: BLE001
            if self.strict:
                raise DuplicateCheckError(f"semantic duplicate check failed: {exc}") from exc
            log_event(self.logger, logging.WARNING, "duplicate_check_failed_open", error=str(exc))
            return DuplicateVerdict(
                is_duplicate=False,
                exact=False,
                rationale=f"semantic check failed, proceeding: {exc}",
            )

        similarity = _as_float(analysis.get("maxSimilarity"))
        match = analysis.get("mostSimilarArticle") or None
        reason = ""
        if isinstance(match, dict):
            reason = str(match.get("reason") or "")
        rationale = reason or str(analysis.get("analysis") or "")
        is_duplicate = bool(analysis.get("isDuplicate")) and similarity >= self.threshold
        log_event(
            self.logger,
            logging.INFO,
            "duplicate_semantic",
            keyword=keyword,
            similarity=similarity,
            duplicate=is_duplicate,
        )
        return DuplicateVerdict(
            is_duplicate=is_duplicate,
            exact=False,
            rationale=rationale or ("semantic duplicate" if is_duplicate else "no semantic duplicate"),
            match=match if isinstance(match, dict) else None,
            similarity=similarity,
            recommendation=str(analysis.get("recommendation") or "proceed"),
        )


def _as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0
