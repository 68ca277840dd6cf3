from __future__ import annotations

import logging
import math
from typing import Any, Callable, Protocol

from .config import Config
from .content_store import ContentStoreError, markdown_to_blocks
from .dedupe import DuplicateCheckError, DuplicateDetector, topic_keyword
from .models import (
    BudgetMode,
    ComparisonMode,
    DuplicateSkipped,
    Failed,
    GeneratedArticle,
    GenerationOutcome,
    Mode,
    Published,
    WorkItem,
    second_subject_of,
)
from .normalize import normalize_city_name, normalize_country_code
from .publish import write_preview_markdown
from .utils import log_event, utc_now_iso
from .validate import (
    ValidationFailed,
    apply_currency,
    validate_article_structure,
    validate_cost_data,
    validate_seo_fields,
    word_count,
)

MAX_SLUG_SUFFIX = 100


class ContentStore(Protocol):
    def slug_exists(self, slug: str) -> bool: ...

    def create(self, document: dict[str, Any]) -> dict[str, Any]: ...

    def list_articles_for_dedupe(self, limit: int | None = None) -> list[dict[str, Any]]: ...

    def find_cost_of_living(
        self,
        city_slug: str,
        country_code: str,
        year: int,
        comparison_city_slug: str | None = None,
        comparison_city: str | None = None,
        content_series: str = "cost-of-living",
    ) -> list[dict[str, Any]]: ...

    def default_author_id(self) -> str | None: ...

    def category_id(self, slug: str) -> str | None: ...


def base_slug(mode: Mode, city_slug: str, year: int) -> str:
    if isinstance(mode, ComparisonMode):
        return f"{city_slug}-vs-{normalize_city_name(mode.second_subject)}-cost-of-living-{year}"
    if isinstance(mode, BudgetMode):
        return f"how-much-to-live-in-{city_slug}-{year}"
    return f"cost-of-living-in-{city_slug}-{year}"


def unique_slug(base: str, exists: Callable[[str], bool]) -> str:
    slug = base
    suffix = 1
    while exists(slug):
        suffix += 1
        if suffix > MAX_SLUG_SUFFIX:
            raise ContentStoreError(f"could not find a free slug for {base}")
        slug = f"{base}-{suffix}"
    return slug


def reading_time(words: int, minimum: int = 6, maximum: int = 15, per_minute: int = 200) -> int:
    return max(minimum, min(maximum, math.ceil(words / per_minute)))


class ArticlePublisher:
    """Turns one work item into a published article.

    Duplicate topics come back as :class:`DuplicateSkipped` and articles that
    fail a quality gate as :class:`Failed`. Transport and store errors
    propagate to the caller.
    """

    def __init__(
        self,
        config: Config,
        adapter: Any,
        store: ContentStore,
        detector: DuplicateDetector | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.adapter = adapter
        self.store = store
        self.logger = logger or logging.getLogger("colqueue.generator")
        if detector is None:
            similarity_fn = adapter.judge_duplicate if config.dedupe.semantic_enabled else None
            detector = DuplicateDetector(
                similarity_fn=similarity_fn,
                threshold=config.dedupe.similarity_threshold,
                max_compare=config.dedupe.max_articles_to_compare,
                strict=config.dedupe.strict,
            )
        self.detector = detector

    def __call__(self, item: WorkItem) -> GenerationOutcome:
        return self.publish(item)

    def publish(self, item: WorkItem) -> GenerationOutcome:
        log_event(self.logger, logging.INFO, "generation_started", item=item.label)
        corpus = self._corpus(item)
        verdict = self.detector.is_duplicate(item, corpus)
        if verdict.is_duplicate:
            existing_slug = (verdict.match or {}).get("slug")
            log_event(
                self.logger,
                logging.INFO,
                "generation_skipped_duplicate",
                item=item.label,
                existing=existing_slug,
            )
            return DuplicateSkipped(reason=verdict.rationale, existing_slug=existing_slug)

        try:
            article = self._generate_valid(item)
        except ValidationFailed as exc:
            log_event(self.logger, logging.WARNING, "generation_rejected", item=item.label, error=str(exc))
            return Failed(reason=str(exc))

        city_slug = normalize_city_name(item.subject)
        slug = unique_slug(base_slug(item.mode, city_slug, item.year), self.store.slug_exists)
        document = self.build_document(item, article, slug)

        if self.config.publishing.dry_run:
            path = write_preview_markdown(document, article.content, self.config.paths.preview_dir)
            log_event(self.logger, logging.INFO, "generation_dry_run", slug=slug, preview=path)
            return Published(slug=slug, document_id="dry-run", title=article.title)

        created = self.store.create(document)
        log_event(
            self.logger,
            logging.INFO,
            "generation_published",
            slug=slug,
            id=created.get("_id"),
        )
        return Published(slug=slug, document_id=str(created.get("_id")), title=article.title)

    def _corpus(self, item: WorkItem) -> list[dict[str, Any]]:
        second = second_subject_of(item.mode)
        try:
            exact = self.store.find_cost_of_living(
                normalize_city_name(item.subject),
                normalize_country_code(item.qualifier),
                item.year,
                normalize_city_name(second) if second else None,
                second,
                self.config.publishing.content_series,
            )
            if self.detector.similarity_fn is None:
                return exact
            seen = {record.get("_id") for record in exact}
            recent = self.store.list_articles_for_dedupe(self.config.dedupe.max_articles_to_compare)
            return exact + [record for record in recent if record.get("_id") not in seen]
        except ContentStoreError as exc:
            if self.config.dedupe.strict:
                raise DuplicateCheckError(f"duplicate lookup failed: {exc}") from exc
            log_event(self.logger, logging.WARNING, "duplicate_lookup_failed_open", error=str(exc))
            return []

    def _generate_valid(self, item: WorkItem) -> GeneratedArticle:
        validation = self.config.validation
        article = self.adapter.generate(item)
        if not article.title or not article.content:
            raise ValidationFailed("content", ["missing title or content"])

        structure = validate_article_structure(
            article.content,
            item.mode,
            validation.min_words_single,
            validation.min_words_comparison,
        )
        if not structure.valid:
            log_event(self.logger, logging.WARNING, "structure_invalid", errors="; ".join(structure.errors))
            article = self.adapter.generate(item, fix_structure=True)
            retry = validate_article_structure(
                article.content,
                item.mode,
                validation.min_words_single,
                validation.min_words_comparison,
            )
            if not article.title or not retry.valid:
                raise ValidationFailed("structure", retry.errors or ["missing title"])
            structure = retry
        for warning in structure.warnings:
            log_event(self.logger, logging.INFO, "structure_warning", warning=warning)

        seo = self._check_seo(article)
        if not seo.valid:
            log_event(self.logger, logging.WARNING, "seo_invalid", errors="; ".join(seo.errors))
            article = self.adapter.regenerate_metadata(article)
            fixed = self._check_seo(article)
            if not fixed.valid:
                raise ValidationFailed("seo", fixed.errors)

        if article.cost_data is not None:
            result = validate_cost_data(
                article.cost_data,
                validation.rounding_steps,
                validation.total_tolerance,
            )
            if not result.valid or result.cost_data is None:
                raise ValidationFailed("cost data", [result.error or "invalid cost data"])
            for warning in result.warnings:
                log_event(self.logger, logging.INFO, "cost_data_warning", warning=warning)
            article.cost_data = apply_currency(
                result.cost_data,
                normalize_country_code(item.qualifier),
                validation.default_currency,
            )
        return article

    def _check_seo(self, article: GeneratedArticle):
        validation = self.config.validation
        return validate_seo_fields(
            article,
            title_max=validation.title_max,
            seo_title_max=validation.seo_title_max,
            meta_min=validation.meta_description_min,
            meta_max=validation.meta_description_max,
            excerpt_max=validation.excerpt_max,
        )

    def build_document(self, item: WorkItem, article: GeneratedArticle, slug: str) -> dict[str, Any]:
        publishing = self.config.publishing
        words = word_count(article.content)
        document: dict[str, Any] = {
            "_type": "post",
            "title": article.title,
            "slug": {"_type": "slug", "current": slug},
            "excerpt": article.excerpt or article.meta_description,
            "body": markdown_to_blocks(article.content),
            "readingTime": reading_time(
                words,
                publishing.reading_time_min,
                publishing.reading_time_max,
                publishing.words_per_minute,
            ),
            "seoTitle": article.seo_title or article.title,
            "seoDescription": article.meta_description or article.excerpt,
            "seoKeywords": list(article.keywords),
            "status": "published",
            "publishedAt": utc_now_iso(),
            "contentSeries": publishing.content_series,
            "primaryKeyword": article.keywords[0]
            if article.keywords
            else topic_keyword(item.subject, item.mode, item.year),
            "city": item.subject,
            "citySlug": normalize_city_name(item.subject),
            "country": item.qualifier,
            "countryCode": normalize_country_code(item.qualifier),
            "year": item.year,
            "costOfLivingData": article.cost_data,
            "dataPolicy": article.data_policy,
        }
        if isinstance(item.mode, ComparisonMode):
            document["comparisonCity"] = item.mode.second_subject
            document["comparisonCitySlug"] = normalize_city_name(item.mode.second_subject)
        if not publishing.dry_run:
            author_id = self.store.default_author_id()
            if author_id:
                document["author"] = {"_type": "reference", "_ref": author_id}
            category_id = self.store.category_id(publishing.content_series)
            if category_id:
                document["categories"] = [
                    {"_type": "reference", "_ref": category_id, "_key": category_id}
                ]
        return document
