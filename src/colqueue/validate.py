"""Quality gates for generated articles.

Gates that can repair data (rounding, totals, currency) repair and report a
warning. Gates that detect missing structure reject, because fabricating
sections would misrepresent the content.
"""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from .models import ComparisonMode, GeneratedArticle, Mode
from .normalize import infer_local_currency
from .utils import log_event

logger = logging.getLogger("colqueue.validate")

COST_CATEGORIES = (
    "rentCityCenter",
    "rentOutside",
    "utilities",
    "groceries",
    "transport",
    "eatingOut",
    "internetPhone",
    "entertainment",
)

REQUIRED_HEADINGS = (
    "TL;DR",
    "Last Updated",
    "Monthly Cost Breakdown",
    "By Lifestyle",
    "How to Save Money",
    "Common Mistakes",
    "Quick Checklist",
    "FAQ",
    "Sources & Methodology",
    "Conclusion",
    "Disclaimer",
)
SAVE_MONEY_HEADING = "How to Save Money"

EXCERPT_LIMIT = 150

_CURRENCY = re.compile(r"\b([A-Z]{3})\b")
_H1 = re.compile(r"^#\s+", re.MULTILINE)
_TABLE = re.compile(r"\n\|.*\|\n\|[-:\s|]+\|\n")


class ValidationFailed(Exception):
    def __init__(self, gate: str, errors: list[str]) -> None:
        super().__init__(f"{gate} validation failed: {', '.join(errors)}")
        self.gate = gate
        self.errors = list(errors)


@dataclass
class ValidationReport:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class CostDataResult:
    valid: bool
    cost_data: dict[str, Any] | None
    warnings: list[str] = field(default_factory=list)
    error: str | None = None


def _section(text: str, marker: str, end_marker: str | None) -> str | None:
    """Return the text after ``---marker---``.

    The section ends at ``---end_marker---`` when present, otherwise at the
    next ``---`` in the text.
    """
    if end_marker:
        match = re.search(
            rf"---{marker}---\s*([\s\S]*?)\s*---{end_marker}---",
            text,
        )
        if match:
            return match.group(1).strip()
    match = re.search(rf"---{marker}---\s*", text)
    if not match:
        return None
    start = match.end()
    stop = text.find("---", start)
    if stop <= 0:
        return None
    return text[start:stop].strip()


def _json_section(text: str, marker: str) -> dict[str, Any] | None:
    raw = _section(text, marker, f"END_{marker}")
    if raw is None:
        return None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        log_event(logger, logging.WARNING, "section_json_invalid", section=marker, error=str(exc))
        return None
    return value if isinstance(value, dict) else None


def truncate_excerpt(excerpt: str, limit: int = EXCERPT_LIMIT) -> str:
    if len(excerpt) > limit:
        return excerpt[: limit - 3] + "..."
    return excerpt


def parse_generated_content(text: str) -> GeneratedArticle:
    text = text or ""
    keywords_raw = _section(text, "KEYWORDS", "END_KEYWORDS") or ""
    content = re.search(r"---CONTENT---\s*([\s\S]*?)\s*---END---", text)
    return GeneratedArticle(
        title=_section(text, "TITLE", "SEO_TITLE") or "",
        seo_title=_section(text, "SEO_TITLE", "META_DESCRIPTION") or "",
        meta_description=_section(text, "META_DESCRIPTION", "EXCERPT") or "",
        excerpt=truncate_excerpt(_section(text, "EXCERPT", "KEYWORDS") or ""),
        keywords=[part.strip() for part in keywords_raw.split(",") if part.strip()],
        cost_data=_json_section(text, "COST_DATA_JSON"),
        data_policy=_json_section(text, "DATA_POLICY_JSON"),
        content=content.group(1).strip() if content else "",
        raw=text,
    )


def parse_metadata_fix(text: str, article: GeneratedArticle) -> GeneratedArticle:
    """Overlay the metadata sections of a fix response onto ``article``."""
    text = text or ""
    title = _section(text, "TITLE", "SEO_TITLE")
    seo_title = _section(text, "SEO_TITLE", "META_DESCRIPTION")
    meta = _section(text, "META_DESCRIPTION", "EXCERPT")
    excerpt = _section(text, "EXCERPT", "END")
    return GeneratedArticle(
        title=title if title is not None else article.title,
        seo_title=seo_title if seo_title is not None else article.seo_title,
        meta_description=meta if meta is not None else article.meta_description,
        excerpt=truncate_excerpt(excerpt) if excerpt is not None else article.excerpt,
        keywords=list(article.keywords),
        cost_data=article.cost_data,
        data_policy=article.data_policy,
        content=article.content,
        raw=article.raw,
    )


def _round_half_up(value: float, step: int) -> float:
    return math.floor(value / step + 0.5) * step


def round_cost(value: Any, steps: Iterable[int] = (25, 10)) -> int | float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
        return 0
    ordered = sorted(steps, reverse=True) or [10]
    for step in ordered:
        rounded = _round_half_up(value, step)
        if abs(value - rounded) <= step / 2:
            return _as_number(rounded)
    return _as_number(_round_half_up(value, ordered[-1]))


def _as_number(value: float) -> int | float:
    return int(value) if float(value).is_integer() else value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_cost_data(
    cost_data: Any,
    steps: Iterable[int] = (25, 10),
    tolerance: float = 0.05,
) -> CostDataResult:
    if not isinstance(cost_data, dict):
        return CostDataResult(valid=False, cost_data=None, error="Invalid cost data structure")
    steps = list(steps)
    rounded = dict(cost_data)
    for category in COST_CATEGORIES:
        for suffix in ("Min", "Max"):
            key = f"{category}{suffix}"
            if _is_number(rounded.get(key)):
                rounded[key] = round_cost(rounded[key], steps)

    warnings: list[str] = []
    adjusted = False
    for suffix in ("Min", "Max"):
        calculated = sum(
            rounded.get(f"{category}{suffix}") or 0
            for category in COST_CATEGORIES
            if _is_number(rounded.get(f"{category}{suffix}"))
        )
        stated = rounded.get(f"total{suffix}")
        stated = stated if _is_number(stated) else 0
        if abs(stated - calculated) > calculated * tolerance:
            rounded[f"total{suffix}"] = round_cost(calculated, steps)
            adjusted = True
    if adjusted:
        warnings.append("Totals adjusted to match category sums")
    return CostDataResult(valid=True, cost_data=rounded, warnings=warnings)


def normalize_currency(value: Any) -> str | None:
    """Extract a three-letter ISO code, or None for descriptive text."""
    if not value or not isinstance(value, str):
        return None
    match = _CURRENCY.search(value)
    return match.group(1) if match else None


def resolve_currency(value: Any, country_code: str | None, default: str = "USD") -> str:
    return normalize_currency(value) or infer_local_currency(country_code) or default


def apply_currency(cost_data: dict[str, Any], country_code: str | None, default: str = "USD") -> dict[str, Any]:
    result = dict(cost_data)
    currency = resolve_currency(result.get("currency"), country_code, default)
    result["currency"] = currency
    result["localCurrency"] = currency
    result["displayCurrency"] = currency
    if currency != "USD":
        result["fxNote"] = (
            f"All amounts are in {currency}. "
            "USD equivalents are approximate and vary with exchange rates."
        )
    else:
        result["fxNote"] = "Ranges are in USD."
    return result


def validate_seo_fields(
    article: GeneratedArticle,
    title_max: int = 60,
    seo_title_max: int = 60,
    meta_min: int = 150,
    meta_max: int = 160,
    excerpt_max: int = EXCERPT_LIMIT,
) -> ValidationReport:
    errors: list[str] = []
    title = article.title or ""
    if not title or len(title) > title_max:
        errors.append(f"Title must be <= {title_max} characters (got {len(title)})")
    seo_title = article.seo_title or ""
    if not seo_title or len(seo_title) > seo_title_max:
        errors.append(f"SEO Title must be <= {seo_title_max} characters (got {len(seo_title)})")
    meta = (article.meta_description or "").strip()
    if len(meta) < meta_min or len(meta) > meta_max:
        errors.append(f"Meta Description must be {meta_min}-{meta_max} characters (got {len(meta)})")
    excerpt = (article.excerpt or "").strip()
    if not excerpt or len(excerpt) > excerpt_max:
        errors.append(f"Excerpt must be 1-{excerpt_max} characters (got {len(excerpt)})")
    return ValidationReport(valid=not errors, errors=errors)


def _heading_pattern(heading: str, city_suffix: bool) -> re.Pattern[str]:
    escaped = re.escape(heading)
    if city_suffix:
        return re.compile(rf"^##\s+{escaped}\s+in\s+[^\n]+$", re.IGNORECASE | re.MULTILINE)
    if heading == SAVE_MONEY_HEADING:
        return re.compile(rf"^##\s+{escaped}\b.*$", re.IGNORECASE | re.MULTILINE)
    return re.compile(rf"^##\s+{escaped}\s*(?:[:—-].*)?$", re.IGNORECASE | re.MULTILINE)


def word_count(content: str) -> int:
    return len(content.split())


def validate_article_structure(
    content: str,
    mode: Mode,
    min_words_single: int = 1200,
    min_words_comparison: int = 1600,
) -> ValidationReport:
    errors: list[str] = []
    warnings: list[str] = []
    content = content or ""

    for heading in REQUIRED_HEADINGS:
        city_suffix = heading == SAVE_MONEY_HEADING and mode.name == "city"
        found = len(_heading_pattern(heading, city_suffix).findall(content))
        label = f"## {heading} in {{city}}" if city_suffix else f"## {heading}"
        if found == 0:
            errors.append(f"Missing required section: {label}")
        elif found > 1:
            errors.append(f"Duplicated section: {label} (found {found})")

    h1_count = len(_H1.findall(content))
    if h1_count:
        errors.append(f"Found {h1_count} H1 in body (should be 0, title is separate)")

    if not _TABLE.search(content):
        warnings.append("No markdown table found (recommended for cost breakdown)")

    words = word_count(content)
    if isinstance(mode, ComparisonMode):
        low, high = min_words_comparison, min_words_comparison + 500
    else:
        low, high = min_words_single, min_words_single + 600
    if words < low:
        errors.append(f"Word count too low: {words} (minimum {low})")
    elif words > high:
        warnings.append(f"Word count high: {words} (target {low}-{high})")

    return ValidationReport(valid=not errors, errors=errors, warnings=warnings)
