from __future__ import annotations

from typing import Any

from ..models import BudgetMode, ComparisonMode, WorkItem
from ..normalize import infer_local_currency, normalize_country_code

OUTPUT_FORMAT = """
Return the article using exactly these section markers:
---TITLE---
---SEO_TITLE---
---META_DESCRIPTION---
---EXCERPT---
---KEYWORDS---
(comma separated)
---END_KEYWORDS---
---COST_DATA_JSON---
(JSON with <category>Min/<category>Max for rentCityCenter, rentOutside,
utilities, groceries, transport, eatingOut, internetPhone, entertainment,
plus totalMin, totalMax and currency)
---END_COST_DATA_JSON---
---DATA_POLICY_JSON---
---END_DATA_POLICY_JSON---
---CONTENT---
(markdown body with H2 sections only)
---END---
"""

STRUCTURE_FIX_SUFFIX = (
    "\n\nIMPORTANT: The previous output was missing required sections. "
    "Regenerate with ALL required sections as H2 headings (##): TL;DR, "
    "Last Updated, Monthly Cost Breakdown, By Lifestyle, How to Save Money, "
    "Common Mistakes, Quick Checklist, FAQ, Sources & Methodology, "
    "Conclusion, Disclaimer."
)


def article_prompt(topic: WorkItem) -> str:
    currency = infer_local_currency(normalize_country_code(topic.qualifier))
    currency_line = (
        f"Express all amounts in {currency}."
        if currency
        else "Express all amounts in the local currency using its ISO code."
    )
    if isinstance(topic.mode, ComparisonMode):
        subject = (
            f"Compare the monthly cost of living in {topic.subject}, {topic.qualifier} "
            f"and {topic.mode.second_subject} for {topic.year}."
        )
    elif isinstance(topic.mode, BudgetMode):
        subject = (
            f"Explain how much money a person needs to live in {topic.subject}, "
            f"{topic.qualifier} in {topic.year}."
        )
    else:
        subject = (
            f"Estimate the monthly cost of living in {topic.subject}, "
            f"{topic.qualifier} for {topic.year} using ranges."
        )
    return "\n".join([subject, currency_line, OUTPUT_FORMAT])


def metadata_fix_prompt(content: str) -> str:
    return (
        "Fix the SEO metadata for the article below without changing it.\n"
        "---CONTENT---\n"
        f"{content}\n"
        "---END---\n\n"
        "Constraints: TITLE max 60 characters, SEO_TITLE max 60 characters, "
        "META_DESCRIPTION 150-160 characters, EXCERPT max 150 characters.\n"
        "Output only:\n---TITLE---\n---SEO_TITLE---\n---META_DESCRIPTION---\n"
        "---EXCERPT---\n---END---"
    )


def duplicate_prompt(keyword: str, articles: list[dict[str, Any]]) -> str:
    lines = []
    for index, article in enumerate(articles, start=1):
        keywords = ", ".join(article.get("seoKeywords") or []) or "N/A"
        lines.append(
            f'{index}. Title: "{article.get("title")}"\n'
            f"   Slug: {article.get('slug')}\n"
            f"   Excerpt: {article.get('excerpt') or 'N/A'}\n"
            f"   SEO Keywords: {keywords}"
        )
    listing = "\n".join(lines)
    return (
        f'Is the new keyword "{keyword}" the same topic and search intent as one '
        f"of these existing articles?\n\n{listing}\n\n"
        "Only near identical topics (similarity 98-100) are duplicates. "
        "Reply with JSON only: "
        '{"isDuplicate": bool, "maxSimilarity": 0-100, '
        '"mostSimilarArticle": {"title", "slug", "similarity", "reason"}, '
        '"recommendation": "proceed" | "modify_angle" | "skip", '
        '"suggestedAngle": str, "analysis": str}'
    )
