from __future__ import annotations

import os
from typing import Any

import yaml

from .utils import json_dumps, slugify

PREVIEW_FIELDS = (
    "title",
    "seoTitle",
    "seoDescription",
    "excerpt",
    "seoKeywords",
    "readingTime",
    "city",
    "country",
    "countryCode",
    "year",
    "comparisonCity",
    "contentSeries",
)


def write_preview_markdown(document: dict[str, Any], body: str, output_dir: str) -> str:
    """Write a dry-run preview of ``document`` as markdown with YAML frontmatter."""
    os.makedirs(output_dir, exist_ok=True)
    slug = (document.get("slug") or {}).get("current") or slugify(str(document.get("title") or ""))
    path = os.path.join(output_dir, f"{slug}.md")
    frontmatter = {key: document[key] for key in PREVIEW_FIELDS if document.get(key) is not None}
    frontmatter["slug"] = slug
    if document.get("costOfLivingData"):
        frontmatter["costOfLivingData"] = document["costOfLivingData"]
    content = "---\n"
    content += yaml.safe_dump(
        frontmatter, sort_keys=False, allow_unicode=False, default_flow_style=False
    )
    content += "---\n\n"
    content += body.strip() + "\n"
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(content)
    return path


def write_run_report(report: dict[str, Any], reports_dir: str, run_id: str) -> str:
    os.makedirs(reports_dir, exist_ok=True)
    path = os.path.join(reports_dir, f"run-{run_id}.json")
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(json_dumps(report, indent=2))
        handle.write("\n")
    return path
