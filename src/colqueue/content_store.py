from __future__ import annotations

import json
import logging
import os
import re
import threading
import urllib.error
import urllib.parse
import urllib.request
import uuid
from typing import Any

from .config import ContentStoreConfig
from .utils import log_event

_LINK = re.compile(r"\[([^\]]+)\]\(([^)]+)\)")
_INLINE = re.compile(r"(\*\*[^*]+\*\*|\*[^*]+\*|_[^_]+_)")
_NUMBERED = re.compile(r"^\d+\.\s")

DEDUPE_PROJECTION = """{
  _id,
  title,
  "slug": slug.current,
  excerpt,
  seoKeywords,
  seoTitle,
  publishedAt,
  city,
  citySlug,
  country,
  countryCode,
  year,
  comparisonCity,
  comparisonCitySlug
}"""


class ContentStoreError(RuntimeError):
    pass


class SanityContentStore:
    """Minimal client for the Sanity HTTP query and mutation API."""

    def __init__(
        self,
        config: ContentStoreConfig,
        token: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if not config.project_id:
            raise ContentStoreError("content_store.project_id is not configured")
        self.config = config
        self.token = token if token is not None else os.environ.get(config.token_env, "").strip() or None
        self.logger = logger or logging.getLogger("colqueue.content_store")
        self.base_url = (
            f"https://{config.project_id}.api.sanity.io/v{config.api_version.lstrip('v')}/data"
        )

    def query(self, groq: str, params: dict[str, Any] | None = None) -> Any:
        query_args = [("query", groq)]
        for key, value in (params or {}).items():
            query_args.append((f"${key}", json.dumps(value)))
        url = f"{self.base_url}/query/{self.config.dataset}?{urllib.parse.urlencode(query_args)}"
        response = self._request("GET", url, None)
        return response.get("result")

    def find_by_slug(self, slug: str) -> dict[str, Any] | None:
        return self.query(
            '*[_type == "post" && slug.current == $slug][0]{_id, title, "slug": slug.current}',
            {"slug": slug},
        )

    def slug_exists(self, slug: str) -> bool:
        count = self.query('count(*[_type == "post" && slug.current == $slug])', {"slug": slug})
        return bool(count)

    def create(self, document: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}/mutate/{self.config.dataset}?returnIds=true"
        response = self._request("POST", url, {"mutations": [{"create": document}]})
        results = response.get("results") or []
        if not results or not results[0].get("id"):
            raise ContentStoreError("create returned no document id")
        document_id = results[0]["id"]
        log_event(self.logger, logging.INFO, "document_created", id=document_id)
        return {**document, "_id": document_id}

    def list_articles_for_dedupe(self, limit: int | None = None) -> list[dict[str, Any]]:
        groq = f'*[_type == "post"] | order(publishedAt desc) {DEDUPE_PROJECTION}'
        if limit:
            groq = f'*[_type == "post"] | order(publishedAt desc) [0...$limit] {DEDUPE_PROJECTION}'
            return list(self.query(groq, {"limit": limit}) or [])
        return list(self.query(groq) or [])

    def find_cost_of_living(
        self,
        city_slug: str,
        country_code: str,
        year: int,
        comparison_city_slug: str | None = None,
        comparison_city: str | None = None,
        content_series: str = "cost-of-living",
    ) -> list[dict[str, Any]]:
        groq = f"""*[
          _type == "post" &&
          contentSeries == $series &&
          citySlug == $citySlug &&
          countryCode == $countryCode &&
          year == $year &&
          (
            ($hasComparison == false && !defined(comparisonCitySlug) && !defined(comparisonCity)) ||
            ($hasComparison == true && (
              comparisonCitySlug == $comparisonCitySlug ||
              comparisonCity == $comparisonCity
            ))
          )
        ] {DEDUPE_PROJECTION}"""
        params = {
            "series": content_series,
            "citySlug": city_slug,
            "countryCode": country_code,
            "year": year,
            "hasComparison": bool(comparison_city_slug or comparison_city),
            "comparisonCitySlug": comparison_city_slug,
            "comparisonCity": comparison_city,
        }
        return list(self.query(groq, params) or [])

    def default_author_id(self) -> str | None:
        return self.query('*[_type == "author"] | order(_createdAt asc) [0]._id')

    def category_id(self, slug: str) -> str | None:
        return self.query('*[_type == "category" && slug.current == $slug][0]._id', {"slug": slug})

    def _request(self, method: str, url: str, payload: dict[str, Any] | None) -> dict[str, Any]:
        data = json.dumps(payload).encode("utf-8") if payload is not None else None
        request = urllib.request.Request(url, data=data, method=method)
        request.add_header("Content-Type", "application/json")
        if self.token:
            request.add_header("Authorization", f"Bearer {self.token}")
        try:
            with urllib.request.urlopen(request, timeout=self.config.timeout_s) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="ignore")
            raise ContentStoreError(f"http_error {exc.code}: {body[:500]}") from exc
        except urllib.error.URLError as exc:
            raise ContentStoreError(f"network_error: {exc}") from exc
        except TimeoutError as exc:
            raise ContentStoreError(f"timeout after {self.config.timeout_s}s") from exc
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ContentStoreError(f"invalid JSON from content store: {raw[:200]}") from exc


class MemoryContentStore:
    """In-process store with the same surface as :class:`SanityContentStore`.

    Used for dry runs without a configured project and in tests.
    """

    def __init__(self, documents: list[dict[str, Any]] | None = None) -> None:
        self._mutex = threading.Lock()
        self.documents: list[dict[str, Any]] = [dict(doc) for doc in documents or []]

    def find_by_slug(self, slug: str) -> dict[str, Any] | None:
        with self._mutex:
            for doc in self.documents:
                if _slug_of(doc) == slug:
                    return {"_id": doc.get("_id"), "title": doc.get("title"), "slug": slug}
        return None

    def slug_exists(self, slug: str) -> bool:
        return self.find_by_slug(slug) is not None

    def create(self, document: dict[str, Any]) -> dict[str, Any]:
        created = {**document, "_id": document.get("_id") or uuid.uuid4().hex}
        with self._mutex:
            self.documents.append(created)
        return created

    def list_articles_for_dedupe(self, limit: int | None = None) -> list[dict[str, Any]]:
        with self._mutex:
            records = [_dedupe_view(doc) for doc in reversed(self.documents)]
        return records[:limit] if limit else records

    def find_cost_of_living(
        self,
        city_slug: str,
        country_code: str,
        year: int,
        comparison_city_slug: str | None = None,
        comparison_city: str | None = None,
        content_series: str = "cost-of-living",
    ) -> list[dict[str, Any]]:
        has_comparison = bool(comparison_city_slug or comparison_city)
        matches = []
        with self._mutex:
            for doc in self.documents:
                if doc.get("contentSeries") != content_series:
                    continue
                if (doc.get("citySlug"), doc.get("countryCode"), doc.get("year")) != (
                    city_slug,
                    country_code,
                    year,
                ):
                    continue
                if has_comparison:
                    if not (
                        (comparison_city_slug and doc.get("comparisonCitySlug") == comparison_city_slug)
                        or (comparison_city and doc.get("comparisonCity") == comparison_city)
                    ):
                        continue
                elif doc.get("comparisonCitySlug") or doc.get("comparisonCity"):
                    continue
                matches.append(_dedupe_view(doc))
        return matches

    def default_author_id(self) -> str | None:
        return None

    def category_id(self, slug: str) -> str | None:
        return None


def _slug_of(doc: dict[str, Any]) -> str | None:
    slug = doc.get("slug")
    if isinstance(slug, dict):
        return slug.get("current")
    return slug


def _dedupe_view(doc: dict[str, Any]) -> dict[str, Any]:
    view = {
        key: doc.get(key)
        for key in (
            "_id",
            "title",
            "excerpt",
            "seoKeywords",
            "seoTitle",
            "publishedAt",
            "city",
            "citySlug",
            "country",
            "countryCode",
            "year",
            "comparisonCity",
            "comparisonCitySlug",
        )
    }
    view["slug"] = _slug_of(doc)
    return view


def markdown_to_blocks(markdown: str) -> list[dict[str, Any]]:
    """Convert markdown into portable-text blocks.

    Handles h1-h4 headings, blockquotes, bullet and numbered lists, bold,
    italics and links. H1 lines become h2 because the title is separate.
    """
    blocks: list[dict[str, Any]] = []
    for line in (markdown or "").split("\n"):
        text = line.strip()
        if not text:
            continue
        style = "normal"
        list_item = None
        for prefix, heading in (("#### ", "h4"), ("### ", "h3"), ("## ", "h2"), ("# ", "h2")):
            if text.startswith(prefix):
                style = heading
                text = text[len(prefix) :]
                break
        else:
            if text.startswith("> "):
                style = "blockquote"
                text = text[2:]
            elif text.startswith("- ") or text.startswith("* "):
                list_item = "bullet"
                text = text[2:]
            elif _NUMBERED.match(text):
                list_item = "number"
                text = _NUMBERED.sub("", text, count=1)
        index = len(blocks)
        children, mark_defs = _inline_marks(text, index)
        block: dict[str, Any] = {
            "_type": "block",
            "_key": f"block-{index}",
            "style": style,
            "markDefs": mark_defs,
            "children": children,
        }
        if list_item:
            block["listItem"] = list_item
            block["level"] = 1
        blocks.append(block)
    return blocks


def _inline_marks(text: str, block_index: int) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    children: list[dict[str, Any]] = []
    mark_defs: list[dict[str, Any]] = []

    def span(value: str, marks: list[str]) -> None:
        children.append(
            {
                "_type": "span",
                "_key": f"span-{block_index}-{len(children)}",
                "text": value,
                "marks": marks,
            }
        )

    position = 0
    segments: list[tuple[str, str, str | None]] = []
    for match in _LINK.finditer(text):
        if match.start() > position:
            segments.append(("text", text[position : match.start()], None))
        segments.append(("link", match.group(1), match.group(2)))
        position = match.end()
    if position < len(text):
        segments.append(("text", text[position:], None))

    for kind, value, href in segments:
        if kind == "link":
            key = f"link-{block_index}-{len(mark_defs)}"
            mark_defs.append({"_type": "link", "_key": key, "href": href})
            span(value, [key])
            continue
        for part in _INLINE.split(value):
            if not part:
                continue
            if part.startswith("**") and part.endswith("**") and len(part) > 4:
                span(part[2:-2], ["strong"])
            elif len(part) > 2 and part[0] == part[-1] and part[0] in "*_":
                span(part[1:-1], ["em"])
            else:
                span(part, [])

    if not children:
        span(text, [])
    return children, mark_defs
