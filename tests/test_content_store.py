import json
import urllib.parse
from dataclasses import replace

import pytest

from colqueue.content_store import (
    ContentStoreError,
    MemoryContentStore,
    SanityContentStore,
    markdown_to_blocks,
)


class _Response:
    def __init__(self, payload):
        self._body = json.dumps(payload).encode("utf-8")

    def read(self):
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def _sanity(config):
    return SanityContentStore(replace(config.content_store, project_id="abc123"), token="tok")


def test_sanity_requires_project_id(config):
    with pytest.raises(ContentStoreError):
        SanityContentStore(config.content_store)


def test_sanity_query_encodes_params(config, monkeypatch):
    captured = {}

    def fake_urlopen(request, timeout):
        captured["url"] = request.full_url
        captured["auth"] = request.get_header("Authorization")
        return _Response({"result": 1})

    monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)

    assert _sanity(config).slug_exists("cost-of-living-in-lisbon-2026")

    parsed = urllib.parse.urlsplit(captured["url"])
    query = dict(urllib.parse.parse_qsl(parsed.query))
    assert parsed.netloc == "abc123.api.sanity.io"
    assert parsed.path == "/v2024-08-10/data/query/production"
    assert query["$slug"] == '"cost-of-living-in-lisbon-2026"'
    assert captured["auth"] == "Bearer tok"


def test_sanity_create_posts_mutation(config, monkeypatch):
    captured = {}

    def fake_urlopen(request, timeout):
        captured["method"] = request.get_method()
        captured["body"] = json.loads(request.data.decode("utf-8"))
        return _Response({"results": [{"id": "post-9", "operation": "create"}]})

    monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)

    created = _sanity(config).create({"_type": "post", "title": "Lisbon"})

    assert created["_id"] == "post-9"
    assert captured["method"] == "POST"
    assert captured["body"] == {"mutations": [{"create": {"_type": "post", "title": "Lisbon"}}]}


def test_sanity_errors_are_wrapped(config, monkeypatch):
    def fake_urlopen(request, timeout):
        return _Response({"results": []})

    monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)

    with pytest.raises(ContentStoreError):
        _sanity(config).create({"_type": "post"})


def test_memory_store_finds_cost_of_living_matches():
    store = MemoryContentStore()
    base = {
        "_type": "post",
        "contentSeries": "cost-of-living",
        "citySlug": "milan",
        "countryCode": "IT",
        "year": 2026,
    }
    store.create(dict(base, slug={"_type": "slug", "current": "cost-of-living-in-milan-2026"}))
    store.create(
        dict(
            base,
            slug={"_type": "slug", "current": "milan-vs-rome-cost-of-living-2026"},
            comparisonCity="Rome",
            comparisonCitySlug="rome",
        )
    )

    single = store.find_cost_of_living("milan", "IT", 2026)
    versus = store.find_cost_of_living("milan", "IT", 2026, "rome", "Rome")

    assert [doc["slug"] for doc in single] == ["cost-of-living-in-milan-2026"]
    assert [doc["slug"] for doc in versus] == ["milan-vs-rome-cost-of-living-2026"]
    assert store.find_cost_of_living("milan", "IT", 2027) == []
    assert store.slug_exists("cost-of-living-in-milan-2026")
    assert store.list_articles_for_dedupe(1)[0]["slug"] == "milan-vs-rome-cost-of-living-2026"


def test_markdown_to_blocks_styles():
    blocks = markdown_to_blocks(
        "# Title\n## Rent\n### Detail\n> Tip\n- first\n2. second\n\nPlain **bold** and *em* text"
    )

    assert [block["style"] for block in blocks] == ["h2", "h2", "h3", "blockquote", "normal", "normal", "normal"]
    assert blocks[4]["listItem"] == "bullet"
    assert blocks[5]["listItem"] == "number"
    assert blocks[5]["children"][0]["text"] == "second"
    marks = [(child["text"], child["marks"]) for child in blocks[6]["children"]]
    assert marks == [("Plain ", []), ("bold", ["strong"]), (" and ", []), ("em", ["em"]), (" text", [])]


def test_markdown_links_become_mark_defs():
    [block] = markdown_to_blocks("See [Numbeo](https://www.numbeo.com) for data")

    assert block["markDefs"] == [{"_type": "link", "_key": "link-0-0", "href": "https://www.numbeo.com"}]
    assert [child["text"] for child in block["children"]] == ["See ", "Numbeo", " for data"]
    assert block["children"][1]["marks"] == ["link-0-0"]
