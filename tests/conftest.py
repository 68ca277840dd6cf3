from __future__ import annotations

import json
import logging
import os
from dataclasses import replace

import pytest

from colqueue.config import default_config
from colqueue.queue import QueueManager
from colqueue.queue_store import MemoryQueueStore
from colqueue.validate import REQUIRED_HEADINGS, SAVE_MONEY_HEADING

META_DESCRIPTION = ("Monthly rent, groceries, transport and utilities in Lisbon for 2026. " * 3)[:154] + "."


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("COLQ_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def _restore_root_logging():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers = handlers
    root.setLevel(level)


@pytest.fixture
def config(tmp_path):
    cfg = default_config()
    data_dir = str(tmp_path / "data")
    return replace(
        cfg,
        paths=replace(
            cfg.paths,
            data_dir=data_dir,
            queue_file=os.path.join(data_dir, "costofliving-queue.json"),
            seed_file=os.path.join(data_dir, "costofliving-queue-seed.json"),
            run_reports_dir=os.path.join(data_dir, "reports"),
            preview_dir=os.path.join(data_dir, "previews"),
        ),
        queue=replace(cfg.queue, inter_item_cooldown_ms=0),
        llm=replace(cfg.llm, max_attempts=2, backoff_seconds=0),
    )


@pytest.fixture
def manager(config):
    return QueueManager(MemoryQueueStore(), config.queue)


def article_body(city: str, words_per_section: int = 130) -> str:
    sections = []
    filler = " ".join(["costs"] * words_per_section)
    for heading in REQUIRED_HEADINGS:
        title = f"{heading} in {city}" if heading == SAVE_MONEY_HEADING else heading
        sections.append(f"## {title}\n\n{filler}\n")
    sections.insert(
        3,
        "| Category | Min | Max |\n|---|---|---|\n| Rent | 900 | 1200 |\n",
    )
    return "\n".join(sections)


def article_text(
    city: str = "Lisbon",
    words_per_section: int = 130,
    meta_description: str = META_DESCRIPTION,
    cost_data: dict | None = None,
) -> str:
    cost_data = cost_data or {
        "currency": "EUR",
        "rentCityCenterMin": 1012,
        "rentCityCenterMax": 1490,
        "groceriesMin": 248,
        "groceriesMax": 351,
        "totalMin": 1260,
        "totalMax": 1850,
    }
    return "\n".join(
        [
            "---TITLE---",
            f"Cost of Living in {city} 2026",
            "---SEO_TITLE---",
            f"{city} Cost of Living 2026: Rent and Food",
            "---META_DESCRIPTION---",
            meta_description,
            "---EXCERPT---",
            f"What a month in {city} really costs in 2026.",
            "---KEYWORDS---",
            f"{city.lower()} cost of living, {city.lower()} rent",
            "---END_KEYWORDS---",
            "---COST_DATA_JSON---",
            json.dumps(cost_data),
            "---END_COST_DATA_JSON---",
            "---CONTENT---",
            article_body(city, words_per_section),
            "---END---",
        ]
    )


@pytest.fixture
def make_article():
    return article_text


@pytest.fixture
def make_body():
    return article_body
