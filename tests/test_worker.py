import json
import sqlite3
from dataclasses import replace
from datetime import datetime, timezone

from colqueue.dedupe import DuplicateContentError
from colqueue.models import DuplicateSkipped, DuplicateVerdict, Failed, ItemStatus, Published, QueueLock
from colqueue.queue import QueueManager
from colqueue.queue_store import MemoryQueueStore
from colqueue.utils import utc_now_iso
from colqueue.worker import exit_code, is_scheduled_day, main, run_batch


def _published(item):
    return Published(slug="cost-of-living-in-lisbon-2026", document_id="post-1", title=item.label)


def _manager(config, subjects=("Lisbon",), **queue_overrides):
    manager = QueueManager(MemoryQueueStore(), replace(config.queue, **queue_overrides))
    queue = manager.load()
    for subject in subjects:
        manager.add_item(queue, {"subject": subject, "qualifier": "Portugal"})
    return manager


def test_successful_item_completes_and_unlocks(config):
    manager = _manager(config)

    summary = run_batch(manager, _published, max_items=1)

    queue = manager.load()
    assert summary.status == "completed"
    assert summary.succeeded == 1
    assert queue.items[0].status == ItemStatus.COMPLETED
    assert not queue.lock.locked
    assert exit_code(summary) == 0


def test_duplicate_error_completes_item(config):
    def duplicate(item):
        raise DuplicateContentError(
            DuplicateVerdict(
                is_duplicate=True,
                exact=True,
                rationale="exact match",
                match={"slug": "cost-of-living-in-lisbon-2026"},
            )
        )

    manager = _manager(config)

    summary = run_batch(manager, duplicate, max_items=1)

    queue = manager.load()
    assert summary.skipped_duplicate == 1
    assert summary.failed == 0
    assert summary.items[0].slug == "cost-of-living-in-lisbon-2026"
    assert queue.items[0].status == ItemStatus.COMPLETED
    assert not queue.lock.locked


def test_duplicate_outcome_completes_item(config):
    manager = _manager(config)

    summary = run_batch(manager, lambda item: DuplicateSkipped(reason="semantic"), max_items=1)

    assert summary.skipped_duplicate == 1
    assert manager.load().items[0].status == ItemStatus.COMPLETED


def test_fresh_lock_skips_run(config):
    manager = _manager(config)
    queue = manager.load()
    queue.lock = QueueLock(locked=True, locked_at=utc_now_iso(), locked_by="other-run")
    assert manager.save(queue)
    before = manager.load()
    calls = []

    summary = run_batch(manager, lambda item: calls.append(item), max_items=1)

    after = manager.load()
    assert summary.status == "skipped"
    assert summary.reason == "locked"
    assert calls == []
    assert after.items == before.items
    assert after.lock == before.lock
    assert exit_code(summary) == 0


def test_generator_exception_marks_failed(config):
    def boom(item):
        raise RuntimeError("provider down")

    manager = _manager(config, auto_requeue_failed=False)

    summary = run_batch(manager, boom, max_items=1)

    item = manager.load().items[0]
    assert summary.failed == 1
    assert item.status == ItemStatus.FAILED
    assert item.retry_count == 1
    assert item.last_error == "provider down"
    assert exit_code(summary) == 1


def test_failed_item_is_retried_then_exhausted(config):
    manager = _manager(config)
    failing = lambda item: Failed(reason="validation failed")  # noqa: E731

    run_batch(manager, failing, max_items=1)
    run_batch(manager, failing, max_items=1)
    summary = run_batch(manager, failing, max_items=1)

    item = manager.load().items[0]
    assert item.status == ItemStatus.FAILED_PERMANENT
    assert item.retry_count == 2
    assert summary.reason == "no_pending_items"


def test_cooldown_only_between_items(config):
    manager = _manager(config, subjects=("Lisbon", "Porto", "Braga"), inter_item_cooldown_ms=1500)
    sleeps = []

    summary = run_batch(manager, _published, max_items=2, sleep=sleeps.append)

    assert summary.succeeded == 2
    assert sleeps == [1.5]
    assert manager.counts(manager.load())["pending"] == 1


def test_unreadable_queue_aborts(config):
    store = MemoryQueueStore({"lock": {}, "items": [{"city": ""}]})
    manager = QueueManager(store, config.queue)

    summary = run_batch(manager, _published)

    assert summary.status == "aborted"
    assert summary.reason == "queue_unreadable"
    assert store.writes == 0
    assert exit_code(summary) == 1


def test_empty_queue_completes(config):
    manager = QueueManager(MemoryQueueStore(), config.queue)

    summary = run_batch(manager, _published)

    assert summary.status == "completed"
    assert summary.reason == "no_pending_items"
    assert summary.total_processed == 0
    assert not manager.load().lock.locked


def test_report_shape(config):
    summary = run_batch(_manager(config), _published, run_id="run-1")

    report = json.loads(json.dumps(summary.to_report()))

    assert report["runId"] == "run-1"
    assert report["succeeded"] == 1
    assert report["totalProcessed"] == 1
    assert report["items"][0]["outcome"] == "published"
    assert report["finishedAt"]


def test_even_day_schedule():
    assert is_scheduled_day(datetime(2026, 3, 10, tzinfo=timezone.utc))
    assert not is_scheduled_day(datetime(2026, 3, 11, tzinfo=timezone.utc))


def test_item_removed_during_run_is_reported_missing(config):
    manager = _manager(config)
    other = QueueManager(manager.store, manager.config)

    def remove_then_publish(item):
        queue = other.load()
        queue.items = []
        assert other.save(queue)
        return _published(item)

    summary = run_batch(manager, remove_then_publish)

    assert summary.status == "aborted"
    assert summary.reason == "item_missing"
    assert not manager.load().lock.locked


def test_unopenable_queue_database_exits_cleanly(tmp_path, monkeypatch):
    def broken_connect(path=None, url=None):
        raise sqlite3.OperationalError("unable to open database file")

    monkeypatch.setenv("COLQ_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("COLQ_DB_URL", f"sqlite:///{tmp_path / 'queue.db'}")
    monkeypatch.setattr("colqueue.queue.connect_db", broken_connect)

    assert main(["--dry-run"]) == 1
