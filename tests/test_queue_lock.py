from datetime import datetime, timedelta, timezone

from colqueue.models import QueueLock
from colqueue.queue import QueueManager, is_stale
from colqueue.queue_store import MemoryQueueStore, QueueStoreError

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _lock(minutes_ago: int, ttl: int = 30) -> QueueLock:
    return QueueLock(
        locked=True,
        locked_at=(NOW - timedelta(minutes=minutes_ago)).isoformat(),
        locked_by="run-a",
        ttl_minutes=ttl,
    )


def test_unlocked_lock_is_stale():
    assert is_stale(QueueLock(), now=NOW)


def test_lock_staleness_follows_ttl():
    assert not is_stale(_lock(29), now=NOW)
    assert not is_stale(_lock(30), now=NOW)
    assert is_stale(_lock(31), now=NOW)
    assert is_stale(_lock(11, ttl=10), now=NOW)


def test_unparseable_lock_time_is_stale():
    lock = QueueLock(locked=True, locked_at="yesterday", locked_by="run-a")
    assert is_stale(lock, now=NOW)


def test_acquire_free_lock(manager):
    queue = manager.load()
    result = manager.acquire(queue, "run-b", now=NOW)

    assert result.acquired
    assert result.reason == "acquired"
    stored = manager.load()
    assert stored.lock.locked
    assert stored.lock.locked_by == "run-b"


def test_acquire_respects_live_lock(manager):
    queue = manager.load()
    queue.lock = _lock(5)
    assert manager.save(queue)
    writes = manager.store.writes

    result = manager.acquire(queue, "run-b", now=NOW)

    assert not result.acquired
    assert result.reason == "locked"
    assert queue.lock.locked_by == "run-a"
    assert manager.store.writes == writes


def test_acquire_takes_over_stale_lock(manager):
    queue = manager.load()
    queue.lock = _lock(45)
    assert manager.save(queue)

    result = manager.acquire(queue, "run-b", now=NOW)

    assert result.acquired
    assert result.reason == "stale_takeover"
    assert manager.load().lock.locked_by == "run-b"


def test_acquire_restores_lock_when_save_fails(config):
    class BrokenStore(MemoryQueueStore):
        def write(self, document, expected_version):
            raise QueueStoreError("disk full")

    manager = QueueManager(BrokenStore(), config.queue)
    queue = manager.load()

    result = manager.acquire(queue, "run-b", now=NOW)

    assert not result.acquired
    assert result.reason == "save_failed"
    assert not queue.lock.locked


def test_release_is_idempotent(manager):
    queue = manager.load()
    assert manager.acquire(queue, "run-b", now=NOW).acquired

    assert manager.release(queue)
    assert manager.release(queue)
    assert not manager.load().lock.locked


def test_second_writer_is_refused_after_first_acquires(config):
    store = MemoryQueueStore()
    first = QueueManager(store, config.queue)
    second = QueueManager(store, config.queue)
    queue_a = first.load()

    assert first.acquire(queue_a, "run-a", now=NOW).acquired
    reloaded = second.load()
    result = second.acquire(reloaded, "run-b", now=NOW)

    assert not result.acquired
    assert result.reason == "locked"


def test_racing_acquire_lets_one_run_hold_the_lock(config):
    store = MemoryQueueStore()
    first = QueueManager(store, config.queue)
    second = QueueManager(store, config.queue)
    queue_a = first.load()
    queue_b = second.load()

    result_a = first.acquire(queue_a, "run-a", now=NOW)
    result_b = second.acquire(queue_b, "run-b", now=NOW)

    assert result_a.acquired
    assert not result_b.acquired
    assert result_b.reason == "locked"
    assert queue_b.lock.locked_by == "run-a"
    assert first.load().lock.locked_by == "run-a"


def test_racing_acquire_may_take_over_stale_lock(config):
    store = MemoryQueueStore()
    first = QueueManager(store, config.queue)
    second = QueueManager(store, config.queue)
    queue_a = first.load()
    queue_b = second.load()
    queue_a.lock = _lock(45)
    assert first.save(queue_a)

    result = second.acquire(queue_b, "run-b", now=NOW)

    assert result.acquired
    assert first.load().lock.locked_by == "run-b"


def test_release_keeps_lock_taken_over_by_another_run(config):
    store = MemoryQueueStore()
    first = QueueManager(store, config.queue)
    second = QueueManager(store, config.queue)
    queue_a = first.load()
    assert first.acquire(queue_a, "run-a", now=NOW - timedelta(minutes=45)).acquired
    assert second.acquire(second.load(), "run-b", now=NOW).acquired

    assert not first.release(queue_a)
    assert first.load().lock.locked_by == "run-b"
