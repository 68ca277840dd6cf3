from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable

from .config import Config, QueueConfig
from .db import connect_db
from .models import (
    DEFAULT_PRIORITY,
    DEFAULT_YEAR,
    ItemStatus,
    QueueLock,
    QueueState,
    WorkItem,
    item_from_wire,
    lock_from_wire,
    mode_from_wire,
    state_to_wire,
)
from .queue_store import (
    DatabaseQueueStore,
    FileQueueStore,
    MemoryQueueStore,
    QueueConflictError,
    QueueStore,
    QueueStoreError,
    document_version,
    validate_document,
)
from .utils import log_event, parse_iso, utc_now, utc_now_iso

LIVE_STATUSES = (ItemStatus.PENDING, ItemStatus.COMPLETED, ItemStatus.FAILED)

Reapply = Callable[[QueueState], bool]


@dataclass(frozen=True)
class AcquireResult:
    acquired: bool
    reason: str


def is_stale(lock: QueueLock, now: datetime | None = None, default_ttl_minutes: int = 30) -> bool:
    """True when the lock is free or older than its TTL."""
    if not lock.locked or not lock.locked_at:
        return True
    try:
        locked_at = parse_iso(lock.locked_at)
    except ValueError:
        return True
    now = now or utc_now()
    ttl = lock.ttl_minutes or default_ttl_minutes
    return now - locked_at > timedelta(minutes=ttl)


def next_item(queue: QueueState) -> WorkItem | None:
    pending = [item for item in queue.items if item.status == ItemStatus.PENDING]
    if not pending:
        return None
    return min(pending, key=lambda item: (-item.priority, _sort_time(item.added_at)))


def _sort_time(value: str) -> datetime:
    try:
        return parse_iso(value)
    except ValueError:
        return datetime.max.replace(tzinfo=utc_now().tzinfo)


def _adopt(queue: QueueState, fresh: QueueState) -> None:
    queue.lock = fresh.lock
    queue.items = fresh.items
    queue.version = fresh.version
    queue.source = fresh.source


class QueueManager:
    def __init__(
        self,
        store: QueueStore,
        config: QueueConfig,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self.logger = logger or logging.getLogger("colqueue.queue")

    def empty_queue(self, source: str = "empty") -> QueueState:
        return QueueState(lock=self.unlocked(), items=[], version=0, source=source)

    def unlocked(self) -> QueueLock:
        return QueueLock(ttl_minutes=self.config.lock_ttl_minutes)

    def load(self) -> QueueState:
        try:
            document = self.store.read()
            source = "primary"
            if document is None:
                document = self.store.read_seed()
                source = "seed"
                if document is not None:
                    log_event(self.logger, logging.INFO, "queue_loaded_from_seed")
            if document is None:
                return self.empty_queue()
            return self._parse(document, source)
        except (QueueStoreError, ValueError, KeyError, TypeError) as exc:
            log_event(self.logger, logging.ERROR, "queue_load_failed", error=str(exc))
            return self.empty_queue(source="degraded")

    def _parse(self, document: dict[str, Any], source: str) -> QueueState:
        validate_document(document)
        items = [item_from_wire(payload) for payload in document.get("items") or []]
        return QueueState(
            lock=lock_from_wire(document.get("lock"), self.config.lock_ttl_minutes),
            items=items,
            version=document_version(document) if source == "primary" else 0,
            source=source,
        )

    def save(self, queue: QueueState, reapply: Reapply | None = None) -> bool:
        """Persist ``queue``; on a version conflict re-read and merge once.

        ``reapply`` replays the caller's change onto the freshly read state and
        returns False when the change no longer applies. Without it a conflict
        is not resolved. After a conflict the stored state is adopted into
        ``queue`` whether or not the change was replayed.
        """
        if queue.degraded:
            log_event(self.logger, logging.ERROR, "queue_save_refused", reason="degraded_load")
            return False
        try:
            queue.version = self.store.write(state_to_wire(queue), queue.version)
            queue.source = "primary"
            return True
        except QueueConflictError as exc:
            log_event(self.logger, logging.WARNING, "queue_write_conflict", error=str(exc))
        except QueueStoreError as exc:
            log_event(self.logger, logging.ERROR, "queue_save_failed", error=str(exc))
            return False

        try:
            fresh = self._reload()
        except (QueueStoreError, ValueError, KeyError, TypeError) as exc:
            log_event(self.logger, logging.ERROR, "queue_resync_failed", error=str(exc))
            return False
        _adopt(queue, fresh)
        if reapply is None or not reapply(queue):
            log_event(self.logger, logging.WARNING, "queue_conflict_unresolved", version=queue.version)
            return False
        try:
            queue.version = self.store.write(state_to_wire(queue), queue.version)
        except QueueStoreError as exc:
            log_event(self.logger, logging.ERROR, "queue_resync_failed", error=str(exc))
            return False
        log_event(self.logger, logging.INFO, "queue_saved_after_resync", version=queue.version)
        return True

    def _reload(self) -> QueueState:
        self.store.resync()
        document = self.store.read()
        if document is None:
            return self.empty_queue(source="primary")
        return self._parse(document, "primary")

    def is_stale(self, lock: QueueLock, now: datetime | None = None) -> bool:
        return is_stale(lock, now=now, default_ttl_minutes=self.config.lock_ttl_minutes)

    def acquire(self, queue: QueueState, run_id: str, now: datetime | None = None) -> AcquireResult:
        previous = queue.lock
        if not self.is_stale(previous, now=now):
            return AcquireResult(acquired=False, reason="locked")
        reason = "acquired"
        if previous.locked:
            log_event(
                self.logger,
                logging.WARNING,
                "stale_lock_taken_over",
                locked_by=previous.locked_by,
                locked_at=previous.locked_at,
            )
            reason = "stale_takeover"
        lock = QueueLock(
            locked=True,
            locked_at=(now or utc_now()).isoformat(),
            locked_by=run_id,
            ttl_minutes=self.config.lock_ttl_minutes,
        )
        contended: list[str | None] = []

        def relock(fresh: QueueState) -> bool:
            if not self.is_stale(fresh.lock, now=now):
                contended.append(fresh.lock.locked_by)
                return False
            fresh.lock = lock
            return True

        queue.lock = lock
        if not self.save(queue, reapply=relock):
            if contended:
                log_event(self.logger, logging.INFO, "queue_lock_lost_race", locked_by=contended[0])
                return AcquireResult(acquired=False, reason="locked")
            if queue.lock is lock:
                queue.lock = previous
            return AcquireResult(acquired=False, reason="save_failed")
        log_event(self.logger, logging.INFO, "queue_lock_acquired", run_id=run_id)
        return AcquireResult(acquired=True, reason=reason)

    def release(self, queue: QueueState) -> bool:
        owner = queue.lock.locked_by

        def unlock(fresh: QueueState) -> bool:
            if fresh.lock.locked and fresh.lock.locked_by != owner:
                return False
            fresh.lock = self.unlocked()
            return True

        queue.lock = self.unlocked()
        return self.save(queue, reapply=unlock)

    def next_item(self, queue: QueueState) -> WorkItem | None:
        return next_item(queue)

    def find(self, queue: QueueState, item: WorkItem) -> int | None:
        fallback = None
        for index, candidate in enumerate(queue.items):
            if candidate.topic_key != item.topic_key:
                continue
            if candidate.added_at == item.added_at:
                return index
            if fallback is None and candidate.status in LIVE_STATUSES:
                fallback = index
        return fallback

    def mark_done(self, queue: QueueState, item: WorkItem) -> bool:
        def complete(state: QueueState) -> bool:
            index = self.find(state, item)
            if index is None:
                log_event(self.logger, logging.WARNING, "queue_item_missing", item=item.label)
                return False
            state.items[index] = replace(
                state.items[index],
                status=ItemStatus.COMPLETED,
                completed_at=utc_now_iso(),
            )
            return True

        if not complete(queue):
            return False
        return self.save(queue, reapply=complete)

    def mark_failed(self, queue: QueueState, item: WorkItem, error: Any) -> bool:
        def fail(state: QueueState) -> bool:
            index = self.find(state, item)
            if index is None:
                log_event(self.logger, logging.WARNING, "queue_item_missing", item=item.label)
                return False
            current = state.items[index]
            retry_count = min(current.retry_count + 1, self.config.max_retries)
            status = ItemStatus.FAILED
            if retry_count >= self.config.max_retries:
                status = ItemStatus.FAILED_PERMANENT
            state.items[index] = replace(
                current,
                status=status,
                retry_count=retry_count,
                failed_at=utc_now_iso(),
                last_error=str(error),
            )
            return True

        if not fail(queue):
            return False
        saved = self.save(queue, reapply=fail)
        index = self.find(queue, item)
        if saved and index is not None and queue.items[index].status == ItemStatus.FAILED_PERMANENT:
            log_event(
                self.logger,
                logging.WARNING,
                "queue_item_exhausted",
                item=item.label,
                retry_count=queue.items[index].retry_count,
            )
        return saved

    def retry(self, queue: QueueState, item: WorkItem, persist: bool = True) -> bool:
        if not self._requeue_one(queue, item):
            return False
        if not persist:
            return True
        return self.save(queue, reapply=lambda fresh: self._requeue_one(fresh, item))

    def _requeue_one(self, queue: QueueState, item: WorkItem) -> bool:
        index = self.find(queue, item)
        if index is None:
            return False
        current = queue.items[index]
        if current.status != ItemStatus.FAILED or current.retry_count >= self.config.max_retries:
            return False
        queue.items[index] = replace(
            current,
            status=ItemStatus.PENDING,
            failed_at=None,
            last_error=None,
        )
        return True

    def _requeue_all(self, queue: QueueState) -> int:
        return sum(
            1
            for item in list(queue.items)
            if item.status == ItemStatus.FAILED and self._requeue_one(queue, item)
        )

    def requeue_failed(self, queue: QueueState) -> tuple[int, bool]:
        """Move every retryable failed item back to pending.

        Returns ``(moved, saved)``; nothing is written when no item moved.
        """
        moved = self._requeue_all(queue)
        if not moved:
            return 0, True
        log_event(self.logger, logging.INFO, "queue_failed_requeued", count=moved)

        def requeue(fresh: QueueState) -> bool:
            self._requeue_all(fresh)
            return True

        return moved, self.save(queue, reapply=requeue)

    def add_item(
        self, queue: QueueState, fields: dict[str, Any], persist: bool = True
    ) -> tuple[WorkItem, bool]:
        """Append a pending item built from ``fields``.

        Returns ``(item, added)``. ``added`` is False when a live item with the
        same topic key already exists (that item is returned, nothing is
        written) or when persisting failed.
        """
        item = build_item(fields)
        existing = self.live_item(queue, item)
        if existing is not None:
            log_event(
                self.logger,
                logging.INFO,
                "queue_item_exists",
                item=existing.label,
                status=existing.status.value,
            )
            return existing, False
        queue.items.append(item)
        if not persist:
            return item, True
        return item, self.save(queue, reapply=lambda fresh: self.insert(fresh, item))

    def live_item(self, queue: QueueState, item: WorkItem) -> WorkItem | None:
        for existing in queue.items:
            if existing.topic_key == item.topic_key and existing.status in LIVE_STATUSES:
                return existing
        return None

    def insert(self, queue: QueueState, item: WorkItem) -> bool:
        """Append ``item`` unless a live item with its topic key is present."""
        if self.live_item(queue, item) is not None:
            return False
        queue.items.append(item)
        return True


    def counts(self, queue: QueueState) -> dict[str, int]:
        counts = {status.value: 0 for status in ItemStatus}
        for item in queue.items:
            counts[item.status.value] += 1
        counts["total"] = len(queue.items)
        return counts


def build_item(fields: dict[str, Any]) -> WorkItem:
    subject = str(fields.get("subject") or fields.get("city") or "").strip()
    qualifier = str(fields.get("qualifier") or fields.get("country") or "").strip()
    if not subject or not qualifier:
        raise ValueError("subject and qualifier are required")
    second_subject = fields.get("second_subject") or fields.get("comparisonCity")
    mode_name = fields.get("mode")
    if not mode_name:
        mode_name = "comparison" if second_subject else "city"
    mode = mode_from_wire(
        mode_name,
        str(second_subject).strip() if second_subject else None,
        fields.get("second_qualifier") or fields.get("comparisonCountry"),
    )
    year = fields.get("year")
    priority = fields.get("priority")
    return WorkItem(
        subject=subject,
        qualifier=qualifier,
        year=int(year) if year else DEFAULT_YEAR,
        mode=mode,
        priority=int(priority) if priority is not None else DEFAULT_PRIORITY,
        status=ItemStatus.PENDING,
        retry_count=0,
        added_at=utc_now_iso(),
    )


def build_store(config: Config, logger: logging.Logger | None = None) -> QueueStore:
    backend = config.queue.backend
    paths = config.paths
    if backend == "file":
        return FileQueueStore(
            paths.queue_file,
            seed_path=paths.seed_file,
            git_sync=config.queue.git_sync,
            git_remote=config.queue.git_remote,
            git_branch=config.queue.git_branch,
            logger=logger,
        )
    if backend == "db":
        try:
            conn = connect_db(os.path.join(paths.data_dir, "queue.db"))
        except Exception as exc:  # noqa: BLE001
            raise QueueStoreError(f"cannot open queue database: {exc}") from exc
        return DatabaseQueueStore(conn, seed_path=paths.seed_file)
    if backend == "memory":
        return MemoryQueueStore()
    raise ValueError(f"unknown queue backend: {backend}")
