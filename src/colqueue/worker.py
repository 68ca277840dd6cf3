from __future__ import annotations

import argparse
import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable

from .config import Config, ConfigError, load_config
from .content_store import ContentStoreError, MemoryContentStore, SanityContentStore
from .dedupe import DuplicateContentError
from .fsinit import build_default_paths, ensure_runtime_dirs, set_umask_from_env
from .generator import ArticlePublisher
from .llm import GenerationAdapter
from .models import DuplicateSkipped, Failed, GenerationOutcome, Published, WorkItem
from .publish import write_run_report
from .queue import QueueManager, build_store
from .queue_store import QueueStoreError
from .utils import configure_logging, json_dumps, log_event, utc_now, utc_now_iso

GeneratorFn = Callable[[WorkItem], GenerationOutcome]


@dataclass
class ItemResult:
    item: str
    outcome: str
    detail: str | None = None
    slug: str | None = None


@dataclass
class RunSummary:
    run_id: str
    status: str = "completed"
    reason: str | None = None
    succeeded: int = 0
    skipped_duplicate: int = 0
    failed: int = 0
    items: list[ItemResult] = field(default_factory=list)
    started_at: str = field(default_factory=utc_now_iso)
    finished_at: str | None = None

    @property
    def total_processed(self) -> int:
        return self.succeeded + self.skipped_duplicate + self.failed

    def to_report(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "status": self.status,
            "reason": self.reason,
            "succeeded": self.succeeded,
            "skippedDuplicate": self.skipped_duplicate,
            "failed": self.failed,
            "totalProcessed": self.total_processed,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "items": [
                {"item": result.item, "outcome": result.outcome, "detail": result.detail, "slug": result.slug}
                for result in self.items
            ],
        }


def new_run_id() -> str:
    return f"{utc_now().strftime('%Y%m%dT%H%M%SZ')}-{uuid.uuid4().hex[:8]}"


def exit_code(summary: RunSummary) -> int:
    if summary.status in {"completed", "skipped"} and summary.failed == 0:
        return 0
    return 1


def run_batch(
    manager: QueueManager,
    generator_fn: GeneratorFn,
    max_items: int | None = None,
    run_id: str | None = None,
    sleep: Callable[[float], None] = time.sleep,
    logger: logging.Logger | None = None,
) -> RunSummary:
    """Process up to ``max_items`` pending items under the queue lock.

    Never raises; unexpected errors become a summary with status ``error``.
    """
    logger = logger or logging.getLogger("colqueue.worker")
    summary = RunSummary(run_id=run_id or new_run_id())
    limit = max_items or manager.config.max_items_per_run
    try:
        queue = manager.load()
        if queue.degraded:
            summary.status = "aborted"
            summary.reason = "queue_unreadable"
            return summary
        acquired = manager.acquire(queue, summary.run_id)
        if not acquired.acquired:
            if acquired.reason == "locked":
                summary.status = "skipped"
                summary.reason = "locked"
                log_event(
                    logger,
                    logging.INFO,
                    "run_skipped_locked",
                    locked_by=queue.lock.locked_by,
                    locked_at=queue.lock.locked_at,
                )
            else:
                summary.status = "aborted"
                summary.reason = acquired.reason
            return summary
        try:
            _process(manager, queue, generator_fn, limit, summary, sleep, logger)
        finally:
            if not manager.release(queue):
                log_event(logger, logging.ERROR, "queue_release_failed", run_id=summary.run_id)
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.ERROR, "run_error", run_id=summary.run_id, error=str(exc))
        summary.status = "error"
        summary.reason = str(exc)
    finally:
        summary.finished_at = utc_now_iso()
    return summary


def _process(
    manager: QueueManager,
    queue,
    generator_fn: GeneratorFn,
    limit: int,
    summary: RunSummary,
    sleep: Callable[[float], None],
    logger: logging.Logger,
) -> None:
    if manager.config.auto_requeue_failed:
        _, saved = manager.requeue_failed(queue)
        if not saved:
            summary.status = "aborted"
            summary.reason = "save_failed"
            return

    cooldown = manager.config.inter_item_cooldown_ms / 1000.0
    for index in range(limit):
        item = manager.next_item(queue)
        if item is None:
            if index == 0:
                summary.reason = "no_pending_items"
                log_event(logger, logging.INFO, "run_no_pending_items", run_id=summary.run_id)
            break
        if index > 0 and cooldown > 0:
            log_event(logger, logging.DEBUG, "run_cooldown", seconds=cooldown)
            sleep(cooldown)

        log_event(logger, logging.INFO, "item_started", item=item.label, priority=item.priority)
        outcome = _generate(generator_fn, item, logger)
        if isinstance(outcome, Published):
            summary.succeeded += 1
            summary.items.append(ItemResult(item.label, "published", outcome.document_id, outcome.slug))
            saved = manager.mark_done(queue, item)
        elif isinstance(outcome, DuplicateSkipped):
            summary.skipped_duplicate += 1
            summary.items.append(ItemResult(item.label, "duplicate", outcome.reason, outcome.existing_slug))
            saved = manager.mark_done(queue, item)
        else:
            summary.failed += 1
            summary.items.append(ItemResult(item.label, "failed", outcome.reason))
            saved = manager.mark_failed(queue, item, outcome.reason)
        if not saved:
            summary.status = "aborted"
            summary.reason = "item_missing" if manager.find(queue, item) is None else "save_failed"
            log_event(logger, logging.ERROR, "run_aborted", reason=summary.reason, item=item.label)
            return


def _generate(generator_fn: GeneratorFn, item: WorkItem, logger: logging.Logger) -> GenerationOutcome:
    try:
        outcome = generator_fn(item)
    except DuplicateContentError as exc:
        match = exc.verdict.match or {}
        return DuplicateSkipped(reason=str(exc), existing_slug=match.get("slug"))
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.WARNING, "item_failed", item=item.label, error=str(exc))
        return Failed(reason=str(exc))
    if not isinstance(outcome, (Published, DuplicateSkipped, Failed)):
        return Failed(reason=f"unexpected generator result: {outcome!r}")
    return outcome


def build_publisher(config: Config, logger: logging.Logger) -> ArticlePublisher:
    adapter = GenerationAdapter(config.llm)
    if config.content_store.project_id:
        store = SanityContentStore(config.content_store)
    elif config.publishing.dry_run:
        log_event(logger, logging.WARNING, "content_store_memory", reason="no project_id, dry run")
        store = MemoryContentStore()
    else:
        raise ContentStoreError("content_store.project_id is required outside dry runs")
    return ArticlePublisher(config, adapter, store)


def is_scheduled_day(now: datetime | None = None) -> bool:
    """Alternate-day schedule: only even days of the month (UTC) run."""
    return (now or utc_now()).day % 2 == 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="colqueue-worker")
    parser.add_argument("--config", default=None, help="Path to config.yml (defaults to COLQ_CONFIG_PATH)")
    parser.add_argument("--max-items", type=int, default=None, help="Items to process in this run")
    parser.add_argument("--dry-run", action="store_true", help="Generate and validate without publishing")
    parser.add_argument(
        "--even-days-only",
        action="store_true",
        help="Exit without work on odd days of the month (UTC)",
    )
    parser.add_argument("--json", action="store_true", help="Print the run report as JSON")
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = configure_logging("colqueue.worker")

    if args.even_days_only and not is_scheduled_day():
        log_event(logger, logging.INFO, "run_skipped_odd_day", day=utc_now().day)
        return 0

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    if args.dry_run:
        config = replace(config, publishing=replace(config.publishing, dry_run=True))

    set_umask_from_env()
    ensure_runtime_dirs(build_default_paths(config.paths))
    try:
        publisher = build_publisher(config, logger)
    except ContentStoreError as exc:
        log_event(logger, logging.ERROR, "content_store_error", error=str(exc))
        return 1

    try:
        store = build_store(config, logger)
    except (QueueStoreError, ValueError) as exc:
        log_event(logger, logging.ERROR, "queue_store_error", error=str(exc))
        return 1
    manager = QueueManager(store, config.queue)
    summary = run_batch(manager, publisher, max_items=args.max_items, logger=logger)
    report = summary.to_report()
    path = write_run_report(report, config.paths.run_reports_dir, summary.run_id)
    log_event(
        logger,
        logging.INFO,
        "run_summary",
        status=summary.status,
        reason=summary.reason,
        succeeded=summary.succeeded,
        skipped_duplicate=summary.skipped_duplicate,
        failed=summary.failed,
        total=summary.total_processed,
        report=path,
    )
    if args.json:
        print(json_dumps(report, indent=2))
    return exit_code(summary)


if __name__ == "__main__":
    raise SystemExit(main())
