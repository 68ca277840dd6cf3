from __future__ import annotations

import argparse
import json
import logging
from typing import Any

import yaml

from .config import Config, ConfigError, load_config
from .models import DEFAULT_YEAR, MODE_NAMES, ItemStatus, QueueState, WorkItem
from .queue import QueueManager, build_item, build_store
from .queue_store import QueueStoreError
from .utils import configure_logging, log_event

PRIORITY_NAMES = {"alta": 30, "media": 20, "bassa": 10}
IMPORT_DEFAULT_PRIORITY = "media"


def _load(args: argparse.Namespace, logger: logging.Logger) -> tuple[Config, QueueManager] | None:
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return None
    try:
        store = build_store(config, logger)
    except (QueueStoreError, ValueError) as exc:
        log_event(logger, logging.ERROR, "queue_store_error", error=str(exc))
        return None
    return config, QueueManager(store, config.queue, logger=logger)


def _load_queue(manager: QueueManager, logger: logging.Logger) -> QueueState | None:
    queue = manager.load()
    if queue.degraded:
        log_event(logger, logging.ERROR, "queue_unreadable", hint="fix or restore the queue file")
        return None
    return queue


def parse_priority(value: Any, default: int) -> int:
    if value is None or value == "":
        return default
    if isinstance(value, str) and value.strip().lower() in PRIORITY_NAMES:
        return PRIORITY_NAMES[value.strip().lower()]
    return int(value)


def parse_topic_row(row: dict[str, Any]) -> dict[str, Any]:
    """Turn one import row into work item fields.

    Comparison rows may carry both cities in ``city`` ("Milan vs Rome") and
    both countries in ``country`` ("Italy/Spain").
    """
    if not isinstance(row, dict):
        raise ValueError(f"topic row must be a mapping, got {type(row).__name__}")
    city = str(row.get("city") or row.get("subject") or "").strip()
    country = str(row.get("country") or row.get("qualifier") or "").strip()
    mode = (row.get("mode") or "").strip().lower() or None
    comparison_city = row.get("comparisonCity") or row.get("second_subject")
    comparison_country = row.get("comparisonCountry") or row.get("second_qualifier")

    if mode == "comparison" and " vs " in city:
        city, comparison_city = (part.strip() for part in city.split(" vs ", 1))
        if "/" in country:
            country, comparison_country = (part.strip() for part in country.split("/", 1))

    return {
        "subject": city,
        "qualifier": country,
        "mode": mode,
        "second_subject": comparison_city,
        "second_qualifier": comparison_country,
        "year": row.get("year") or DEFAULT_YEAR,
        "priority": parse_priority(
            row.get("priority"), PRIORITY_NAMES[IMPORT_DEFAULT_PRIORITY]
        ),
    }


def read_topic_rows(path: str) -> list[dict[str, Any]]:
    with open(path, "r", encoding="utf-8") as handle:
        if path.endswith(".json"):
            data = json.load(handle)
        else:
            data = yaml.safe_load(handle)
    if isinstance(data, dict):
        data = data.get("topics") or data.get("items")
    if not isinstance(data, list):
        raise ValueError("topic file must contain a list of rows")
    return data


def _cmd_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    loaded = _load(args, logger)
    if loaded is None:
        return 1
    _, manager = loaded
    queue = _load_queue(manager, logger)
    if queue is None:
        return 1
    lock = queue.lock
    if lock.locked:
        stale = " (stale)" if manager.is_stale(lock) else ""
        print(f"Lock: LOCKED by {lock.locked_by} at {lock.locked_at}{stale}")
    else:
        print("Lock: UNLOCKED")
    counts = manager.counts(queue)
    print(
        "Items: {total}  pending={pending} completed={completed} "
        "failed={failed} failed_permanent={failed_permanent}".format(**counts)
    )
    statuses = {ItemStatus.PENDING} if not args.all else set(ItemStatus)
    items = [item for item in queue.items if item.status in statuses]
    items.sort(key=lambda item: (-item.priority, item.added_at))
    for index, item in enumerate(items, start=1):
        line = f"  {index}. {item.label} [{item.mode.name}] priority={item.priority}"
        if args.all:
            line += f" status={item.status.value} retries={item.retry_count}"
        print(line)
    return 0


def _cmd_add(args: argparse.Namespace, logger: logging.Logger) -> int:
    loaded = _load(args, logger)
    if loaded is None:
        return 1
    _, manager = loaded
    queue = _load_queue(manager, logger)
    if queue is None:
        return 1
    fields = {
        "subject": args.subject,
        "qualifier": args.qualifier,
        "year": args.year,
        "priority": args.priority,
        "second_subject": args.second_subject,
        "mode": args.mode,
    }
    try:
        existing = manager.live_item(queue, build_item(fields))
    except ValueError as exc:
        log_event(logger, logging.ERROR, "queue_add_invalid", error=str(exc))
        return 1
    if existing is None:
        item, added = manager.add_item(queue, fields)
        if not added:
            # another writer may have queued the same topic meanwhile
            existing = manager.live_item(queue, item)
            if existing is item:
                existing = None
    if existing is not None:
        print(f"Already queued: {existing.label} ({existing.status.value})")
        return 0
    if not added:
        log_event(logger, logging.ERROR, "queue_add_failed", item=item.label)
        return 1
    print(f"Added to queue: {item.label} priority={item.priority}")
    return 0


def _cmd_retry(args: argparse.Namespace, logger: logging.Logger) -> int:
    loaded = _load(args, logger)
    if loaded is None:
        return 1
    _, manager = loaded
    queue = _load_queue(manager, logger)
    if queue is None:
        return 1
    matches = [
        item
        for item in queue.items
        if item.status == ItemStatus.FAILED
        and item.subject.lower() == args.subject.strip().lower()
        and item.qualifier.lower() == args.qualifier.strip().lower()
        and (args.year is None or item.year == args.year)
    ]
    if not matches:
        log_event(logger, logging.ERROR, "queue_retry_no_match", subject=args.subject)
        return 1
    moved = [item for item in matches if manager.retry(queue, item, persist=False)]
    if not moved:
        log_event(logger, logging.ERROR, "queue_retry_exhausted", subject=args.subject)
        return 1
    def requeue(fresh: QueueState) -> bool:
        return any([manager.retry(fresh, item, persist=False) for item in moved])

    if not manager.save(queue, reapply=requeue):
        return 1
    for item in moved:
        print(f"Requeued: {item.label}")
    return 0


def _cmd_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    loaded = _load(args, logger)
    if loaded is None:
        return 1
    _, manager = loaded
    try:
        rows = read_topic_rows(args.path)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        log_event(logger, logging.ERROR, "topics_import_error", path=args.path, error=str(exc))
        return 1
    queue = _load_queue(manager, logger)
    if queue is None:
        return 1

    created: list[WorkItem] = []
    skipped = 0
    errors = 0
    for row in rows:
        try:
            item, added = manager.add_item(queue, parse_topic_row(row), persist=False)
        except (ValueError, TypeError) as exc:
            log_event(logger, logging.WARNING, "topics_import_row_invalid", row=row, error=str(exc))
            errors += 1
            continue
        if added:
            created.append(item)
            if args.dry_run:
                print(f"Would add: {item.label} [{item.mode.name}]")
        else:
            skipped += 1

    def merge(fresh: QueueState) -> bool:
        return any([manager.insert(fresh, item) for item in created])

    if created and not args.dry_run and not manager.save(queue, reapply=merge):
        return 1
    log_event(
        logger,
        logging.INFO,
        "topics_imported",
        created=len(created),
        skipped=skipped,
        errors=errors,
        dry_run=args.dry_run,
    )
    print(f"Import complete: created={len(created)} skipped={skipped} errors={errors}")
    return 1 if errors else 0


def _cmd_unlock(args: argparse.Namespace, logger: logging.Logger) -> int:
    loaded = _load(args, logger)
    if loaded is None:
        return 1
    _, manager = loaded
    queue = _load_queue(manager, logger)
    if queue is None:
        return 1
    if not queue.lock.locked:
        print("Lock: UNLOCKED")
        return 0
    previous = queue.lock.locked_by
    if not manager.release(queue):
        return 1
    log_event(logger, logging.WARNING, "queue_unlocked_manually", locked_by=previous)
    print(f"Released lock held by {previous}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="colqueue", description="Cost-of-living topic queue")
    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="Path to config.yml (defaults to COLQ_CONFIG_PATH)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser("list", help="Show lock state and pending items")
    list_parser.add_argument("--all", action="store_true", help="Include non-pending items")
    list_parser.set_defaults(func=_cmd_list)

    add_parser = subparsers.add_parser("add", help="Queue a topic")
    add_parser.add_argument("subject", help="City")
    add_parser.add_argument("qualifier", help="Country")
    add_parser.add_argument("year", nargs="?", type=int, default=DEFAULT_YEAR)
    add_parser.add_argument("priority", nargs="?", type=int, default=None)
    add_parser.add_argument("second_subject", nargs="?", default=None, help="Comparison city")
    add_parser.add_argument("mode", nargs="?", default=None, choices=list(MODE_NAMES))
    add_parser.set_defaults(func=_cmd_add)

    retry_parser = subparsers.add_parser("retry", help="Move a failed topic back to pending")
    retry_parser.add_argument("subject")
    retry_parser.add_argument("qualifier")
    retry_parser.add_argument("year", nargs="?", type=int, default=None)
    retry_parser.set_defaults(func=_cmd_retry)

    import_parser = subparsers.add_parser("import", help="Import topics from a JSON or YAML file")
    import_parser.add_argument("path")
    import_parser.add_argument("--dry-run", action="store_true", help="Preview without saving")
    import_parser.set_defaults(func=_cmd_import)

    unlock_parser = subparsers.add_parser("unlock", help="Force-release the queue lock")
    unlock_parser.set_defaults(func=_cmd_unlock)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = configure_logging("colqueue.cli")
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
