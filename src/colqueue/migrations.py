from __future__ import annotations

import logging
from typing import Any, Callable

from .utils import utc_now_iso

Migration = Callable[[Any], None]


def apply_migrations(conn: Any) -> None:
    logger = logging.getLogger("colqueue.migrations")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    try:
        for version, migration in _get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _migration_queue_state(conn: Any) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS queue_state (
            id TEXT PRIMARY KEY,
            version INTEGER NOT NULL,
            state_json TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_queue_state", _migration_queue_state),
    ]
