from __future__ import annotations

import os
import sqlite3
from typing import Any

from .migrations import apply_migrations


def get_db_url() -> str | None:
    url = os.environ.get("COLQ_DB_URL", "").strip()
    return url or None


def is_postgres_url(url: str | None) -> bool:
    if not url:
        return False
    return url.startswith("postgres://") or url.startswith("postgresql://")


class DBConn:
    def __init__(self, conn: Any, backend: str) -> None:
        self._conn = conn
        self.backend = backend

    def execute(self, sql: str, params: tuple | list | None = None):
        sql = _normalize_sql(sql, self.backend)
        params = params or ()
        cursor = self._conn.cursor()
        cursor.execute(sql, params)
        return cursor

    def commit(self) -> None:
        self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()

    def close(self) -> None:
        self._conn.close()


def connect_db(path: str | None = None, url: str | None = None) -> DBConn:
    """Open the queue database.

    A postgres ``COLQ_DB_URL`` wins over the sqlite path; migrations run on
    every connect and are idempotent.
    """
    url = url or get_db_url()
    if url and is_postgres_url(url):
        try:
            import psycopg
        except ImportError as exc:  # pragma: no cover - depends on env
            raise RuntimeError("psycopg is required for PostgreSQL support") from exc
        conn = DBConn(psycopg.connect(url), "postgres")
        apply_migrations(conn)
        return conn

    if url and url.startswith("sqlite:///"):
        path = url[len("sqlite:///") :]
    if not path:
        raise ValueError("sqlite path is required when COLQ_DB_URL is not a postgres url")
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    raw = sqlite3.connect(path)
    raw.execute("PRAGMA journal_mode=WAL")
    raw.execute("PRAGMA busy_timeout=5000")
    conn = DBConn(raw, "sqlite")
    apply_migrations(conn)
    return conn


def _normalize_sql(sql: str, backend: str) -> str:
    if backend != "postgres":
        return sql
    return _convert_qmark_to_percent(sql)


def _convert_qmark_to_percent(sql: str) -> str:
    out = []
    in_single = False
    in_double = False
    for ch in sql:
        if ch == "'" and not in_double:
            in_single = not in_single
        elif ch == '"' and not in_single:
            in_double = not in_double
        if ch == "?" and not in_single and not in_double:
            out.append("%s")
        else:
            out.append(ch)
    return "".join(out)
