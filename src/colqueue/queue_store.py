"""Persistence backends for the work queue document.

Every backend stores the whole queue document at once and tracks an integer
``version`` used for optimistic concurrency: ``write`` only succeeds when the
persisted version still equals the version the caller loaded. None of the
backends give linearizable locking; the queue lock layered on top is
best-effort.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import tempfile
import threading
from typing import Any

import jsonschema

from .db import DBConn
from .utils import log_event, utc_now_iso

QUEUE_DOCUMENT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["lock", "items"],
    "properties": {
        "version": {"type": "integer", "minimum": 0},
        "lock": {
            "type": "object",
            "properties": {
                "locked": {"type": "boolean"},
                "lockedAt": {"type": ["string", "null"]},
                "lockedBy": {"type": ["string", "null"]},
                "lockTtlMinutes": {"type": ["integer", "null"]},
            },
        },
        "items": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["city", "country", "addedAt"],
                "properties": {
                    "city": {"type": "string", "minLength": 1},
                    "country": {"type": "string"},
                    "year": {"type": ["integer", "null"]},
                    "mode": {"enum": ["city", "budget", "comparison", None]},
                    "comparisonCity": {"type": ["string", "null"]},
                    "comparisonCountry": {"type": ["string", "null"]},
                    "priority": {"type": ["integer", "null"]},
                    "status": {
                        "enum": ["pending", "completed", "failed", "failed_permanent"]
                    },
                    "retryCount": {"type": ["integer", "null"], "minimum": 0},
                    "addedAt": {"type": "string"},
                    "completedAt": {"type": ["string", "null"]},
                    "failedAt": {"type": ["string", "null"]},
                    "error": {"type": ["string", "null"]},
                },
            },
        },
    },
}


class QueueStoreError(RuntimeError):
    pass


class QueueConflictError(QueueStoreError):
    pass


def validate_document(document: Any) -> None:
    try:
        jsonschema.validate(document, QUEUE_DOCUMENT_SCHEMA)
    except jsonschema.ValidationError as exc:
        raise QueueStoreError(f"invalid queue document: {exc.message}") from exc


def document_version(document: dict[str, Any] | None) -> int:
    if not document:
        return 0
    value = document.get("version")
    return int(value) if isinstance(value, int) else 0


class QueueStore:
    """Interface shared by the queue backends."""

    def read(self) -> dict[str, Any] | None:
        raise NotImplementedError

    def read_seed(self) -> dict[str, Any] | None:
        raise NotImplementedError

    def write(self, document: dict[str, Any], expected_version: int) -> int:
        raise NotImplementedError

    def resync(self) -> int:
        raise NotImplementedError


class MemoryQueueStore(QueueStore):
    def __init__(
        self,
        document: dict[str, Any] | None = None,
        seed: dict[str, Any] | None = None,
    ) -> None:
        self._mutex = threading.Lock()
        self._document = _copy(document) if document is not None else None
        self._seed = _copy(seed) if seed is not None else None
        self.writes = 0

    def read(self) -> dict[str, Any] | None:
        with self._mutex:
            return _copy(self._document) if self._document is not None else None

    def read_seed(self) -> dict[str, Any] | None:
        with self._mutex:
            return _copy(self._seed) if self._seed is not None else None

    def write(self, document: dict[str, Any], expected_version: int) -> int:
        with self._mutex:
            current = document_version(self._document)
            if current != expected_version:
                raise QueueConflictError(
                    f"version mismatch: expected {expected_version}, found {current}"
                )
            stored = _copy(document)
            stored["version"] = current + 1
            self._document = stored
            self.writes += 1
            return current + 1

    def resync(self) -> int:
        with self._mutex:
            return document_version(self._document)


class FileQueueStore(QueueStore):
    def __init__(
        self,
        path: str,
        seed_path: str | None = None,
        git_sync: bool = False,
        git_remote: str = "origin",
        git_branch: str = "main",
        logger: logging.Logger | None = None,
    ) -> None:
        self.path = path
        self.seed_path = seed_path
        self.git_sync = git_sync
        self.git_remote = git_remote
        self.git_branch = git_branch
        self.logger = logger or logging.getLogger("colqueue.queue_store")

    def read(self) -> dict[str, Any] | None:
        return _read_json_file(self.path)

    def read_seed(self) -> dict[str, Any] | None:
        if not self.seed_path:
            return None
        return _read_json_file(self.seed_path)

    def write(self, document: dict[str, Any], expected_version: int) -> int:
        current = self._current_version()
        if current != expected_version:
            raise QueueConflictError(
                f"version mismatch: expected {expected_version}, found {current}"
            )
        stored = dict(document)
        stored["version"] = current + 1
        _atomic_write_json(self.path, stored)
        if self.git_sync:
            self._git_commit()
        return current + 1

    def resync(self) -> int:
        if self.git_sync:
            self._git(["pull", "--rebase", self.git_remote, self.git_branch], check=True)
        return self._current_version()

    def _current_version(self) -> int:
        try:
            return document_version(_read_json_file(self.path))
        except QueueStoreError as exc:
            raise QueueConflictError(f"unreadable queue file: {exc}") from exc

    def _git_commit(self) -> None:
        name = os.path.basename(self.path)
        self._git(["add", name], check=False)
        self._git(["commit", "-m", "Update costofliving queue"], check=False)

    def _git(self, args: list[str], check: bool) -> None:
        cwd = os.path.dirname(os.path.abspath(self.path))
        try:
            proc = subprocess.run(
                ["git", *args],
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=120,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            if check:
                raise QueueStoreError(f"git {args[0]} failed: {exc}") from exc
            log_event(self.logger, logging.DEBUG, "git_skipped", command=args[0], error=str(exc))
            return
        if proc.returncode != 0:
            if check:
                raise QueueStoreError(
                    f"git {args[0]} failed: {(proc.stderr or proc.stdout).strip()[:500]}"
                )
            log_event(
                self.logger,
                logging.DEBUG,
                "git_nonzero",
                command=args[0],
                returncode=proc.returncode,
            )


class DatabaseQueueStore(QueueStore):
    def __init__(self, conn: DBConn, queue_id: str = "costofliving", seed_path: str | None = None) -> None:
        self.conn = conn
        self.queue_id = queue_id
        self.seed_path = seed_path

    def read(self) -> dict[str, Any] | None:
        row = self._fetch("SELECT version, state_json FROM queue_state WHERE id = ?")
        if not row:
            return None
        try:
            document = json.loads(row[1])
        except json.JSONDecodeError as exc:
            raise QueueStoreError(f"queue_state row is not valid JSON: {exc}") from exc
        if isinstance(document, dict):
            document["version"] = int(row[0])
        return document

    def read_seed(self) -> dict[str, Any] | None:
        if not self.seed_path:
            return None
        return _read_json_file(self.seed_path)

    def write(self, document: dict[str, Any], expected_version: int) -> int:
        new_version = expected_version + 1
        stored = dict(document)
        stored["version"] = new_version
        payload = json.dumps(stored, sort_keys=True)
        now = utc_now_iso()
        try:
            if expected_version == 0:
                cursor = self.conn.execute(
                    """
                    INSERT INTO queue_state (id, version, state_json, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(id) DO NOTHING
                    """,
                    (self.queue_id, new_version, payload, now),
                )
            else:
                cursor = self.conn.execute(
                    """
                    UPDATE queue_state
                    SET version = ?, state_json = ?, updated_at = ?
                    WHERE id = ? AND version = ?
                    """,
                    (new_version, payload, now, self.queue_id, expected_version),
                )
            self.conn.commit()
        except Exception as exc:  # noqa: BLE001
            try:
                self.conn.rollback()
            except Exception:  # noqa: BLE001
                pass  # the write error below is the one reported
            raise QueueStoreError(f"queue_state write failed: {exc}") from exc
        if cursor.rowcount != 1:
            raise QueueConflictError(
                f"version mismatch: expected {expected_version} for {self.queue_id}"
            )
        return new_version

    def resync(self) -> int:
        row = self._fetch("SELECT version FROM queue_state WHERE id = ?")
        return int(row[0]) if row else 0

    def _fetch(self, sql: str) -> Any:
        try:
            return self.conn.execute(sql, (self.queue_id,)).fetchone()
        except Exception as exc:  # noqa: BLE001
            raise QueueStoreError(f"queue_state read failed: {exc}") from exc


def _read_json_file(path: str) -> dict[str, Any] | None:
    if not os.path.exists(path):
        return None
    try:
        with open(path, "r", encoding="utf-8") as handle:
            return json.load(handle)
    except json.JSONDecodeError as exc:
        raise QueueStoreError(f"{path} is not valid JSON: {exc}") from exc
    except OSError as exc:
        raise QueueStoreError(f"cannot read {path}: {exc}") from exc


def _atomic_write_json(path: str, document: dict[str, Any]) -> None:
    directory = os.path.dirname(os.path.abspath(path))
    try:
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".queue-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle, indent=2)
                handle.write("\n")
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
    except OSError as exc:
        raise QueueStoreError(f"cannot write {path}: {exc}") from exc


def _copy(document: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(document))
