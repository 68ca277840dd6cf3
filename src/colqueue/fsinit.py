from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable

from .config import PathsConfig


def set_umask_from_env() -> None:
    _apply_umask()


def ensure_runtime_dirs(paths: Iterable[str]) -> None:
    for path in paths:
        if not path:
            continue
        _ensure_dir(Path(path))


def build_default_paths(paths: PathsConfig) -> list[str]:
    return [
        paths.data_dir,
        os.path.dirname(paths.queue_file),
        paths.run_reports_dir,
        paths.preview_dir,
    ]


def _apply_umask() -> None:
    umask_value = os.environ.get("COLQ_UMASK", "002")
    try:
        os.umask(int(umask_value, 8))
    except (ValueError, TypeError):
        os.umask(0o002)


def _ensure_dir(path: Path) -> None:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except PermissionError:
        return
    _safe_chmod(path, 0o775)


def _safe_chmod(path: Path, mode: int) -> None:
    try:
        path.chmod(mode)
    except PermissionError:
        return
