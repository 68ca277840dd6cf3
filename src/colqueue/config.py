from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

import yaml


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str
    timezone: str


@dataclass(frozen=True)
class PathsConfig:
    data_dir: str
    queue_file: str
    seed_file: str
    run_reports_dir: str
    preview_dir: str


@dataclass(frozen=True)
class QueueConfig:
    backend: str
    lock_ttl_minutes: int
    max_retries: int
    max_items_per_run: int
    inter_item_cooldown_ms: int
    auto_requeue_failed: bool
    git_sync: bool
    git_remote: str
    git_branch: str


@dataclass(frozen=True)
class LlmConfig:
    provider_type: str
    base_url: str
    model: str
    api_key_env: str
    timeout_s: int
    temperature: float
    max_tokens: int
    max_attempts: int
    backoff_seconds: float


@dataclass(frozen=True)
class ContentStoreConfig:
    project_id: str
    dataset: str
    api_version: str
    token_env: str
    timeout_s: int


@dataclass(frozen=True)
class ValidationConfig:
    rounding_steps: list[int]
    total_tolerance: float
    title_max: int
    seo_title_max: int
    meta_description_min: int
    meta_description_max: int
    excerpt_max: int
    min_words_single: int
    min_words_comparison: int
    default_currency: str


@dataclass(frozen=True)
class DedupeConfig:
    semantic_enabled: bool
    strict: bool
    similarity_threshold: int
    max_articles_to_compare: int


@dataclass(frozen=True)
class PublishingConfig:
    dry_run: bool
    content_series: str
    reading_time_min: int
    reading_time_max: int
    words_per_minute: int


@dataclass(frozen=True)
class Config:
    app: AppConfig
    paths: PathsConfig
    queue: QueueConfig
    llm: LlmConfig
    content_store: ContentStoreConfig
    validation: ValidationConfig
    dedupe: DedupeConfig
    publishing: PublishingConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "colqueue",
        "timezone": "UTC",
    },
    "paths": {
        "data_dir": "data",
        "queue_file": "data/costofliving-queue.json",
        "seed_file": "data/costofliving-queue-seed.json",
        "run_reports_dir": "data/reports",
        "preview_dir": "data/previews",
    },
    "queue": {
        "backend": "file",
        "lock_ttl_minutes": 30,
        "max_retries": 2,
        "max_items_per_run": 1,
        "inter_item_cooldown_ms": 30000,
        "auto_requeue_failed": True,
        "git_sync": False,
        "git_remote": "origin",
        "git_branch": "main",
    },
    "llm": {
        "provider_type": "google",
        "base_url": "",
        "model": "gemini-2.5-pro",
        "api_key_env": "GEMINI_API_KEY",
        "timeout_s": 120,
        "temperature": 0.7,
        "max_tokens": 10000,
        "max_attempts": 3,
        "backoff_seconds": 5.0,
    },
    "content_store": {
        "project_id": "",
        "dataset": "production",
        "api_version": "2024-08-10",
        "token_env": "SANITY_API_TOKEN",
        "timeout_s": 30,
    },
    "validation": {
        "rounding_steps": [25, 10],
        "total_tolerance": 0.05,
        "title_max": 60,
        "seo_title_max": 60,
        "meta_description_min": 150,
        "meta_description_max": 160,
        "excerpt_max": 150,
        "min_words_single": 1200,
        "min_words_comparison": 1600,
        "default_currency": "USD",
    },
    "dedupe": {
        "semantic_enabled": True,
        "strict": False,
        "similarity_threshold": 98,
        "max_articles_to_compare": 30,
    },
    "publishing": {
        "dry_run": False,
        "content_series": "cost-of-living",
        "reading_time_min": 6,
        "reading_time_max": 15,
        "words_per_minute": 200,
    },
}

QUEUE_BACKENDS = ("file", "db", "memory")
PROVIDER_TYPES = ("openai_compatible", "anthropic", "google")


def resolve_config_path(path: str | None) -> str | None:
    if path:
        return path
    env_path = os.environ.get("COLQ_CONFIG_PATH", "").strip()
    return env_path or None


def load_config(path: str | None = None) -> Config:
    cfg = _deep_copy(DEFAULT_CONFIG)
    resolved = resolve_config_path(path)
    if resolved:
        try:
            with open(resolved, "r", encoding="utf-8") as handle:
                loaded = yaml.safe_load(handle) or {}
        except FileNotFoundError as exc:
            raise ConfigError(f"config file not found: {resolved}") from exc
        except yaml.YAMLError as exc:
            raise ConfigError(f"config file is not valid YAML: {exc}") from exc
        if not isinstance(loaded, dict):
            raise ConfigError("config file must contain a mapping")
        cfg = _merge(cfg, loaded)
    _apply_env_overrides(cfg)
    errors = validate_config(cfg)
    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    return build_config(cfg)


def validate_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config", errors)
    if errors:
        return errors
    queue = cfg["queue"]
    if queue["backend"] not in QUEUE_BACKENDS:
        errors.append(f"config.queue.backend must be one of {', '.join(QUEUE_BACKENDS)}")
    if queue["lock_ttl_minutes"] <= 0:
        errors.append("config.queue.lock_ttl_minutes must be positive")
    if queue["max_retries"] < 1:
        errors.append("config.queue.max_retries must be at least 1")
    if queue["max_items_per_run"] < 1:
        errors.append("config.queue.max_items_per_run must be at least 1")
    if queue["inter_item_cooldown_ms"] < 0:
        errors.append("config.queue.inter_item_cooldown_ms must not be negative")
    if cfg["llm"]["provider_type"] not in PROVIDER_TYPES:
        errors.append(f"config.llm.provider_type must be one of {', '.join(PROVIDER_TYPES)}")
    validation = cfg["validation"]
    if not validation["rounding_steps"] or any(step <= 0 for step in validation["rounding_steps"]):
        errors.append("config.validation.rounding_steps must be positive integers")
    if validation["meta_description_min"] > validation["meta_description_max"]:
        errors.append("config.validation.meta_description_min exceeds meta_description_max")
    return errors


def _apply_env_overrides(cfg: dict[str, Any]) -> None:
    data_dir = os.environ.get("COLQ_DATA_DIR", "").strip()
    if data_dir:
        paths = cfg["paths"]
        paths["data_dir"] = data_dir
        paths["queue_file"] = os.path.join(data_dir, "costofliving-queue.json")
        paths["seed_file"] = os.path.join(data_dir, "costofliving-queue-seed.json")
        paths["run_reports_dir"] = os.path.join(data_dir, "reports")
        paths["preview_dir"] = os.path.join(data_dir, "previews")
    if _env_flag("COLQ_DRY_RUN"):
        cfg["publishing"]["dry_run"] = True
    if _env_flag("COLQ_STRICT_DEDUP"):
        cfg["dedupe"]["strict"] = True
    if os.environ.get("COLQ_DB_URL", "").strip():
        cfg["queue"]["backend"] = "db"


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in {"1", "true", "yes"}


def _merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = _merge(base[key], value)
        else:
            base[key] = value
    return base


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
            return
        if default:
            sample = default[0]
            for item in value:
                if isinstance(item, bool) or not isinstance(item, type(sample)):
                    errors.append(f"{path} must be a list of {type(sample).__name__}")
                    break
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg["app"]
    paths_cfg = cfg["paths"]
    queue_cfg = cfg["queue"]
    llm_cfg = cfg["llm"]
    store_cfg = cfg["content_store"]
    validation_cfg = cfg["validation"]
    dedupe_cfg = cfg["dedupe"]
    publishing_cfg = cfg["publishing"]

    return Config(
        app=AppConfig(name=str(app_cfg["name"]), timezone=str(app_cfg["timezone"])),
        paths=PathsConfig(
            data_dir=str(paths_cfg["data_dir"]),
            queue_file=str(paths_cfg["queue_file"]),
            seed_file=str(paths_cfg["seed_file"]),
            run_reports_dir=str(paths_cfg["run_reports_dir"]),
            preview_dir=str(paths_cfg["preview_dir"]),
        ),
        queue=QueueConfig(
            backend=str(queue_cfg["backend"]),
            lock_ttl_minutes=int(queue_cfg["lock_ttl_minutes"]),
            max_retries=int(queue_cfg["max_retries"]),
            max_items_per_run=int(queue_cfg["max_items_per_run"]),
            inter_item_cooldown_ms=int(queue_cfg["inter_item_cooldown_ms"]),
            auto_requeue_failed=bool(queue_cfg["auto_requeue_failed"]),
            git_sync=bool(queue_cfg["git_sync"]),
            git_remote=str(queue_cfg["git_remote"]),
            git_branch=str(queue_cfg["git_branch"]),
        ),
        llm=LlmConfig(
            provider_type=str(llm_cfg["provider_type"]),
            base_url=str(llm_cfg["base_url"]),
            model=str(llm_cfg["model"]),
            api_key_env=str(llm_cfg["api_key_env"]),
            timeout_s=int(llm_cfg["timeout_s"]),
            temperature=float(llm_cfg["temperature"]),
            max_tokens=int(llm_cfg["max_tokens"]),
            max_attempts=int(llm_cfg["max_attempts"]),
            backoff_seconds=float(llm_cfg["backoff_seconds"]),
        ),
        content_store=ContentStoreConfig(
            project_id=str(store_cfg["project_id"]),
            dataset=str(store_cfg["dataset"]),
            api_version=str(store_cfg["api_version"]),
            token_env=str(store_cfg["token_env"]),
            timeout_s=int(store_cfg["timeout_s"]),
        ),
        validation=ValidationConfig(
            rounding_steps=[int(step) for step in validation_cfg["rounding_steps"]],
            total_tolerance=float(validation_cfg["total_tolerance"]),
            title_max=int(validation_cfg["title_max"]),
            seo_title_max=int(validation_cfg["seo_title_max"]),
            meta_description_min=int(validation_cfg["meta_description_min"]),
            meta_description_max=int(validation_cfg["meta_description_max"]),
            excerpt_max=int(validation_cfg["excerpt_max"]),
            min_words_single=int(validation_cfg["min_words_single"]),
            min_words_comparison=int(validation_cfg["min_words_comparison"]),
            default_currency=str(validation_cfg["default_currency"]),
        ),
        dedupe=DedupeConfig(
            semantic_enabled=bool(dedupe_cfg["semantic_enabled"]),
            strict=bool(dedupe_cfg["strict"]),
            similarity_threshold=int(dedupe_cfg["similarity_threshold"]),
            max_articles_to_compare=int(dedupe_cfg["max_articles_to_compare"]),
        ),
        publishing=PublishingConfig(
            dry_run=bool(publishing_cfg["dry_run"]),
            content_series=str(publishing_cfg["content_series"]),
            reading_time_min=int(publishing_cfg["reading_time_min"]),
            reading_time_max=int(publishing_cfg["reading_time_max"]),
            words_per_minute=int(publishing_cfg["words_per_minute"]),
        ),
    )


def default_config() -> Config:
    return build_config(_deep_copy(DEFAULT_CONFIG))


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
