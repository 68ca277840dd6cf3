import pytest

from colqueue.config import DEFAULT_CONFIG, ConfigError, load_config, validate_config


def test_defaults_without_file():
    cfg = load_config()

    assert cfg.queue.backend == "file"
    assert cfg.queue.max_retries == 2
    assert cfg.queue.lock_ttl_minutes == 30
    assert cfg.dedupe.similarity_threshold == 98
    assert cfg.validation.rounding_steps == [25, 10]


def test_file_overrides_merge_with_defaults(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text(
        "queue:\n  max_items_per_run: 3\nvalidation:\n  rounding_steps: [50, 10]\n",
        encoding="utf-8",
    )

    cfg = load_config(str(path))

    assert cfg.queue.max_items_per_run == 3
    assert cfg.queue.max_retries == 2
    assert cfg.validation.rounding_steps == [50, 10]


def test_config_path_from_env(tmp_path, monkeypatch):
    path = tmp_path / "config.yml"
    path.write_text("dedupe:\n  strict: true\n", encoding="utf-8")
    monkeypatch.setenv("COLQ_CONFIG_PATH", str(path))

    assert load_config().dedupe.strict


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("COLQ_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("COLQ_DRY_RUN", "1")
    monkeypatch.setenv("COLQ_STRICT_DEDUP", "true")

    cfg = load_config()

    assert cfg.paths.queue_file == str(tmp_path / "costofliving-queue.json")
    assert cfg.publishing.dry_run
    assert cfg.dedupe.strict


def test_unknown_key_is_rejected(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text("queue:\n  max_retry: 5\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="max_retry"):
        load_config(str(path))


def test_missing_file_is_config_error(tmp_path):
    with pytest.raises(ConfigError):
        load_config(str(tmp_path / "missing.yml"))


def test_validate_config_checks_ranges():
    cfg = {section: dict(values) for section, values in DEFAULT_CONFIG.items()}
    cfg["queue"]["backend"] = "redis"
    cfg["validation"]["meta_description_min"] = 200

    errors = validate_config(cfg)

    assert any("backend" in error for error in errors)
    assert any("meta_description_min" in error for error in errors)
