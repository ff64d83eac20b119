"""
Unit tests for the config module.
"""
import json
import logging

import pytest

import config
from config import IngestSettings


@pytest.fixture(autouse=True)
def clean_cache():
    config.clear_settings_cache()
    yield
    config.clear_settings_cache()


@pytest.fixture
def restore_log_levels():
    manager = logging.root.manager
    saved = {name: logging.getLogger(name).level for name in list(manager.loggerDict)}
    root_level = logging.getLogger().level
    yield
    logging.getLogger().setLevel(root_level)
    for name in list(manager.loggerDict):
        logging.getLogger(name).setLevel(saved.get(name, logging.NOTSET))


class TestLoadSettings:
    def test_defaults_without_file(self, tmp_path):
        settings = config.load_settings(tmp_path / "missing.json")

        assert settings.default_budget_ms == 8000
        assert settings.max_fetch_attempts == 3
        assert settings.backend_log_level == "INFO"

    def test_reads_file(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"lineup_batch_size": 50, "stale_job_seconds": 60}))

        settings = config.load_settings(path)

        assert settings.lineup_batch_size == 50
        assert settings.stale_job_seconds == 60

    def test_result_is_cached(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"lineup_batch_size": 50}))
        first = config.load_settings(path)

        path.write_text(json.dumps({"lineup_batch_size": 75}))

        assert config.load_settings(path) is first
        config.clear_settings_cache()
        assert config.load_settings(path).lineup_batch_size == 75

    def test_unreadable_file_falls_back(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text("{not json")

        assert config.load_settings(path).lineup_batch_size == IngestSettings().lineup_batch_size

    def test_invalid_values_fall_back(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"lineup_batch_size": "lots"}))

        assert config.load_settings(path).lineup_batch_size == 200

    def test_unknown_keys_ignored(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"retired_option": True, "mapping_batch_size": 4}))

        assert config.load_settings(path).mapping_batch_size == 4

    def test_environment_overrides_file(self, tmp_path, monkeypatch):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"safety_margin_ms": 1000}))
        monkeypatch.setenv("INGEST_SAFETY_MARGIN_MS", "2500")

        assert config.load_settings(path).safety_margin_ms == 2500


class TestSaveSettings:
    def test_save_then_load(self, tmp_path):
        path = tmp_path / "nested" / "settings.json"
        config.save_settings(IngestSettings(channel_batch_size=42), path)

        assert json.loads(path.read_text())["channel_batch_size"] == 42
        config.clear_settings_cache()
        assert config.load_settings(path).channel_batch_size == 42

    def test_save_replaces_cache(self, tmp_path):
        saved = IngestSettings(channel_batch_size=7)
        config.save_settings(saved, tmp_path / "settings.json")

        assert config.get_settings() is saved


class TestLogLevel:
    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "debug")
        assert config.get_log_level_from_env() == "DEBUG"

    def test_env_default(self, monkeypatch):
        monkeypatch.delenv("LOG_LEVEL", raising=False)
        assert config.get_log_level_from_env() == "INFO"

    def test_set_log_level(self, restore_log_levels):
        assert config.set_log_level("warning") == "WARNING"
        assert logging.getLogger().level == logging.WARNING
        assert logging.getLogger("config").level == logging.WARNING

    def test_invalid_level_uses_info(self, restore_log_levels):
        assert config.set_log_level("LOUD") == "INFO"
        assert logging.getLogger().level == logging.INFO
