"""Tests for settings and logging configuration."""

import json
import logging

import structlog

import aevumlite
from aevumlite import EngineSettings, configure_logging, get_settings


class TestEngineSettings:
    def test_defaults(self):
        settings = EngineSettings()
        assert settings.log_level == "INFO"
        assert settings.json_logs is None
        assert settings.service == "aevumlite"
        assert settings.assign_ids is True

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("AEVUM_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("AEVUM_JSON_LOGS", "true")
        monkeypatch.setenv("AEVUM_ASSIGN_IDS", "0")
        settings = EngineSettings()
        assert settings.log_level == "DEBUG"
        assert settings.json_logs is True
        assert settings.assign_ids is False

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()


class TestConfigureLogging:
    def test_json_output(self, capsys):
        configure_logging(level="DEBUG", json_format=True, service="test-engine")
        aevumlite.find([{"a": 1}], {})
        line = capsys.readouterr().out.strip().splitlines()[-1]
        event = json.loads(line)
        assert event["event"] == "find_completed"
        assert event["service"] == "test-engine"
        assert event["level"] == "debug"
        assert event["matched"] == 1

    def test_level_filtering(self, capsys):
        configure_logging(level="WARNING", json_format=True)
        aevumlite.find([{"a": 1}], {})
        assert capsys.readouterr().out == ""

    def test_reads_settings(self, monkeypatch, capsys):
        monkeypatch.setenv("AEVUM_LOG_LEVEL", "debug")
        monkeypatch.setenv("AEVUM_JSON_LOGS", "true")
        monkeypatch.setenv("AEVUM_SERVICE", "from-env")
        get_settings.cache_clear()
        configure_logging()
        aevumlite.count_json("[]", "{}")
        aevumlite.delete([{"a": 1}], {})
        event = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert event["event"] == "delete_applied"
        assert event["service"] == "from-env"

    def test_default_level_is_silent_for_debug_events(self, capsys):
        aevumlite.find([{"a": 1}], {})
        aevumlite.update([{"a": 1}], {}, {"b": 2})
        assert capsys.readouterr().out == ""

    def test_default_level_follows_settings(self, monkeypatch, capsys):
        monkeypatch.setenv("AEVUM_LOG_LEVEL", "DEBUG")
        get_settings.cache_clear()
        structlog.reset_defaults()
        aevumlite._apply_default_logging()
        aevumlite.find([{"a": 1}], {})
        assert "find_completed" in capsys.readouterr().out

    def test_default_level_keeps_host_configuration(self, capsys):
        structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG))
        aevumlite._apply_default_logging()
        aevumlite.find([{"a": 1}], {})
        assert "find_completed" in capsys.readouterr().out

    def test_get_logger(self):
        assert aevumlite.get_logger("x") is not None
