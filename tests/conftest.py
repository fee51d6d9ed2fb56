"""Shared fixtures for aevumlite tests."""

import pytest
import structlog

import aevumlite


_ENV_VARS = ("AEVUM_LOG_LEVEL", "AEVUM_JSON_LOGS", "AEVUM_SERVICE", "AEVUM_ASSIGN_IDS")


@pytest.fixture(autouse=True)
def _isolate_settings_and_logging(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    aevumlite.get_settings.cache_clear()
    yield
    # restore the import-time logging state from a clean environment
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    aevumlite.get_settings.cache_clear()
    structlog.reset_defaults()
    aevumlite._apply_default_logging()
    aevumlite.get_settings.cache_clear()


@pytest.fixture
def people():
    return [
        {"_id": "1", "name": "Ada", "age": 36, "role": "admin", "active": True},
        {"_id": "2", "name": "Linus", "age": 28, "role": "dev", "active": False},
        {"_id": "3", "name": "Grace", "age": 45, "role": "admin", "active": True},
        {"_id": "4", "name": "Ken", "age": 28, "role": "dev", "active": True},
    ]
