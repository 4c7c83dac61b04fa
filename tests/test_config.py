from __future__ import annotations

from pathlib import Path

import allure
import pytest

from tabtin.config import InstanceLimits, Settings

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Configuration"),
]


def test_defaults_from_empty_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "TABTIN_DB_PATH",
        "TABTIN_QUEUE_DEFAULT_PRIORITY",
        "TABTIN_INSTANCE_MAX_CONCURRENT_TENANTS",
        "TABTIN_WORKER_IDLE_SHUTDOWN_SECONDS",
        "TABTIN_ENABLE_DISCOVERY",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".tabtin.db")
    assert settings.queue.default_priority == 10
    assert settings.queue.redo_priority == 5
    assert settings.limits.max_concurrent_tenants == 1
    assert settings.worker.idle_shutdown_seconds == 300
    assert settings.worker.enable_discovery is True


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TABTIN_QUEUE_DEFAULT_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("TABTIN_INSTANCE_MAX_REQUESTS_PER_MINUTE", "120")
    monkeypatch.setenv("TABTIN_ENABLE_DISCOVERY", "off")
    monkeypatch.setenv("TABTIN_LOG_LEVEL", "debug")

    settings = Settings.from_env(db_path=tmp_path / "x.db")

    assert settings.db_path == tmp_path / "x.db"
    assert settings.queue.default_max_attempts == 5
    assert settings.limits.max_requests_per_minute == 120
    assert settings.worker.enable_discovery is False
    assert settings.log_level == "DEBUG"


def test_invalid_boolean_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TABTIN_ENABLE_DISCOVERY", "maybe")

    with pytest.raises(ValueError, match="TABTIN_ENABLE_DISCOVERY"):
        Settings.from_env()


def test_validate_for_worker_names_the_variable(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TABTIN_INSTANCE_MAX_CONCURRENT_TENANTS", "0")

    with pytest.raises(ValueError, match="TABTIN_INSTANCE_MAX_CONCURRENT_TENANTS"):
        Settings.from_env().validate_for_worker()


def test_instance_limits_cap_tenant_requests() -> None:
    limits = InstanceLimits(max_parallel_requests=4, max_requests_per_minute=60)

    assert limits.cap_concurrency(10) == 4
    assert limits.cap_concurrency(0) == 1
    assert limits.cap_requests_per_minute(30) == 30
    assert limits.cap_requests_per_minute(600) == 60
    assert limits.cap_requests_per_minute(0) == 60
    assert InstanceLimits(max_requests_per_minute=0).cap_requests_per_minute(0) == 0
