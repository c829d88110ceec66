import sys

import pytest

from check_orchestrator.config import Settings, get_settings
from check_orchestrator.models import Stage


@pytest.fixture(autouse=True)
def clean_settings(monkeypatch):
    for name in (
        "CHECKS_CONFIG",
        "CHECKS_MAX_PARALLEL",
        "CHECKS_RUN_TIMEOUT",
        "CHECKS_LOG_LEVEL",
        "CHECKS_TOOLCHAIN_PROBE",
        "CHECKS_TOOLCHAIN_LAUNCHER",
        "CHECKS_INHERIT_ENVIRONMENT",
        "CHECKS_HTTP_TIMEOUT",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("CHECKS_KILL_GRACE_SECONDS", "1")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def python_stage():
    def build(name: str, code: str, **extra) -> Stage:
        return Stage(name=name, command=[sys.executable, "-c", code], **extra)

    return build
