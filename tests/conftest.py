"""Shared fixtures for the pal test suite."""

import logging

import pytest
import structlog

from pal.config import get_settings

_ENV_VARS = (
    "CI",
    "ARWEAVE_GATEWAY",
    "UV_TOOL_DIR",
    "PAL_HOME",
    "PAL_LEDGER_GATEWAY",
    "PAL_APP_NAME",
    "PAL_NO_UPDATE_CHECK",
    "PAL_REQUIRE_BACKUP",
    "PAL_PACKAGE_MANAGER",
    "PAL_EXECUTABLE",
    "PAL_MANIFEST_PATH",
    "PAL_LOG_FORMAT",
    "PAL_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    """Keep the host environment and ~/.pal out of every test."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("PAL_HOME", str(tmp_path / "pal-home"))
    monkeypatch.chdir(tmp_path)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _quiet_structlog():
    """Drop log output so it never mixes with captured CLI output."""
    structlog.configure(
        processors=[structlog.processors.KeyValueRenderer()],
        wrapper_class=structlog.make_filtering_bound_logger(logging.CRITICAL),
        logger_factory=structlog.ReturnLoggerFactory(),
        cache_logger_on_first_use=False,
    )
    yield
    structlog.reset_defaults()
