"""Shared test fixtures and configuration."""

from __future__ import annotations

import os
from pathlib import Path
import sys

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


# Values the tests rely on; anything set in the developer's shell must not leak in
TEST_ENV = {
    "LOG_LEVEL": "info",
    "LOG_JSON": "false",
    "SCHEDULER_ENABLED": "false",
    "HTTP_RETRY_BACKOFF_SECONDS": "0",
    "http_proxy": "",
    "https_proxy": "",
    "all_proxy": "",
    "no_proxy": "",
}

for key, value in TEST_ENV.items():
    os.environ[key] = value

# Config-dependent modules are imported after the environment is pinned
from kb_sync.config import Settings
from kb_sync.utils.sync_state_store import SyncStateStore
from tests.fixtures.sync_site import FakeSite


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Pin config-relevant environment variables for every test."""
    for key, value in TEST_ENV.items():
        monkeypatch.setenv(key, value)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_path=str(tmp_path / "kb_sync.sqlite"),
        sync_worker_count=3,
        http_max_retries=1,
        http_retry_backoff_seconds=0.0,
        discovery_max_attempts=2,
        job_checkpoint_seconds=0.0,
        scheduler_enabled=False,
    )


@pytest.fixture
def store(settings) -> SyncStateStore:
    return SyncStateStore(settings.database_path)


@pytest.fixture
def site() -> FakeSite:
    return FakeSite()
