import dataclasses

import pytest

from relaybot.config import Settings
from relaybot.store import JobStore
from relaybot.tempfiles import TempDir


@pytest.fixture
def settings(tmp_path):
    return Settings(
        bot_token="test-token",
        temp_dir=tmp_path / "tmp",
        data_dir=tmp_path / "data",
        cookies_dir=tmp_path / "cookies",
        retry_base_delay=0.01,
        retry_max_delay=0.05,
        shutdown_timeout=1.0,
        download_timeout=5.0,
        info_timeout=5.0,
        fallback_timeout=5.0,
    )


@pytest.fixture
def make_settings(settings):
    def _make(**overrides):
        return dataclasses.replace(settings, **overrides)

    return _make


@pytest.fixture
def temp_dir(settings):
    directory = TempDir(settings.temp_dir)
    directory.ensure()
    return directory


@pytest.fixture
def store(settings):
    job_store = JobStore(settings.db_path)
    yield job_store
    job_store.close()
