"""Shared fixtures."""

import pytest
import pytest_asyncio

from roadassist.config import Settings
from roadassist.event_log import EventLog


@pytest.fixture
def settings(tmp_path):
    return Settings(
        bland_api_key="test-key",
        bland_base_url="https://bland.test",
        webhook_base_url="https://relay.test",
        webhook_secret="",
        environment="development",
        event_log_path=tmp_path / "webhooks.db",
        log_dir=tmp_path / "logs",
    )


@pytest_asyncio.fixture
async def event_log(settings):
    log = EventLog(settings.event_log_path)
    await log.connect()
    yield log
    await log.close()
