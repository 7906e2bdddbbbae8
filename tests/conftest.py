"""Pytest configuration and fixtures."""

import os
from unittest.mock import patch

import pytest

from tests.fakes.fake_supabase import FakeSupabase

TEST_ENV = {
    "SUPABASE_URL": "https://test.supabase.co",
    "SUPABASE_SERVICE_ROLE_KEY": "test-key",
    "OPENAI_API_KEY": "test-openai-key",
    "TEAMCHAT_ENV": "test",
}

# Modules import settings lazily, but loggers read them at import time
os.environ.update(TEST_ENV)

SUPABASE_MODULES = (
    "teamchat.db.messages",
    "teamchat.db.conversations",
    "teamchat.db.agents",
    "teamchat.db.companies",
    "teamchat.db.storage",
    "teamchat.db.jobs",
    "teamchat.context.dynamic_context",
)


@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """Set up test environment variables."""
    os.environ.update(TEST_ENV)
    from teamchat.core.config import get_settings

    get_settings.cache_clear()


@pytest.fixture
def fake_supabase():
    """Patch every module's get_supabase with one in-memory fake."""
    db = FakeSupabase()
    patchers = [patch(f"{module}.get_supabase", return_value=db) for module in SUPABASE_MODULES]
    for p in patchers:
        p.start()
    yield db
    for p in patchers:
        p.stop()


@pytest.fixture
def job_runner():
    """Fresh job runner with no retry delay, installed as the process runner."""
    from teamchat.core import background

    runner = background.BackgroundJobRunner(retry_delay=0)
    with patch.object(background, "_runner", runner):
        yield runner
