"""Shared fixtures: isolated Settings and a sqlite-backed Database."""

import pytest
import pytest_asyncio

from tandem.config import Settings
from tandem.storage.database import Database


def make_settings(tmp_path, **overrides) -> Settings:
    """Settings isolated from the developer's .env and vendor env vars."""
    values = {
        "DEEPSEEK_API_KEY": "test-key",
        "OPENAI_API_KEY": "",
        "ZHIPUAI_API_KEY": "",
        "XAI_API_KEY": "",
        "ANTHROPIC_API_KEY": "",
        "NOVITA_API_KEY": "",
        "GEMINI_API_KEY": "",
        "workspace_dir": str(tmp_path),
        "db_url": "sqlite+aiosqlite:///:memory:",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def settings_factory(tmp_path):
    """Build Settings with overrides on top of the isolated defaults."""

    def _factory(**overrides) -> Settings:
        return make_settings(tmp_path, **overrides)

    return _factory


@pytest_asyncio.fixture
async def database(settings):
    db = Database(settings)
    await db.connect()
    yield db
    await db.disconnect()
