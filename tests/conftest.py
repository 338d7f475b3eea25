from __future__ import annotations

from pathlib import Path

import pytest

from codexmcp.config import get_settings


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    yield
    get_settings.cache_clear()


@pytest.fixture()
def analytics_path(tmp_path: Path) -> Path:
    return tmp_path / "data" / "analytics.json"
