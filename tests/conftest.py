from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from deepbuild.settings import RuntimeSettings
from deepbuild.store import InMemoryProjectStore, ProjectStore, SqliteProjectStore


@pytest.fixture
def settings() -> RuntimeSettings:
    return RuntimeSettings(deepseek_api_key="test-key", store_backend="memory", cache_enabled=False)


@pytest.fixture(params=["sqlite", "memory"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> Iterator[ProjectStore]:
    if request.param == "sqlite":
        backend: ProjectStore = SqliteProjectStore(tmp_path / "store" / "projects.sqlite")
    else:
        backend = InMemoryProjectStore()
    yield backend
    backend.close()
