import sys
from pathlib import Path

import pytest

# Ensure `bizdir` package is importable when running pytest from the repo root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from bizdir.core import config  # noqa: E402
from bizdir.core.store import MemoryDocumentStore  # noqa: E402


@pytest.fixture(autouse=True)
def clean_settings():
    config.get_settings.cache_clear()
    yield
    config.get_settings.cache_clear()


@pytest.fixture
def store():
    return MemoryDocumentStore()
