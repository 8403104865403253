import sys
from pathlib import Path

import pytest

# Add src to path for imports to work with src/ layout
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


@pytest.fixture
def tmp_db(tmp_path):
    """Provide a temporary SQLite database path."""
    return str(tmp_path / "test_memory.db")


@pytest.fixture
def project_dir(tmp_path):
    """An empty project checkout."""
    path = tmp_path / "project"
    path.mkdir()
    return path


@pytest.fixture
def hook_env(tmp_path, tmp_db):
    """Environment that keeps hooks away from the real home directory."""
    return {
        "PROJECT_MEMORY_DB_PATH": tmp_db,
        "PROJECT_MEMORY_CONFIG": str(tmp_path / "no-global-config.yaml"),
        "PROJECT_MEMORY_DISABLE_FLAG": str(tmp_path / "disabled"),
    }


@pytest.fixture
async def store(tmp_db):
    from project_memory.storage import MemoryStore

    s = MemoryStore(tmp_db)
    await s.initialize()
    return s


@pytest.fixture
def reader(store, tmp_db):
    from project_memory.search import MemoryReader

    return MemoryReader(tmp_db)
