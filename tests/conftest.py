import pytest

from chatrelay.storage import ProjectStore


@pytest.fixture
def store(tmp_path):
    s = ProjectStore(tmp_path / "store.db")
    s.init()
    yield s
    s.close()
