import pytest

from kibble.storage import init_db


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    monkeypatch.delenv("KIBBLE_DB_URL", raising=False)
    return str(tmp_path / "kibble.db")


@pytest.fixture
def conn(db_path):
    connection = init_db(db_path)
    try:
        yield connection
    finally:
        connection.close()
