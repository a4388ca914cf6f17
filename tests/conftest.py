import pytest
from fastapi.testclient import TestClient

from config import get_settings
from contact_store import ContactStore
from db_setup import get_db_connection, init_db


@pytest.fixture(autouse=True)
def _isolated_settings(tmp_path, monkeypatch):
    monkeypatch.setenv("BITESPEED_DATABASE_PATH", str(tmp_path / "contacts.db"))
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def db_path(tmp_path):
    path = str(tmp_path / "contacts.db")
    init_db(path)
    return path


@pytest.fixture()
def store(db_path):
    return ContactStore(db_path)


@pytest.fixture()
def client(store):
    from main import app, get_store

    app.dependency_overrides[get_store] = lambda: store
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


@pytest.fixture()
def contact_rows(db_path):
    """Return a callable listing every stored row, soft-deleted ones included."""

    def _rows():
        conn = get_db_connection(db_path)
        try:
            rows = conn.execute("SELECT * FROM Contact ORDER BY id").fetchall()
        finally:
            conn.close()
        return [dict(row) for row in rows]

    return _rows
