from __future__ import annotations

import pytest

VENUE = "venue-1"
ADMIN = "admin-1"


@pytest.fixture()
def app_client(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'test.db'}")
    monkeypatch.setenv("BOOTSTRAP_ADMINS", f"{VENUE}:{ADMIN}")
    monkeypatch.setenv("COMPLIANCE_CHECK_WORKERS", "1")
    monkeypatch.setenv("REDIS_URL", "")
    monkeypatch.setenv("LOG_LEVEL", "WARNING")

    from cache_layer import cache_clear

    cache_clear()

    import server

    app = server.create_app()
    app.testing = True
    with app.test_client() as client:
        yield app, client
    cache_clear()
