from __future__ import annotations

import json
import runpy
from pathlib import Path
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from db import engine_connect_args

VENUE = "venue-1"
ADMIN = "admin-1"


def _api(client, action: str, data: dict | None = None):
    return client.post(
        "/api",
        data=json.dumps({"action": action, "data": data or {}}),
        content_type="text/plain; charset=utf-8",
        headers={"X-Actor-Id": ADMIN, "X-Venue-Id": VENUE},
    )


def test_statement_timeout_per_driver():
    assert engine_connect_args("sqlite:///./x.db", 15) == {"check_same_thread": False, "timeout": 15.0}
    assert engine_connect_args("postgresql+psycopg2://u@h/db", 2.5) == {"options": "-c statement_timeout=2500"}
    assert engine_connect_args("postgresql://u@h/db") == {}
    assert engine_connect_args("mysql+pymysql://u@h/db", 5) == {}


def test_database_timeout_maps_to_timeout_envelope(app_client):
    _app, client = app_client
    cancelled = OperationalError("SELECT 1", {}, Exception("canceling statement due to statement timeout"))
    with patch("server.dispatch", side_effect=cancelled):
        res = _api(client, "TEMPLATE_LIST")
    assert res.status_code == 504
    error = res.get_json()["error"]
    assert error["code"] == "TIMEOUT"
    assert error["details"] == {"subStep": "template_list"}


def test_other_database_errors_stay_internal(app_client):
    _app, client = app_client
    broken = OperationalError("SELECT 1", {}, Exception("disk I/O error"))
    with patch("server.dispatch", side_effect=broken):
        res = _api(client, "TEMPLATE_LIST")
    assert res.status_code == 500
    assert res.get_json()["error"]["code"] == "INTERNAL"


def test_gunicorn_worker_outlives_request_timeout(monkeypatch):
    monkeypatch.setenv("REQUEST_TIMEOUT_SECONDS", "90")
    monkeypatch.delenv("GUNICORN_TIMEOUT", raising=False)
    conf = runpy.run_path(str(Path(__file__).resolve().parents[1] / "gunicorn.conf.py"))
    assert conf["timeout"] == 105
    assert conf["wsgi_app"] == "server:create_app()"
    assert conf["worker_class"] == "gthread"
