"""Shared fixtures: a Flask app on a throwaway sqlite file and a bridge that
lets the device client talk to it through requests.post."""

import sys
from pathlib import Path
from urllib.parse import urlsplit

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from foodzone_license_server.db import db  # noqa: E402
from foodzone_license_server.server import create_app  # noqa: E402

ADMIN = {"username": "admin", "password": "s3cret"}


@pytest.fixture()
def app(tmp_path: Path):
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'licenses.db'}",
        "ADMIN_USERNAME": ADMIN["username"],
        "ADMIN_PASSWORD": ADMIN["password"],
    })
    yield app
    with app.app_context():
        db.session.remove()
        db.engine.dispose()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def admin_headers():
    return dict(ADMIN)


@pytest.fixture()
def service(app):
    with app.app_context():
        yield app.extensions["license_service"]


@pytest.fixture()
def store(app):
    with app.app_context():
        yield app.extensions["license_store"]


class BridgedResponse:
    """Just enough of requests.Response for LicenseManager._post."""

    def __init__(self, flask_response) -> None:
        self.status_code = flask_response.status_code
        self.content = flask_response.get_data()
        self._json = flask_response.get_json(silent=True)

    def json(self):
        if self._json is None:
            raise ValueError("no JSON body")
        return self._json


@pytest.fixture()
def bridge(client):
    """Replacement for requests.post that routes into the Flask test client."""
    calls = []

    def fake_post(url, json=None, timeout=None, **kwargs):
        path = urlsplit(url).path
        calls.append((path, json))
        return BridgedResponse(client.post(path, json=json))

    fake_post.calls = calls
    return fake_post
