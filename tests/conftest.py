from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from kiosk_license_server.config import ServiceSettings
from kiosk_license_server.db import db
from kiosk_license_server.keys import KeyMaterial
from kiosk_license_server.server import create_app
from kiosk_license_server.store import LicenseMetadata

ADMIN_TOKEN = "test-admin-token"
START = datetime(2025, 3, 1, 12, 0, 0)


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(scope="session")
def key_material() -> KeyMaterial:
    return KeyMaterial.generate()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(START)


@pytest.fixture
def settings(tmp_path) -> ServiceSettings:
    return ServiceSettings(
        database_uri=f"sqlite:///{tmp_path / 'licenses.db'}",
        keys_dir=str(tmp_path / "keys"),
        admin_token=ADMIN_TOKEN,
        log_level="DEBUG",
    )


@pytest.fixture
def app(settings, key_material, clock):
    app = create_app(settings, key_material=key_material, clock=clock)
    app.config["TESTING"] = True
    yield app
    with app.app_context():
        db.session.remove()
        db.engine.dispose()


@pytest.fixture
def engine(app):
    with app.app_context():
        yield app.extensions["license_engine"]


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_headers():
    return {"X-Admin-Token": ADMIN_TOKEN}


@pytest.fixture
def metadata() -> LicenseMetadata:
    return LicenseMetadata(kiosk_name="Kiosk 7", restaurant="Leicester Square", country="UK", region="London")


@pytest.fixture
def issued_key(engine, metadata) -> str:
    result = engine.issue(metadata, validity_days=365)
    assert result.ok
    return result.value.license_key
