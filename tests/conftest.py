import pytest

from app.campsite import create_app
from app.campsite.db import session_scope
from app.campsite.identity import register
from app.campsite.models import Base
from app.campsite.storage import StorageError, StoredAsset


class FakeAssetStore:
    def __init__(self, fail_deletes: bool = False):
        self.uploaded: dict[str, bytes] = {}
        self.delete_calls: list[str] = []
        self.fail_deletes = fail_deletes

    def upload(self, key, data, *, content_type=None):
        self.uploaded[key] = data
        return StoredAsset(url=f"https://assets.test/{key}", handle=key)

    def delete(self, handle):
        self.delete_calls.append(handle)
        if self.fail_deletes:
            raise StorageError("asset store unavailable")
        self.uploaded.pop(handle, None)


class FakeGeocoder:
    def __init__(self, point=(-105.27, 40.01)):
        self.point = point
        self.queries: list[str] = []

    def lookup(self, query):
        self.queries.append(query)
        return self.point


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("GEOCODER", "none")
    monkeypatch.setenv("CSRF_ENABLED", "0")
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    app.extensions["asset_store"] = FakeAssetStore()
    app.extensions["geocoder"] = FakeGeocoder()
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def store(app):
    return app.extensions["asset_store"]


def make_user(app, email, password="password"):
    with session_scope(app) as s:
        user = register(s, email, password)
        return user.id


def signed_in_client(app, email, password="password"):
    """Registers `email` through the HTTP form and returns a client holding its session."""
    c = app.test_client()
    r = c.post("/register", data={"email": email, "password": password})
    assert r.status_code == 302
    return c


def create_listing_via_http(c, title="Auth Test Camp", location="Testville", price="25"):
    r = c.post(
        "/listings",
        data={"title": title, "location": location, "price": price, "description": "Created by test"},
    )
    assert r.status_code == 302, r.data
    return int(r.headers["Location"].rstrip("/").rsplit("/", 1)[-1])
