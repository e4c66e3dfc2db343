"""Shared fixtures. Environment is pointed at a scratch directory before import."""

import os
import tempfile

os.environ["WATERMETER_DATA_DIR"] = tempfile.mkdtemp()
os.environ["WATERMETER_DB_PATH"] = os.path.join(os.environ["WATERMETER_DATA_DIR"], "test.db")
os.environ["WATERMETER_MQTT_ENABLED"] = "false"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlmodel import Session, SQLModel  # noqa: E402

from watermeter.config import settings  # noqa: E402
from watermeter.database import engine as app_engine, init_db, make_engine  # noqa: E402
from watermeter.main import app  # noqa: E402
from watermeter.models.device import Device  # noqa: E402
from watermeter.models.user import User  # noqa: E402
from watermeter.services.locks import KeyedLocks  # noqa: E402
from watermeter.services.settlement import SettlementEngine  # noqa: E402
from watermeter.utils.security import hash_password  # noqa: E402


# --- Settlement core on a throwaway database ---

@pytest.fixture
def db(tmp_path):
    """A fresh file-backed database, so several threads can share it."""
    engine = make_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def settlement(db):
    return SettlementEngine(db, locks=KeyedLocks(), max_retries=10)


@pytest.fixture
def owner(db):
    with Session(db) as session:
        user = User(email="owner@example.com", name="Owner", password_hash=hash_password("secret1"))
        session.add(user)
        session.commit()
        session.refresh(user)
        return user


@pytest.fixture
def make_device(db, owner):
    def _make(device_key: str = "D1", is_active: bool = True) -> Device:
        with Session(db) as session:
            device = Device(device_key=device_key, user_id=owner.id, is_active=is_active)
            session.add(device)
            session.commit()
            session.refresh(device)
            return device

    return _make


# --- Full application ---

class Api:
    """Thin helpers over the test client for the common auth flows."""

    prefix = "/api/v1"

    def __init__(self, client: TestClient):
        self.client = client

    def register(self, email: str, password: str = "secret1", name: str = "") -> dict:
        r = self.client.post(
            f"{self.prefix}/auth/register",
            json={"email": email, "password": password, "name": name},
        )
        assert r.status_code == 201, f"register failed: {r.status_code} {r.text}"
        return r.json()["data"]

    def login(self, email: str, password: str = "secret1") -> dict:
        r = self.client.post(f"{self.prefix}/auth/login", json={"email": email, "password": password})
        assert r.status_code == 200, f"login failed: {r.status_code} {r.text}"
        return {"Authorization": f"Bearer {r.json()['data']['access_token']}"}

    def user_with_role(self, admin_headers: dict, email: str, role: str) -> tuple[dict, dict]:
        user = self.register(email)
        r = self.client.patch(
            f"{self.prefix}/users/{user['id']}/role", json={"role": role}, headers=admin_headers
        )
        assert r.status_code == 200, f"set role failed: {r.status_code} {r.text}"
        return user, self.login(email)

    def create_device(self, headers: dict, device_key: str, **extra) -> dict:
        r = self.client.post(
            f"{self.prefix}/devices", json={"device_key": device_key, **extra}, headers=headers
        )
        assert r.status_code == 201, f"create device failed: {r.status_code} {r.text}"
        return r.json()["data"]

    def issue_token(self, headers: dict, device_id: str, amount) -> dict:
        r = self.client.post(
            f"{self.prefix}/tokens", json={"device_id": device_id, "amount": amount}, headers=headers
        )
        assert r.status_code == 201, f"issue token failed: {r.status_code} {r.text}"
        return r.json()["data"]


@pytest.fixture
def client():
    """The application against an emptied database."""
    SQLModel.metadata.drop_all(app_engine)
    init_db()
    with TestClient(app) as c:
        yield c


@pytest.fixture
def api(client):
    return Api(client)


@pytest.fixture
def admin_headers(api):
    # First account on a fresh server becomes the admin
    api.register("admin@example.com", name="Admin")
    return api.login("admin@example.com")


@pytest.fixture
def api_key(client, admin_headers):
    r = client.post("/api/v1/api-keys", json={"name": "meter fleet"}, headers=admin_headers)
    assert r.status_code == 201, r.text
    return {"X-API-Key": r.json()["data"]["key"]}


@pytest.fixture
def open_device_api(monkeypatch):
    """Device endpoints without the API key gate."""
    monkeypatch.setattr(settings, "device_api_key_required", False)
