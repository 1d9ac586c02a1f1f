import pytest
from werkzeug.security import generate_password_hash

from app.licensing import create_app
from app.licensing.db import session_scope
from app.licensing.models import Base, Permission, Role, User


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("LOCAL_STORAGE_ROOT", str(tmp_path / "storage"))
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    app.extensions["licensing_engine"].bootstrap()

    with session_scope(app) as s:
        p = Permission(key="refrigerants.view", name="Refrigerants: view")
        r = Role(key="admin", name="Administrator")
        r.permissions.append(p)
        u = User(email="admin@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        u.roles.append(r)
        s.add_all([p, r, u])

    return app.test_client()


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True
    assert client.get("/healthz").data == b"ok"


def test_login_and_catalog_access(client):
    # Anonymous should be rejected
    r = client.get("/api/refrigerants")
    assert r.status_code == 401

    r = client.post("/auth/login", json={"email": "admin@example.com", "password": "wrong"})
    assert r.status_code == 401

    r = client.post("/auth/login", json={"email": "admin@example.com", "password": "pw"})
    assert r.status_code == 200
    assert r.json["roles"] == ["admin"]

    r = client.get("/api/refrigerants")
    assert r.status_code == 200
    codes = [x["code"] for x in r.json["refrigerants"]]
    assert "R-134a" in codes and "R-410A" in codes

    r = client.get("/api/refrigerants?restricted=1")
    assert {x["code"] for x in r.json["refrigerants"]} == {"R-12", "R-22"}

    client.post("/auth/logout")
    assert client.get("/api/refrigerants").status_code == 401


def test_missing_permission_is_forbidden(client):
    client.post("/auth/login", json={"email": "admin@example.com", "password": "pw"})
    r = client.get("/api/counters")
    assert r.status_code == 403


def test_production_guardrails(tmp_path, monkeypatch):
    monkeypatch.setenv("ENV", "production")
    monkeypatch.setenv("SECRET_KEY", "change-me")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'prod.db'}")
    with pytest.raises(RuntimeError):
        create_app()


def test_unknown_quota_policy_refused(tmp_path, monkeypatch):
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("QUOTA_OVER_LIMIT_POLICY", "warn")
    with pytest.raises(RuntimeError):
        create_app()
