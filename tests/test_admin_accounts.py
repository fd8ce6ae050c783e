import pytest
from sqlalchemy import create_engine
from werkzeug.security import check_password_hash, generate_password_hash

from app.crm import auth, create_app
from app.crm.db import session_scope
from app.crm.models import Base, Role, User
from scripts import init_db


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    auth._login_attempts.clear()

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        r = Role(key="admin", name="Administrator")
        u = User(username="admin", password_hash=generate_password_hash("pw"), is_active=True)
        u.roles.append(r)
        s.add_all([r, u])
    return app


@pytest.fixture()
def client(app):
    c = app.test_client()
    assert c.post("/auth/login", json={"username": "admin", "password": "pw"}).status_code == 200
    return c


def test_create_user_and_login_as_user(app, client):
    r = client.post("/admin/accounts", json={"username": "Dana", "password": "longenough", "role": "user"})
    assert r.status_code == 201
    assert r.json["username"] == "dana"
    assert r.json["role"] == "user"

    other = app.test_client()
    assert other.post("/auth/login", json={"username": "dana", "password": "longenough"}).status_code == 200
    # Plain users cannot manage accounts
    assert other.get("/admin/accounts").status_code == 403

    usernames = [u["username"] for u in client.get("/admin/accounts").json]
    assert usernames == ["admin", "dana"]


def test_create_user_validation(client):
    r = client.post("/admin/accounts", json={"username": "x", "password": "short"})
    assert r.status_code == 400
    assert set(r.json["fields"]) == {"username", "password"}

    r = client.post("/admin/accounts", json={"username": "admin", "password": "longenough"})
    assert r.status_code == 400

    r = client.post("/admin/accounts", json={"username": "lee", "password": "longenough", "role": "owner"})
    assert r.status_code == 400


def test_update_user(app, client):
    new_id = client.post("/admin/accounts", json={"username": "lee", "password": "longenough"}).json["id"]

    r = client.patch(f"/admin/accounts/{new_id}", json={"role": "admin", "password": "anotherpass"})
    assert r.status_code == 200
    assert r.json["role"] == "admin"
    with session_scope(app) as s:
        assert check_password_hash(s.get(User, new_id).password_hash, "anotherpass")

    r = client.patch(f"/admin/accounts/{new_id}", json={"is_active": False})
    assert r.json["is_active"] is False

    me = client.get("/auth/me").json
    assert client.patch(f"/admin/accounts/{me['id']}", json={"is_active": False}).status_code == 400
    assert client.patch("/admin/accounts/999", json={}).status_code == 404


def test_audit_log_filters(client):
    client.post("/api/customers", json={"name": "Acme"})
    r = client.get("/admin/audit?action=customer.")
    assert r.status_code == 200
    assert [e["action"] for e in r.json] == ["customer.create"]
    assert r.json[0]["actor"] == "admin"
    assert r.json[0]["metadata"] == {"name": "Acme"}

    assert client.get("/admin/audit?date_from=yesterday").status_code == 400


def test_seed_is_idempotent(tmp_path, monkeypatch):
    db_url = f"sqlite:///{tmp_path/'seed.db'}"
    engine = create_engine(db_url, future=True)
    Base.metadata.create_all(bind=engine)
    engine.dispose()

    monkeypatch.setenv("ADMIN_USERNAME", "Boss")
    monkeypatch.setenv("ADMIN_PASSWORD", "first-password")
    init_db.seed_only(database_url=db_url)
    monkeypatch.setenv("ADMIN_PASSWORD", "second-password")
    init_db.seed_only(database_url=db_url)

    engine = create_engine(db_url, future=True)
    with engine.connect() as conn:
        roles = sorted(r[0] for r in conn.exec_driver_sql("SELECT key FROM roles"))
        users = conn.exec_driver_sql("SELECT username, password_hash FROM users").all()
    engine.dispose()

    assert roles == ["admin", "user"]
    assert len(users) == 1
    assert users[0][0] == "boss"
    assert check_password_hash(users[0][1], "first-password")
