"""Shared fixtures: a fresh app + SQLite DB per test, seeded with roles, categories and users."""
from datetime import date

import pytest
from werkzeug.security import generate_password_hash

from app.laft import auth as auth_module
from app.laft import create_app
from app.laft.db import session_scope
from app.laft.models import Base, Role, User
from scripts.init_db import seed

PASSWORD = "password123"
CSRF = "test-csrf-token"

USERS = {
    "owner@example.com": ("user", "Olivia Owner"),
    "alice@example.com": ("user", "Alice Claimer"),
    "bob@example.com": ("user", "Bob Claimer"),
    "guard@example.com": ("security", "Sam Security"),
}


@pytest.fixture(autouse=True)
def _reset_login_rate_limit():
    auth_module._login_attempts.clear()
    yield
    auth_module._login_attempts.clear()


@pytest.fixture()
def app(tmp_path, monkeypatch):
    # LocalStorage writes under ./storage
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY", "ITEMS_PER_PAGE"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    app.config["TESTING"] = True

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        roles = seed(s, admin_email="admin@example.com", admin_password=PASSWORD)
        for email, (role_key, full_name) in USERS.items():
            u = User(email=email, password_hash=generate_password_hash(PASSWORD), full_name=full_name, is_active=True)
            u.roles.append(roles[role_key])
            s.add(u)

    return app


@pytest.fixture()
def client(app):
    c = app.test_client()
    with c.session_transaction() as sess:
        sess["csrf_token"] = CSRF
    return c


def login(client, email: str, password: str = PASSWORD):
    return client.post("/auth/login", data={"email": email, "password": password}, follow_redirects=False)


def post(client, url: str, data: dict | None = None, **kwargs):
    """POST with the session CSRF token included."""
    payload = dict(data or {})
    payload.setdefault("csrf_token", CSRF)
    return client.post(url, data=payload, **kwargs)


def user_id(app, email: str) -> int:
    with session_scope(app) as s:
        return s.query(User).filter(User.email == email).one().id


def add_user(s, email: str, role_key: str = "user", full_name: str | None = "Test User", *, is_active: bool = True) -> User:
    role = s.query(Role).filter(Role.key == role_key).one()
    u = User(email=email, password_hash=generate_password_hash(PASSWORD), full_name=full_name, is_active=is_active)
    u.roles.append(role)
    s.add(u)
    s.flush()
    return u


def item_payload(**overrides) -> dict:
    payload = {
        "status": "lost",
        "title": "Blue backpack",
        "description": "Navy blue backpack with a laptop sleeve and a keychain.",
        "category": "accessories",
        "location_description": "Library second floor",
        "date_lost_or_found": date.today().isoformat(),
        "lat": "",
        "lng": "",
    }
    payload.update(overrides)
    return payload


def make_item(app, owner_email: str, **overrides) -> int:
    """Create an item through the service layer and return its id."""
    from app.laft.modules.items.service import create_item

    with app.app_context(), session_scope(app) as s:
        owner = s.query(User).filter(User.email == owner_email).one()
        item = create_item(s, item_payload(**overrides), owner)
        s.flush()
        return item.id
