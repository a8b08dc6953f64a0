from conftest import PASSWORD, login, post


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True

    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_listing_is_public(client):
    r = client.get("/")
    assert r.status_code == 200
    assert b"Showing 0 of 0 items" in r.data


def test_login_and_admin_access(client):
    # Anonymous is redirected to login
    r = client.get("/admin/")
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]

    r = login(client, "admin@example.com")
    assert r.status_code == 302

    r = client.get("/admin/")
    assert r.status_code == 200
    assert b"Admin dashboard" in r.data


def test_regular_user_forbidden_from_admin(client):
    login(client, "alice@example.com")
    r = client.get("/admin/")
    assert r.status_code == 403


def test_invalid_login(client):
    r = client.post("/auth/login", data={"email": "alice@example.com", "password": "nope"}, follow_redirects=True)
    assert b"Invalid credentials." in r.data


def test_login_rate_limited_after_five_failures(client):
    for _ in range(5):
        client.post("/auth/login", data={"email": "alice@example.com", "password": "nope"})
    r = client.post("/auth/login", data={"email": "alice@example.com", "password": PASSWORD}, follow_redirects=True)
    assert b"Too many login attempts" in r.data


def test_login_next_redirect_only_local(client):
    r = client.post(
        "/auth/login",
        data={"email": "alice@example.com", "password": PASSWORD, "next": "//evil.example.com/"},
    )
    assert r.status_code == 302
    assert "evil.example.com" not in r.headers["Location"]


def test_post_without_csrf_token_rejected(client):
    login(client, "alice@example.com")
    r = client.post("/notifications/read-all", data={})
    assert r.status_code == 400
    assert b"CSRF token missing or invalid." in r.data


def test_register_then_profile_completion_guard(client):
    r = client.post(
        "/auth/register",
        data={"email": "New.Student@Example.com", "password": "longenough", "password_confirm": "longenough"},
    )
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/profile/complete")

    # Every other page bounces to completion until a name is set
    r = client.get("/")
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/profile/complete")

    r = post(client, "/profile/complete", {"full_name": "New Student"})
    assert r.status_code == 302

    r = client.get("/")
    assert r.status_code == 200


def test_register_validation(client):
    r = client.post(
        "/auth/register",
        data={"email": "alice@example.com", "password": "short", "password_confirm": "short"},
    )
    assert r.status_code == 400
    assert b"An account with this email already exists." in r.data
    assert b"Password must be at least 8 characters." in r.data

    r = client.post(
        "/auth/register",
        data={"email": "not-an-email", "password": "longenough", "password_confirm": "different1"},
    )
    assert b"Invalid email format." in r.data
    assert b"Passwords do not match." in r.data


def test_logout(client):
    login(client, "alice@example.com")
    r = client.get("/auth/logout")
    assert r.status_code == 302
    r = client.get("/claims/mine")
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]


def test_unknown_item_404(client):
    r = client.get("/items/9999")
    assert r.status_code == 404
