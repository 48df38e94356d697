from datetime import timedelta

from sqlmodel import select

from models import AdminUser, utcnow

CREDS = {"username": "warden", "password": "s3cret-pass"}
WRONG = {"username": "warden", "password": "wrong-pass"}


def status(client):
    response = client.get("/auth/status")
    assert response.status_code == 200
    return response.json()


def test_fresh_install_has_no_admin(client):
    assert status(client) == {
        "has_admin_account": False,
        "is_authenticated": False,
        "username": None,
    }


def test_setup_creates_single_admin(client, session):
    assert client.post("/auth/setup", json=CREDS).status_code == 201
    assert status(client)["has_admin_account"] is True
    assert status(client)["is_authenticated"] is False

    again = client.post("/auth/setup", json={"username": "other", "password": "another-pass"})
    assert again.status_code == 409

    admin = session.exec(select(AdminUser)).one()
    assert admin.password_hash != CREDS["password"]


def test_setup_validates_credentials(client):
    assert client.post("/auth/setup", json={"username": "ab", "password": "s3cret-pass"}).status_code == 422
    assert client.post("/auth/setup", json={"username": "warden", "password": "123"}).status_code == 422


def test_login_and_logout(client):
    client.post("/auth/setup", json=CREDS)

    response = client.post("/auth/login", json=CREDS)
    assert response.status_code == 200
    assert response.json() == {"ok": True, "username": "warden"}
    assert status(client) == {
        "has_admin_account": True,
        "is_authenticated": True,
        "username": "warden",
    }

    assert client.post("/auth/logout").status_code == 200
    after = status(client)
    assert after["is_authenticated"] is False
    assert after["has_admin_account"] is True


def test_bad_credentials(client):
    client.post("/auth/setup", json=CREDS)
    assert client.post("/auth/login", json=WRONG).status_code == 401
    assert client.post("/auth/login", json={"username": "nobody", "password": "whatever"}).status_code == 401
    assert status(client)["is_authenticated"] is False


def test_forged_session_cookie_is_ignored(client):
    client.post("/auth/setup", json=CREDS)
    client.cookies.set("hostelpro_session", "not-a-jwt")
    assert status(client)["is_authenticated"] is False


def test_lockout_after_three_failures(client, session):
    client.post("/auth/setup", json=CREDS)

    for _ in range(3):
        assert client.post("/auth/login", json=WRONG).status_code == 401

    locked = client.post("/auth/login", json=CREDS)
    assert locked.status_code == 423

    admin = session.exec(select(AdminUser)).one()
    admin.locked_until = utcnow() - timedelta(seconds=1)
    session.add(admin)
    session.commit()

    assert client.post("/auth/login", json=CREDS).status_code == 200


def test_success_resets_failure_count(client, session):
    client.post("/auth/setup", json=CREDS)

    for _ in range(2):
        client.post("/auth/login", json=WRONG)
    assert client.post("/auth/login", json=CREDS).status_code == 200
    for _ in range(2):
        client.post("/auth/login", json=WRONG)

    assert client.post("/auth/login", json=CREDS).status_code == 200
    admin = session.exec(select(AdminUser)).one()
    assert admin.failed_attempts == 0
    assert admin.locked_until is None


def test_logout_invalidates_issued_session(client):
    client.post("/auth/setup", json=CREDS)
    client.post("/auth/login", json=CREDS)
    stolen = client.cookies.get("hostelpro_session")
    assert stolen

    client.post("/auth/logout")
    client.cookies.clear()
    client.cookies.set("hostelpro_session", stolen)

    assert status(client)["is_authenticated"] is False

    client.cookies.clear()
    client.post("/auth/login", json=CREDS)
    assert status(client)["is_authenticated"] is True
