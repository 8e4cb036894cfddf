from models import db, User, ROLE_STUDENT


def _register(client, **overrides):
    body = {"username": "Maria Silva", "email": "maria@example.com",
            "password": "secret1", "confirm_password": "secret1"}
    body.update(overrides)
    return client.post("/api/users/register", json=body)


def test_register_creates_student_and_signs_in(app, client):
    resp = _register(client, email="  Maria@Example.com ")
    assert resp.status_code == 201
    data = resp.get_json()
    assert data["ok"] is True
    assert data["user"]["role"] == ROLE_STUDENT
    assert data["csrf"]

    with app.app_context():
        user = User.query.filter_by(email="maria@example.com").one()
        assert len(user.registration) == 8 and user.registration.isdigit()
        assert user.password_hash != "secret1"

    session_resp = client.get("/api/session")
    assert session_resp.status_code == 200
    assert session_resp.get_json()["user"]["name"] == "Maria Silva"


def test_register_validation_messages(client):
    assert _register(client, username="Al").get_json()["error"] == "Name must be between 3 and 50 characters."
    assert _register(client, email="not-an-email").get_json()["error"] == "Invalid email."
    resp = _register(client, password="123", confirm_password="123")
    assert resp.status_code == 422
    assert _register(client, confirm_password="other1").get_json()["error"] == "Passwords must match."


def test_register_duplicate_email(client):
    assert _register(client).status_code == 201
    resp = _register(client.application.test_client())
    assert resp.status_code == 422
    assert resp.get_json()["error"] == "Email already exists."


def test_login_errors(seed, client):
    seed.user(email="ana@example.com")
    seed.user(email="off@example.com", status=0)

    assert client.post("/api/login", json={"email": "ghost@example.com", "password": "secret1"}).status_code == 404
    assert client.post("/api/login", json={"email": "ana@example.com", "password": "wrong12"}).status_code == 422
    assert client.post("/api/login", json={"email": "off@example.com", "password": "secret1"}).status_code == 403


def test_login_updates_last_login(app, seed, login):
    uid = seed.user(email="ana@example.com")
    login("ana@example.com")
    with app.app_context():
        assert db.session.get(User, uid).last_login is not None


def test_logout_clears_session(seed, login):
    seed.user(email="ana@example.com")
    c = login("ana@example.com")
    assert c.post("/api/logout").status_code == 200
    assert c.get("/api/session").status_code == 401


def test_session_requires_login(client):
    assert client.get("/api/session").status_code == 401


def test_mutation_without_csrf_header_is_rejected(seed, login):
    uid = seed.user(email="ana@example.com")
    c = login("ana@example.com")
    c.environ_base.pop("HTTP_X_CSRF")
    resp = c.patch(f"/api/users/{uid}", json={"username": "Ana Maria"})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "bad csrf"


def test_edit_own_profile_and_password(app, seed, login):
    uid = seed.user(email="ana@example.com")
    c = login("ana@example.com")

    resp = c.patch(f"/api/users/{uid}", json={"username": "Ana Maria"})
    assert resp.status_code == 200
    assert resp.get_json()["user"]["username"] == "Ana Maria"

    resp = c.patch(f"/api/users/{uid}", json={"password": "newpass1", "confirm_password": "newpass1"})
    assert resp.status_code == 422

    resp = c.patch(f"/api/users/{uid}", json={"current_password": "secret1",
                                              "password": "newpass1", "confirm_password": "newpass1"})
    assert resp.status_code == 200
    with app.app_context():
        assert db.session.get(User, uid).check_password("newpass1")

    assert c.patch(f"/api/users/{uid}", json={}).status_code == 400


def test_edit_other_user_forbidden_unless_admin(seed, login):
    seed.user(email="ana@example.com")
    other = seed.user(email="bob@example.com")
    seed.user(role="admin", email="root@example.com")

    assert login("ana@example.com").patch(f"/api/users/{other}", json={"username": "Bobby"}).status_code == 403
    assert login("root@example.com").patch(f"/api/users/{other}", json={"username": "Bobby"}).status_code == 200


def test_edit_email_must_be_unique(seed, login):
    uid = seed.user(email="ana@example.com")
    seed.user(email="bob@example.com")
    resp = login("ana@example.com").patch(f"/api/users/{uid}", json={"email": "bob@example.com"})
    assert resp.status_code == 422


def test_get_user_hides_password(seed, login):
    uid = seed.user(email="ana@example.com")
    c = login("ana@example.com")
    data = c.get(f"/api/users/{uid}").get_json()["user"]
    assert "password_hash" not in data
    assert c.get("/api/users/9999").status_code == 404
