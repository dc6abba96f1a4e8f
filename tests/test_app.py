import json

import pytest

from lightsentry.app import create_app
from lightsentry.db import AppState, open_database
from lightsentry.projects import list_projects

EMAIL = "user@example.com"


@pytest.fixture
def state(tmp_path):
    return AppState(database=str(tmp_path / "app.db"), registration_enabled=True)


@pytest.fixture
def client(state):
    app = create_app(state)
    app.config.update(TESTING=True)
    return app.test_client()


def _register(client):
    password = "password"
    return client.post("/register", data={"email": EMAIL, "password": password})


def _project(client, state):
    client.post("/projects", data={"name": "web"})
    conn = open_database(state.database)
    try:
        return list_projects(conn)[0]
    finally:
        conn.close()


def test_health(client):
    assert client.get("/health").data == b"ok"


def test_favicon_is_svg(client):
    response = client.get("/favicon.svg")
    assert response.mimetype == "image/svg+xml"
    assert response.headers["Cache-Control"] == "public, max-age=86400"


def test_root_redirects_to_projects(client):
    response = client.get("/")
    assert response.status_code == 303
    assert response.headers["Location"].endswith("/projects")


def test_projects_require_login(client):
    response = client.get("/projects")
    assert response.headers["Location"].endswith("/login")


def test_register_disabled_redirects_to_login(tmp_path):
    app = create_app(AppState(database=str(tmp_path / "closed.db")))
    response = app.test_client().get("/register")
    assert response.headers["Location"].endswith("/login")


def test_register_signs_in(client):
    response = _register(client)
    assert response.headers["Location"].endswith("/projects")
    assert client.get("/projects").status_code == 200


def test_login_with_wrong_password_shows_error(client):
    _register(client)
    client.post("/logout")
    wrong_password = "placeholder"
    response = client.post("/login", data={"email": EMAIL, "password": wrong_password})
    assert b"Invalid credentials" in response.data


def test_logout_ends_session(client):
    _register(client)
    client.post("/logout")
    assert client.get("/projects").headers["Location"].endswith("/login")


def test_store_event_then_listed_as_issue(client, state):
    _register(client)
    project = _project(client, state)
    response = client.post(
        f"/api/{project.id}/store/?sentry_key={project.dsn_public}",
        data=json.dumps({"event_id": "abc123", "message": "something broke"}),
        content_type="application/json",
    )
    assert response.get_json() == {"id": "abc123"}
    page = client.get(f"/{project.id}/issues")
    assert b"something broke" in page.data


def test_store_without_credentials_is_unauthorized(client, state):
    _register(client)
    project = _project(client, state)
    response = client.post(f"/api/{project.id}/store/", data=b"{}")
    assert response.status_code == 401


def test_store_with_invalid_project_path_is_bad_request(client):
    response = client.post("/api/not-a-uuid/store/", data=b"{}")
    assert response.status_code == 400


def test_envelope_uses_dsn_from_header(client, state):
    _register(client)
    project = _project(client, state)
    body = "\n".join(
        [
            json.dumps({"event_id": "e1", "dsn": f"https://{project.dsn_public}@host/1"}),
            json.dumps({"type": "event"}),
            json.dumps({"message": "boom"}),
        ]
    )
    response = client.post(f"/api/{project.id}/envelope/", data=body.encode())
    assert response.get_json() == {"id": "e1"}
    assert b"boom" in client.get(f"/{project.id}/issues").data


def test_unknown_issue_is_not_found(client, state):
    _register(client)
    project = _project(client, state)
    response = client.get(f"/{project.id}/issues/missing")
    assert response.status_code == 404
    assert response.data == b"Issue not found"


def test_log_stream_requires_login(client):
    response = client.get("/11111111-1111-4111-8111-111111111111/logs/stream")
    assert response.status_code == 401


def test_logs_page_rejects_non_numeric_page(client, state):
    _register(client)
    project = _project(client, state)
    assert client.get(f"/{project.id}/logs?page=x").status_code == 400
    assert client.get(f"/{project.id}/logs?page=2").status_code == 200