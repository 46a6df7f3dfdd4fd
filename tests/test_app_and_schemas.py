import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from sessionguard.api import schemas
from sessionguard.app import _allowed_origins, create_app
from sessionguard.config import Settings

SECRET = "app-test-secret-0123456789abcdefghijklmn"


def test_cors_preflight_and_health(runtime):
    client = TestClient(create_app(runtime))
    response = client.get("/v1/healthz", headers={"Origin": "http://localhost:3000"})

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
    assert "X-Request-ID" in response.headers


def test_allowed_origins_default(tmp_path):
    origins = _allowed_origins(Settings(jwt_secret=SECRET, shared_fs_root=str(tmp_path)))
    assert "http://localhost" in origins


def test_allowed_origins_override(tmp_path):
    settings = Settings(
        jwt_secret=SECRET,
        shared_fs_root=str(tmp_path),
        cors_allow_origins="https://example.com, https://demo.local",
    )
    assert _allowed_origins(settings) == ["https://example.com", "https://demo.local"]


def test_lifespan_builds_and_closes_runtime(monkeypatch, tmp_path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    app = create_app()

    with TestClient(app) as client:
        assert client.get("/v1/healthz").status_code == 200
        assert app.state.runtime.cache.backend == "local"


@pytest.mark.parametrize(
    "email,expected",
    [
        ("User@Example.COM", "user@example.com"),
        ("  spaced@example.com ", "spaced@example.com"),
        ("zero\u200bwidth@example.com", "zerowidth@example.com"),
    ],
)
def test_login_email_normalized(email, expected):
    assert schemas.LoginRequest(email=email, password="x").email == expected


@pytest.mark.parametrize(
    "email", ["no-at-sign", "a@b", "bad local@example.com", "user@-bad-.com", "x" * 65 + "@example.com"]
)
def test_login_email_rejected(email):
    with pytest.raises(ValidationError):
        schemas.LoginRequest(email=email, password="x")


def test_refresh_request_requires_token():
    with pytest.raises(ValidationError):
        schemas.TokenRefreshRequest(refresh_token="")


def test_logout_body_optional():
    assert schemas.LogoutRequest().refresh_token is None
