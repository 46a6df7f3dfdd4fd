import pytest

from scripts.bootstrap_admin import bootstrap_admin, validate_password


@pytest.mark.parametrize(
    "password,ok",
    [
        ("SecurePassword123!", True),
        ("alllowercaseletters", False),
        ("Short1!", False),
        ("lowercase123456", False),
        ("lowercase123456!", True),
    ],
)
def test_validate_password(password, ok):
    assert validate_password(password) is ok


async def test_bootstrap_creates_admin_with_token(monkeypatch, tmp_path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

    result = await bootstrap_admin(
        "root@example.com", "SecurePassword123!", issue_token=True
    )

    assert result["status"] == "created"
    assert result["access_token"].count(".") == 2
    assert len(result["session_id"]) == 64


async def test_bootstrap_promotes_existing_identity(monkeypatch, tmp_path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    first = await bootstrap_admin("root@example.com", "SecurePassword123!")

    again = await bootstrap_admin("root@example.com", "SecurePassword123!")

    assert first["status"] == "created"
    assert again["status"] == "already_admin"
    assert again["identity_id"] == first["identity_id"]


async def test_dry_run_changes_nothing(monkeypatch, tmp_path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

    result = await bootstrap_admin("dry@example.com", "SecurePassword123!", dry_run=True)
    assert result["status"] == "dry_run_create"

    result = await bootstrap_admin("dry@example.com", "SecurePassword123!")
    assert result["status"] == "created"
