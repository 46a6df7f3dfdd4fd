from sessionguard.logging import (
    _redact_pii,
    correlation_id_var,
    get_correlation_id,
    is_sensitive_key,
    set_correlation_id,
)


def test_credential_fields_are_masked():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "token_revoked",
            "token_hash": "0123456789abcdef",
            "email": "someone@example.com",
            "jwt_secret": "supersecretvalue",
        },
    )

    assert event["token_hash"] == "01***ef"
    assert event["email"] == "so***om"
    assert event["jwt_secret"] == "su***ue"
    assert event["event"] == "token_revoked"


def test_token_type_and_ids_stay_readable():
    event = _redact_pii(
        None,
        "info",
        {"token_type": "refresh", "session_id": "a" * 64, "identity_id": "u-1234"},
    )

    assert event == {"token_type": "refresh", "session_id": "a" * 64, "identity_id": "u-1234"}
    assert not is_sensitive_key("token_type")
    assert is_sensitive_key("Access_Token")


def test_nested_details_are_masked():
    event = _redact_pii(
        None,
        "warning",
        {"detail": {"email": "dup@example.com", "identity_id": "i1"}, "count": 3},
    )

    assert event["detail"] == {"email": "du***om", "identity_id": "i1"}
    assert event["count"] == 3


def test_short_values_left_alone():
    assert _redact_pii(None, "info", {"password": "abc"}) == {"password": "abc"}


def test_correlation_id_generated_when_missing():
    cid = set_correlation_id()

    assert get_correlation_id() == cid
    assert set_correlation_id("req-1") == "req-1"
    assert get_correlation_id() == "req-1"
    correlation_id_var.set(None)
