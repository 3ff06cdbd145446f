from authcore.logging import (
    _add_correlation_id,
    _redact_pii,
    get_correlation_id,
    hash_for_log,
    set_correlation_id,
)


def test_secrets_and_emails_are_redacted():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "login_failed",
            "password": "Correct-Horse-9-Battery",
            "refresh_token": "eyJhbGciOiJIUzI1NiJ9.abc.def",
            "email": "ada@example.com",
            "user_id": "u-1",
        },
    )

    assert "Correct-Horse" not in event["password"]
    assert "***" in event["refresh_token"]
    assert event["email"] != "ada@example.com"
    assert event["user_id"] == "u-1"


def test_identifier_keys_are_not_redacted():
    event = _redact_pii(
        None,
        "info",
        {"token_type": "access", "token_id": "jti-123456", "email_hash": "abcdef0123456789"},
    )
    assert event == {
        "token_type": "access",
        "token_id": "jti-123456",
        "email_hash": "abcdef0123456789",
    }


def test_hash_for_log_is_stable_and_case_insensitive():
    assert hash_for_log("Ada@Example.com") == hash_for_log(" ada@example.com")
    assert len(hash_for_log("ada@example.com")) == 16
    assert hash_for_log(None) is None


def test_correlation_id_is_attached():
    cid = set_correlation_id("req-42")
    assert get_correlation_id() == cid == "req-42"
    assert _add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == "req-42"


def test_correlation_id_generated_when_missing():
    cid = set_correlation_id()
    assert cid and cid != "req-42"
