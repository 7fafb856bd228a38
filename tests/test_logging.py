"""Tests for log processors."""

from authkeep.logging import _add_correlation_id, _redact_pii, set_correlation_id


def test_credentials_and_addresses_are_masked():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "login_failed",
            "email": "alice@example.com",
            "refresh_token": "eyJhbGciOiJIUzI1NiJ9.payload.sig",
            "code": "123456",
        },
    )
    assert event["event"] == "login_failed"
    assert event["email"] == "al***om"
    assert event["refresh_token"].startswith("ey***")
    assert event["code"] == "***"


def test_error_codes_stay_readable():
    event = _redact_pii(
        None, "warning", {"event": "service_error", "error_code": "unauthorized", "status_code": 401}
    )
    assert event["error_code"] == "unauthorized"
    assert event["status_code"] == 401


def test_correlation_id_added():
    cid = set_correlation_id("req-123")
    assert _add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == cid
