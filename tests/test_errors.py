"""Unit tests for auth/errors.py: status codes and redaction of sensitive fields."""

from auth.errors import REDACTED, ApiError, ConflictError, NotFoundError, UnauthorizedError, redact


def test_status_codes_and_default_messages():
    assert UnauthorizedError().status_code == 401
    assert ConflictError().status_code == 409
    assert NotFoundError().message == "Resource not found"
    assert ApiError().status_code == 500


def test_redact_nested():
    details = {
        "email": "a@hattbooks.com",
        "password": "Password1",
        "nested": {"refreshToken": "abc", "items": [{"newPassword": "x"}]},
    }
    cleaned = redact(details)
    assert cleaned["email"] == "a@hattbooks.com"
    assert cleaned["password"] == REDACTED
    assert cleaned["nested"]["refreshToken"] == REDACTED
    assert cleaned["nested"]["items"][0]["newPassword"] == REDACTED
    assert details["password"] == "Password1"


def test_error_details_are_redacted():
    err = ConflictError("Email already in use", {"field": "email", "password": "Password1"})
    assert err.details == {"field": "email", "password": REDACTED}
