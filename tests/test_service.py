"""Unit tests for auth/service.py (AuthService) over an in-memory store.

Covers:
- local registration/login, including conflict priority (email before username)
- identical 401 for unknown email and wrong password
- provider mismatch on local login names the provider
- refresh flow: valid, revoked, evicted, wrong purpose
- revoke / revoke-all / change-password session effects
- social registration and login, profile read and partial update
"""

from dataclasses import replace

import pytest

from auth.credentials import verify_password
from auth.errors import BadRequestError, ConflictError, ForbiddenError, NotFoundError, UnauthorizedError
from auth.service import INVALID_CREDENTIALS, INVALID_REFRESH, WELCOME_MESSAGE, RequestContext

PASSWORD = "Password1"


def _register(service, email="reader@hattbooks.com", username="reader", password=PASSWORD):
    return service.register_local(email, username, "Reader", password, context=RequestContext("10.0.0.1", "pytest"))


# ---------------------------------------------------------------------------
# Local registration
# ---------------------------------------------------------------------------


def test_register_local_issues_pair_and_records_session(service, store, issuer):
    result = _register(service)
    assert result.message == WELCOME_MESSAGE
    assert issuer.verify_local(result.access_token).purpose == "access"
    assert issuer.verify_refresh(result.refresh_token).user_id == result.user.id

    stored = store.get_by_id(result.user.id)
    assert stored.hashed_password != PASSWORD
    assert verify_password(PASSWORD, stored.hashed_password)
    assert len(stored.refresh_tokens) == 1
    assert stored.refresh_tokens[0].ip_address == "10.0.0.1"
    assert stored.last_login is not None


def test_register_local_lowercases_identifiers(service):
    result = _register(service, email="Mixed@HattBooks.com", username="MixedCase")
    assert result.user.email == "mixed@hattbooks.com"
    assert result.user.username == "mixedcase"


def test_register_local_missing_fields(service):
    with pytest.raises(BadRequestError) as exc:
        service.register_local("a@hattbooks.com", None, "", PASSWORD)
    assert exc.value.details["missing"] == ["username", "displayName"]


def test_register_local_short_password(service):
    with pytest.raises(BadRequestError):
        _register(service, password="Sh0rt")


def test_duplicate_email_conflict(service):
    _register(service)
    with pytest.raises(ConflictError) as exc:
        _register(service, username="someoneelse")
    assert exc.value.details == {"field": "email"}


def test_duplicate_username_conflict(service):
    _register(service)
    with pytest.raises(ConflictError) as exc:
        _register(service, email="other@hattbooks.com")
    assert exc.value.details == {"field": "username"}


def test_email_conflict_reported_before_username(service):
    _register(service)
    with pytest.raises(ConflictError) as exc:
        _register(service)
    assert exc.value.message == "Email already in use"


# ---------------------------------------------------------------------------
# Local login
# ---------------------------------------------------------------------------


def test_login_local_returns_different_pair(service):
    registered = _register(service)
    logged_in = service.login_local("reader@hattbooks.com", PASSWORD)
    assert logged_in.access_token != registered.access_token
    assert logged_in.refresh_token != registered.refresh_token
    assert logged_in.message == "Welcome back, Reader!"


def test_unknown_email_and_wrong_password_same_message(service):
    _register(service)
    with pytest.raises(UnauthorizedError) as unknown:
        service.login_local("nobody@hattbooks.com", PASSWORD)
    with pytest.raises(UnauthorizedError) as wrong:
        service.login_local("reader@hattbooks.com", "Password2")
    assert unknown.value.message == wrong.value.message == INVALID_CREDENTIALS


def test_login_local_on_social_account_names_provider(service):
    service.register_social("google-oauth2|1", "g@hattbooks.com", "guser", "G User", provider="google")
    with pytest.raises(BadRequestError) as exc:
        service.login_local("g@hattbooks.com", PASSWORD)
    assert "google" in exc.value.message


def test_social_account_has_no_password(service, store):
    result = service.register_social("auth0|nopw", "n@hattbooks.com", "nopw", "No Pw")
    assert verify_password(PASSWORD, store.get_by_id(result.user.id).hashed_password) is False


def test_login_local_deactivated(service, store):
    user = _register(service).user
    store.save_user(replace(store.get_by_id(user.id), is_active=False))
    with pytest.raises(ForbiddenError):
        service.login_local("reader@hattbooks.com", PASSWORD)


# ---------------------------------------------------------------------------
# Refresh and revocation
# ---------------------------------------------------------------------------


def test_refresh_issues_access_token(service, issuer):
    result = _register(service)
    refreshed = service.refresh_access_token(result.refresh_token)
    assert issuer.verify_local(refreshed.access_token).purpose == "access"
    assert refreshed.message == "Access token refreshed successfully"


def test_refresh_does_not_rotate(service):
    result = _register(service)
    service.refresh_access_token(result.refresh_token)
    assert service.refresh_access_token(result.refresh_token).access_token


def test_refresh_with_access_token_rejected(service):
    result = _register(service)
    with pytest.raises(UnauthorizedError) as exc:
        service.refresh_access_token(result.access_token)
    assert exc.value.message == INVALID_REFRESH


def test_refresh_with_revoked_token_rejected(service):
    result = _register(service)
    service.revoke_refresh_token(result.user.id, result.refresh_token)
    with pytest.raises(UnauthorizedError) as exc:
        service.refresh_access_token(result.refresh_token)
    assert exc.value.message == INVALID_REFRESH


def test_refresh_with_evicted_token_rejected(service):
    first = _register(service)
    for _ in range(5):
        service.login_local("reader@hattbooks.com", PASSWORD)
    with pytest.raises(UnauthorizedError):
        service.refresh_access_token(first.refresh_token)


def test_refresh_missing_token(service):
    with pytest.raises(BadRequestError):
        service.refresh_access_token("")


def test_revoke_all_logs_out_everywhere(service):
    first = _register(service)
    second = service.login_local("reader@hattbooks.com", PASSWORD)
    message = service.revoke_all_refresh_tokens(first.user.id)
    assert "all devices" in message
    for token in (first.refresh_token, second.refresh_token):
        with pytest.raises(UnauthorizedError):
            service.refresh_access_token(token)


def test_revoke_only_affects_callers_sessions(service):
    alice = _register(service)
    bob = _register(service, email="bob@hattbooks.com", username="bob")
    service.revoke_refresh_token(alice.user.id, bob.refresh_token)
    assert service.refresh_access_token(bob.refresh_token).access_token


# ---------------------------------------------------------------------------
# Password change
# ---------------------------------------------------------------------------


def test_change_password_revokes_sessions(service):
    result = _register(service)
    service.change_password(result.user.id, PASSWORD, "NewPassword2")

    with pytest.raises(UnauthorizedError):
        service.refresh_access_token(result.refresh_token)
    with pytest.raises(UnauthorizedError):
        service.login_local("reader@hattbooks.com", PASSWORD)
    assert service.login_local("reader@hattbooks.com", "NewPassword2").access_token


def test_change_password_wrong_current(service):
    result = _register(service)
    with pytest.raises(UnauthorizedError):
        service.change_password(result.user.id, "WrongPass1", "NewPassword2")


def test_change_password_social_account(service):
    result = service.register_social("auth0|cp", "cp@hattbooks.com", "cpuser", "CP")
    with pytest.raises(BadRequestError):
        service.change_password(result.user.id, PASSWORD, "NewPassword2")


# ---------------------------------------------------------------------------
# External identity
# ---------------------------------------------------------------------------


def test_register_social_defaults_to_auth0(service, store):
    result = service.register_social("auth0|abc", "Ext@HattBooks.com", "ExtUser", "Ext")
    assert result.user.auth_provider == "auth0"
    assert result.user.email == "ext@hattbooks.com"
    assert store.get_by_id(result.user.id).refresh_tokens == []


def test_register_social_rejects_local_provider(service):
    with pytest.raises(BadRequestError):
        service.register_social("x|1", "x@hattbooks.com", "xuser", "X", provider="local")


def test_register_social_duplicate_external_id(service):
    service.register_social("auth0|dup", "a@hattbooks.com", "auser", "A")
    with pytest.raises(ConflictError) as exc:
        service.register_social("auth0|dup", "b@hattbooks.com", "buser", "B")
    assert exc.value.message == "User already registered"


def test_login_social_unknown_is_not_found(service):
    with pytest.raises(NotFoundError):
        service.login_social("auth0|unknown")


def test_login_social_requires_id(service):
    with pytest.raises(BadRequestError):
        service.login_social("")


def test_login_social_stamps_last_login(service, store):
    registered = service.register_social("auth0|ll", "ll@hattbooks.com", "lluser", "LL")
    result = service.login_social("auth0|ll")
    assert result.user.id == registered.user.id
    assert store.get_by_id(registered.user.id).last_login == result.user.last_login


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------


def test_get_profile_unknown_user(service):
    with pytest.raises(NotFoundError):
        service.get_profile(123456)


def test_update_profile_partial(service, store):
    user = _register(service).user
    result = service.update_profile(user.id, display_name="New Name", preferences={"theme": "dark"})
    assert result.message == "Profile updated successfully"

    stored = store.get_by_id(user.id)
    assert stored.display_name == "New Name"
    assert stored.preferences["theme"] == "dark"
    assert stored.preferences["language"] == "es"
    assert len(stored.refresh_tokens) == 1


def test_update_profile_explicit_null_clears_bio(service, store):
    user = _register(service).user
    service.update_profile(user.id, bio="Loves novels")
    service.update_profile(user.id, bio=None, fields_set={"bio"})
    assert store.get_by_id(user.id).bio == ""


def test_update_profile_empty_display_name_ignored(service, store):
    user = _register(service).user
    service.update_profile(user.id, display_name="")
    assert store.get_by_id(user.id).display_name == "Reader"


def test_logout_message(service):
    assert service.logout() == "Logged out successfully"
