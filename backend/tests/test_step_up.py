from datetime import datetime, timedelta, timezone

import pytest

import auth
import step_up
from errors import AdditionalAuthRequiredError, InvalidAdditionalAuthError


def _token(user_id=1, operation="user:delete", age=0):
    issued_at = datetime.now(timezone.utc) - timedelta(seconds=age)
    return auth.create_step_up_token(user_id, operation, issued_at=issued_at)


def test_sensitive_operation_set():
    for op in ("user:delete", "payment:refund", "inventory:delete",
               "settings:security", "data:export", "system:backup"):
        assert step_up.is_sensitive_operation(op)
    assert not step_up.is_sensitive_operation("order:delete")
    assert not step_up.is_sensitive_operation("delete_user")


def test_non_sensitive_operation_needs_no_token():
    step_up.verify_step_up_token(None, 1, "order:create")


def test_missing_token_for_sensitive_operation():
    with pytest.raises(AdditionalAuthRequiredError):
        step_up.verify_step_up_token(None, 1, "user:delete")


def test_fresh_token_is_accepted():
    step_up.verify_step_up_token(_token(), 1, "user:delete")


def test_token_accepted_at_299_seconds():
    token = _token()
    issued_at = auth.verify_token(token, auth.STEP_UP)["iat"]
    step_up.verify_step_up_token(token, 1, "user:delete", clock=lambda: issued_at + 299)


def test_token_rejected_at_301_seconds():
    token = _token(age=301)
    with pytest.raises(InvalidAdditionalAuthError):
        step_up.verify_step_up_token(token, 1, "user:delete")


def test_age_is_measured_from_issuance():
    token = _token()
    payload = auth.verify_token(token, auth.STEP_UP)
    step_up.verify_step_up_token(token, 1, "user:delete", clock=lambda: payload["iat"] + 300)
    with pytest.raises(InvalidAdditionalAuthError):
        step_up.verify_step_up_token(token, 1, "user:delete", clock=lambda: payload["iat"] + 301)


def test_token_bound_to_other_user_is_rejected():
    with pytest.raises(InvalidAdditionalAuthError):
        step_up.verify_step_up_token(_token(user_id=2), 1, "user:delete")


def test_token_bound_to_other_operation_is_rejected():
    with pytest.raises(InvalidAdditionalAuthError):
        step_up.verify_step_up_token(_token(operation="data:export"), 1, "user:delete")


def test_access_token_cannot_be_used_for_step_up():
    from types import SimpleNamespace

    access = auth.create_access_token(SimpleNamespace(id=1, email="a@example.com", role="admin", restaurant_id=None))
    with pytest.raises(InvalidAdditionalAuthError):
        step_up.verify_step_up_token(access, 1, "user:delete")


def test_every_failure_reports_the_same_error():
    failures = [
        ("garbage", 1, "user:delete"),
        (_token(user_id=2), 1, "user:delete"),
        (_token(operation="data:export"), 1, "user:delete"),
        (_token(age=600), 1, "user:delete"),
    ]
    messages = set()
    for token, user_id, operation in failures:
        with pytest.raises(InvalidAdditionalAuthError) as excinfo:
            step_up.verify_step_up_token(token, user_id, operation)
        messages.add((excinfo.value.code, excinfo.value.message, excinfo.value.details))
    assert len(messages) == 1


@pytest.mark.parametrize("role,expected", [
    ("admin", True), ("manager", True), ("waiter", False), ("kitchen", False), ("customer", False),
])
def test_requires_additional_auth_by_role(role, expected):
    assert step_up.requires_additional_auth(lambda: role, "delete_user") is expected


def test_requires_additional_auth_ignores_other_actions():
    assert step_up.requires_additional_auth(lambda: "admin", "user:delete") is False
    assert step_up.requires_additional_auth(lambda: "admin", "view_menu") is False


@pytest.mark.parametrize("action", ["delete_user", "view_menu", "user:delete", ""])
def test_requires_additional_auth_fails_safe_when_lookup_raises(action):
    def broken():
        raise RuntimeError("database is down")

    assert step_up.requires_additional_auth(broken, action) is True
