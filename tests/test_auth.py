"""Tests for bearer-token authentication."""

import jwt
import pytest

from feedrank.auth import issue_token, user_from_authorization, verify_token
from feedrank.errors import Unauthenticated

SECRET = "test-secret"


def test_round_trip():
    assert verify_token(issue_token("u1", SECRET), SECRET) == "u1"


def test_id_claim_fallback():
    token = jwt.encode({"id": "legacy-user"}, SECRET, algorithm="HS256")
    assert verify_token(token, SECRET) == "legacy-user"


@pytest.mark.parametrize(
    "token",
    [
        issue_token("u1", "other-secret"),
        issue_token("u1", SECRET, expires_in_s=-10),
        jwt.encode({"role": "viewer"}, SECRET, algorithm="HS256"),
        "garbage",
    ],
)
def test_rejected_tokens(token):
    with pytest.raises(Unauthenticated):
        verify_token(token, SECRET)


def test_unconfigured_secret_rejects_everything():
    with pytest.raises(Unauthenticated):
        verify_token(issue_token("u1", SECRET), "")


def test_authorization_header():
    assert user_from_authorization(None, SECRET) is None
    assert user_from_authorization(f"Bearer {issue_token('u9', SECRET)}", SECRET) == "u9"
    with pytest.raises(Unauthenticated):
        user_from_authorization("Basic dTE6cGFzcw==", SECRET)
    with pytest.raises(Unauthenticated):
        user_from_authorization("Bearer ", SECRET)
