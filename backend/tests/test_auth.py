"""Tests for token extraction and JWT verification."""
from datetime import timedelta

import pytest
from jose import jwt

from huddle.auth import TokenAuthenticator, extract_token
from huddle.errors import Unauthorized
from huddle.ids import new_id

SECRET = "unit-test-secret"


@pytest.fixture
def authenticator():
    directory = {"alice@example.com": "a" * 32}
    return TokenAuthenticator(SECRET, email_lookup=directory.get)


class TestExtractToken:
    def test_explicit_field_wins(self):
        token = extract_token(
            auth_field="explicit",
            headers={"authorization": "Bearer header"},
            query_params={"token": "query"},
            cookies={"token": "cookie"},
        )
        assert token == "explicit"

    def test_bearer_before_query_and_cookie(self):
        token = extract_token(
            headers={"authorization": "Bearer header"},
            query_params={"token": "query"},
            cookies={"token": "cookie"},
        )
        assert token == "header"

    def test_query_before_cookie(self):
        assert extract_token(query_params={"token": "query"}, cookies={"token": "cookie"}) == "query"

    def test_cookie_last(self):
        assert extract_token(cookies={"token": "cookie"}) == "cookie"

    def test_explicit_field_may_carry_bearer_prefix(self):
        assert extract_token(auth_field="Bearer abc") == "abc"

    @pytest.mark.parametrize("placeholder", ["", "null", "undefined", "  "])
    def test_placeholder_values_are_skipped(self, placeholder):
        token = extract_token(auth_field=placeholder, query_params={"token": placeholder}, cookies={"token": "real"})
        assert token == "real"

    def test_non_bearer_authorization_is_ignored(self):
        assert extract_token(headers={"authorization": "Basic dXNlcjpwYXNz"}) is None

    def test_nothing_found(self):
        assert extract_token() is None


class TestTokenAuthenticator:
    def test_round_trip(self, authenticator):
        user_id = new_id()
        assert authenticator.authenticate(authenticator.issue_token(user_id)) == user_id

    @pytest.mark.parametrize("claim", ["_id", "id", "userId"])
    def test_alternate_subject_claims(self, authenticator, claim):
        user_id = new_id()
        token = jwt.encode({claim: user_id}, SECRET, algorithm="HS256")
        assert authenticator.authenticate(token) == user_id

    def test_email_fallback(self, authenticator):
        token = authenticator.issue_token("google-oauth2|123", email="alice@example.com")
        assert authenticator.authenticate(token) == "a" * 32

    def test_unknown_email(self, authenticator):
        token = authenticator.issue_token("google-oauth2|123", email="who@example.com")
        with pytest.raises(Unauthorized):
            authenticator.authenticate(token)

    def test_subject_without_email(self, authenticator):
        with pytest.raises(Unauthorized, match="Unknown subject"):
            authenticator.authenticate(authenticator.issue_token("not-an-id"))

    def test_expired(self, authenticator):
        token = authenticator.issue_token(new_id(), expires_in=timedelta(seconds=-1))
        with pytest.raises(Unauthorized, match="expired"):
            authenticator.authenticate(token)

    def test_wrong_signature(self, authenticator):
        token = TokenAuthenticator("another-secret").issue_token(new_id())
        with pytest.raises(Unauthorized, match="Invalid token"):
            authenticator.authenticate(token)

    @pytest.mark.parametrize("token", [None, "", "null", "not.a.jwt"])
    def test_missing_or_malformed(self, authenticator, token):
        with pytest.raises(Unauthorized):
            authenticator.authenticate(token)

    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            TokenAuthenticator("")

    def test_error_payload(self, authenticator):
        with pytest.raises(Unauthorized) as exc_info:
            authenticator.authenticate(None)
        assert exc_info.value.to_dict() == {"code": "unauthorized", "message": "Missing token"}
        assert exc_info.value.status_code == 401
