"""
Unit tests for request authorization
"""

import pytest
from fastapi import HTTPException
from starlette.requests import Request

from tunnel.security.auth import AuthService, bearer_token
from tunnel.services.token_ledger import TokenLedger


MASTER = "master-secret"


def _request(authorization=None, host="127.0.0.1"):
    headers = []
    if authorization is not None:
        headers.append((b"authorization", authorization.encode("utf-8")))
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/connect",
        "headers": headers,
        "client": (host, 50000) if host else None,
    }
    return Request(scope)


class TestBearerToken:
    """Tests for bearer_token"""

    @pytest.mark.parametrize("header,expected", [
        ("Bearer abc", "abc"),
        ("abc", "abc"),
        ("Bearer   abc  ", "abc"),
        ("Bearer ", None),
        ("", None),
    ])
    def test_extract(self, header, expected):
        assert bearer_token(_request(header)) == expected

    def test_missing_header(self):
        assert bearer_token(_request()) is None


class TestIsMaster:
    """Tests for AuthService.is_master"""

    def test_master_from_loopback(self):
        auth = AuthService(master_token=MASTER)
        assert auth.is_master(_request(f"Bearer {MASTER}")) is True

    def test_master_from_ipv6_loopback(self):
        auth = AuthService(master_token=MASTER)
        assert auth.is_master(_request(f"Bearer {MASTER}", host="::1")) is True

    def test_wrong_token(self):
        auth = AuthService(master_token=MASTER)
        assert auth.is_master(_request("Bearer other")) is False

    def test_non_ascii_token(self):
        auth = AuthService(master_token=MASTER)
        assert auth.is_master(_request("Bearer pässwörd")) is False

    def test_master_from_remote_forbidden(self):
        """
        Given localhost-only master mode
        When the correct master token arrives from a remote client
        Then the request is rejected with 403
        """
        auth = AuthService(master_token=MASTER, master_localhost_only=True)

        with pytest.raises(HTTPException) as exc_info:
            auth.is_master(_request(f"Bearer {MASTER}", host="198.51.100.7"))

        assert exc_info.value.status_code == 403

    def test_master_from_remote_allowed_when_not_restricted(self):
        auth = AuthService(master_token=MASTER, master_localhost_only=False)
        assert auth.is_master(_request(f"Bearer {MASTER}", host="198.51.100.7")) is True

    def test_unknown_client_is_not_master(self):
        auth = AuthService(master_token=MASTER, master_localhost_only=True)
        assert auth.is_master(_request(f"Bearer {MASTER}", host=None)) is False

    def test_empty_master_disables(self):
        auth = AuthService(master_token="")
        assert auth.is_master(_request("Bearer ")) is False
        assert auth.is_master(_request("Bearer x")) is False


class TestAuthorizeWithToken:
    """Tests for AuthService.authorize_with_token"""

    def test_valid_token_burnt(self, db_session):
        ledger = TokenLedger(db_session)
        token = ledger.new_token()
        auth = AuthService(master_token=MASTER)

        auth.authorize_with_token(_request(f"Bearer {token}"), ledger)

        with pytest.raises(HTTPException) as exc_info:
            auth.authorize_with_token(_request(f"Bearer {token}"), ledger)
        assert exc_info.value.status_code == 401
        assert exc_info.value.detail == "unauthorized"

    def test_missing_token(self, db_session):
        auth = AuthService(master_token=MASTER)

        with pytest.raises(HTTPException) as exc_info:
            auth.authorize_with_token(_request(), TokenLedger(db_session))
        assert exc_info.value.status_code == 401

    def test_disabled_token_auth_leaves_token_unburnt(self, db_session):
        """
        Given token auth disabled
        When a valid one-time token is presented
        Then it is rejected without being consumed
        """
        ledger = TokenLedger(db_session)
        token = ledger.new_token()
        auth = AuthService(master_token=MASTER, token_auth_disabled=True)

        with pytest.raises(HTTPException) as exc_info:
            auth.authorize_with_token(_request(f"Bearer {token}"), ledger)
        assert exc_info.value.status_code == 401

        ledger.validate_and_burn_token(token)
