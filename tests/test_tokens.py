"""Tests for the credential issuer."""

import base64
import json

import pytest

from tenantguard.service.errors import (
    NOT_AUTHENTICATED,
    TokenExpiredError,
    TokenInvalidError,
    TokenMalformedError,
)
from tenantguard.service.tokens import CredentialIssuer

SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


@pytest.fixture
def issuer(clock):
    return CredentialIssuer(
        SECRET, issuer="tenantguard", audience="clients", ttl_seconds=3600, leeway_seconds=30, clock=clock
    )


def _segment(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestIssue:
    def test_claims_round_trip(self, issuer, clock):
        claims = issuer.verify(issuer.issue(42, "sid-1", 3))

        assert claims.principal_id == 42
        assert claims.session_id == "sid-1"
        assert claims.token_version == 3
        assert claims.issued_at == int(clock.now)
        assert claims.expires_at == int(clock.now) + 3600

    def test_issue_is_deterministic_for_same_instant(self, issuer):
        assert issuer.issue(1, "s", 0) == issuer.issue(1, "s", 0)

    def test_payload_names_session_and_version(self, issuer):
        payload_b64 = issuer.issue(5, "abc", 2).split(".")[1]
        payload = json.loads(base64.urlsafe_b64decode(payload_b64 + "=" * (-len(payload_b64) % 4)))
        assert payload["sub"] == "5"
        assert payload["sid"] == "abc"
        assert payload["ver"] == 2
        assert payload["iss"] == "tenantguard"
        assert payload["aud"] == "clients"

    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            CredentialIssuer("", issuer="i", audience="a", ttl_seconds=60)


class TestVerify:
    def test_expired_token(self, issuer, clock):
        token = issuer.issue(1, "s", 0)
        clock.advance(3600 + 31)
        with pytest.raises(TokenExpiredError) as exc_info:
            issuer.verify(token)
        assert exc_info.value.reason == "token_expired"
        assert isinstance(exc_info.value, TokenInvalidError)

    def test_leeway_tolerates_small_skew(self, issuer, clock):
        token = issuer.issue(1, "s", 0)
        clock.advance(3600 + 10)
        assert issuer.verify(token).session_id == "s"

    def test_tampered_payload_rejected(self, issuer):
        header, _, signature = issuer.issue(1, "s", 0).split(".")
        forged = _segment({"sub": "2", "sid": "s", "ver": 0, "exp": 9_999_999_999,
                           "iss": "tenantguard", "aud": "clients"})
        with pytest.raises(TokenMalformedError) as exc_info:
            issuer.verify(f"{header}.{forged}.{signature}")
        assert exc_info.value.reason == "token_signature"

    def test_other_secret_rejected(self, issuer, clock):
        other = CredentialIssuer(
            "another-secret", issuer="tenantguard", audience="clients", ttl_seconds=60, clock=clock
        )
        with pytest.raises(TokenMalformedError):
            issuer.verify(other.issue(1, "s", 0))

    def test_none_algorithm_rejected(self, issuer):
        _, payload, signature = issuer.issue(1, "s", 0).split(".")
        header = _segment({"alg": "none", "typ": "JWT"})
        with pytest.raises(TokenMalformedError) as exc_info:
            issuer.verify(f"{header}.{payload}.{signature}")
        assert exc_info.value.reason == "token_algorithm"

    def test_wrong_audience_and_issuer(self, clock, issuer):
        for kwargs in ({"issuer": "other", "audience": "clients"},
                       {"issuer": "tenantguard", "audience": "other"}):
            foreign = CredentialIssuer(SECRET, ttl_seconds=60, clock=clock, **kwargs)
            with pytest.raises(TokenMalformedError):
                issuer.verify(foreign.issue(1, "s", 0))

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!!.???.***"])
    def test_garbage_rejected(self, issuer, token):
        with pytest.raises(TokenMalformedError) as exc_info:
            issuer.verify(token)
        assert exc_info.value.message == NOT_AUTHENTICATED
