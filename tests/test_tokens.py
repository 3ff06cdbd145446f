"""Tests for JWT issuing and verification."""

import base64
import json
from datetime import timedelta

import pytest

from authcore.service.errors import TokenExpired, TokenInvalid, TokenSuperseded
from authcore.service.tokens import ACCESS, REFRESH, TokenIssuer, hash_token

SECRET = "unit-test-signing-secret-with-enough-entropy"


@pytest.fixture
def issuer(clock):
    return TokenIssuer(
        SECRET,
        issuer="authcore",
        audience="authcore-clients",
        access_ttl_minutes=15,
        refresh_ttl_minutes=60,
        leeway_seconds=30,
        clock=clock,
    )


def _segment(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


def test_access_token_round_trip(issuer, clock):
    issued = issuer.issue_access_token("user-1", mfa_verified=True, session_id="sess-1")

    claims = issuer.verify(issued.token, expected_type=ACCESS)

    assert claims.sub == "user-1"
    assert claims.sid == "sess-1"
    assert claims.mfa is True
    assert claims.jti == issued.jti
    assert claims.token_type == ACCESS
    assert claims.issued_at == clock()
    assert issued.expires_at == clock() + timedelta(minutes=15)


def test_refresh_token_carries_session_but_no_mfa_claim(issuer):
    issued = issuer.issue_refresh_token("user-1", "sess-1")

    claims = issuer.verify(issued.token, expected_type=REFRESH)

    assert claims.sid == "sess-1"
    assert "mfa" not in claims.raw


def test_every_token_gets_a_fresh_jti(issuer):
    first = issuer.issue_access_token("user-1", mfa_verified=False)
    second = issuer.issue_access_token("user-1", mfa_verified=False)
    assert first.jti != second.jti
    assert first.token != second.token


def test_wrong_token_type_rejected(issuer):
    refresh = issuer.issue_refresh_token("user-1", "sess-1")
    with pytest.raises(TokenInvalid):
        issuer.verify(refresh.token, expected_type=ACCESS)


def test_expiry_honors_leeway(issuer, clock):
    issued = issuer.issue_access_token("user-1", mfa_verified=False)

    clock.advance(minutes=15, seconds=20)
    assert issuer.verify(issued.token).sub == "user-1"

    clock.advance(seconds=15)
    with pytest.raises(TokenExpired):
        issuer.verify(issued.token)


def test_token_from_the_future_rejected(issuer, clock):
    ahead = TokenIssuer(
        SECRET,
        issuer="authcore",
        audience="authcore-clients",
        clock=lambda: clock() + timedelta(minutes=5),
    )
    issued = ahead.issue_access_token("user-1", mfa_verified=False)

    with pytest.raises(TokenInvalid):
        issuer.verify(issued.token)


def test_tampered_signature_rejected(issuer):
    token = issuer.issue_access_token("user-1", mfa_verified=False).token
    header, payload, signature = token.split(".")
    forged = f"{header}.{payload}.{signature[::-1]}"
    with pytest.raises(TokenInvalid):
        issuer.verify(forged)


def test_tampered_payload_rejected(issuer, clock):
    token = issuer.issue_access_token("user-1", mfa_verified=False).token
    header, _payload, signature = token.split(".")
    payload = _segment(
        {
            "iss": "authcore",
            "aud": "authcore-clients",
            "sub": "admin",
            "jti": "x",
            "iat": clock().timestamp(),
            "exp": int(clock().timestamp()) + 600,
            "token_type": ACCESS,
        }
    )
    with pytest.raises(TokenInvalid):
        issuer.verify(f"{header}.{payload}.{signature}")


def test_alg_none_rejected(issuer):
    token = issuer.issue_access_token("user-1", mfa_verified=False).token
    _header, payload, _signature = token.split(".")
    unsigned = f"{_segment({'alg': 'none', 'typ': 'JWT'})}.{payload}."
    with pytest.raises(TokenInvalid):
        issuer.verify(unsigned)


@pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "###.###.###"])
def test_malformed_tokens_rejected(issuer, garbage):
    with pytest.raises(TokenInvalid):
        issuer.verify(garbage)


def test_foreign_issuer_and_audience_rejected(issuer, clock):
    other_issuer = TokenIssuer(SECRET, issuer="elsewhere", audience="authcore-clients", clock=clock)
    other_audience = TokenIssuer(SECRET, issuer="authcore", audience="other", clock=clock)

    for minted in (other_issuer, other_audience):
        token = minted.issue_access_token("user-1", mfa_verified=False).token
        with pytest.raises(TokenInvalid):
            issuer.verify(token)


def test_tokens_minted_before_password_change_are_superseded(issuer, clock):
    claims = issuer.verify(issuer.issue_access_token("user-1", mfa_verified=False).token)

    TokenIssuer.ensure_not_superseded(claims, None)
    TokenIssuer.ensure_not_superseded(claims, clock())
    with pytest.raises(TokenSuperseded):
        TokenIssuer.ensure_not_superseded(claims, clock() + timedelta(seconds=1))


def test_remaining_seconds(issuer, clock):
    claims = issuer.verify(issuer.issue_access_token("user-1", mfa_verified=False).token)
    clock.advance(minutes=5)
    assert issuer.remaining_seconds(claims.expires_at) == 600
    clock.advance(minutes=30)
    assert issuer.remaining_seconds(claims.expires_at) == 0


def test_empty_secret_refused():
    with pytest.raises(ValueError):
        TokenIssuer("", issuer="authcore", audience="authcore-clients")


def test_hash_token_is_stable_sha256():
    assert hash_token("abc") == hash_token("abc")
    assert len(hash_token("abc")) == 64
