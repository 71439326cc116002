"""
Tests for JWT lifetime extraction.
"""

from jose import jwt

from iob_client.auth.jwt_utils import calculate_expires_in, decode_payload, DEFAULT_EXPIRES_IN


def make_jwt(claims):
    return jwt.encode(claims, "test-secret", algorithm="HS256")


def test_decode_payload():
    token = make_jwt({"sub": "user-1", "iat": 1700000000, "exp": 1700000600})

    claims = decode_payload(token)

    assert claims["sub"] == "user-1"
    assert claims["exp"] == 1700000600


def test_decode_payload_rejects_non_jwt():
    assert decode_payload("not-a-jwt") is None


def test_expires_in_from_claims():
    token = make_jwt({"iat": 1700000000, "exp": 1700001800})

    assert calculate_expires_in(token) == 1800


def test_expires_in_ignores_signature():
    token = make_jwt({"iat": 1700000000, "exp": 1700000900})
    header, payload, _ = token.split(".")

    assert calculate_expires_in(f"{header}.{payload}.c2lnbmF0dXJl") == 900


def test_expires_in_defaults_without_claims():
    assert calculate_expires_in(make_jwt({"sub": "user-1"})) == DEFAULT_EXPIRES_IN
    assert calculate_expires_in(make_jwt({"iat": 1700000000}), default=120) == 120


def test_expires_in_defaults_when_exp_not_after_iat():
    token = make_jwt({"iat": 1700000000, "exp": 1700000000})

    assert calculate_expires_in(token, default=42) == 42


def test_expires_in_defaults_for_opaque_token():
    assert calculate_expires_in("opaque-token", default=300) == 300
