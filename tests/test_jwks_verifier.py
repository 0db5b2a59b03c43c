from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from kidstel_agent.adapters.jwks_verifier import JwksTokenVerifier, RejectingTokenVerifier
from kidstel_agent.core.errors import TokenVerificationError

ISSUER = "https://securetoken.google.com/kidstel-test"
AUDIENCE = "kidstel-test"


def _key_and_jwks(kid: str = "test-kid") -> tuple[rsa.RSAPrivateKey, dict[str, Any]]:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    jwk = json.loads(jwt.algorithms.RSAAlgorithm.to_jwk(key.public_key()))
    jwk["kid"] = kid
    return key, {"keys": [jwk]}


def _token(key: rsa.RSAPrivateKey, **claims: Any) -> str:
    payload = {"iss": ISSUER, "aud": AUDIENCE, "sub": "user-1"}
    payload.update(claims)
    return jwt.encode(payload, key, algorithm="RS256", headers={"kid": "test-kid"})


def test_valid_token_returns_claims() -> None:
    key, jwks = _key_and_jwks()
    verifier = JwksTokenVerifier(issuer=ISSUER, audience=AUDIENCE, jwks_json=json.dumps(jwks))
    claims = asyncio.run(verifier.verify(_token(key)))
    assert claims["sub"] == "user-1"


def test_wrong_issuer_audience_or_signature_is_rejected() -> None:
    key, jwks = _key_and_jwks()
    other_key, _ = _key_and_jwks()
    verifier = JwksTokenVerifier(issuer=ISSUER, audience=AUDIENCE, jwks_json=json.dumps(jwks))
    for token in (
        _token(key, iss="https://evil.example.test"),
        _token(key, aud="another-project"),
        _token(other_key),
        "not-a-jwt",
    ):
        with pytest.raises(TokenVerificationError):
            asyncio.run(verifier.verify(token))


def test_jwks_is_fetched_once_per_ttl() -> None:
    key, jwks = _key_and_jwks()
    fetches: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        fetches.append(str(request.url))
        return httpx.Response(200, json=jwks)

    now = [0.0]
    verifier = JwksTokenVerifier(
        issuer=ISSUER,
        audience=AUDIENCE,
        jwks_url="https://keys.example.test/jwks",
        ttl_seconds=300,
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        clock=lambda: now[0],
    )
    token = _token(key)
    asyncio.run(verifier.verify(token))
    asyncio.run(verifier.verify(token))
    assert len(fetches) == 1
    now[0] = 301.0
    asyncio.run(verifier.verify(token))
    assert len(fetches) == 2


def test_rejecting_verifier_always_fails() -> None:
    with pytest.raises(TokenVerificationError):
        asyncio.run(RejectingTokenVerifier("not configured").verify("anything"))
