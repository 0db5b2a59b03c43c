"""JWKS-backed JWT verification for identity and attestation tokens."""

from __future__ import annotations

import json
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, cast

import httpx
import jwt
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicKey

from kidstel_agent.core.errors import TokenVerificationError

ID_TOKEN_JWKS_URL = (
    "https://www.googleapis.com/service_accounts/v1/jwk/securetoken@system.gserviceaccount.com"
)
APPCHECK_JWKS_URL = "https://firebaseappcheck.googleapis.com/v1/jwks"


def id_token_issuer(project_id: str) -> str:
    return f"https://securetoken.google.com/{project_id}"


@dataclass
class _JwksCache:
    value: dict[str, Any] | None = None
    expires_at: float = 0.0


def _select_jwk(jwks: dict[str, Any], kid: str | None) -> dict[str, Any]:
    keys = jwks.get("keys")
    if not isinstance(keys, list):
        raise TokenVerificationError("JWKS payload missing keys list.")
    if kid is None:
        if len(keys) == 1 and isinstance(keys[0], dict):
            return keys[0]
        raise TokenVerificationError("Token header missing kid and JWKS has multiple keys.")
    for key in keys:
        if isinstance(key, dict) and key.get("kid") == kid:
            return key
    raise TokenVerificationError("JWKS did not contain signing key for token kid.")


class JwksTokenVerifier:
    """Verify RS256 tokens against an issuer, optional audience and a cached JWKS."""

    def __init__(
        self,
        *,
        issuer: str,
        audience: str | list[str] | None = None,
        jwks_url: str = "",
        jwks_json: str = "",
        ttl_seconds: float = 300.0,
        algorithms: tuple[str, ...] = ("RS256",),
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not issuer:
            raise ValueError("issuer is required for token verification.")
        self._issuer = issuer
        self._audience = audience or None
        self._jwks_url = jwks_url
        self._jwks_json = jwks_json.strip()
        self._ttl_seconds = ttl_seconds
        self._algorithms = list(algorithms)
        self._client = client
        self._clock = clock
        self._cache = _JwksCache()

    async def _fetch_jwks(self) -> dict[str, Any]:
        if self._jwks_json:
            payload = json.loads(self._jwks_json)
            if not isinstance(payload, dict):
                raise TokenVerificationError("Inline JWKS JSON must be an object.")
            return payload
        now = self._clock()
        if self._cache.value is not None and self._cache.expires_at > now:
            return self._cache.value
        if not self._jwks_url:
            raise TokenVerificationError("No JWKS source configured.")
        if self._client is not None:
            response = await self._client.get(self._jwks_url)
        else:
            async with httpx.AsyncClient(timeout=10.0, follow_redirects=True) as client:
                response = await client.get(self._jwks_url)
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict):
            raise TokenVerificationError("JWKS response was not an object.")
        self._cache = _JwksCache(value=payload, expires_at=now + self._ttl_seconds)
        return payload

    async def verify(self, token: str) -> dict[str, Any]:
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as exc:
            raise TokenVerificationError("Malformed token header.") from exc
        kid = header.get("kid") if isinstance(header, dict) else None
        jwk = _select_jwk(await self._fetch_jwks(), kid)
        public_key = cast(RSAPublicKey, jwt.algorithms.RSAAlgorithm.from_jwk(json.dumps(jwk)))
        options: dict[str, bool] = {"verify_aud": self._audience is not None}
        try:
            payload = jwt.decode(
                token,
                key=public_key,
                algorithms=self._algorithms,
                audience=self._audience,
                issuer=self._issuer,
                options=cast(Any, options),
            )
        except jwt.PyJWTError as exc:
            raise TokenVerificationError(f"Token rejected: {type(exc).__name__}") from exc
        if not isinstance(payload, dict):
            raise TokenVerificationError("Token payload was not an object.")
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject.strip():
            raise TokenVerificationError("Token missing subject.")
        return payload


class RejectingTokenVerifier:
    """Stands in when no verifier can be configured; every token is rejected."""

    def __init__(self, reason: str) -> None:
        self._reason = reason

    async def verify(self, token: str) -> dict[str, Any]:
        raise TokenVerificationError(self._reason)
