"""Identity and attestation checks for inbound requests."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from uuid import uuid4

from kidstel_agent.core.errors import AdmissionError
from kidstel_agent.domain.models import Identity
from kidstel_agent.domain.ports import TokenVerifier

APPCHECK_HEADER = "x-firebase-appcheck"
DEV_CLIENT_HEADER = "x-kidstel-dev-client"
DEV_CLIENT_PATTERN = re.compile(r"^[A-Za-z0-9_-]{3,64}$")
_BEARER_PATTERN = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)

logger = logging.getLogger(__name__)


def bearer_token(headers: Mapping[str, str]) -> str | None:
    raw = headers.get("authorization")
    if not raw:
        return None
    match = _BEARER_PATTERN.match(raw.strip())
    if match is None:
        return None
    token = match.group(1).strip()
    return token or None


def app_check_token(headers: Mapping[str, str]) -> str | None:
    raw = (headers.get(APPCHECK_HEADER) or "").strip()
    return raw or None


class AuthVerifier:
    """Resolve the request identity; identity checks run before attestation."""

    def __init__(
        self,
        *,
        id_token_verifier: TokenVerifier,
        app_check_verifier: TokenVerifier,
        auth_required: bool,
        app_check_required: bool,
    ) -> None:
        self._id_token_verifier = id_token_verifier
        self._app_check_verifier = app_check_verifier
        self._auth_required = auth_required
        self._app_check_required = app_check_required

    async def verify(self, headers: Mapping[str, str]) -> Identity:
        """Headers must be keyed in lowercase."""
        identity = await self._verify_identity(headers)
        await self._verify_app_check(headers)
        return identity

    async def _verify_identity(self, headers: Mapping[str, str]) -> Identity:
        token = bearer_token(headers)
        if token is None:
            if self._auth_required:
                if headers.get(DEV_CLIENT_HEADER):
                    logger.warning("auth.dev_client_rejected auth_required=true")
                raise AdmissionError(status=401, code="AUTH_MISSING", safe_message="Unauthorized")
            return self._anonymous_identity(headers)
        try:
            claims = await self._id_token_verifier.verify(token)
        except Exception as exc:
            logger.info("auth.id_token_rejected error_type=%s", type(exc).__name__)
            raise AdmissionError(
                status=401, code="AUTH_INVALID", safe_message="Unauthorized"
            ) from exc
        uid = claims.get("user_id") or claims.get("sub")
        if not isinstance(uid, str) or not uid.strip():
            raise AdmissionError(status=401, code="AUTH_INVALID", safe_message="Unauthorized")
        return Identity(uid=uid.strip(), anonymous=False, source="id_token")

    def _anonymous_identity(self, headers: Mapping[str, str]) -> Identity:
        dev_client = (headers.get(DEV_CLIENT_HEADER) or "").strip()
        if dev_client and DEV_CLIENT_PATTERN.match(dev_client):
            return Identity(uid=f"anon_dev_{dev_client}", anonymous=True, source="dev_client")
        if dev_client:
            logger.info("auth.dev_client_ignored reason=format")
        return Identity(uid=f"anon_{uuid4().hex}", anonymous=True, source="random")

    async def _verify_app_check(self, headers: Mapping[str, str]) -> None:
        token = app_check_token(headers)
        if token is None:
            if self._app_check_required:
                raise AdmissionError(
                    status=403, code="APPCHECK_MISSING", safe_message="App Check required"
                )
            return
        try:
            await self._app_check_verifier.verify(token)
        except Exception as exc:
            logger.info("auth.app_check_rejected error_type=%s", type(exc).__name__)
            raise AdmissionError(
                status=403, code="APPCHECK_INVALID", safe_message="App Check invalid"
            ) from exc
