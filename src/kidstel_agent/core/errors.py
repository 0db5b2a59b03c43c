"""Typed failure kinds surfaced by the request pipeline."""

from __future__ import annotations

from typing import Literal

UpstreamKind = Literal[
    "model_not_found",
    "rate_limited",
    "quota_daily",
    "auth",
    "bad_response",
    "unavailable",
]

SERVICE_DISABLED_MESSAGE = "Service temporarily disabled"


class ServiceError(Exception):
    """Failure with a stable status, machine-readable code and client-safe message."""

    def __init__(
        self,
        *,
        status: int,
        code: str,
        safe_message: str,
        message: str | None = None,
    ) -> None:
        super().__init__(message or safe_message)
        self.status = status
        self.code = code
        self.safe_message = safe_message

    def body(self) -> dict[str, object]:
        return {"error": self.safe_message, "code": self.code}


class AdmissionError(ServiceError):
    """Auth, attestation, rate, body-size, shape and ownership rejections."""


class PolicyError(ServiceError):
    """Runtime policy unavailable or capability disabled by policy."""

    def __init__(self, *, code: str = "POLICY_UNAVAILABLE", message: str | None = None) -> None:
        super().__init__(
            status=503,
            code=code,
            safe_message=SERVICE_DISABLED_MESSAGE,
            message=message,
        )


class QuotaError(ServiceError):
    """Local daily limit or upstream provider quota exhausted."""

    def __init__(
        self,
        *,
        code: str,
        safe_message: str,
        retry_after_seconds: int | None = None,
    ) -> None:
        super().__init__(status=429, code=code, safe_message=safe_message)
        self.retry_after_seconds = retry_after_seconds

    def body(self) -> dict[str, object]:
        payload = super().body()
        if self.retry_after_seconds is not None:
            payload["retryAfterSeconds"] = self.retry_after_seconds
        return payload


class UpstreamError(Exception):
    """Generative backend failure classified by inferred HTTP-like status."""

    def __init__(
        self,
        *,
        kind: UpstreamKind,
        status: int | None = None,
        service: str = "generation",
        message: str = "",
    ) -> None:
        super().__init__(message or f"{service} {kind}")
        self.kind = kind
        self.status = status
        self.service = service

    @property
    def is_model_not_found(self) -> bool:
        return self.kind == "model_not_found"


class GenerationTimeout(Exception):
    """Generation call exceeded the caller-supplied timeout."""

    def __init__(self, *, timeout_seconds: float, service: str = "generation") -> None:
        super().__init__(f"{service} timed out after {timeout_seconds:.1f}s")
        self.timeout_seconds = timeout_seconds
        self.service = service


class DailyLimitExceeded(Exception):
    """Per-identity daily counter already at or above its limit."""

    def __init__(self, *, uid: str, day_key: str, limit: int) -> None:
        super().__init__(f"daily limit {limit} reached for {day_key}")
        self.uid = uid
        self.day_key = day_key
        self.limit = limit


class StoreError(ServiceError):
    """Persistence layer unavailable."""

    def __init__(self, *, message: str | None = None) -> None:
        super().__init__(
            status=503,
            code="STORE_UNAVAILABLE",
            safe_message=SERVICE_DISABLED_MESSAGE,
            message=message,
        )


class TokenVerificationError(Exception):
    """Credential present but failed signature, issuer, audience or expiry checks."""


class UpstreamUnavailable(ServiceError):
    """Generation failure surfaced to clients with diagnostics but no upstream payload."""

    def __init__(
        self,
        *,
        code: str = "upstream_unavailable",
        upstream_status: int | None = None,
        service: str = "generation",
        message: str | None = None,
    ) -> None:
        super().__init__(
            status=503,
            code=code,
            safe_message="Story service temporarily unavailable",
            message=message,
        )
        self.upstream_status = upstream_status
        self.service = service

    def body(self) -> dict[str, object]:
        payload = super().body()
        payload["upstream"] = {"status": self.upstream_status, "service": self.service}
        return payload
