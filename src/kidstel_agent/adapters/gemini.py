"""Gemini text and Imagen image backends over the Generative Language REST API."""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from typing import Any

import httpx

from kidstel_agent.core.errors import UpstreamError, UpstreamKind
from kidstel_agent.domain.models import GeneratedImage

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_IMAGE_MODEL = "imagen-3.0-generate-002"

SAFETY_SETTINGS: list[dict[str, str]] = [
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_LOW_AND_ABOVE"},
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_LOW_AND_ABOVE"},
    {"category": "HARM_CATEGORY_SEXUALLY_EXPLICIT", "threshold": "BLOCK_LOW_AND_ABOVE"},
    {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "BLOCK_LOW_AND_ABOVE"},
]

_NOT_FOUND_HINT = re.compile(r"not\s+found|is\s+not\s+supported", re.IGNORECASE)
_DAILY_QUOTA_HINT = re.compile(r"per[\s_-]?day|daily", re.IGNORECASE)

logger = logging.getLogger(__name__)


def classify_status(status: int, body_text: str) -> UpstreamKind:
    """Map an upstream HTTP status (and body hints) to a failure kind."""
    if status == 404 or (status == 400 and _NOT_FOUND_HINT.search(body_text)):
        return "model_not_found"
    if status == 429:
        return "quota_daily" if _DAILY_QUOTA_HINT.search(body_text) else "rate_limited"
    if status in {401, 403}:
        return "auth"
    if status >= 500:
        return "unavailable"
    return "bad_response"


def extract_image_bytes(payload: Any) -> tuple[bytes, str]:
    """Find base64 image bytes in any of the response shapes the backend has used."""
    candidates: list[Any] = []
    if isinstance(payload, dict):
        predictions = payload.get("predictions")
        if isinstance(predictions, list):
            candidates.extend(predictions)
        images = payload.get("images")
        if isinstance(images, list):
            candidates.extend(images)
        candidates.append(payload)
    for item in candidates:
        if not isinstance(item, dict):
            continue
        nested = item.get("image") if isinstance(item.get("image"), dict) else {}
        encoded = (
            item.get("bytesBase64Encoded")
            or item.get("bytes_base64_encoded")
            or nested.get("bytesBase64Encoded")
        )
        if isinstance(encoded, str) and encoded:
            mime_type = item.get("mimeType") or nested.get("mimeType") or "image/png"
            try:
                return base64.b64decode(encoded, validate=False), str(mime_type)
            except (binascii.Error, ValueError) as exc:
                raise UpstreamError(
                    kind="bad_response", service="image_model", message="undecodable image"
                ) from exc
    return b"", "image/png"


def extract_text(payload: Any) -> str:
    if not isinstance(payload, dict):
        return ""
    candidates = payload.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return ""
    content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        return ""
    return "".join(str(part.get("text", "")) for part in parts if isinstance(part, dict))


class GeminiBackend:
    """Implements both the text and image model ports with one shared HTTP client."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        image_model: str = DEFAULT_IMAGE_MODEL,
        timeout_seconds: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self._image_model = image_model
        self._timeout_seconds = timeout_seconds
        self._client = client

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout_seconds)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _post(self, *, model: str, verb: str, body: dict[str, Any], service: str) -> Any:
        if not self._api_key:
            raise UpstreamError(kind="auth", service=service, message="API key not configured")
        url = f"{self._base_url}/models/{model}:{verb}"
        try:
            response = await self._http().post(
                url,
                json=body,
                headers={"x-goog-api-key": self._api_key},
            )
        except httpx.TimeoutException as exc:
            raise UpstreamError(kind="unavailable", service=service, message="timeout") from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(
                kind="unavailable", service=service, message=type(exc).__name__
            ) from exc
        if response.status_code >= 400:
            kind = classify_status(response.status_code, response.text)
            logger.warning(
                "upstream.error service=%s model=%s status=%s kind=%s",
                service,
                model,
                response.status_code,
                kind,
            )
            raise UpstreamError(
                kind=kind,
                status=response.status_code,
                service=service,
                message=f"{service} returned {response.status_code}",
            )
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError(
                kind="bad_response", status=response.status_code, service=service
            ) from exc

    async def generate_json(
        self,
        *,
        model: str,
        prompt: dict[str, Any],
        temperature: float,
        max_output_tokens: int,
    ) -> str:
        body = {
            "systemInstruction": {"parts": [{"text": str(prompt.get("system", ""))}]},
            "contents": [
                {
                    "role": "user",
                    "parts": [{"text": json.dumps(prompt.get("user", {}), ensure_ascii=False)}],
                }
            ],
            "generationConfig": {
                "temperature": temperature,
                "maxOutputTokens": max_output_tokens,
                "responseMimeType": "application/json",
            },
            "safetySettings": SAFETY_SETTINGS,
        }
        payload = await self._post(
            model=model, verb="generateContent", body=body, service="text_model"
        )
        text = extract_text(payload)
        if not text.strip():
            raise UpstreamError(kind="bad_response", service="text_model", message="empty text")
        return text

    async def generate_image(self, *, prompt: str, aspect_ratio: str) -> GeneratedImage:
        body = {
            "instances": [{"prompt": prompt}],
            "parameters": {"sampleCount": 1, "aspectRatio": aspect_ratio},
        }
        payload = await self._post(
            model=self._image_model, verb="predict", body=body, service="image_model"
        )
        data, mime_type = extract_image_bytes(payload)
        return GeneratedImage(data=data, mime_type=mime_type)
