"""Gemini speech synthesis client and error classification."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from typing import Any, Optional

import httpx
from fastapi import status

from .config import Settings

logger = logging.getLogger(__name__)

KNOWN_VOICES = ("Kore", "Puck", "Charon", "Fenrir", "Zephyr")
AUTO_VOICE = "auto"

# Substrings seen in the provider's error text. Replaceable detail, not a contract.
_INVALID_CREDENTIAL_MARKERS = (
    "api key not valid",
    "api_key_invalid",
    "invalid api key",
    "api key expired",
)
_QUOTA_MARKERS = (
    "resource_exhausted",
    "resource exhausted",
    "quota",
    "rate limit",
    "too many requests",
)


class SpeechSynthesisError(Exception):
    """Synthesis failed for a reason other than credential or quota trouble."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class InvalidCredentialError(SpeechSynthesisError):
    """The endpoint rejected the credential as malformed or unauthorized."""


class QuotaExceededError(SpeechSynthesisError):
    """The endpoint reported rate or quota exhaustion for the credential."""


def fingerprint(secret: str) -> str:
    """Return the loggable form of a credential: its last four characters."""

    token = (secret or "").strip()
    if not token:
        return "none"
    return f"...{token[-4:]}"


def normalize_voice(voice: Optional[str], default_voice: str) -> str:
    """Map blank or ``auto`` voices to ``default_voice``; pass others through."""

    candidate = (voice or "").strip()
    if not candidate or candidate.lower() == AUTO_VOICE:
        return default_voice
    for known in KNOWN_VOICES:
        if candidate.lower() == known.lower():
            return known
    return candidate


def classify_error(
    message: str, status_code: Optional[int] = None
) -> type[SpeechSynthesisError]:
    """Pick the error class for an endpoint failure.

    Unrecognized failures fall back to the plain ``SpeechSynthesisError``.
    """

    lower = (message or "").lower()
    if any(marker in lower for marker in _INVALID_CREDENTIAL_MARKERS):
        return InvalidCredentialError
    if status_code == status.HTTP_429_TOO_MANY_REQUESTS or any(
        marker in lower for marker in _QUOTA_MARKERS
    ):
        return QuotaExceededError
    if status_code in (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN):
        return InvalidCredentialError
    return SpeechSynthesisError


def _extract_error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        text = response.text.strip()
        return text or f"HTTP {response.status_code}"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        parts = [
            str(error.get(name))
            for name in ("status", "message")
            if error.get(name)
        ]
        for detail in error.get("details") or []:
            if isinstance(detail, dict) and detail.get("reason"):
                parts.append(str(detail["reason"]))
        if parts:
            return ": ".join(parts)
    return f"HTTP {response.status_code}"


def _extract_audio(body: Any) -> Optional[str]:
    if not isinstance(body, dict):
        return None
    for candidate in body.get("candidates") or []:
        content = (candidate or {}).get("content") or {}
        for part in content.get("parts") or []:
            inline = (part or {}).get("inlineData") or {}
            data = inline.get("data")
            if isinstance(data, str) and data:
                return data
    return None


class GeminiSpeechClient:
    """Call the Gemini TTS endpoint with an explicit credential per request.

    HTTP connections are pooled per (base URL, timeout); no client is tied
    to a credential, every call carries its own key.
    """

    _client_lock: asyncio.Lock = asyncio.Lock()
    _client_pool: dict[tuple[str, float], httpx.AsyncClient] = {}

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._settings = settings
        self._http_client = http_client

    @property
    def _base_url(self) -> str:
        return str(self._settings.gemini_base_url).rstrip("/")

    @property
    def _endpoint(self) -> str:
        return f"{self._base_url}/models/{self._settings.tts_model}:generateContent"

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is not None:
            return self._http_client

        key = (self._base_url, float(self._settings.request_timeout))
        client = self.__class__._client_pool.get(key)
        if client is not None:
            return client

        async with self.__class__._client_lock:
            client = self.__class__._client_pool.get(key)
            if client is None:
                timeout = httpx.Timeout(self._settings.request_timeout, connect=10.0)
                limits = httpx.Limits(
                    max_connections=50,
                    max_keepalive_connections=20,
                )
                client = httpx.AsyncClient(timeout=timeout, limits=limits)
                self.__class__._client_pool[key] = client
                logger.info("Created pooled httpx.AsyncClient for speech synthesis")
        return client

    @classmethod
    async def close_http_clients(cls) -> None:
        """Close pooled HTTP clients. Call on app shutdown."""

        async with cls._client_lock:
            clients = list(cls._client_pool.values())
            cls._client_pool.clear()
        for client in clients:
            await client.aclose()

    def _build_payload(self, text: str, voice: str) -> dict[str, Any]:
        return {
            "contents": [{"parts": [{"text": text}]}],
            "generationConfig": {
                "responseModalities": ["AUDIO"],
                "speechConfig": {
                    "voiceConfig": {
                        "prebuiltVoiceConfig": {"voiceName": voice},
                    },
                },
            },
        }

    async def synthesize(self, secret: str, text: str, voice: str) -> bytes:
        """Synthesize ``text`` and return raw decoded PCM bytes.

        Raises ``InvalidCredentialError``, ``QuotaExceededError`` or the plain
        ``SpeechSynthesisError`` for anything else.
        """

        hint = fingerprint(secret)
        effective_voice = normalize_voice(voice, self._settings.default_voice)
        headers = {
            "x-goog-api-key": secret,
            "Content-Type": "application/json",
        }

        client = await self._get_http_client()
        try:
            response = await client.post(
                self._endpoint,
                headers=headers,
                json=self._build_payload(text, effective_voice),
            )
        except httpx.TimeoutException as exc:
            raise SpeechSynthesisError(
                f"Speech synthesis timed out with key {hint}: {exc}",
                status.HTTP_504_GATEWAY_TIMEOUT,
            ) from exc
        except httpx.HTTPError as exc:
            raise SpeechSynthesisError(
                f"Network error contacting synthesis endpoint: {exc}",
                status.HTTP_502_BAD_GATEWAY,
            ) from exc

        if response.status_code >= 400:
            detail = _extract_error_detail(response)
            error_cls = classify_error(detail, response.status_code)
            logger.warning(
                "Synthesis failed with key %s (%s): %s",
                hint,
                response.status_code,
                detail,
            )
            if error_cls is InvalidCredentialError:
                message = f"API key not valid: {hint}"
            elif error_cls is QuotaExceededError:
                message = f"API quota exceeded for key {hint}"
            else:
                message = f"Speech synthesis failed: {detail}"
            raise error_cls(message, response.status_code)

        try:
            body = response.json()
        except ValueError as exc:
            raise SpeechSynthesisError(
                f"Malformed synthesis response: {exc}",
                status.HTTP_502_BAD_GATEWAY,
            ) from exc

        encoded = _extract_audio(body)
        if encoded is None:
            raise SpeechSynthesisError(
                "Synthesis response did not contain audio data",
                status.HTTP_502_BAD_GATEWAY,
            )

        try:
            audio = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise SpeechSynthesisError(
                f"Synthesis response carried invalid base64 audio: {exc}",
                status.HTTP_502_BAD_GATEWAY,
            ) from exc

        logger.debug(
            "Synthesized %d bytes with key %s (%d chars)", len(audio), hint, len(text)
        )
        return audio


__all__ = [
    "AUTO_VOICE",
    "KNOWN_VOICES",
    "GeminiSpeechClient",
    "InvalidCredentialError",
    "QuotaExceededError",
    "SpeechSynthesisError",
    "classify_error",
    "fingerprint",
    "normalize_voice",
]
