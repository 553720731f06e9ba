"""
speech/backend_client.py — Speech Backend HTTP Client

Thin async client for the speech backend's boundary endpoints:

    POST /stt     { audioBase64, mimeType }            → { text, language? }
    POST /tts     { text, voice?, format? }            → raw audio bytes
    GET  /health                                       → 2xx when up

Every transport failure and every non-2xx answer is raised as
BackendUnavailableError, with the most specific message the backend gave.
"""

from __future__ import annotations

import json
from typing import Optional

import httpx
from pydantic import ValidationError

from audio.codec import encode
from exceptions import BackendUnavailableError
from observability.logger import get_logger
from speech.types import SttRequest, SttResult, SynthesizedAudio, TtsRequest

log = get_logger(__name__)

_CONTENT_TYPES = {
    "wav":   "audio/wav",
    "mp3":   "audio/mpeg",
    "mulaw": "audio/basic",
    "pcm":   "audio/L16",
}
_OCTET_STREAM = "application/octet-stream"


def content_type_for_format(fmt: Optional[str]) -> str:
    """Content-Type the backend uses for a TTS output format."""
    return _CONTENT_TYPES.get(fmt or "", _OCTET_STREAM)


def extract_error_message(response: httpx.Response, prefix: str) -> str:
    """
    Best human-readable reason for a failed response.

    JSON bodies yield their `message` (then `error`) field; other bodies yield
    their text. Falls back to "<prefix>: <reason phrase>".
    """
    fallback = f"{prefix}: {response.reason_phrase or response.status_code}"
    content_type = response.headers.get("content-type", "")
    try:
        if "application/json" in content_type:
            body = response.json()
            if isinstance(body, dict):
                return str(body.get("message") or body.get("error") or fallback)
            return fallback
        return response.text or fallback
    except (json.JSONDecodeError, UnicodeDecodeError):
        return fallback


class BackendClient:
    """
    Client for /stt, /tts and /health.

    Pass `client` to supply a preconfigured httpx.AsyncClient (tests use one
    with an httpx.MockTransport); otherwise one is created lazily and closed
    by aclose().
    """

    def __init__(
        self,
        base_url: str,
        timeout_s: float = 30.0,
        default_voice: str = "alloy",
        default_format: str = "mp3",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout_s
        self._default_voice = default_voice
        self._default_format = default_format
        self._client = client
        self._owns_client = client is None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    # ── Endpoints ─────────────────────────────────────────────────────────────

    async def transcribe(self, audio: bytes, mime_type: str = "audio/wav") -> SttResult:
        """POST /stt with base64 audio. Returns the transcription."""
        payload = SttRequest(audio_base64=encode(audio), mime_type=mime_type)
        log.debug("backend.stt.start", bytes=len(audio), mime_type=mime_type)

        response = await self._post("/stt", payload.model_dump(by_alias=True), "STT failed")
        try:
            result = SttResult.model_validate(response.json())
        except (json.JSONDecodeError, ValidationError) as e:
            raise BackendUnavailableError(
                f"STT failed: malformed response ({type(e).__name__})",
                status_code=response.status_code,
            ) from e

        log.info("backend.stt.ok", chars=len(result.text), language=result.language)
        return result

    async def synthesize(
        self,
        text: str,
        voice: Optional[str] = None,
        fmt: Optional[str] = None,
    ) -> SynthesizedAudio:
        """POST /tts. Returns the raw audio bytes with their content type."""
        fmt = fmt or self._default_format
        payload = TtsRequest(text=text, voice=voice or self._default_voice, format=fmt)
        log.debug("backend.tts.start", chars=len(text), voice=payload.voice, format=fmt)

        response = await self._post("/tts", payload.model_dump(exclude_none=True), "TTS failed")
        content_type = response.headers.get("content-type") or content_type_for_format(fmt)

        log.info("backend.tts.ok", bytes=len(response.content), content_type=content_type)
        return SynthesizedAudio(data=response.content, content_type=content_type)

    async def health(self) -> bool:
        """True if GET /health answers 2xx."""
        try:
            response = await self._http().get(self._url("/health"))
        except httpx.HTTPError as e:
            log.warning("backend.health.failed", error=str(e))
            return False
        ok = response.is_success
        log.debug("backend.health", status=response.status_code, ok=ok)
        return ok

    # ── Internals ─────────────────────────────────────────────────────────────

    async def _post(self, path: str, payload: dict, prefix: str) -> httpx.Response:
        try:
            response = await self._http().post(self._url(path), json=payload)
        except httpx.HTTPError as e:
            log.warning("backend.request_failed", path=path, error=str(e),
                        error_type=type(e).__name__)
            raise BackendUnavailableError(f"{prefix}: {str(e) or type(e).__name__}") from e

        if not response.is_success:
            message = extract_error_message(response, prefix)
            log.warning("backend.bad_status", path=path, status=response.status_code, error=message)
            raise BackendUnavailableError(message, status_code=response.status_code)
        return response
