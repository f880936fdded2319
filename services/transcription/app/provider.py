"""Upstream speech-to-text / translation provider clients"""

from typing import Any, Optional, Union

import httpx
import structlog

from .config import Settings, settings as default_settings
from .errors import ProviderError, ProviderNotConfiguredError, RateLimitError
from .models import ProviderTranscription

logger = structlog.get_logger(__name__)


class UnconfiguredProvider:
    """Stand-in used when no provider credentials are available"""

    name = "none"
    configured = False

    def __init__(self, reason: str):
        self.reason = reason

    async def transcribe(self, audio: bytes, language: str) -> ProviderTranscription:
        raise ProviderNotConfiguredError(self.reason)

    async def translate(self, text: str, source_language: str, target_language: str) -> Any:
        raise ProviderNotConfiguredError(self.reason)

    async def close(self):
        return None


class SarvamClient:
    """Sarvam AI REST client (speech-to-text and text translation)"""

    name = "sarvam"
    configured = True

    def __init__(
        self,
        api_key: str,
        config: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not api_key:
            raise ValueError("Sarvam API key is required")
        self.api_key = api_key
        self.settings = config or default_settings
        self._client = client

    async def initialize(self):
        """Create the pooled HTTP client"""
        if self._client is None:
            limits = httpx.Limits(
                max_keepalive_connections=20,
                max_connections=100,
                keepalive_expiry=30.0,
            )
            timeout = httpx.Timeout(
                self.settings.provider_timeout_seconds,
                connect=5.0,
            )
            self._client = httpx.AsyncClient(
                base_url=self.settings.sarvam_base_url,
                headers={"api-subscription-key": self.api_key},
                limits=limits,
                timeout=timeout,
            )
            logger.info("Sarvam HTTP client initialized", base_url=self.settings.sarvam_base_url)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            await self.initialize()
        return self._client

    async def transcribe(self, audio: bytes, language: str) -> ProviderTranscription:
        """Transcribe a WAV clip in the given language code"""
        client = await self._get_client()
        files = {"file": ("audio.wav", audio, "audio/wav")}
        data = {
            "language_code": language,
            "model": self.settings.stt_model,
            "with_timestamps": "false",
        }

        try:
            response = await client.post("/speech-to-text", files=files, data=data)
        except httpx.TimeoutException as e:
            raise ProviderError(f"Sarvam transcribe timed out: {e}", operation="transcribe") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Sarvam transcribe request failed: {e}", operation="transcribe") from e

        self._check_response(response, "transcribe")
        payload = self._parse_payload(response, "transcribe")
        return ProviderTranscription(
            transcript=payload.get("transcript") or "",
            detected_language=payload.get("language_code"),
            duration_seconds=payload.get("duration_in_seconds"),
        )

    async def translate(self, text: str, source_language: str, target_language: str) -> Any:
        """Translate text; returns the raw ``translated_text`` value"""
        client = await self._get_client()
        body = {
            "input": text,
            "source_language_code": source_language,
            "target_language_code": target_language,
            "speaker_gender": self.settings.speaker_gender,
            "mode": self.settings.translate_mode,
            "model": self.settings.translate_model,
            "enable_preprocessing": False,
        }

        try:
            response = await client.post(
                "/translate",
                json=body,
                timeout=self.settings.translate_timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise ProviderError(f"Sarvam translate timed out: {e}", operation="translate") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Sarvam translate request failed: {e}", operation="translate") from e

        self._check_response(response, "translate")
        payload = self._parse_payload(response, "translate")
        return payload.get("translated_text", payload.get("output"))

    def _check_response(self, response: httpx.Response, operation: str):
        if response.status_code < 400:
            return

        message = response.text
        try:
            detail = response.json()
            if isinstance(detail, dict):
                message = detail.get("message") or detail.get("error") or message
        except ValueError:
            pass

        if response.status_code == 429:
            raise RateLimitError(
                f"Sarvam {operation} rate limited: {message}",
                operation=operation,
                status_code=429,
            )
        raise ProviderError(
            f"Sarvam {operation} failed ({response.status_code}): {message}",
            operation=operation,
            status_code=response.status_code,
        )

    def _parse_payload(self, response: httpx.Response, operation: str) -> dict:
        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderError(
                f"Sarvam {operation} returned a non-JSON body",
                operation=operation,
                status_code=response.status_code,
            ) from e
        if not isinstance(payload, dict):
            raise ProviderError(
                f"Sarvam {operation} returned an unexpected payload",
                operation=operation,
                status_code=response.status_code,
            )
        return payload

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("Sarvam HTTP client closed")


Provider = Union[SarvamClient, UnconfiguredProvider]


def build_provider(config: Optional[Settings] = None) -> Provider:
    """Construct the provider once at startup from settings"""
    config = config or default_settings

    if config.transcription_provider.lower() != "sarvam":
        logger.warning(
            "Transcription provider not configured",
            provider=config.transcription_provider,
            expected="sarvam",
        )
        return UnconfiguredProvider("provider_not_configured")

    if not config.sarvam_api_key:
        logger.warning("SARVAM_API_KEY not set, transcription disabled")
        return UnconfiguredProvider("missing_api_key")

    return SarvamClient(config.sarvam_api_key, config)
