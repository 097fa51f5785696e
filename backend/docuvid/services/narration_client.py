"""ElevenLabs text-to-speech client for narration segments."""

import logging
from typing import Optional

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from docuvid.config import settings
from docuvid.exceptions import (
    ConfigurationError,
    PermanentProviderError,
    TransientProviderError,
)

logger = logging.getLogger(__name__)


class ElevenLabsClient:
    """Synthesizes mp3 narration. Unconfigured clients raise ConfigurationError."""

    def __init__(
        self,
        api_key: Optional[str],
        voice_id: Optional[str],
        *,
        api_base: str = "https://api.elevenlabs.io/v1",
        model_id: str = "eleven_multilingual_v2",
        stability: float = 0.6,
        similarity_boost: float = 0.75,
        speed: float = 0.75,
        max_attempts: int = 3,
        base_delay: float = 2.0,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._api_key = api_key
        self._voice_id = voice_id
        self._api_base = api_base.rstrip("/")
        self._model_id = model_id
        self._voice_settings = {
            "stability": stability,
            "similarity_boost": similarity_boost,
            "speed": speed,
        }
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @classmethod
    def from_settings(cls) -> "ElevenLabsClient":
        cfg = settings.narration
        return cls(
            cfg.api_key,
            cfg.voice_id,
            api_base=cfg.api_base,
            model_id=cfg.model_id,
            stability=cfg.stability,
            similarity_boost=cfg.similarity_boost,
            speed=cfg.speed,
            max_attempts=settings.pipeline.retry_max_attempts,
            base_delay=settings.pipeline.retry_base_delay,
            timeout=cfg.request_timeout,
        )

    @property
    def configured(self) -> bool:
        return bool(self._api_key and self._voice_id)

    async def close(self) -> None:
        await self._client.aclose()

    async def synthesize(self, text: str) -> bytes:
        """Return mp3 bytes for text."""
        if not self.configured:
            raise ConfigurationError("ElevenLabs narration is not configured")
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._base_delay, max=30),
            retry=retry_if_exception_type(TransientProviderError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return await retrying(self._synthesize_once, text)

    async def _synthesize_once(self, text: str) -> bytes:
        url = f"{self._api_base}/text-to-speech/{self._voice_id}"
        try:
            response = await self._client.post(
                url,
                params={"output_format": "mp3_44100_128"},
                headers={"xi-api-key": self._api_key, "Accept": "audio/mpeg"},
                json={
                    "text": text,
                    "model_id": self._model_id,
                    "voice_settings": self._voice_settings,
                },
            )
        except httpx.TransportError as e:
            raise TransientProviderError(f"ElevenLabs connection error: {type(e).__name__}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientProviderError(
                f"ElevenLabs returned {response.status_code}",
                status_code=response.status_code,
            )
        if not response.is_success:
            raise PermanentProviderError(
                f"ElevenLabs rejected request ({response.status_code})",
                details=response.text[:300],
                status_code=response.status_code,
            )
        return response.content
