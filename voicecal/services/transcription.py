"""Speech-to-text over an OpenAI compatible transcription endpoint."""

import logging
from dataclasses import dataclass, field

import httpx

from voicecal.config import Settings, get_settings
from voicecal.services.errors import TranscriptionError

logger = logging.getLogger(__name__)


@dataclass
class TranscriptionResult:
    text: str
    language: str | None
    provider: str
    segments: list[dict] = field(default_factory=list)


class TranscriptionService:
    """Transcribe voice note audio."""

    provider = "openai-compatible"

    def __init__(
        self, settings: Settings | None = None, client: httpx.Client | None = None
    ) -> None:
        self.settings = settings or get_settings()
        self.client = client or httpx.Client(timeout=120.0)

    def transcribe(self, audio: bytes, mime_type: str | None = None) -> TranscriptionResult:
        headers = {}
        if self.settings.stt_api_key:
            headers["Authorization"] = f"Bearer {self.settings.stt_api_key}"

        response = self.client.post(
            self.settings.stt_api_url,
            headers=headers,
            files={"file": ("voice-note", audio, mime_type or "application/octet-stream")},
            data={
                "model": self.settings.stt_model,
                "language": self.settings.stt_language,
                "response_format": "verbose_json",
            },
        )
        if not response.is_success:
            raise TranscriptionError(
                f"Transcription failed: {response.status_code} {response.text[:200]}"
            )

        data = response.json()
        text = (data.get("text") or "").strip()
        if not text:
            raise TranscriptionError("Invalid audio: no speech could be transcribed")

        logger.info(f"Transcribed {len(audio)} bytes into {len(text)} characters")
        return TranscriptionResult(
            text=text,
            language=data.get("language") or self.settings.stt_language,
            provider=self.provider,
            segments=data.get("segments") or [],
        )

    def close(self) -> None:
        self.client.close()
