"""Temporary audio storage handing downloads over to transcription."""

import logging
from pathlib import Path

logger = logging.getLogger(__name__)

EXTENSIONS = {
    "audio/ogg": ".ogg",
    "audio/mpeg": ".mp3",
    "audio/mp4": ".m4a",
    "audio/aac": ".aac",
    "audio/amr": ".amr",
    "audio/wav": ".wav",
    "audio/webm": ".webm",
}


class AudioStorage:
    """Stores downloaded audio on local disk until it has been transcribed."""

    def __init__(self, base_dir: str) -> None:
        self.base_dir = Path(base_dir)

    def save_temp(self, job_id: int, data: bytes, mime_type: str | None) -> str:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        base_mime = (mime_type or "").split(";", 1)[0].strip()
        path = self.base_dir / f"voice-job-{job_id}{EXTENSIONS.get(base_mime, '.bin')}"
        path.write_bytes(data)
        return str(path)

    def read(self, path: str) -> bytes:
        return Path(path).read_bytes()

    def cleanup(self, path: str | None) -> None:
        """Delete a stored file. Missing files are fine."""
        if not path:
            return
        try:
            Path(path).unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to clean up audio file {path}: {e}")
