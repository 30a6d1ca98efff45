"""Speech synthesis and remote asset download for chat video jobs."""

from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import os
import shutil
from typing import Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlparse
from urllib.request import Request, urlopen

from domain.chat_video import ChatVideoPipelineError, ChatVideoValidationError

LOGGER = logging.getLogger("chat_video")

SPEECH_CONFIG_CODE = "chat_video.speech.config_missing"
SPEECH_REQUEST_CODE = "chat_video.speech.request_failed"
DOWNLOAD_CODE = "chat_video.download.failed"
DOWNLOAD_URL_CODE = "chat_video.input.invalid_url"

ELEVENLABS_API_KEY_ENV = "ELEVENLABS_API_KEY"
ELEVENLABS_MODEL_ENV = "ELEVENLABS_MODEL_ID"
ELEVENLABS_BASE_URL = "https://api.elevenlabs.io/v1/text-to-speech"
DEFAULT_ELEVENLABS_MODEL = "eleven_multilingual_v2"
DEFAULT_TIMEOUT_SECONDS = 120.0
DOWNLOAD_CHUNK_BYTES = 65536


class SpeechSynthesizer(Protocol):
    """Turns message text into an audio file."""

    def synthesize(self, text_value: str, voice_id: str, output_path: str) -> None:
        ...


@dataclass(frozen=True)
class ElevenLabsSynthesizer:
    """ElevenLabs text-to-speech client writing MP3 files."""

    api_key: str
    model_id: str = DEFAULT_ELEVENLABS_MODEL
    base_url: str = ELEVENLABS_BASE_URL
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        if not self.api_key.strip():
            raise ChatVideoValidationError(
                SPEECH_CONFIG_CODE, "ElevenLabs API key must be non-empty"
            )

    def synthesize(self, text_value: str, voice_id: str, output_path: str) -> None:
        """Request speech for one message and stream it to disk."""
        body = json.dumps({"text": text_value, "model_id": self.model_id}).encode(
            "utf-8"
        )
        request = Request(
            f"{self.base_url}/{quote(voice_id, safe='')}",
            data=body,
            method="POST",
            headers={
                "xi-api-key": self.api_key,
                "Content-Type": "application/json",
                "Accept": "audio/mpeg",
            },
        )
        try:
            with urlopen(request, timeout=self.timeout_seconds) as response:
                with open(output_path, "wb") as handle:
                    shutil.copyfileobj(response, handle, DOWNLOAD_CHUNK_BYTES)
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace").strip()
            raise ChatVideoPipelineError(
                SPEECH_REQUEST_CODE,
                f"speech synthesis failed with HTTP {exc.code}: {detail}",
            ) from exc
        except (URLError, OSError) as exc:
            raise ChatVideoPipelineError(
                SPEECH_REQUEST_CODE, f"speech synthesis failed: {exc}"
            ) from exc


def build_elevenlabs_synthesizer(env: dict[str, str]) -> ElevenLabsSynthesizer:
    """Build the ElevenLabs client from the environment."""
    api_key = env.get(ELEVENLABS_API_KEY_ENV, "").strip()
    if not api_key:
        raise ChatVideoValidationError(
            SPEECH_CONFIG_CODE, f"{ELEVENLABS_API_KEY_ENV} is not set"
        )
    model_id = env.get(ELEVENLABS_MODEL_ENV, "").strip() or DEFAULT_ELEVENLABS_MODEL
    return ElevenLabsSynthesizer(api_key=api_key, model_id=model_id)


def is_remote_url(location: str) -> bool:
    """Return True for http(s) locations."""
    return urlparse(location).scheme in ("http", "https")


def download_file(
    url: str, output_path: str, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
) -> None:
    """Stream a remote file to disk."""
    if not is_remote_url(url):
        raise ChatVideoValidationError(DOWNLOAD_URL_CODE, f"unsupported url: {url!r}")
    try:
        with urlopen(Request(url, method="GET"), timeout=timeout_seconds) as response:
            with open(output_path, "wb") as handle:
                shutil.copyfileobj(response, handle, DOWNLOAD_CHUNK_BYTES)
    except (URLError, OSError) as exc:
        raise ChatVideoPipelineError(
            DOWNLOAD_CODE, f"download failed for {url}: {exc}"
        ) from exc
    LOGGER.info("chat_video.download.complete url=%s path=%s", url, output_path)


def fetch_asset(location: str, output_path: str) -> str:
    """Download a remote asset, or validate and return a local path."""
    if is_remote_url(location):
        download_file(location, output_path)
        return output_path
    if not os.path.isfile(location):
        raise ChatVideoValidationError(
            DOWNLOAD_URL_CODE, f"asset not found: {location}"
        )
    return location
