from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import assemblyai as aai
from assemblyai.client import Client as AssemblyAIClient
from assemblyai.types import Settings as AssemblyAISettings
from openai import OpenAI

from config import Settings

logger = logging.getLogger(__name__)

ASSEMBLYAI_POLLING_INTERVAL = 3.0


@dataclass(frozen=True)
class ProviderTranscript:
    """Normalised terminal result of one provider call."""

    status: str
    text: str | None = None
    error: str | None = None


class TranscriptionProvider(Protocol):
    name: str
    credential_env: str

    def transcribe(self, media_path: Path) -> ProviderTranscript: ...


class AssemblyAIProvider:
    """Uploads the recording and waits for the job to reach a terminal status."""

    name = "AssemblyAI"
    credential_env = "ASSEMBLYAI_API_KEY"

    def __init__(self, transcriber: aai.Transcriber, *, poll_timeout: float | None = None) -> None:
        self._transcriber = transcriber
        self._poll_timeout = poll_timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "AssemblyAIProvider":
        client = AssemblyAIClient(
            settings=AssemblyAISettings(
                api_key=settings.assemblyai_api_key,
                http_timeout=settings.transcription_timeout,
                polling_interval=ASSEMBLYAI_POLLING_INTERVAL,
            )
        )
        transcriber = aai.Transcriber(
            client=client,
            config=aai.TranscriptionConfig(language_code=settings.transcription_language),
        )
        return cls(transcriber, poll_timeout=settings.transcription_timeout)

    def transcribe(self, media_path: Path) -> ProviderTranscript:
        logger.info("Uploading %s to AssemblyAI", media_path.name)
        transcript = self._transcriber.transcribe(str(media_path), poll_timeout=self._poll_timeout)
        status = getattr(transcript.status, "value", transcript.status)
        return ProviderTranscript(
            status=str(status),
            text=transcript.text,
            error=getattr(transcript, "error", None),
        )


class OpenAIWhisperProvider:
    """Single transcription request with a fixed model and language."""

    name = "OpenAI"
    credential_env = "OPENAI_API_KEY"

    def __init__(self, client: OpenAI, *, model: str = "whisper-1", language: str = "en") -> None:
        self._client = client
        self._model = model
        self._language = language

    @classmethod
    def from_settings(cls, settings: Settings, client: OpenAI | None = None) -> "OpenAIWhisperProvider":
        if client is None:
            client = build_openai_client(settings)
        return cls(
            client,
            model=settings.transcription_model,
            language=settings.transcription_language,
        )

    def transcribe(self, media_path: Path) -> ProviderTranscript:
        logger.info("Sending %s to OpenAI %s", media_path.name, self._model)
        response = self._client.audio.transcriptions.create(
            file=(media_path.name, media_path.read_bytes()),
            model=self._model,
            response_format="text",
            language=self._language,
        )
        text = response if isinstance(response, str) else getattr(response, "text", "")
        return ProviderTranscript(status="completed", text=text)


def build_openai_client(settings: Settings) -> OpenAI:
    # max_retries covers transient connection errors inside the SDK.
    return OpenAI(
        api_key=settings.openai_api_key,
        timeout=settings.transcription_timeout,
        max_retries=settings.openai_max_retries,
    )


def build_transcription_providers(
    settings: Settings, openai_client: OpenAI | None = None
) -> tuple[TranscriptionProvider | None, TranscriptionProvider | None]:
    """Return ``(primary, fallback)`` for the configured credentials.

    AssemblyAI is primary whenever its key is present and OpenAI is the
    fallback. With only an OpenAI key, OpenAI becomes the sole provider and is
    returned in the fallback slot so the orchestrator starts there directly.
    """
    primary: TranscriptionProvider | None = None
    fallback: TranscriptionProvider | None = None
    if settings.assemblyai_configured:
        primary = AssemblyAIProvider.from_settings(settings)
    if settings.openai_configured:
        fallback = OpenAIWhisperProvider.from_settings(settings, client=openai_client)
    return primary, fallback
