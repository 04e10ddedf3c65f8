from __future__ import annotations

import time
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

from config import Settings
from llm import FeedbackGenerator
from main import create_app
from providers import ProviderTranscript
from sessions import IdentityResolver, LocalSessionBackend, SessionStore
from transcription import TranscriptionOrchestrator

VALID_FEEDBACK: dict[str, Any] = {
    "summary": "Clear delivery with a confident close.",
    "strengths": ["Steady pace", "Good eye contact"],
    "improvements": ["Cut filler words in the opening"],
    "scores": {
        "overall": 78,
        "clarity": 8,
        "pacing": 7,
        "fillerWords": 6,
        "confidence": 8,
        "structure": 7,
    },
    "insights": {
        "fillerWordsExamples": ["um, so"],
        "strongMoments": ["the closing line"],
        "weakMoments": ["the first sentence"],
    },
    "stage": "script",
    "checks": {
        "script": {"matchScore": 90, "feedback": "Followed the script closely."},
        "topic": {"relevanceScore": 10, "feedback": "Not requested."},
        "time": {"withinTimeLimit": True, "feedback": "On time."},
        "recommendedStage": "topic",
    },
}

RECORDING = b"\x1aE\xdf\xa3" + b"\x00" * 4096


class FakeProvider:
    def __init__(
        self,
        name: str,
        credential_env: str,
        *,
        result: ProviderTranscript | None = None,
        error: BaseException | None = None,
        delay: float = 0.0,
    ) -> None:
        self.name = name
        self.credential_env = credential_env
        self.result = result
        self.error = error
        self.delay = delay
        self.calls: list[Path] = []
        self.file_existed: list[bool] = []

    def transcribe(self, media_path: Path) -> ProviderTranscript:
        self.calls.append(media_path)
        self.file_existed.append(media_path.exists())
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        assert self.result is not None
        return self.result


def assembly(
    text: str | None = "hello from assemblyai",
    *,
    status: str = "completed",
    job_error: str | None = None,
    **kwargs,
) -> FakeProvider:
    return FakeProvider(
        "AssemblyAI",
        "ASSEMBLYAI_API_KEY",
        result=ProviderTranscript(status=status, text=text, error=job_error),
        **kwargs,
    )


def whisper(text: str | None = "hello from whisper", **kwargs) -> FakeProvider:
    return FakeProvider(
        "OpenAI",
        "OPENAI_API_KEY",
        result=ProviderTranscript(status="completed", text=text),
        **kwargs,
    )


class FakeChat:
    name = "OpenAI"
    credential_env = "OPENAI_API_KEY"

    def __init__(self, content: str | None = None, *, error: BaseException | None = None, delay: float = 0.0) -> None:
        self.content = content
        self.error = error
        self.delay = delay
        self.prompts: list[str] = []

    def complete(self, prompt: str, *, timeout: float) -> str | None:
        self.prompts.append(prompt)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.content


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        assemblyai_api_key="aai-test",
        openai_api_key="sk-test",
        upload_dir=tmp_path / "uploads",
        storage_dir=tmp_path / "storage",
    )


@pytest.fixture()
def bare_settings(tmp_path: Path) -> Settings:
    return Settings(upload_dir=tmp_path / "uploads", storage_dir=tmp_path / "storage")


def build_client(
    settings: Settings,
    *,
    primary: FakeProvider | None = None,
    fallback: FakeProvider | None = None,
    chat: FakeChat | None = None,
) -> TestClient:
    orchestrator = TranscriptionOrchestrator(primary, fallback, timeout_seconds=5)
    feedback = FeedbackGenerator(chat, timeout_seconds=5) if chat is not None else None
    app = create_app(
        settings,
        orchestrator=orchestrator,
        feedback=feedback,
        session_store=SessionStore(LocalSessionBackend(settings.storage_dir)),
        identity_resolver=IdentityResolver(),
    )
    return TestClient(app)


def leftover_uploads(settings: Settings) -> list[Path]:
    if not settings.upload_dir.exists():
        return []
    return list(settings.upload_dir.iterdir())
