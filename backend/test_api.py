from __future__ import annotations

import dataclasses
import json
from pathlib import Path

import pytest

from conftest import (
    RECORDING,
    VALID_FEEDBACK,
    FakeChat,
    assembly,
    build_client,
    leftover_uploads,
    whisper,
)
from config import Settings


def upload(client, payload: bytes = RECORDING, **form):
    data = {"mode": "script", "script": "Practice makes perfect.", **form}
    return client.post(
        "/api/analyze", files={"video": ("recording.webm", payload, "video/webm")}, data=data
    )


def test_root_lists_endpoints(settings: Settings) -> None:
    response = build_client(settings).get("/")

    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "SpeechPrep API server is running"
    assert set(body["endpoints"]) == {"analyze", "health", "sessions"}


def test_health_without_credentials_is_unavailable(bare_settings: Settings) -> None:
    client = build_client(bare_settings)

    first = client.get("/api/health")
    second = client.get("/api/health")

    assert first.status_code == second.status_code == 503
    assert first.json() == second.json()
    body = first.json()
    assert body["status"] == "error"
    assert body["transcription"]["available"] is False
    assert body["services"]["assemblyai"]["configured"] is False
    assert any("OPENAI_API_KEY" in step for step in body["nextSteps"])


def test_health_with_both_providers(settings: Settings) -> None:
    client = build_client(settings, primary=assembly(), fallback=whisper(), chat=FakeChat("{}"))

    response = client.get("/api/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["transcription"] == {"primary": "AssemblyAI", "fallback": "OpenAI", "available": True}
    assert body["services"]["llm"]["available"] is True
    assert body["nextSteps"] == []


def test_missing_recording(settings: Settings) -> None:
    client = build_client(settings, fallback=whisper(), chat=FakeChat(json.dumps(VALID_FEEDBACK)))

    response = client.post("/api/analyze", data={"mode": "script"})

    assert response.status_code == 400
    assert response.json()["error"] == "No recording uploaded"


def test_tiny_recording_is_rejected_before_any_provider_call(settings: Settings) -> None:
    primary, fallback = assembly(), whisper()
    client = build_client(settings, primary=primary, fallback=fallback, chat=FakeChat("{}"))

    response = upload(client, b"\x00" * 999)

    assert response.status_code == 400
    assert "too short or empty" in response.json()["error"]
    assert primary.calls == [] and fallback.calls == []


def test_tiny_recording_is_rejected_even_without_providers(bare_settings: Settings) -> None:
    response = upload(build_client(bare_settings), b"\x00" * 10)
    assert response.status_code == 400


def test_oversized_recording_is_never_written(tmp_path: Path) -> None:
    settings = Settings(
        openai_api_key="sk-test",
        max_upload_bytes=5000,
        upload_dir=tmp_path / "uploads",
        storage_dir=tmp_path / "storage",
    )
    fallback = whisper()
    client = build_client(settings, fallback=fallback, chat=FakeChat("{}"))

    response = upload(client, b"\x00" * 6000)

    assert response.status_code == 400
    assert response.json()["error"] == "File too large. Maximum size is 50MB."
    assert not settings.upload_dir.exists()
    assert fallback.calls == []


def test_no_providers_configured(bare_settings: Settings) -> None:
    response = upload(build_client(bare_settings))

    assert response.status_code == 500
    body = response.json()
    assert "configured" in body["error"]
    assert any("OPENAI_API_KEY" in step for step in body["nextSteps"])


def test_missing_analysis_backend(settings: Settings) -> None:
    settings = dataclasses.replace(settings, openai_api_key=None)
    primary = assembly()
    client = build_client(settings, primary=primary)

    response = upload(client)

    assert response.status_code == 500
    body = response.json()
    assert body["error"] == "OPENAI_API_KEY is required for analysis."
    assert any("OPENAI_API_KEY" in step for step in body["nextSteps"])
    assert primary.calls == []


def test_fallback_only_configuration_succeeds(settings: Settings) -> None:
    chat = FakeChat(json.dumps(VALID_FEEDBACK))
    client = build_client(settings, fallback=whisper("practice makes perfect"), chat=chat)

    response = upload(client)

    assert response.status_code == 200
    assert response.json()["transcript"] == "practice makes perfect"
    assert leftover_uploads(settings) == []


def test_primary_success_never_touches_broken_fallback(settings: Settings) -> None:
    fallback = whisper(error=ConnectionResetError("connection reset by peer"))
    client = build_client(
        settings,
        primary=assembly("from the primary"),
        fallback=fallback,
        chat=FakeChat(json.dumps(VALID_FEEDBACK)),
    )

    response = upload(client)

    assert response.status_code == 200
    assert response.json()["transcript"] == "from the primary"
    assert fallback.calls == []


def test_script_mode_feedback_has_no_topic_checks(settings: Settings) -> None:
    client = build_client(settings, primary=assembly(), chat=FakeChat(json.dumps(VALID_FEEDBACK)))

    feedback = upload(client).json()["feedback"]

    assert "script" in feedback["checks"]
    assert "topic" not in feedback["checks"]


def test_topic_mode_feedback_and_prompt(settings: Settings) -> None:
    chat = FakeChat(json.dumps(VALID_FEEDBACK))
    client = build_client(settings, primary=assembly(), chat=chat)

    response = upload(
        client,
        mode="topic",
        topic="My favourite book",
        timeLimitSeconds="60",
        elapsedSeconds="42",
    )

    assert response.status_code == 200
    checks = response.json()["feedback"]["checks"]
    assert "topic" in checks and "script" not in checks
    prompt = chat.prompts[0]
    assert "Topic: My favourite book" in prompt
    assert "Time limit (seconds): 60" in prompt
    assert "Actual speaking time (seconds): 42" in prompt
    assert "Practice makes perfect." not in prompt


def test_script_tone_reaches_the_prompt(settings: Settings) -> None:
    chat = FakeChat(json.dumps(VALID_FEEDBACK))
    client = build_client(settings, primary=assembly(), chat=chat)

    upload(client, scriptTone="sarcastic")

    assert '"sarcastic"' in chat.prompts[0]
    assert "Practice makes perfect." in chat.prompts[0]


def test_both_providers_unreachable(settings: Settings) -> None:
    client = build_client(
        settings,
        primary=assembly(None, status="error", job_error="upload failed"),
        fallback=whisper(error=ConnectionRefusedError("connection refused")),
        chat=FakeChat(json.dumps(VALID_FEEDBACK)),
    )

    response = upload(client)

    assert response.status_code == 500
    body = response.json()
    assert "Both AssemblyAI and OpenAI could not be reached" in body["error"]
    assert body["details"] == "connection refused"
    assert leftover_uploads(settings) == []


def test_rate_limited_transcription(settings: Settings) -> None:
    client = build_client(
        settings,
        fallback=whisper(error=RuntimeError("Rate limit reached for whisper-1")),
        chat=FakeChat("{}"),
    )

    response = upload(client)

    assert response.status_code == 500
    assert response.json()["error"] == "API rate limit exceeded."


def test_whitespace_transcript_means_no_speech(settings: Settings) -> None:
    chat = FakeChat(json.dumps(VALID_FEEDBACK))
    client = build_client(settings, fallback=whisper("   \n "), chat=chat)

    response = upload(client)

    assert response.status_code == 400
    assert response.json()["error"].startswith("No speech detected")
    assert chat.prompts == []


def test_unparseable_feedback(settings: Settings) -> None:
    client = build_client(settings, primary=assembly(), chat=FakeChat("Great job overall!"))

    response = upload(client)

    assert response.status_code == 500
    assert response.json()["error"] == "Failed to parse AI feedback."
    assert leftover_uploads(settings) == []


def test_feedback_connectivity_failure(settings: Settings) -> None:
    client = build_client(
        settings, primary=assembly(), chat=FakeChat(error=ConnectionError("connection aborted"))
    )

    response = upload(client)

    assert response.status_code == 500
    body = response.json()
    assert body["error"] == "Cannot connect to the AI analysis service."
    assert body["nextSteps"]


def test_feedback_generic_failure(settings: Settings) -> None:
    client = build_client(settings, primary=assembly(), chat=FakeChat(error=ValueError("boom")))

    response = upload(client)

    assert response.status_code == 500
    assert response.json()["error"] == "Failed to analyze speech with AI."


def test_upload_directory_unavailable(settings: Settings, tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("occupied")
    settings = dataclasses.replace(settings, upload_dir=blocker)
    fallback = whisper()
    client = build_client(settings, fallback=fallback, chat=FakeChat("{}"))

    response = upload(client)

    assert response.status_code == 500
    assert response.json()["error"] == "Failed to create temporary directory for file upload."
    assert fallback.calls == []


def test_recording_is_staged_while_transcribing(settings: Settings) -> None:
    primary = assembly()
    client = build_client(settings, primary=primary, chat=FakeChat(json.dumps(VALID_FEEDBACK)))

    upload(client)

    assert primary.file_existed == [True]
    staged = primary.calls[0]
    assert staged.parent == settings.upload_dir
    assert staged.suffix == ".webm"
    assert not staged.exists()


def test_failed_write_is_reported_and_cleaned_up(
    settings: Settings, monkeypatch: pytest.MonkeyPatch
) -> None:
    original_open = Path.open

    def full_disk_open(self, mode="r", *args, **kwargs):
        if mode == "xb":
            raise OSError("disk full")
        return original_open(self, mode, *args, **kwargs)

    monkeypatch.setattr(Path, "open", full_disk_open)
    primary, fallback = assembly(), whisper()
    client = build_client(settings, primary=primary, fallback=fallback, chat=FakeChat("{}"))

    response = upload(client)

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to save uploaded file.", "details": "disk full"}
    assert leftover_uploads(settings) == []
    assert primary.calls == [] and fallback.calls == []
