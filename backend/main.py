from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from fastapi import FastAPI, File, Form, Header, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from openai import OpenAI
from pydantic import BaseModel, ConfigDict, Field

from config import Settings, configure_logging
from errors import NoProviderConfigured, classify_failure
from llm import FeedbackGenerationError, FeedbackGenerator, FeedbackParseError, build_chat_client
from providers import build_openai_client, build_transcription_providers
from sessions import (
    AuthenticationError,
    IdentityResolver,
    SessionRecord,
    SessionStore,
    build_session_store,
    build_supabase_client,
)
from transcription import TranscriptionFailed, TranscriptionOrchestrator
from uploads import Mode, SessionMetadata, UploadStorageError, remove_temp_file, write_temp_recording

logger = logging.getLogger(__name__)


class AnalyzeResponse(BaseModel):
    transcript: str
    feedback: dict[str, Any]


class SessionCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    mode: Mode = "script"
    transcript: str
    feedback: dict[str, Any]
    script: str | None = None
    script_tone: str | None = Field(default=None, alias="scriptTone")
    topic: str | None = None
    time_limit_seconds: float | None = Field(default=None, alias="timeLimitSeconds")
    elapsed_seconds: float | None = Field(default=None, alias="elapsedSeconds")


def error_response(
    status_code: int,
    error: str,
    *,
    details: str | None = None,
    next_steps: list[str] | None = None,
) -> JSONResponse:
    content: dict[str, Any] = {"error": error}
    if details:
        content["details"] = details
    if next_steps:
        content["nextSteps"] = next_steps
    return JSONResponse(status_code=status_code, content=content)


def not_configured_steps(settings: Settings) -> list[str]:
    return [
        "1. Add OPENAI_API_KEY to your .env file (required for analysis)",
        "   Get it from: https://platform.openai.com/api-keys",
        "2. Optionally add ASSEMBLYAI_API_KEY for transcription (recommended)",
        "   Get it from: https://www.assemblyai.com/app/account",
        "3. Restart your server after adding keys",
        f"4. Check service status: GET {settings.health_url}",
    ]


def analysis_unavailable_steps(settings: Settings) -> list[str]:
    if settings.llm_provider == "ollama":
        return [
            "1. Start Ollama locally (ollama serve)",
            f"2. Pull the model: ollama pull {settings.ollama_model}",
            "3. Set OLLAMA_HOST if Ollama is not on the default address",
            f"4. Check service status: GET {settings.health_url}",
        ]
    return [
        "1. Add OPENAI_API_KEY to your .env file",
        "   Get it from: https://platform.openai.com/api-keys",
        "2. Make sure the key is correct (no extra spaces or quotes)",
        "3. Restart your server after adding the key",
        f"4. Check service status: GET {settings.health_url}",
    ]


def build_health_report(
    settings: Settings,
    orchestrator: TranscriptionOrchestrator,
    feedback: FeedbackGenerator | None,
) -> tuple[dict[str, Any], int]:
    """Describe provider configuration without calling any external service."""
    primary = orchestrator.primary
    fallback = orchestrator.fallback
    transcription_order = [p.name for p in (primary, fallback) if p is not None]

    health: dict[str, Any] = {
        "status": "ok",
        "services": {
            "assemblyai": {
                "configured": settings.assemblyai_configured,
                "available": primary is not None,
            },
            "openai": {
                "configured": settings.openai_configured,
                "available": fallback is not None,
            },
            "llm": {
                "provider": settings.llm_provider,
                "model": (
                    settings.ollama_model
                    if settings.llm_provider == "ollama"
                    else settings.openai_model
                ),
                "available": feedback is not None,
            },
        },
        "transcription": {
            "primary": transcription_order[0] if transcription_order else "OpenAI",
            "fallback": transcription_order[1] if len(transcription_order) > 1 else None,
            "available": bool(transcription_order),
        },
        "nextSteps": [],
    }
    next_steps: list[str] = health["nextSteps"]

    if not settings.openai_configured and settings.llm_provider == "openai":
        next_steps.append("Configure OPENAI_API_KEY in your .env file (required for analysis)")

    if not transcription_order:
        health["status"] = "error"
        if not settings.assemblyai_configured and not settings.openai_configured:
            next_steps.extend(
                [
                    "Configure at least one transcription service:",
                    "  1. Add ASSEMBLYAI_API_KEY to .env (recommended)",
                    "  2. OR add OPENAI_API_KEY to .env (required for analysis anyway)",
                ]
            )

    if not settings.openai_configured:
        next_steps.append("Get OpenAI API key: https://platform.openai.com/api-keys")
    if not settings.assemblyai_configured:
        next_steps.append(
            "Get AssemblyAI API key (optional): https://www.assemblyai.com/app/account"
        )

    return health, 200 if health["status"] == "ok" else 503


def _log_unhandled(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
    exc = context.get("exception")
    logger.error(
        "Unhandled error in background task: %s",
        context.get("message") or exc,
        exc_info=exc if isinstance(exc, BaseException) else None,
    )


def create_app(
    settings: Settings | None = None,
    *,
    orchestrator: TranscriptionOrchestrator | None = None,
    feedback: FeedbackGenerator | None = None,
    session_store: SessionStore | None = None,
    identity_resolver: IdentityResolver | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()

    if orchestrator is None or feedback is None:
        openai_client: OpenAI | None = (
            build_openai_client(settings) if settings.openai_configured else None
        )
        if orchestrator is None:
            primary, fallback = build_transcription_providers(settings, openai_client)
            orchestrator = TranscriptionOrchestrator(
                primary, fallback, timeout_seconds=settings.transcription_timeout
            )
        if feedback is None:
            chat_client = build_chat_client(settings, openai_client)
            if chat_client is not None:
                feedback = FeedbackGenerator(chat_client, timeout_seconds=settings.feedback_timeout)

    if session_store is None or identity_resolver is None:
        supabase_client = build_supabase_client(settings)
        session_store = session_store or build_session_store(settings, supabase_client)
        identity_resolver = identity_resolver or IdentityResolver(supabase_client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        asyncio.get_running_loop().set_exception_handler(_log_unhandled)
        logger.info("OPENAI_API_KEY loaded: %s", "yes" if settings.openai_configured else "no")
        logger.info(
            "ASSEMBLYAI_API_KEY loaded: %s", "yes" if settings.assemblyai_configured else "no"
        )
        order = [p.name for p in (orchestrator.primary, orchestrator.fallback) if p is not None]
        logger.info("Transcription order: %s", " -> ".join(order) or "none configured")
        yield

    app = FastAPI(
        title="SpeechPrep API",
        version="0.1.0",
        description="Transcribe practice recordings and return speaking feedback.",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.orchestrator = orchestrator
    app.state.feedback = feedback
    app.state.session_store = session_store
    app.state.identity_resolver = identity_resolver

    allowed_origins = list(settings.cors_allow_origins)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials="*" not in allowed_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(Exception)
    async def unhandled_exception(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error in %s %s", request.method, request.url.path)
        return error_response(500, "Failed to analyze speech.", details=str(exc) or repr(exc))

    @app.get("/")
    async def root() -> dict[str, Any]:
        return {
            "message": "SpeechPrep API server is running",
            "endpoints": {
                "analyze": "POST /api/analyze - Upload a video recording for AI analysis",
                "health": "GET /api/health - Check transcription service status",
                "sessions": "GET/POST /api/sessions - Practice history for the current user",
            },
        }

    @app.get("/api/health")
    async def health() -> JSONResponse:
        report, status_code = build_health_report(settings, orchestrator, feedback)
        return JSONResponse(status_code=status_code, content=report)

    @app.post("/api/analyze", response_model=AnalyzeResponse)
    async def analyze(
        video: UploadFile | None = File(default=None),
        mode: str = Form(default="script"),
        script: str | None = Form(default=None),
        script_tone: str | None = Form(default=None, alias="scriptTone"),
        topic: str | None = Form(default=None),
        time_limit_seconds: str | None = Form(default=None, alias="timeLimitSeconds"),
        elapsed_seconds: str | None = Form(default=None, alias="elapsedSeconds"),
    ) -> Any:
        if video is None:
            return error_response(400, "No recording uploaded")

        temp_path: Path | None = None
        try:
            data = await video.read(settings.max_upload_bytes + 1)
            logger.info("Received analyze request: %d bytes, mode=%s", len(data), mode)
            if len(data) > settings.max_upload_bytes:
                return error_response(400, "File too large. Maximum size is 50MB.")
            if len(data) < settings.min_upload_bytes:
                return error_response(
                    400, "Recording is too short or empty. Please record for at least 1 second."
                )

            if not orchestrator.configured:
                return error_response(
                    500,
                    "Server is not configured with an AI service.",
                    next_steps=not_configured_steps(settings),
                )
            if feedback is None:
                return error_response(
                    500,
                    "OPENAI_API_KEY is required for analysis."
                    if settings.llm_provider == "openai"
                    else "No analysis service is available.",
                    next_steps=analysis_unavailable_steps(settings),
                )

            metadata = SessionMetadata.from_form(
                mode=mode,
                script=script,
                script_tone=script_tone,
                topic=topic,
                time_limit_seconds=time_limit_seconds,
                elapsed_seconds=elapsed_seconds,
            )

            try:
                temp_path = await asyncio.to_thread(
                    write_temp_recording, data, settings.upload_dir
                )
            except UploadStorageError as exc:
                return error_response(500, exc.message, details=exc.details)

            try:
                outcome = await orchestrator.transcribe(temp_path)
            except TranscriptionFailed as exc:
                logger.error(
                    "Transcription failed via %s after %s: %r",
                    exc.provider,
                    [a.provider for a in exc.attempts],
                    exc.cause,
                )
                mapped = classify_failure(
                    exc.cause,
                    credential=exc.credential_env,
                    both_attempted=exc.primary_failed and len(exc.attempts) > 1,
                    health_url=settings.health_url,
                )
                return JSONResponse(status_code=mapped.status_code, content=mapped.to_payload())
            except NoProviderConfigured as exc:
                mapped = classify_failure(exc, health_url=settings.health_url)
                return JSONResponse(status_code=mapped.status_code, content=mapped.to_payload())

            transcript = outcome.text
            if not transcript.strip():
                return error_response(
                    400, "No speech detected in recording. Please try again and speak clearly."
                )

            try:
                result = await feedback.generate(transcript, metadata)
            except FeedbackParseError as exc:
                logger.error("Error parsing AI feedback: %s", exc)
                return error_response(500, "Failed to parse AI feedback.", details=str(exc))
            except FeedbackGenerationError as exc:
                mapped = classify_failure(
                    exc.cause,
                    stage="analysis",
                    credential=exc.credential_env,
                    health_url=settings.health_url,
                )
                return JSONResponse(status_code=mapped.status_code, content=mapped.to_payload())

            return AnalyzeResponse(transcript=transcript, feedback=result)
        finally:
            remove_temp_file(temp_path)
            await video.close()

    @app.get("/api/sessions")
    async def list_sessions(authorization: str | None = Header(default=None)) -> Any:
        try:
            identity = await asyncio.to_thread(identity_resolver.resolve, authorization)
        except AuthenticationError as exc:
            return error_response(401, "Invalid or expired session.", details=str(exc))
        records = await asyncio.to_thread(session_store.list, identity)
        return {
            "identity": "user" if identity.authenticated else "guest",
            "sessions": [record.model_dump(mode="json", by_alias=True) for record in records],
        }

    @app.post("/api/sessions", status_code=201)
    async def create_session(
        payload: SessionCreate, authorization: str | None = Header(default=None)
    ) -> Any:
        if not payload.transcript.strip():
            return error_response(400, "Cannot save a session without a transcript.")
        try:
            identity = await asyncio.to_thread(identity_resolver.resolve, authorization)
        except AuthenticationError as exc:
            return error_response(401, "Invalid or expired session.", details=str(exc))

        record = SessionRecord(
            mode=payload.mode,
            transcript=payload.transcript,
            feedback=payload.feedback,
            script=payload.script if payload.mode == "script" else None,
            script_tone=payload.script_tone if payload.mode == "script" else None,
            topic=payload.topic if payload.mode == "topic" else None,
            time_limit_seconds=payload.time_limit_seconds,
            elapsed_seconds=payload.elapsed_seconds,
        )
        stored = await asyncio.to_thread(session_store.add, identity, record)
        return stored.model_dump(mode="json", by_alias=True)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.port)
