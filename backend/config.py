from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_PORT = 5001
MAX_UPLOAD_BYTES = 50 * 1024 * 1024
MIN_UPLOAD_BYTES = 1000
PLACEHOLDER_VALUES = {
    "your_openai_api_key",
    "your_openai_api_key_here",
    "your_assemblyai_api_key",
    "your_assemblyai_api_key_here",
}
LLM_PROVIDERS = {"openai", "ollama"}


def _credential(env: Mapping[str, str], name: str) -> str | None:
    value = (env.get(name) or "").strip().strip('"').strip("'")
    if not value or value.lower() in PLACEHOLDER_VALUES:
        return None
    return value


def _number(env: Mapping[str, str], name: str, default: float) -> float:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r; using %s", name, raw, default)
        return default
    if value <= 0:
        logger.warning("Ignoring non-positive %s=%r; using %s", name, raw, default)
        return default
    return value


def _log_level(env: Mapping[str, str]) -> str:
    raw = (env.get("LOG_LEVEL") or "").strip().upper()
    if not raw:
        return "INFO"
    if not isinstance(logging.getLevelName(raw), int):
        logger.warning("Ignoring unknown LOG_LEVEL=%r; using INFO", raw)
        return "INFO"
    return raw


@dataclass(frozen=True)
class Settings:
    """Runtime configuration resolved from the process environment."""

    assemblyai_api_key: str | None = None
    openai_api_key: str | None = None
    port: int = DEFAULT_PORT
    llm_provider: str = "openai"
    openai_model: str = "gpt-4o-mini"
    transcription_model: str = "whisper-1"
    transcription_language: str = "en"
    ollama_model: str = "qwen3:8b"
    ollama_host: str | None = None
    transcription_timeout: float = 180.0
    feedback_timeout: float = 60.0
    openai_max_retries: int = 2
    max_upload_bytes: int = MAX_UPLOAD_BYTES
    min_upload_bytes: int = MIN_UPLOAD_BYTES
    upload_dir: Path = field(default_factory=lambda: Path("tmp"))
    storage_dir: Path = field(default_factory=lambda: Path(".speechprep"))
    supabase_url: str | None = None
    supabase_key: str | None = None
    cors_allow_origins: tuple[str, ...] = ("*",)
    log_level: str = "INFO"

    @property
    def assemblyai_configured(self) -> bool:
        return self.assemblyai_api_key is not None

    @property
    def openai_configured(self) -> bool:
        return self.openai_api_key is not None

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    @property
    def health_url(self) -> str:
        return f"http://localhost:{self.port}/api/health"

    @classmethod
    def from_env(
        cls, environ: Mapping[str, str] | None = None, *, dotenv: bool = True
    ) -> "Settings":
        if environ is None:
            if dotenv:
                load_dotenv()
            environ = os.environ

        port_raw = (environ.get("PORT") or "").strip()
        try:
            port = int(port_raw) if port_raw else DEFAULT_PORT
        except ValueError:
            logger.warning("Ignoring invalid PORT=%r; using %s", port_raw, DEFAULT_PORT)
            port = DEFAULT_PORT

        llm_provider = (environ.get("SPEECHPREP_LLM_PROVIDER") or "openai").strip().lower()
        if llm_provider not in LLM_PROVIDERS:
            logger.warning(
                "Unknown SPEECHPREP_LLM_PROVIDER=%r; falling back to openai", llm_provider
            )
            llm_provider = "openai"

        origins = tuple(
            origin.strip()
            for origin in (environ.get("CORS_ALLOW_ORIGINS") or "*").split(",")
            if origin.strip()
        )

        return cls(
            assemblyai_api_key=_credential(environ, "ASSEMBLYAI_API_KEY"),
            openai_api_key=_credential(environ, "OPENAI_API_KEY"),
            port=port,
            llm_provider=llm_provider,
            openai_model=(environ.get("OPENAI_MODEL") or "gpt-4o-mini").strip(),
            transcription_model=(
                environ.get("OPENAI_TRANSCRIPTION_MODEL") or "whisper-1"
            ).strip(),
            ollama_model=(environ.get("OLLAMA_MODEL") or "qwen3:8b").strip(),
            ollama_host=(environ.get("OLLAMA_HOST") or "").strip() or None,
            transcription_timeout=_number(environ, "SPEECHPREP_TRANSCRIPTION_TIMEOUT", 180.0),
            feedback_timeout=_number(environ, "SPEECHPREP_FEEDBACK_TIMEOUT", 60.0),
            upload_dir=Path(environ.get("SPEECHPREP_UPLOAD_DIR") or "tmp"),
            storage_dir=Path(environ.get("SPEECHPREP_STORAGE_DIR") or ".speechprep"),
            supabase_url=(environ.get("SUPABASE_URL") or "").strip() or None,
            supabase_key=_credential(environ, "SUPABASE_KEY"),
            cors_allow_origins=origins or ("*",),
            log_level=_log_level(environ),
        )


DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: str | int = logging.INFO) -> logging.Logger:
    """Install a single stream handler on the root logger."""
    root = logging.getLogger()
    root.setLevel(level)
    if not any(getattr(h, "_speechprep", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
        handler._speechprep = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    return root
