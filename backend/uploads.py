from __future__ import annotations

import logging
import math
import uuid
from pathlib import Path
from typing import Literal

from pydantic import BaseModel

logger = logging.getLogger(__name__)

Mode = Literal["script", "topic"]


class UploadStorageError(Exception):
    """The recording could not be staged on disk."""

    def __init__(self, message: str, details: str) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class SessionMetadata(BaseModel):
    mode: Mode = "script"
    script_text: str | None = None
    script_tone: str | None = None
    topic_text: str | None = None
    time_limit_seconds: float | None = None
    elapsed_seconds: float | None = None

    @classmethod
    def from_form(
        cls,
        *,
        mode: str | None = None,
        script: str | None = None,
        script_tone: str | None = None,
        topic: str | None = None,
        time_limit_seconds: str | None = None,
        elapsed_seconds: str | None = None,
    ) -> "SessionMetadata":
        normalized: Mode = "topic" if (mode or "").strip().lower() == "topic" else "script"
        is_script = normalized == "script"
        return cls(
            mode=normalized,
            script_text=_text(script) if is_script else None,
            script_tone=_text(script_tone) if is_script else None,
            topic_text=None if is_script else _text(topic),
            time_limit_seconds=parse_seconds(time_limit_seconds),
            elapsed_seconds=parse_seconds(elapsed_seconds),
        )


def _text(value: str | None) -> str | None:
    value = (value or "").strip()
    return value or None


def parse_seconds(raw: str | float | None) -> float | None:
    if raw is None or raw == "":
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value) or value < 0:
        return None
    return value


def write_temp_recording(data: bytes, upload_dir: Path, suffix: str = ".webm") -> Path:
    """Write ``data`` to a uniquely named file under ``upload_dir``."""
    try:
        upload_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.error("Error creating uploads directory %s: %s", upload_dir, exc)
        raise UploadStorageError(
            "Failed to create temporary directory for file upload.", str(exc)
        ) from exc

    temp_path = upload_dir / f"{uuid.uuid4()}{suffix}"
    try:
        with temp_path.open("xb") as handle:
            handle.write(data)
    except OSError as exc:
        logger.error("Error writing temporary file %s: %s", temp_path, exc)
        remove_temp_file(temp_path)
        raise UploadStorageError("Failed to save uploaded file.", str(exc)) from exc
    logger.debug("Wrote %d bytes to %s", len(data), temp_path)
    return temp_path


def remove_temp_file(path: Path | None) -> None:
    if path is None:
        return
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Failed to delete temp file %s: %s", path, exc)
