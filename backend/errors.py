"""Classify pipeline failures into user-facing messages with remediation steps.

Categories are checked in table order and the first match wins, so a timeout
that also carries a 429 is still reported as a connectivity problem.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Literal

import httpx
import openai

logger = logging.getLogger(__name__)

Stage = Literal["transcription", "analysis"]


class PipelineError(Exception):
    """Base class for failures raised by the analyze pipeline."""


class NoProviderConfigured(PipelineError):
    def __init__(self, message: str = "No transcription service available.") -> None:
        super().__init__(message)


class ProviderError(PipelineError):
    """A provider returned a non-usable terminal result without raising."""

    def __init__(self, message: str, *, provider: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class ProviderTimeout(PipelineError):
    def __init__(self, provider: str, seconds: float) -> None:
        super().__init__(f"{provider} request timed out after {seconds:g} seconds")
        self.provider = provider
        self.seconds = seconds


CONNECTIVITY_MARKERS = (
    "connection error",
    "connection refused",
    "connection reset",
    "connection aborted",
    "econnrefused",
    "enotfound",
    "etimedout",
    "econnreset",
    "socket hang up",
    "name or service not known",
    "temporary failure in name resolution",
    "nodename nor servname",
    "getaddrinfo failed",
    "timed out",
    "timeout",
)
RATE_LIMIT_MARKERS = ("rate limit", "rate_limit", "too many requests")
FORMAT_MARKERS = ("invalid file format", "unsupported format", "unsupported file", "invalid audio")


def status_code_of(exc: BaseException) -> int | None:
    for attr in ("status_code", "status", "http_status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def message_of(exc: BaseException) -> str:
    return (str(exc) or exc.__class__.__name__).lower()


def _is_connectivity(exc: BaseException) -> bool:
    if isinstance(
        exc,
        (ProviderTimeout, openai.APIConnectionError, httpx.TransportError, ConnectionError, TimeoutError),
    ):
        return True
    message = message_of(exc)
    return any(marker in message for marker in CONNECTIVITY_MARKERS)


def _is_rate_limited(exc: BaseException) -> bool:
    if status_code_of(exc) == 429:
        return True
    message = message_of(exc)
    return any(marker in message for marker in RATE_LIMIT_MARKERS)


def _is_unauthorized(exc: BaseException) -> bool:
    return status_code_of(exc) == 401


def _is_too_large(exc: BaseException) -> bool:
    return status_code_of(exc) == 413


def _is_bad_format(exc: BaseException) -> bool:
    message = message_of(exc)
    return any(marker in message for marker in FORMAT_MARKERS)


def _is_unconfigured(exc: BaseException) -> bool:
    return isinstance(exc, NoProviderConfigured)


@dataclass(frozen=True)
class ErrorCategory:
    key: str
    matches: Callable[[BaseException], bool]
    message: str
    next_steps: tuple[str, ...]


FIREWALL_STEPS = (
    "Allow outbound HTTPS (port 443) for the Python process in your firewall or proxy",
    "1. Check your internet connection",
    "2. Verify your API keys are correct in the .env file",
    "3. Check server console logs for detailed error information",
)

CATEGORIES: tuple[ErrorCategory, ...] = (
    ErrorCategory(
        key="connectivity",
        matches=_is_connectivity,
        message="Cannot connect to transcription service.",
        next_steps=FIREWALL_STEPS + ("4. Restart your server after making firewall changes",),
    ),
    ErrorCategory(
        key="rate_limit",
        matches=_is_rate_limited,
        message="API rate limit exceeded.",
        next_steps=(
            "1. Wait a few minutes and try again",
            "2. Check your API usage limits",
            "3. If using AssemblyAI free tier, you may have exceeded 5 hours/month",
            "4. Consider upgrading your API plan if needed",
        ),
    ),
    ErrorCategory(
        key="invalid_credentials",
        matches=_is_unauthorized,
        message="Invalid API key.",
        next_steps=(
            "1. Check your {credential} in the .env file",
            "2. Verify the key is correct (no extra spaces or quotes)",
            "3. Get a new key from {credential_url} if needed",
            "4. Restart your server after updating .env",
        ),
    ),
    ErrorCategory(
        key="payload_too_large",
        matches=_is_too_large,
        message="File too large.",
        next_steps=(
            "1. Record a shorter speech (under 50MB)",
            "2. Try speaking for less time",
            "3. Check your recording quality settings",
        ),
    ),
    ErrorCategory(
        key="unsupported_format",
        matches=_is_bad_format,
        message="Invalid audio format.",
        next_steps=(
            "1. Try recording again",
            "2. Make sure your microphone is working",
            "3. Check that you're using a supported browser (Chrome, Firefox, Edge)",
        ),
    ),
    ErrorCategory(
        key="no_provider",
        matches=_is_unconfigured,
        message="No transcription service available.",
        next_steps=(
            "1. Add ASSEMBLYAI_API_KEY to your .env file (recommended)",
            "   Get it from: https://www.assemblyai.com/app/account",
            "2. OR ensure OPENAI_API_KEY is set in your .env file",
            "   Get it from: https://platform.openai.com/api-keys",
            "3. Restart your server after adding the key",
            "4. Check server status: GET {health_url}",
        ),
    ),
    ErrorCategory(
        key="generic",
        matches=lambda exc: True,
        message="Failed to transcribe audio.",
        next_steps=(
            "1. Check your .env file has valid API keys",
            "2. Verify your internet connection",
            "3. Check server logs for more details",
            "4. Try restarting your server",
            "5. Check service status: GET {health_url}",
        ),
    ),
)

CREDENTIAL_URLS = {
    "OPENAI_API_KEY": "https://platform.openai.com/api-keys",
    "ASSEMBLYAI_API_KEY": "https://www.assemblyai.com/app/account",
}

STAGE_MESSAGES: dict[Stage, dict[str, str]] = {
    "transcription": {},
    "analysis": {
        "connectivity": "Cannot connect to the AI analysis service.",
        "generic": "Failed to analyze speech with AI.",
    },
}


@dataclass(frozen=True)
class MappedError:
    category: str
    error: str
    details: str
    next_steps: list[str]
    status_code: int = 500

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.error, "details": self.details}
        if self.next_steps:
            payload["nextSteps"] = self.next_steps
        return payload


def match_category(exc: BaseException) -> ErrorCategory:
    for category in CATEGORIES:
        if category.matches(exc):
            return category
    return CATEGORIES[-1]  # pragma: no cover - generic always matches


def classify_failure(
    exc: BaseException,
    *,
    stage: Stage = "transcription",
    credential: str = "OPENAI_API_KEY",
    both_attempted: bool = False,
    health_url: str = "http://localhost:5001/api/health",
) -> MappedError:
    """Map ``exc`` to the first matching category in :data:`CATEGORIES`."""
    category = match_category(exc)
    message = STAGE_MESSAGES[stage].get(category.key, category.message)
    steps = list(category.next_steps)

    if category.key == "connectivity" and both_attempted:
        message = (
            "Transcription service connection failed. "
            "Both AssemblyAI and OpenAI could not be reached."
        )
        steps.insert(
            4, "4. Try visiting https://status.assemblyai.com/ and https://status.openai.com/"
        )
        steps[-1] = "5. Restart your server after making firewall changes"

    context = {
        "credential": credential,
        "credential_url": CREDENTIAL_URLS.get(credential, "your provider dashboard"),
        "health_url": health_url,
    }
    next_steps = [step.format(**context) for step in steps]
    logger.debug("Classified %s failure %r as %s", stage, exc, category.key)
    return MappedError(
        category=category.key,
        error=message,
        details=str(exc) or exc.__class__.__name__,
        next_steps=next_steps,
    )
