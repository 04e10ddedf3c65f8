from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from pathlib import Path

from errors import NoProviderConfigured, PipelineError, ProviderError, ProviderTimeout
from providers import ProviderTranscript, TranscriptionProvider
from uploads import remove_temp_file

logger = logging.getLogger(__name__)


def _log_abandoned(provider: str, task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("Abandoned %s attempt failed after timeout: %s", provider, exc)
    else:
        logger.info("Abandoned %s attempt finished after timeout; result discarded", provider)


class TranscriptionState(str, Enum):
    NOT_STARTED = "not_started"
    TRYING_PRIMARY = "trying_primary"
    TRYING_FALLBACK = "trying_fallback"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class Attempt:
    provider: str
    succeeded: bool
    reason: str | None = None


@dataclass
class TranscriptionOutcome:
    text: str
    provider: str
    attempts: list[Attempt] = field(default_factory=list)
    trace: list[TranscriptionState] = field(default_factory=list)


class TranscriptionFailed(PipelineError):
    """Raised when every reachable provider failed.

    ``cause`` is the exception from the last provider tried; ``primary_failed``
    is only used to tailor the user-facing message.
    """

    def __init__(
        self,
        cause: BaseException,
        *,
        provider: str,
        credential_env: str,
        primary_failed: bool,
        attempts: list[Attempt],
        trace: list[TranscriptionState],
    ) -> None:
        super().__init__(str(cause) or cause.__class__.__name__)
        self.cause = cause
        self.provider = provider
        self.credential_env = credential_env
        self.primary_failed = primary_failed
        self.attempts = attempts
        self.trace = trace


class TranscriptionOrchestrator:
    """Primary provider first, one fallback hop, then give up.

    The instance only holds the injected provider handles; every call to
    :meth:`transcribe` keeps its own attempt list and state trace so concurrent
    requests never share progress.
    """

    def __init__(
        self,
        primary: TranscriptionProvider | None,
        fallback: TranscriptionProvider | None,
        *,
        timeout_seconds: float = 180.0,
    ) -> None:
        self.primary = primary
        self.fallback = fallback
        self.timeout_seconds = timeout_seconds

    @property
    def configured(self) -> bool:
        return self.primary is not None or self.fallback is not None

    async def _call(self, provider: TranscriptionProvider, media_path: Path) -> ProviderTranscript:
        # The worker thread cannot be interrupted; on timeout it is left to
        # finish under the provider's own deadline and its result is dropped.
        task = asyncio.ensure_future(asyncio.to_thread(provider.transcribe, media_path))
        try:
            done, _ = await asyncio.wait({task}, timeout=self.timeout_seconds)
        except asyncio.CancelledError:
            task.add_done_callback(partial(_log_abandoned, provider.name))
            raise
        if task in done:
            return task.result()
        logger.warning(
            "Abandoning %s attempt after %g seconds; its worker thread is still running",
            provider.name,
            self.timeout_seconds,
        )
        task.add_done_callback(partial(_log_abandoned, provider.name))
        raise ProviderTimeout(provider.name, self.timeout_seconds)

    async def _try_primary(self, provider: TranscriptionProvider, media_path: Path) -> str:
        result = await self._call(provider, media_path)
        if result.status == "completed":
            if result.text:
                return result.text
            raise ProviderError(
                f"{provider.name} transcription completed but returned empty text",
                provider=provider.name,
            )
        if result.status == "error":
            raise ProviderError(
                f"{provider.name} transcription error: {result.error or 'unknown error'}",
                provider=provider.name,
            )
        raise ProviderError(
            f"Unexpected transcription status: {result.status}", provider=provider.name
        )

    async def _try_fallback(self, provider: TranscriptionProvider, media_path: Path) -> str:
        result = await self._call(provider, media_path)
        if result.status != "completed" or not result.text:
            raise ProviderError(
                "Transcription failed - no text was generated from the audio.",
                provider=provider.name,
            )
        return result.text

    async def transcribe(self, media_path: Path) -> TranscriptionOutcome:
        """Return the first non-empty transcript; the temp file is always removed."""
        trace = [TranscriptionState.NOT_STARTED]
        attempts: list[Attempt] = []
        try:
            if not self.configured:
                raise NoProviderConfigured()

            primary_failed = False
            last_error: BaseException | None = None
            last_provider: TranscriptionProvider | None = None

            for provider, is_primary in ((self.primary, True), (self.fallback, False)):
                if provider is None:
                    continue
                if is_primary:
                    trace.append(TranscriptionState.TRYING_PRIMARY)
                    attempt = self._try_primary
                else:
                    trace.append(TranscriptionState.TRYING_FALLBACK)
                    attempt = self._try_fallback
                    if primary_failed:
                        logger.info("Falling back to %s", provider.name)

                logger.info("Attempting transcription with %s", provider.name)
                try:
                    text = await attempt(provider, media_path)
                except Exception as exc:  # noqa: BLE001 - next state decides what to surface
                    logger.error("%s transcription failed: %s", provider.name, exc)
                    attempts.append(Attempt(provider.name, False, str(exc)))
                    last_error, last_provider = exc, provider
                    primary_failed = primary_failed or is_primary
                    continue

                attempts.append(Attempt(provider.name, True))
                trace.append(TranscriptionState.SUCCEEDED)
                logger.info("%s transcription succeeded (%d characters)", provider.name, len(text))
                return TranscriptionOutcome(
                    text=text, provider=provider.name, attempts=attempts, trace=trace
                )

            trace.append(TranscriptionState.FAILED)
            if last_error is None or last_provider is None:  # pragma: no cover
                raise NoProviderConfigured()
            raise TranscriptionFailed(
                last_error,
                provider=last_provider.name,
                credential_env=last_provider.credential_env,
                primary_failed=primary_failed,
                attempts=attempts,
                trace=trace,
            ) from last_error
        finally:
            remove_temp_file(media_path)
