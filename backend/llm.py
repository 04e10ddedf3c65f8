from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Protocol

import ollama
from openai import OpenAI

from config import Settings
from errors import PipelineError
from uploads import SessionMetadata

logger = logging.getLogger(__name__)

MAX_TRANSCRIPT_WORDS = 4000  # truncate to keep the prompt within model limits

FEEDBACK_SHAPE = """{
  "summary": string,               // short overview of how they did
  "strengths": string[],           // bullet list
  "improvements": string[],        // concrete, actionable tips
  "scores": {
    "overall": number,             // 0-100
    "clarity": number,             // 0-10
    "pacing": number,              // 0-10
    "fillerWords": number,         // 0-10 (higher = better, fewer fillers)
    "confidence": number,          // 0-10
    "structure": number            // 0-10
  },
  "insights": {
    "fillerWordsExamples": string[],
    "strongMoments": string[],
    "weakMoments": string[]
  },
  "stage": "script" | "topic",
  "checks": {
    "script"?: {
      "scriptText"?: string,
      "matchScore": number,        // 0-100, how closely they followed the given script (only for mode="script")
      "feedback": string,
      "tone"?: {
        "requiredTone": string,
        "detectedTone": string,
        "toneScore": number,       // 0-100
        "toneNoticeable": boolean,
        "toneFeedback": string
      }
    },
    "topic"?: {
      "topicText"?: string,
      "relevanceScore": number,    // 0-100, how well they stayed on the requested topic (only for mode="topic")
      "feedback": string
    },
    "time"?: {
      "timeLimitSeconds"?: number,
      "actualSeconds"?: number,
      "withinTimeLimit": boolean,
      "feedback": string
    },
    "recommendedStage"?: "script" | "topic"
  }
}"""

REQUIRED_KEYS = {"summary", "strengths", "improvements", "scores", "insights", "stage", "checks"}
SCORE_KEYS = {"overall", "clarity", "pacing", "fillerWords", "confidence", "structure"}
OTHER_MODE = {"script": "topic", "topic": "script"}


class FeedbackGenerationError(PipelineError):
    """The language model call itself failed (network, auth, quota, timeout)."""

    def __init__(self, cause: BaseException, *, credential_env: str = "OPENAI_API_KEY") -> None:
        super().__init__(str(cause) or cause.__class__.__name__)
        self.cause = cause
        self.credential_env = credential_env


class FeedbackParseError(PipelineError):
    """The model answered but the answer is not the feedback JSON shape."""


class ChatClient(Protocol):
    name: str
    credential_env: str

    def complete(self, prompt: str, *, timeout: float) -> str | None: ...


class OpenAIChatClient:
    name = "OpenAI"
    credential_env = "OPENAI_API_KEY"

    def __init__(self, client: OpenAI, *, model: str = "gpt-4o-mini") -> None:
        self._client = client
        self._model = model

    def complete(self, prompt: str, *, timeout: float) -> str | None:
        completion = self._client.chat.completions.create(
            model=self._model,
            messages=[{"role": "user", "content": prompt}],
            response_format={"type": "json_object"},
            timeout=timeout,
        )
        if not completion.choices:
            return None
        return completion.choices[0].message.content


class OllamaChatClient:
    name = "Ollama"
    credential_env = "OLLAMA_HOST"

    def __init__(self, model: str, *, host: str | None = None, timeout: float = 60.0) -> None:
        self._model = model
        self._client = ollama.Client(host=host, timeout=timeout)

    def complete(self, prompt: str, *, timeout: float) -> str | None:
        response = self._client.chat(
            model=self._model,
            messages=[{"role": "user", "content": prompt}],
            format="json",
            think=False,
        )
        return response["message"]["content"]


def build_chat_client(settings: Settings, openai_client: OpenAI | None = None) -> ChatClient | None:
    """Return the configured analysis backend, or ``None`` when none is usable."""
    if settings.llm_provider == "ollama":
        return OllamaChatClient(
            settings.ollama_model, host=settings.ollama_host, timeout=settings.feedback_timeout
        )
    if openai_client is None:
        if not settings.openai_configured:
            return None
        openai_client = OpenAI(
            api_key=settings.openai_api_key,
            timeout=settings.feedback_timeout,
            max_retries=settings.openai_max_retries,
        )
    return OpenAIChatClient(openai_client, model=settings.openai_model)


def _format_seconds(value: float | None) -> str:
    if value is None:
        return "unknown"
    return f"{value:g}"


def _truncate(transcript: str) -> str:
    words = transcript.split()
    if len(words) <= MAX_TRANSCRIPT_WORDS:
        return transcript
    return " ".join(words[:MAX_TRANSCRIPT_WORDS]) + (
        f" [...transcript truncated at {MAX_TRANSCRIPT_WORDS} words]"
    )


def build_feedback_prompt(transcript: str, metadata: SessionMetadata) -> str:
    """Embed the session inputs and the target JSON shape in one instruction."""
    return f"""You are a world-class speaking coach helping someone practice public speaking in stages.
The current training mode is: "{metadata.mode}".

If mode is "script", the learner was asked to read this one-sentence script out loud (if provided):
---
{metadata.script_text or '(no script provided)'}
---
They were also instructed to convey this specific tone/emotion: "{metadata.script_tone or 'neutral'}"
You must analyze whether the tone was noticeable in their delivery and provide specific feedback on how well they conveyed the required tone.

If mode is "topic", the learner was asked to speak about this topic within a time limit:
Topic: {metadata.topic_text or '(no topic provided)'}
Time limit (seconds): {_format_seconds(metadata.time_limit_seconds)}
Actual speaking time (seconds): {_format_seconds(metadata.elapsed_seconds)}

Here is the full transcript of their speech:
---
{_truncate(transcript)}
---

Analyze their performance and return JSON only with this shape:
{FEEDBACK_SHAPE}

Choose "stage" and "checks.recommendedStage" based on how advanced the learner seems.
Only fill "checks.{metadata.mode}" for this session; leave out "checks.{OTHER_MODE[metadata.mode]}".
Focus on specific feedback for spoken delivery, not for writing quality.

IMPORTANT: For script mode, if a tone was specified, you MUST include a "tone" object in "checks.script" with:
- requiredTone: the tone they were asked to convey
- detectedTone: what tone you actually detected in their speech (be specific)
- toneScore: 0-100 rating of how well they conveyed the required tone
- toneNoticeable: true if the tone was clearly noticeable, false if it was neutral/missing
- toneFeedback: concrete advice on how to better convey the required tone"""


def _strip_and_parse(raw: str) -> dict | None:
    """Strip <think> blocks and markdown fences, then parse JSON."""
    text = re.sub(r"<think>.*?</think>", "", raw, flags=re.DOTALL).strip()

    text = re.sub(r"^```(?:json)?\s*", "", text, flags=re.MULTILINE)
    text = re.sub(r"```\s*$", "", text, flags=re.MULTILINE).strip()

    match = re.search(r"\{.*\}", text, re.DOTALL)
    if match:
        text = match.group(0)

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def _validate(data: dict) -> list[str]:
    """Return the missing top-level and score keys (empty when valid)."""
    missing = sorted(REQUIRED_KEYS - data.keys())
    scores = data.get("scores")
    if not isinstance(scores, dict):
        if "scores" not in missing:
            missing.append("scores")
    else:
        missing.extend(f"scores.{key}" for key in sorted(SCORE_KEYS - scores.keys()))
    return missing


def enforce_mode_checks(feedback: dict[str, Any], mode: str) -> dict[str, Any]:
    """Drop the other mode's ``checks`` block so only the requested mode is reported."""
    checks = feedback.get("checks")
    if not isinstance(checks, dict):
        feedback["checks"] = {}
        return feedback
    removed = checks.pop(OTHER_MODE[mode], None)
    if removed is not None:
        logger.info("Dropped checks.%s from %s-mode feedback", OTHER_MODE[mode], mode)
    return feedback


def parse_feedback(raw: str | None, mode: str) -> dict[str, Any]:
    if not raw or not raw.strip():
        raise FeedbackParseError("No content in AI response")
    data = _strip_and_parse(raw)
    if data is None:
        raise FeedbackParseError("AI response was not valid JSON")
    missing = _validate(data)
    if missing:
        logger.warning("LLM response missing keys: %s", missing)
        raise FeedbackParseError(f"AI response missing keys: {', '.join(missing)}")
    return enforce_mode_checks(data, mode)


class FeedbackGenerator:
    """One JSON completion per session; failures are surfaced, never retried."""

    def __init__(self, client: ChatClient, *, timeout_seconds: float = 60.0) -> None:
        self.client = client
        self.timeout_seconds = timeout_seconds

    async def generate(self, transcript: str, metadata: SessionMetadata) -> dict[str, Any]:
        prompt = build_feedback_prompt(transcript, metadata)
        logger.info("Starting %s analysis (%s mode)", self.client.name, metadata.mode)
        try:
            raw = await asyncio.wait_for(
                asyncio.to_thread(self.client.complete, prompt, timeout=self.timeout_seconds),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            timeout = TimeoutError(
                f"{self.client.name} analysis timed out after {self.timeout_seconds:g} seconds"
            )
            raise FeedbackGenerationError(timeout, credential_env=self.client.credential_env) from exc
        except Exception as exc:
            logger.error("%s analysis error: %s", self.client.name, exc)
            raise FeedbackGenerationError(exc, credential_env=self.client.credential_env) from exc

        feedback = parse_feedback(raw, metadata.mode)
        logger.info("%s analysis successful", self.client.name)
        return feedback
