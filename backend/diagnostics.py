"""Environment and connectivity checks for the SpeechPrep backend.

Run from the ``backend`` directory::

    python diagnostics.py check-env
    python diagnostics.py test-connection
    python diagnostics.py serve --port 5001
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx
import typer
from dotenv import dotenv_values

from config import DEFAULT_PORT, PLACEHOLDER_VALUES

cli = typer.Typer(add_completion=False, help="SpeechPrep diagnostics")

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"
ASSEMBLYAI_TRANSCRIPT_URL = "https://api.assemblyai.com/v2/transcript"
FIREWALL_HINT = "Allow outbound HTTPS (port 443) for the Python interpreter in your firewall or proxy."


@dataclass
class ProbeResult:
    name: str
    success: bool
    status_code: int | None = None
    error: str | None = None
    code: str | None = None
    duration_ms: int = 0


def error_code(exc: httpx.HTTPError) -> str:
    if isinstance(exc, httpx.TimeoutException):
        return "ETIMEDOUT"
    message = str(exc).lower()
    if any(marker in message for marker in ("name or service", "getaddrinfo", "nodename", "resolution")):
        return "ENOTFOUND"
    if isinstance(exc, httpx.ConnectError):
        return "ECONNREFUSED"
    return exc.__class__.__name__


def _elapsed(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def probe(client: httpx.Client, name: str, method: str, url: str, **kwargs) -> ProbeResult:
    started = time.monotonic()
    try:
        response = client.request(method, url, **kwargs)
    except httpx.HTTPError as exc:
        return ProbeResult(name, False, error=str(exc) or exc.__class__.__name__, code=error_code(exc), duration_ms=_elapsed(started))
    return ProbeResult(name, True, status_code=response.status_code, duration_ms=_elapsed(started))


def check_openai(client: httpx.Client, api_key: str | None) -> ProbeResult:
    if not api_key:
        return ProbeResult("OpenAI API", False, error="No API key")
    result = probe(
        client,
        "OpenAI API",
        "POST",
        OPENAI_CHAT_URL,
        headers={"Authorization": f"Bearer {api_key}"},
        json={"model": "gpt-4o-mini", "messages": [{"role": "user", "content": "test"}], "max_tokens": 5},
    )
    if result.success and result.status_code != 200:
        result.success = False
        result.error = "Invalid API key" if result.status_code == 401 else f"HTTP {result.status_code}"
    return result


def check_assemblyai(client: httpx.Client, api_key: str | None) -> ProbeResult:
    if not api_key:
        return ProbeResult("AssemblyAI API", False, error="No API key")
    result = probe(
        client, "AssemblyAI API", "GET", ASSEMBLYAI_TRANSCRIPT_URL, headers={"Authorization": api_key}
    )
    if result.success and result.status_code not in (200, 400):
        result.success = False
        result.error = "Invalid API key" if result.status_code == 401 else f"HTTP {result.status_code}"
    return result


def diagnose(openai_result: ProbeResult, assembly_result: ProbeResult) -> list[str]:
    results = (openai_result, assembly_result)
    codes = {r.code for r in results}
    if not openai_result.success and not assembly_result.success:
        if codes & {"ETIMEDOUT", "ECONNREFUSED"}:
            return ["FIREWALL BLOCKING DETECTED!", "Python cannot reach external APIs.", FIREWALL_HINT]
        if "ENOTFOUND" in codes:
            return [
                "DNS RESOLUTION FAILED!",
                "Your system cannot resolve API domain names.",
                "Check your internet connection and DNS settings.",
            ]
        if 401 not in {r.status_code for r in results}:
            return [
                "NETWORK ERROR!",
                f"OpenAI error: {openai_result.error or 'Unknown'}",
                f"AssemblyAI error: {assembly_result.error or 'Unknown'}",
                "Check your network connection and proxy settings.",
            ]
    if 401 in {r.status_code for r in results}:
        return [
            "INVALID API KEY!",
            "At least one API key is incorrect.",
            "Check your .env file and verify your keys.",
        ]
    if openai_result.success and assembly_result.success:
        return ["ALL CONNECTIONS WORKING!", "Both APIs are reachable and keys are valid."]
    return [
        "PARTIAL CONNECTION!",
        f"OpenAI: {'Working' if openai_result.success else 'Failed'}",
        f"AssemblyAI: {'Working' if assembly_result.success else 'Failed'}",
        "At least one service is working, but check the results above.",
    ]


def _report(result: ProbeResult) -> None:
    if result.success:
        typer.echo(f"OK   {result.name}: connected ({result.status_code}) - {result.duration_ms}ms")
    else:
        detail = result.error or f"HTTP {result.status_code}"
        suffix = f" [{result.code}]" if result.code else ""
        typer.echo(f"FAIL {result.name}: {detail}{suffix} - {result.duration_ms}ms")


def _is_set(value: str | None) -> bool:
    return bool(value and value.strip() and value.strip().lower() not in PLACEHOLDER_VALUES)


@cli.command("check-env")
def check_env(
    env_file: Path = typer.Option(Path(".env"), "--env-file", help="Path to the .env file"),
) -> None:
    """Verify the credentials in the .env file."""
    if not env_file.exists():
        typer.echo(f"{env_file} not found!")
        typer.echo("Create it with at least:")
        typer.echo("   OPENAI_API_KEY=your_openai_api_key")
        typer.echo("   ASSEMBLYAI_API_KEY=your_assemblyai_api_key   (optional)")
        raise typer.Exit(code=1)

    values = dotenv_values(env_file)
    missing = False
    llm_provider = (values.get("SPEECHPREP_LLM_PROVIDER") or "openai").strip().lower()

    openai_key = values.get("OPENAI_API_KEY")
    if _is_set(openai_key):
        typer.echo("OPENAI_API_KEY is set")
        if not openai_key.strip().startswith("sk-"):
            typer.echo('Warning: OPENAI_API_KEY does not start with "sk-". Make sure it\'s correct.')
    elif llm_provider == "openai":
        typer.echo("OPENAI_API_KEY not set or still has placeholder value")
        missing = True
    else:
        typer.echo("OPENAI_API_KEY not set (analysis uses Ollama)")

    for name in ("ASSEMBLYAI_API_KEY", "SUPABASE_URL", "SUPABASE_KEY"):
        status = "is set" if _is_set(values.get(name)) else "not set (optional)"
        typer.echo(f"{name} {status}")

    if not _is_set(openai_key) and not _is_set(values.get("ASSEMBLYAI_API_KEY")):
        typer.echo("No transcription service configured.")
        missing = True

    if missing:
        typer.echo("Some environment variables are missing or incorrect.")
        raise typer.Exit(code=1)
    typer.echo("All required environment variables are set!")


@cli.command("test-connection")
def test_connection(
    env_file: Path = typer.Option(Path(".env"), "--env-file", help="Path to the .env file"),
    timeout: float = typer.Option(15.0, help="Per-request timeout in seconds"),
) -> None:
    """Probe the provider APIs and print a diagnosis."""
    values = dotenv_values(env_file) if env_file.exists() else {}
    with httpx.Client(timeout=timeout, headers={"User-Agent": "SpeechPrep connection test"}) as client:
        for name, url in (
            ("Google (basic internet)", "https://www.google.com"),
            ("OpenAI domain", "https://api.openai.com"),
            ("AssemblyAI domain", "https://api.assemblyai.com"),
        ):
            _report(probe(client, name, "GET", url))
        openai_result = check_openai(client, values.get("OPENAI_API_KEY"))
        _report(openai_result)
        assembly_result = check_assemblyai(client, values.get("ASSEMBLYAI_API_KEY"))
        _report(assembly_result)

    typer.echo("DIAGNOSIS:")
    for line in diagnose(openai_result, assembly_result):
        typer.echo(f"  {line}")


@cli.command()
def serve(
    host: str = typer.Option("0.0.0.0", help="Host interface for the API server"),
    port: Optional[int] = typer.Option(None, help=f"Port (default: PORT or {DEFAULT_PORT})"),
) -> None:
    """Run the API server."""
    import uvicorn

    from main import app

    uvicorn.run(app, host=host, port=port or app.state.settings.port)


if __name__ == "__main__":
    cli()
