"""Session recap and title generation using the OpenAI client."""

from __future__ import annotations

import atexit
import os
from typing import Iterable, NamedTuple

import httpx
from openai import APITimeoutError, OpenAI, OpenAIError

from app.config import Settings

settings = Settings()

_client: OpenAI | None = None
_http_client: httpx.Client | None = None

_RECAP_PROMPT = (
    "Please create a concise summary (maximum 3-4 sentences) of the following "
    "tech support conversation.\n"
    "Focus on:\n"
    "1. The main problem or question the user had\n"
    "2. The key solutions or advice provided\n"
    "3. Any next steps or unresolved issues\n\n"
    "CONVERSATION:\n{transcript}\n\nSUMMARY:"
)

_TITLE_PROMPT = (
    "Based on the following tech support conversation, create a short, "
    "descriptive title (5-7 words max) that clearly identifies the main topic "
    "or issue discussed.\n\nCONVERSATION:\n{transcript}\n\nTITLE:"
)


class SessionSummary(NamedTuple):
    recap: str
    title: str | None


def _get_client() -> OpenAI:
    """Lazily build and cache the OpenAI client."""

    global _client, _http_client
    if _client is None:
        api_key = os.environ.get("OPENAI_API_KEY")
        if not api_key:
            raise RuntimeError("OPENAI_API_KEY environment variable is not set")
        mounts: dict[str, httpx.HTTPTransport] = {}
        http_proxy = os.environ.get("HTTP_PROXY")
        https_proxy = os.environ.get("HTTPS_PROXY")
        if http_proxy:
            mounts["http://"] = httpx.HTTPTransport(proxy=http_proxy)
        if https_proxy:
            mounts["https://"] = httpx.HTTPTransport(proxy=https_proxy)

        _http_client = httpx.Client(mounts=mounts) if mounts else None
        _client = OpenAI(api_key=api_key, http_client=_http_client)
    return _client


def _close_client() -> None:
    global _client, _http_client
    if _http_client is not None:
        _http_client.close()
    _http_client = None
    _client = None


atexit.register(_close_client)


def format_transcript(messages: Iterable) -> str:
    """Render messages as ``Speaker: text`` blocks."""
    lines = []
    for msg in messages:
        speaker = "Support Agent" if msg.is_admin else "User"
        body = msg.content or ""
        if msg.content_kind == "image" and msg.image_url:
            body = f"{body}\n(attached image: {msg.image_url})".strip()
        lines.append(f"{speaker}: {body}")
    return "\n\n".join(lines)


def _complete(client: OpenAI, prompt: str, max_tokens: int) -> str:
    try:
        response = client.chat.completions.create(
            model=settings.summary_model,
            messages=[{"role": "user", "content": prompt}],
            max_tokens=max_tokens,
            temperature=0.7,
            timeout=settings.summary_timeout_s,
        )
    except APITimeoutError as exc:
        raise TimeoutError("OpenAI request timed out") from exc
    except OpenAIError as exc:  # pragma: no cover - network/SDK errors
        raise RuntimeError("OpenAI request failed") from exc

    try:
        content = response.choices[0].message.content
    except (AttributeError, IndexError, TypeError) as exc:
        raise ValueError("Malformed completion response") from exc
    return (content or "").strip().strip('"')


def summarize_session(messages: Iterable) -> SessionSummary:
    """Return recap and title for a transcript.

    Raises ``ValueError`` for an empty transcript or an empty recap, and
    ``TimeoutError`` / ``RuntimeError`` for backend failures. Callers are
    expected to fall back to a fixed recap.
    """
    transcript = format_transcript(messages)
    if not transcript:
        raise ValueError("Empty transcript")

    client = _get_client()
    recap = _complete(client, _RECAP_PROMPT.format(transcript=transcript), 150)
    if not recap:
        raise ValueError("Empty recap")
    title = _complete(client, _TITLE_PROMPT.format(transcript=transcript), 25)
    return SessionSummary(recap=recap, title=title or None)


__all__ = ["SessionSummary", "format_transcript", "summarize_session"]
