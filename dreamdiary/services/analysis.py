"""Dream analysis through the OpenAI Responses API."""

from __future__ import annotations

import atexit
import json
import os
from typing import Any, Iterable

import httpx
from openai import APITimeoutError, OpenAI, OpenAIError

from dreamdiary.config import Settings

settings = Settings()

_client: OpenAI | None = None
_http_client: httpx.Client | None = None


def _get_client() -> OpenAI:
    """Lazily build and cache the OpenAI client."""

    global _client, _http_client
    if _client is None:
        mounts: dict[str, httpx.HTTPTransport] = {}
        http_proxy = os.environ.get("HTTP_PROXY")
        https_proxy = os.environ.get("HTTPS_PROXY")
        if http_proxy:
            mounts["http://"] = httpx.HTTPTransport(proxy=http_proxy)
        if https_proxy:
            mounts["https://"] = httpx.HTTPTransport(proxy=https_proxy)

        _http_client = httpx.Client(mounts=mounts) if mounts else None
        api_key = settings.openai_api_key or os.environ.get("OPENAI_API_KEY")
        if not api_key:
            raise RuntimeError("OPENAI_API_KEY environment variable is not set")
        _client = OpenAI(
            api_key=api_key,
            http_client=_http_client,
            timeout=settings.openai_timeout_s,
        )
    return _client


def _close_client() -> None:
    global _client, _http_client
    if _http_client is not None:
        _http_client.close()
    _http_client = None
    _client = None


atexit.register(_close_client)

_DREAM_PROMPT = (
    "You are a thoughtful dream analyst. "
    "Read the dream and respond in JSON with a one-paragraph summary, "
    "a list of analysis sections (title and content), the overall vibe "
    "in a few words, and one reflection question for the dreamer."
)

_DREAM_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "summary": {"type": "string"},
        "analysis": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "title": {"type": "string"},
                    "content": {"type": "string"},
                },
                "required": ["title", "content"],
                "additionalProperties": False,
            },
        },
        "vibe": {"type": "string"},
        "reflection": {"type": "string"},
    },
    "required": ["summary", "analysis", "vibe", "reflection"],
    "additionalProperties": False,
}

_WEEKLY_PROMPT = (
    "You are a dream analyst writing a weekly review of a dream journal. "
    "Identify the recurring themes, the emotional trajectory of the week, "
    "one deep insight and practical advice. Respond in JSON."
)

_WEEKLY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "word_of_the_week": {"type": "string"},
        "summary": {"type": "string"},
        "themes": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                    "description": {"type": "string"},
                    "score": {"type": "number"},
                },
                "required": ["name", "description", "score"],
                "additionalProperties": False,
            },
        },
        "emotional_trajectory": {"type": "string"},
        "deep_insight": {"type": "string"},
        "advice": {"type": "string"},
        "reflection_question": {"type": "string"},
        "disclaimer": {"type": "string"},
    },
    "required": [
        "word_of_the_week",
        "summary",
        "themes",
        "emotional_trajectory",
        "deep_insight",
        "advice",
        "reflection_question",
        "disclaimer",
    ],
    "additionalProperties": False,
}


def _structured_call(
    prompt: str, user_text: str, name: str, schema: dict[str, Any]
) -> dict[str, Any]:
    client = _get_client()
    try:
        response = client.responses.create(
            model=settings.openai_model,
            input=[
                {"role": "system", "content": prompt},
                {"role": "user", "content": user_text},
            ],
            text={
                "format": {
                    "type": "json_schema",
                    "name": name,
                    "schema": schema,
                    "strict": True,
                }
            },
        )
    except APITimeoutError as exc:
        raise TimeoutError("OpenAI request timed out") from exc
    except OpenAIError as exc:  # pragma: no cover - network/SDK errors
        raise RuntimeError("OpenAI request failed") from exc

    if getattr(response, "status", "completed") != "completed":
        raise ValueError(f"OpenAI response not completed: {response.status}")
    try:
        data = json.loads(response.output_text)
    except (AttributeError, TypeError, json.JSONDecodeError) as exc:
        raise ValueError("Malformed GPT response") from exc
    if not isinstance(data, dict):
        raise ValueError("Malformed GPT response")
    return data


def analyze_dream(content: str) -> dict[str, Any]:
    """Analyze one dream.

    Raises ``TimeoutError`` on timeout, ``ValueError`` on an unusable
    response and ``RuntimeError`` when the service cannot be reached.
    """
    data = _structured_call(
        _DREAM_PROMPT, f'Analyze this dream: "{content}"', "dream_analysis", _DREAM_SCHEMA
    )
    missing = [key for key in ("summary", "vibe") if key not in data]
    if missing:
        raise ValueError(f"Malformed GPT response, missing {missing}")
    return data


def generate_weekly_report(entries: Iterable[Any]) -> dict[str, Any]:
    """Summarize a week of journal entries (objects with ``dream_date``,
    ``content`` and ``tags``)."""
    lines = [
        f"[{entry.dream_date.isoformat()}]: {entry.content} (Tags: {', '.join(entry.tags or [])})"
        for entry in entries
    ]
    text = "Here are my dreams from the past week:\n" + "\n".join(lines)
    return _structured_call(_WEEKLY_PROMPT, text, "weekly_dream_analysis", _WEEKLY_SCHEMA)


__all__ = ["analyze_dream", "generate_weekly_report"]
