from __future__ import annotations

import json
from datetime import date
from types import SimpleNamespace

import httpx
import pytest
from openai import APITimeoutError

from dreamdiary.services import analysis


def _fake_client(create_fn):
    return SimpleNamespace(responses=SimpleNamespace(create=create_fn))


def _response(payload, status="completed"):
    text = payload if isinstance(payload, str) else json.dumps(payload)
    return SimpleNamespace(status=status, output_text=text)


def test_analyze_dream_parses_structured_output(monkeypatch):
    captured = {}

    def _create(**kwargs):
        captured.update(kwargs)
        return _response(
            {"summary": "s", "analysis": [], "vibe": "calm", "reflection": "why?"}
        )

    monkeypatch.setattr(analysis, "_get_client", lambda: _fake_client(_create))
    result = analysis.analyze_dream("I was flying over the sea")
    assert result["vibe"] == "calm"
    assert captured["text"]["format"]["type"] == "json_schema"
    assert "flying over the sea" in captured["input"][1]["content"]


def test_weekly_report_prompt_lists_entries(monkeypatch):
    captured = {}

    def _create(**kwargs):
        captured.update(kwargs)
        return _response({"word_of_the_week": "Tide"})

    monkeypatch.setattr(analysis, "_get_client", lambda: _fake_client(_create))
    entries = [
        SimpleNamespace(dream_date=date(2026, 10, 4), content="Sea", tags=["water"]),
        SimpleNamespace(dream_date=date(2026, 10, 5), content="Forest", tags=[]),
    ]
    assert analysis.generate_weekly_report(entries)["word_of_the_week"] == "Tide"
    prompt = captured["input"][1]["content"]
    assert "[2026-10-04]: Sea (Tags: water)" in prompt
    assert "[2026-10-05]: Forest" in prompt


@pytest.mark.parametrize(
    "response",
    [
        _response("not json"),
        _response(["a", "list"]),
        _response({"analysis": []}),
        _response({"summary": "s", "vibe": "v"}, status="incomplete"),
    ],
)
def test_unusable_responses_raise_value_error(monkeypatch, response):
    monkeypatch.setattr(analysis, "_get_client", lambda: _fake_client(lambda **_: response))
    with pytest.raises(ValueError):
        analysis.analyze_dream("dream")


def test_timeout_is_translated(monkeypatch):
    def _create(**_):
        raise APITimeoutError(request=httpx.Request("POST", "https://api.openai.com/v1/responses"))

    monkeypatch.setattr(analysis, "_get_client", lambda: _fake_client(_create))
    with pytest.raises(TimeoutError):
        analysis.analyze_dream("dream")
