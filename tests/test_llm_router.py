import io
import json
import urllib.error
from dataclasses import replace

import pytest

from colqueue.llm import GenerationAdapter, GenerationError, call_model
from colqueue.queue import build_item


class _Response:
    def __init__(self, payload):
        self._body = json.dumps(payload).encode("utf-8")

    def read(self):
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def test_call_model_google_request(config, monkeypatch):
    captured = {}

    def fake_urlopen(request, timeout):
        captured["url"] = request.full_url
        captured["body"] = json.loads(request.data.decode("utf-8"))
        captured["timeout"] = timeout
        return _Response({"candidates": [{"content": {"parts": [{"text": "hello"}]}}]})

    monkeypatch.setenv("GEMINI_API_KEY", "secret")
    monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)

    text = call_model(config.llm, "prompt text", temperature=0.3)

    assert text == "hello"
    assert ":generateContent?key=secret" in captured["url"]
    assert captured["body"]["generationConfig"]["temperature"] == 0.3
    assert captured["body"]["contents"][0]["parts"][0]["text"] == "prompt text"
    assert captured["timeout"] == config.llm.timeout_s


def test_call_model_openai_compatible(config, monkeypatch):
    captured = {}

    def fake_urlopen(request, timeout):
        captured["url"] = request.full_url
        captured["auth"] = request.get_header("Authorization")
        return _Response({"choices": [{"message": {"content": "reply"}}]})

    monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)
    llm = replace(config.llm, provider_type="openai_compatible", base_url="http://llm.local/v1")

    assert call_model(llm, "hi", api_key="k") == "reply"
    assert captured["url"] == "http://llm.local/v1/chat/completions"
    assert captured["auth"] == "Bearer k"


def test_http_error_becomes_generation_error(config, monkeypatch):
    def fake_urlopen(request, timeout):
        raise urllib.error.HTTPError(request.full_url, 429, "Too Many", {}, io.BytesIO(b"slow down"))

    monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)

    with pytest.raises(GenerationError, match="http_error 429"):
        call_model(config.llm, "hi", api_key="k")


def test_adapter_retries_then_parses(config, make_article):
    replies = [GenerationError("timeout"), "", make_article("Lisbon")]
    sleeps = []

    def transport(llm, prompt, temperature=None, max_tokens=None):
        reply = replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    adapter = GenerationAdapter(
        replace(config.llm, max_attempts=3, backoff_seconds=2),
        transport=transport,
        sleep=sleeps.append,
    )

    article = adapter.generate(build_item({"subject": "Lisbon", "qualifier": "Portugal"}))

    assert article.title == "Cost of Living in Lisbon 2026"
    assert sleeps == [2, 4]


def test_adapter_gives_up_after_max_attempts(config):
    def transport(llm, prompt, temperature=None, max_tokens=None):
        raise GenerationError("network_error: refused")

    adapter = GenerationAdapter(config.llm, transport=transport, sleep=lambda _: None)

    with pytest.raises(GenerationError, match="after 2 attempts"):
        adapter.generate(build_item({"subject": "Lisbon", "qualifier": "Portugal"}))


def test_structure_fix_prompt_is_appended(config, make_article):
    prompts = []

    def transport(llm, prompt, temperature=None, max_tokens=None):
        prompts.append(prompt)
        return make_article("Lisbon")

    adapter = GenerationAdapter(config.llm, transport=transport)
    item = build_item({"subject": "Lisbon", "qualifier": "Portugal"})
    adapter.generate(item)
    adapter.generate(item, fix_structure=True)

    assert prompts[1].startswith(prompts[0])
    assert len(prompts[1]) > len(prompts[0])


def test_judge_duplicate_parses_fenced_json(config):
    reply = "```json\n" + json.dumps(
        {"isDuplicate": True, "maxSimilarity": 99, "recommendation": "skip"}
    ) + "\n```"
    adapter = GenerationAdapter(config.llm, transport=lambda *a, **k: reply)

    result = adapter.judge_duplicate("lisbon cost of living 2026", [])

    assert result["isDuplicate"] is True
    assert result["maxSimilarity"] == 99


def test_judge_duplicate_invalid_reply_proceeds(config):
    adapter = GenerationAdapter(config.llm, transport=lambda *a, **k: '{"isDuplicate": "maybe"}')

    result = adapter.judge_duplicate("lisbon cost of living 2026", [])

    assert result["isDuplicate"] is False
    assert result["recommendation"] == "proceed"
    assert "error" in result
