from __future__ import annotations

import json
import logging
import os
import re
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Callable

import jsonschema

from ..config import LlmConfig
from ..models import GeneratedArticle, WorkItem
from ..utils import log_event
from ..validate import parse_generated_content, parse_metadata_fix
from . import prompts

DUPLICATE_JUDGEMENT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["isDuplicate", "maxSimilarity", "recommendation"],
    "properties": {
        "isDuplicate": {"type": "boolean"},
        "maxSimilarity": {"type": "number", "minimum": 0, "maximum": 100},
        "mostSimilarArticle": {
            "type": ["object", "null"],
            "properties": {
                "title": {"type": "string"},
                "slug": {"type": "string"},
                "similarity": {"type": "number"},
                "reason": {"type": "string"},
            },
        },
        "recommendation": {"enum": ["proceed", "modify_angle", "skip"]},
        "suggestedAngle": {"type": ["string", "null"]},
        "analysis": {"type": ["string", "null"]},
    },
}

PROCEED_JUDGEMENT = {"isDuplicate": False, "maxSimilarity": 0, "recommendation": "proceed"}


class GenerationError(RuntimeError):
    pass


def call_model(
    config: LlmConfig,
    prompt: str,
    temperature: float | None = None,
    max_tokens: int | None = None,
    api_key: str | None = None,
) -> str:
    """Send one prompt to the configured provider and return the text reply."""
    provider_type = config.provider_type
    base_url = config.base_url or _default_base_url(provider_type)
    if api_key is None:
        api_key = os.environ.get(config.api_key_env, "").strip() or None
    params = {
        "temperature": config.temperature if temperature is None else temperature,
        "max_tokens": config.max_tokens if max_tokens is None else max_tokens,
    }
    return _call_provider(
        provider_type,
        base_url,
        api_key,
        config.model,
        [{"role": "user", "content": prompt}],
        params,
        config.timeout_s,
    )


def _call_provider(
    provider_type: str,
    base_url: str,
    api_key: str | None,
    model_name: str,
    messages: list[dict[str, str]],
    params: dict[str, Any],
    timeout_s: int,
) -> str:
    if provider_type == "openai_compatible":
        path = _join_url(base_url, "/chat/completions")
        payload = {
            "model": model_name,
            "messages": messages,
            **_filter_params(params),
        }
        headers = _auth_headers(provider_type, api_key)
        response = _http_request("POST", path, headers, payload, timeout_s)
        return _read_openai(response)
    if provider_type == "anthropic":
        path = _join_url(base_url, "/messages")
        payload = {
            "model": model_name,
            "max_tokens": int(params.get("max_tokens", 1024)),
            "temperature": params.get("temperature", 0.7),
            "messages": messages,
        }
        headers = _auth_headers(provider_type, api_key)
        response = _http_request("POST", path, headers, payload, timeout_s)
        return _read_anthropic(response)
    if provider_type == "google":
        path = _join_url(
            base_url,
            f"/models/{urllib.parse.quote(model_name)}:generateContent",
        )
        path = _append_key(path, api_key)
        payload = {
            "contents": [
                {"role": "user", "parts": [{"text": message["content"]}]}
                for message in messages
            ],
            "generationConfig": {
                "temperature": params.get("temperature"),
                "maxOutputTokens": params.get("max_tokens"),
            },
        }
        response = _http_request("POST", path, {}, payload, timeout_s)
        return _read_google(response)
    raise GenerationError(f"unsupported_provider_type: {provider_type}")


def _http_request(
    method: str,
    url: str,
    headers: dict[str, str],
    payload: dict[str, Any] | None,
    timeout_s: int,
) -> dict[str, Any]:
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    request = urllib.request.Request(url, data=data, method=method)
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=timeout_s) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        raw = exc.read().decode("utf-8", errors="ignore")
        raise GenerationError(f"http_error {exc.code}: {raw[:500]}") from exc
    except urllib.error.URLError as exc:
        raise GenerationError(f"network_error: {exc}") from exc
    except TimeoutError as exc:
        raise GenerationError(f"timeout after {timeout_s}s") from exc
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return {"raw": raw}


def _read_openai(response: dict[str, Any]) -> str:
    choices = response.get("choices") or []
    if not choices:
        raise GenerationError("openai_missing_choices")
    return choices[0]["message"]["content"] or ""


def _read_anthropic(response: dict[str, Any]) -> str:
    content = response.get("content") or []
    if not content:
        raise GenerationError("anthropic_missing_content")
    return "\n".join(part.get("text") or "" for part in content).strip()


def _read_google(response: dict[str, Any]) -> str:
    candidates = response.get("candidates") or []
    if not candidates:
        raise GenerationError("google_missing_candidates")
    parts = candidates[0].get("content", {}).get("parts", [])
    text = "\n".join(part.get("text") or "" for part in parts).strip()
    if not text:
        raise GenerationError("google_empty_text")
    return text


def _filter_params(params: dict[str, Any]) -> dict[str, Any]:
    allowed = {"temperature", "max_tokens", "top_p", "seed"}
    return {key: value for key, value in params.items() if key in allowed}


def _auth_headers(provider_type: str, api_key: str | None) -> dict[str, str]:
    if not api_key:
        return {}
    if provider_type == "openai_compatible":
        return {"Authorization": f"Bearer {api_key}"}
    if provider_type == "anthropic":
        return {"x-api-key": api_key, "anthropic-version": "2023-06-01"}
    return {}


def _default_base_url(provider_type: str) -> str:
    if provider_type == "openai_compatible":
        return "https://api.openai.com/v1"
    if provider_type == "anthropic":
        return "https://api.anthropic.com/v1"
    if provider_type == "google":
        return "https://generativelanguage.googleapis.com/v1beta"
    return ""


def _append_key(url: str, api_key: str | None) -> str:
    if not api_key:
        return url
    parsed = urllib.parse.urlsplit(url)
    query = urllib.parse.parse_qsl(parsed.query, keep_blank_values=True)
    query.append(("key", api_key))
    return urllib.parse.urlunsplit(
        (parsed.scheme, parsed.netloc, parsed.path, urllib.parse.urlencode(query), parsed.fragment)
    )


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def extract_json_object(raw: str) -> Any:
    cleaned = re.sub(r"```(?:json)?\n?", "", raw or "").strip()
    match = re.search(r"\{[\s\S]*\}", cleaned)
    if not match:
        raise ValueError("no JSON object in response")
    return json.loads(match.group(0))


def _validate_json(schema: dict[str, Any], payload: Any) -> dict[str, Any]:
    try:
        jsonschema.validate(payload, schema)
        return {"ok": True}
    except jsonschema.ValidationError as exc:
        return {"ok": False, "error": exc.message}


class GenerationAdapter:
    """Article generation over one configured provider.

    ``transport`` defaults to :func:`call_model`; tests pass a callable with
    the same signature instead of patching HTTP.
    """

    def __init__(
        self,
        config: LlmConfig,
        logger: logging.Logger | None = None,
        transport: Callable[..., str] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.logger = logger or logging.getLogger("colqueue.llm")
        self.transport = transport or call_model
        self.sleep = sleep

    def _complete(self, prompt: str, temperature: float | None = None, max_tokens: int | None = None) -> str:
        attempts = max(1, self.config.max_attempts)
        errors: list[str] = []
        for attempt in range(1, attempts + 1):
            try:
                text = self.transport(
                    self.config,
                    prompt,
                    temperature=temperature,
                    max_tokens=max_tokens,
                )
            except GenerationError as exc:
                errors.append(str(exc))
                log_event(
                    self.logger,
                    logging.WARNING,
                    "llm_attempt_failed",
                    attempt=attempt,
                    attempts=attempts,
                    error=str(exc),
                )
                if attempt < attempts:
                    self.sleep(self.config.backoff_seconds * attempt)
                continue
            if not (text or "").strip():
                errors.append("empty_response")
                if attempt < attempts:
                    self.sleep(self.config.backoff_seconds * attempt)
                continue
            return text
        raise GenerationError(
            f"generation failed after {attempts} attempts: " + "; ".join(errors)
        )

    def generate(self, topic: WorkItem, fix_structure: bool = False) -> GeneratedArticle:
        prompt = prompts.article_prompt(topic)
        if fix_structure:
            prompt = prompt + prompts.STRUCTURE_FIX_SUFFIX
        log_event(
            self.logger,
            logging.INFO,
            "llm_generate",
            topic=topic.label,
            model=self.config.model,
            fix_structure=fix_structure,
        )
        raw = self._complete(prompt)
        return parse_generated_content(raw)

    def regenerate_metadata(self, article: GeneratedArticle) -> GeneratedArticle:
        raw = self._complete(prompts.metadata_fix_prompt(article.content), temperature=0.3, max_tokens=500)
        return parse_metadata_fix(raw, article)

    def judge_duplicate(self, keyword: str, articles: list[dict[str, Any]]) -> dict[str, Any]:
        """Ask the model whether ``keyword`` repeats one of ``articles``.

        Unparseable or schema-invalid replies are treated as "proceed".
        Transport failures raise :class:`GenerationError`.
        """
        raw = self._complete(prompts.duplicate_prompt(keyword, articles), temperature=0.2, max_tokens=1024)
        try:
            parsed = extract_json_object(raw)
        except ValueError as exc:
            log_event(self.logger, logging.WARNING, "duplicate_judgement_unparseable", error=str(exc))
            return dict(PROCEED_JUDGEMENT, error=str(exc))
        validation = _validate_json(DUPLICATE_JUDGEMENT_SCHEMA, parsed)
        if not validation["ok"]:
            log_event(
                self.logger,
                logging.WARNING,
                "duplicate_judgement_invalid",
                error=validation["error"],
            )
            return dict(PROCEED_JUDGEMENT, error=validation["error"])
        return parsed
