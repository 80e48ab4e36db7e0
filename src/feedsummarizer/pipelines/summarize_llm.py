from __future__ import annotations

import http.client
import json
import logging
import urllib.error
import urllib.request
from typing import Any

import jsonschema

from ..config import OllamaConfig, PromptConfig
from ..errors import ContentError, ProtocolFormatError, TransportError
from ..models import SummaryResult
from ..utils import log_event, truncate_for_log

TRUNCATION_MARKER = "\n\n[Content truncated due to length limit]"

SUMMARY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "summary": {
            "type": "string",
            "description": "A concise summary of the article",
        },
        "tags": {
            "type": "array",
            "items": {"type": "string"},
            "description": "Relevant tags for the article",
        },
    },
    "required": ["summary", "tags"],
}


class SummaryClient:
    def __init__(
        self, ollama: OllamaConfig, prompt: PromptConfig, logger: logging.Logger
    ) -> None:
        self.ollama = ollama
        self.prompt = prompt
        self.logger = logger

    @property
    def endpoint(self) -> str:
        return f"{self.ollama.url.rstrip('/')}/api/generate"

    def generate_summary(self, content: str) -> SummaryResult:
        if not content:
            log_event(self.logger, logging.ERROR, "summary_empty_content")
            raise ContentError("no_content_to_summarize")
        log_event(self.logger, logging.DEBUG, "summary_start", content_length=len(content))
        prompt = self.build_prompt(content)
        raw = self._call_ollama(self.build_payload(prompt))
        return parse_summary(raw)

    def build_prompt(self, content: str) -> str:
        prompt = f"{self.prompt.template}\n\n{content}"
        limit = self.prompt.length_limit
        if len(prompt) > limit:
            log_event(
                self.logger,
                logging.DEBUG,
                "prompt_truncated",
                length=len(prompt),
                limit=limit,
            )
            prompt = prompt[:limit] + TRUNCATION_MARKER
        return prompt

    def build_payload(self, prompt: str) -> dict[str, Any]:
        options = dict(self.ollama.options)
        options.setdefault("num_ctx", self.prompt.context_length)
        return {
            "model": self.ollama.model,
            "prompt": prompt,
            "stream": False,
            "options": options,
            "format": SUMMARY_SCHEMA,
        }

    def _call_ollama(self, payload: dict[str, Any]) -> str:
        endpoint = self.endpoint
        data = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        request = urllib.request.Request(endpoint, data=data, method="POST")
        request.add_header("Content-Type", "application/json")
        log_event(
            self.logger,
            logging.DEBUG,
            "ollama_request",
            endpoint=endpoint,
            model=payload["model"],
            prompt_length=len(payload["prompt"]),
            options=json.dumps(payload["options"], sort_keys=True),
        )
        try:
            with urllib.request.urlopen(request, timeout=self.ollama.timeout_seconds) as response:
                body = response.read()
        except urllib.error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="ignore")
            log_event(self.logger, logging.ERROR, "ollama_http_error", status=exc.code, body=detail[:500])
            raise TransportError(f"http_error {exc.code}: {detail[:500]}") from exc
        except (urllib.error.URLError, http.client.HTTPException, OSError) as exc:
            log_event(self.logger, logging.ERROR, "ollama_unreachable", error=str(exc))
            raise TransportError(f"ollama_unreachable: {exc}") from exc
        try:
            raw = body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolFormatError("ollama_invalid_envelope") from exc
        log_event(self.logger, logging.DEBUG, "ollama_response", body=truncate_for_log(raw))
        try:
            envelope = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ProtocolFormatError("ollama_invalid_envelope") from exc
        if not isinstance(envelope, dict) or not isinstance(envelope.get("response"), str):
            raise ProtocolFormatError("ollama_missing_response")
        return envelope["response"]


def parse_summary(raw: str) -> SummaryResult:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ContentError(f"invalid_json_response: {exc.msg}") from exc
    try:
        jsonschema.validate(parsed, SUMMARY_SCHEMA)
    except jsonschema.ValidationError as exc:
        raise ContentError(f"response_schema_violation: {exc.message}") from exc
    return SummaryResult(
        summary=parsed["summary"].strip(),
        tags=[tag.strip() for tag in parsed["tags"]],
    )
