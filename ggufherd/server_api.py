"""
server_api.py — Thin REST wrapper around the llama-server HTTP API

Covers the endpoints ggufherd forwards to:
  - completion / v1/chat/completions
  - embedding
  - tokenize / detokenize
  - health / props

Every call makes exactly one request and never raises: a 200 response
comes back as Succeeded, anything else (including connection errors) as
RequestFailed carrying the status code and the raw body.

Usage:
    api = LlamaServerAPI("http://localhost:1979")
    out = api.completion("Once upon a time", n_predict=64)
    if out.ok:
        print(completion_text(out))
    else:
        print(out.status_code, out.body)
"""

from __future__ import annotations
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import requests

logger = logging.getLogger(__name__)


@dataclass
class Succeeded:
    status_code: int
    body: str
    data: Any = field(default=None)

    ok = True


@dataclass
class RequestFailed:
    status_code: Optional[int]     # None when no response arrived at all
    body: str

    ok = False


Outcome = Union[Succeeded, RequestFailed]


class LlamaServerAPI:
    """Lightweight wrapper around the llama-server REST API."""

    def __init__(self, base_url: str, timeout: Optional[float] = None):
        self.base = base_url.rstrip("/")
        self.timeout = timeout

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _request(self, method: str, path: str, payload: dict | None = None) -> Outcome:
        url = f"{self.base}/{path.lstrip('/')}"
        try:
            r = requests.request(method, url, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.debug("%s %s failed: %s", method, url, exc)
            return RequestFailed(status_code=None, body=str(exc))

        if r.status_code != 200:
            return RequestFailed(status_code=r.status_code, body=r.text)
        try:
            data = r.json()
        except ValueError:
            data = None
        return Succeeded(status_code=r.status_code, body=r.text, data=data)

    def _get(self, path: str) -> Outcome:
        return self._request("GET", path)

    def _post(self, path: str, payload: dict) -> Outcome:
        return self._request("POST", path, payload)

    # ------------------------------------------------------------------
    # Server information
    # ------------------------------------------------------------------

    def health(self) -> Outcome:
        return self._get("health")

    def props(self) -> Outcome:
        return self._get("props")

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    def completion(self, prompt: str, n_predict: int = 256, temperature: float = 0.7,
                   top_k: int = 40, top_p: float = 0.5, **options) -> Outcome:
        payload = {
            "prompt":      prompt,
            "n_predict":   n_predict,
            "temperature": temperature,
            "top_k":       top_k,
            "top_p":       top_p,
            **options,
        }
        return self._post("completion", payload)

    def chat(self, messages: list[dict], temperature: float = 0.7,
             max_tokens: int = 1024, **options) -> Outcome:
        """OpenAI-compatible chat completion (non-streaming)."""
        payload = {
            "messages":    messages,
            "temperature": temperature,
            "max_tokens":  max_tokens,
            **options,
        }
        return self._post("v1/chat/completions", payload)

    def embedding(self, text: str) -> Outcome:
        return self._post("embedding", {"content": text})

    # ------------------------------------------------------------------
    # Tokenizer
    # ------------------------------------------------------------------

    def tokenize(self, text: str) -> Outcome:
        return self._post("tokenize", {"content": text})

    def detokenize(self, tokens: list[int]) -> Outcome:
        return self._post("detokenize", {"tokens": tokens})


# ---------------------------------------------------------------------------
# Response field extraction
# ---------------------------------------------------------------------------

def completion_text(outcome: Succeeded) -> str:
    return (outcome.data or {}).get("content", "")


def chat_text(outcome: Succeeded) -> str:
    choices = (outcome.data or {}).get("choices") or [{}]
    return choices[0].get("message", {}).get("content", "")


def pretty(outcome: Outcome) -> str:
    """Indented JSON body when it parses, raw text otherwise."""
    data = getattr(outcome, "data", None)
    if data is None:
        return outcome.body
    return json.dumps(data, indent=2)


def trim_blank_lines(text: str) -> str:
    return "\n".join(line for line in text.splitlines() if line.strip())
