from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Optional, Union
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from config import get_settings

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful financial assistant. Provide accurate, concise, and "
    "actionable financial insights."
)


@dataclass(frozen=True)
class LLMSuccess:
    content: Any


@dataclass(frozen=True)
class LLMFailure:
    reason: str


LLMResult = Union[LLMSuccess, LLMFailure]


def strip_code_fences(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned[3:]
        if cleaned[:4].lower() == "json":
            cleaned = cleaned[4:]
        if cleaned.rstrip().endswith("```"):
            cleaned = cleaned.rstrip()[:-3]
    return cleaned.strip()


class LLMClient:
    """Chat-completions client for an OpenAI-compatible endpoint.

    Every call returns an LLMSuccess or LLMFailure; transport, HTTP and parse
    problems never escape as exceptions. Requests are spaced at least
    ``min_interval`` seconds apart across threads.
    """

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str,
        model: str,
        *,
        timeout: float = 30.0,
        min_interval: float = 1.0,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.min_interval = min_interval
        self._lock = threading.Lock()
        self._last_request_at = 0.0

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _wait_for_slot(self) -> None:
        with self._lock:
            elapsed = time.monotonic() - self._last_request_at
            if elapsed < self.min_interval:
                time.sleep(self.min_interval - elapsed)
            self._last_request_at = time.monotonic()

    def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        req = Request(
            f"{self.base_url}/chat/completions",
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                "Authorization": f"Bearer {self.api_key}",
            },
            method="POST",
        )
        with urlopen(req, timeout=self.timeout) as resp:
            return json.loads(resp.read().decode("utf-8"))

    def chat(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> LLMResult:
        if not self.is_configured:
            return LLMFailure("not_configured")

        self._wait_for_slot()
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        try:
            body = self._post(payload)
        except HTTPError as exc:
            logger.warning(f"llm_http_error: status={exc.code}")
            return LLMFailure(f"http_{exc.code}")
        except (URLError, TimeoutError, OSError) as exc:
            logger.warning(f"llm_transport_error: detail={exc}")
            return LLMFailure("transport")
        except json.JSONDecodeError:
            logger.warning("llm_bad_response: body is not JSON")
            return LLMFailure("bad_response")

        try:
            content = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            logger.warning("llm_bad_response: missing choices")
            return LLMFailure("bad_response")
        if not isinstance(content, str) or not content.strip():
            return LLMFailure("empty_response")
        return LLMSuccess(content)

    def query(self, prompt: str, context: Optional[Any] = None) -> LLMResult:
        messages = [{"role": "system", "content": DEFAULT_SYSTEM_PROMPT}]
        if context is not None:
            messages.append(
                {
                    "role": "system",
                    "content": f"Context: {json.dumps(context, default=str)}",
                }
            )
        messages.append({"role": "user", "content": prompt})
        return self.chat(messages)

    def query_structured(
        self,
        prompt: str,
        schema: dict[str, Any],
        context: Optional[Any] = None,
    ) -> LLMResult:
        structured_prompt = (
            f"{prompt}\n\nPlease respond with valid JSON that matches this "
            f"schema:\n{json.dumps(schema, indent=2)}\n\n"
            "Only return the JSON object, no additional text."
        )
        messages = [
            {
                "role": "system",
                "content": (
                    "You are a financial data analyst. Always respond with "
                    "valid JSON only."
                ),
            }
        ]
        if context is not None:
            messages.append(
                {
                    "role": "system",
                    "content": f"Context: {json.dumps(context, default=str)}",
                }
            )
        messages.append({"role": "user", "content": structured_prompt})

        result = self.chat(messages, temperature=0.1)
        if isinstance(result, LLMFailure):
            return result
        try:
            parsed = json.loads(strip_code_fences(result.content))
        except json.JSONDecodeError:
            logger.warning("llm_bad_json: structured completion did not parse")
            return LLMFailure("invalid_json")
        return LLMSuccess(parsed)


@lru_cache(maxsize=1)
def get_llm_client() -> LLMClient:
    settings = get_settings()
    return LLMClient(
        settings.llm_api_key,
        settings.llm_base_url,
        settings.llm_model,
        timeout=settings.llm_timeout_secs,
        min_interval=settings.llm_rate_limit_secs,
    )
