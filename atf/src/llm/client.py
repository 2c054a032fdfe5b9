"""Text-generation client used by the explorer to propose steps."""
from __future__ import annotations

import logging
from typing import Any, Optional

import openai
import requests

from atf.src.utils.config import CONFIG, LLMConfig
from atf.src.utils.errors import LLMError

logger = logging.getLogger(__name__)

DEFAULT_OLLAMA_URL = "http://localhost:11434"
DEFAULT_OPENAI_URL = "https://api.openai.com/v1"


class LLMClient:
    """Single ``generate(system, user) -> text`` call against a pluggable provider."""

    def __init__(self, config: LLMConfig | None = None, *, openai_client: Any = None) -> None:
        self.config = config or CONFIG.llm
        self._openai_client = openai_client

    @property
    def timeout_seconds(self) -> float:
        return max(self.config.timeout_ms, 1) / 1000

    def generate(self, system_prompt: str, user_prompt: str) -> str:
        provider = self.config.provider
        if provider == "openai":
            return self._call_openai(system_prompt, user_prompt)
        if provider == "ollama":
            return self._call_ollama(system_prompt, user_prompt)
        raise LLMError(f"Unsupported LLM provider: {provider}")

    # ------------------------------------------------------------------
    def _openai(self) -> Any:
        if self._openai_client is None:
            self._openai_client = openai.OpenAI(
                api_key=self.config.api_key or "not-set",
                base_url=self.config.base_url or DEFAULT_OPENAI_URL,
                timeout=self.timeout_seconds,
                max_retries=0,
            )
        return self._openai_client

    def _call_openai(self, system_prompt: str, user_prompt: str) -> str:
        try:
            response = self._openai().chat.completions.create(
                model=self.config.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                response_format={"type": "json_object"},
            )
        except openai.OpenAIError as exc:
            raise LLMError(f"LLM request failed: {exc}", provider="openai") from exc
        choices = getattr(response, "choices", None) or []
        if not choices:
            return ""
        return choices[0].message.content or ""

    def _call_ollama(self, system_prompt: str, user_prompt: str) -> str:
        base = (self.config.base_url or DEFAULT_OLLAMA_URL).rstrip("/")
        payload = {
            "model": self.config.model,
            "system": system_prompt,
            "prompt": user_prompt,
            "stream": False,
            "format": "json",
        }
        try:
            response = requests.post(f"{base}/api/generate", json=payload, timeout=self.timeout_seconds)
            response.raise_for_status()
            data: Optional[Any] = response.json() if response.content else {}
        except (requests.RequestException, ValueError) as exc:
            raise LLMError(f"LLM request failed: {exc}", provider="ollama") from exc
        if not isinstance(data, dict):
            return ""
        return str(data.get("response") or "")


__all__ = ["LLMClient"]
