from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, List, Optional

from openai import OpenAI
from tenacity import RetryError, retry, stop_after_attempt, wait_exponential

from .config import OpenAIConfig


LOGGER = logging.getLogger("snaprun.openai")


@dataclass
class OpenAIClient:
    """Thin wrapper around OpenAI's Responses API that stays inert without credentials."""

    model: str
    temperature: float
    max_output_tokens: Optional[int]
    enabled: bool
    api_key_env: str = "OPENAI_API_KEY"
    base_url: Optional[str] = None
    timeout: float = 60.0
    _client: Optional[Any] = field(default=None, init=False, repr=False)
    _api_key: Optional[str] = field(default=None, init=False, repr=False)

    @classmethod
    def from_config(cls, config: OpenAIConfig) -> "OpenAIClient":
        return cls(
            model=config.model,
            temperature=config.temperature,
            max_output_tokens=config.max_output_tokens,
            enabled=config.enabled,
            api_key_env=config.api_key_env,
            base_url=config.base_url,
        )

    @property
    def available(self) -> bool:
        return self.enabled and bool(os.getenv(self.api_key_env))

    def generate_text(self, prompt: str, instructions: Optional[str] = None) -> Optional[str]:
        """Return the model's text output, or ``None`` when disabled or every attempt failed."""
        if not self.enabled:
            LOGGER.debug("OpenAI client disabled - skipping request")
            return None
        api_key = os.getenv(self.api_key_env)
        if not api_key:
            LOGGER.warning("%s not set - no model output will be requested.", self.api_key_env)
            return None

        client = self._ensure_client(api_key)
        request_params: dict = {"model": self.model, "input": prompt, "temperature": self.temperature}
        if instructions:
            request_params["instructions"] = instructions
        if self.max_output_tokens is not None:
            request_params["max_output_tokens"] = self.max_output_tokens
        try:
            response = self._create_with_retry(client, request_params)
        except RetryError as exc:
            LOGGER.error("OpenAI API call failed after retries: %s", exc.last_attempt.exception())
            return None

        text = self._extract_text(response)
        if not text:
            LOGGER.warning("OpenAI response contained no text output.")
        return text or None

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=2, max=10))
    def _create_with_retry(self, client: Any, request_params: dict) -> Any:
        LOGGER.debug("Invoking OpenAI Responses API with model %s", self.model)
        return client.responses.create(**request_params)

    def _ensure_client(self, api_key: str) -> Any:
        if self._client is not None and self._api_key == api_key:
            return self._client
        base_url = self.base_url or os.getenv("OPENAI_BASE_URL")
        kwargs: dict = {"api_key": api_key}
        if base_url:
            kwargs["base_url"] = base_url
        client = OpenAI(**kwargs)
        if self.timeout:
            client = client.with_options(timeout=self.timeout)
        self._client = client
        self._api_key = api_key
        return self._client

    @staticmethod
    def _extract_text(response: Any) -> str:
        if response is None:
            return ""
        output_text = getattr(response, "output_text", None)
        if isinstance(output_text, str) and output_text.strip():
            return output_text.strip()

        chunks: List[str] = []
        for item in getattr(response, "output", None) or []:
            item_type = item.get("type") if isinstance(item, dict) else getattr(item, "type", None)
            if item_type != "message":
                continue
            contents = item.get("content") if isinstance(item, dict) else getattr(item, "content", None)
            if isinstance(contents, str):
                chunks.append(contents)
                continue
            for content in contents or []:
                if isinstance(content, dict):
                    text = content.get("text")
                else:
                    text = getattr(content, "text", None)
                if isinstance(text, str):
                    chunks.append(text)
        return "\n".join(chunk.strip() for chunk in chunks if chunk.strip())
