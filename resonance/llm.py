"""Async JSON-answering LLM client shared by the classifier and the learnings writer.

Both gateways ask for a single JSON object. Providers differ only in how the
request is sent and where the text comes back; everything after that (fence
stripping, parsing, error mapping) is common.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from typing import Any

from resonance.config import get_settings

log = logging.getLogger(__name__)

PROVIDERS = ("anthropic", "openai", "openai_compatible")
DEFAULT_MODELS = {
    "anthropic": "claude-haiku-4-5-20251001",
    "openai": "gpt-4o-mini",
    "openai_compatible": "gpt-4o-mini",
}

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*\})\s*```", re.DOTALL)


class LLMCallError(Exception):
    """LLM call failed, timed out, or returned unparseable output."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


def extract_json_object(text: str) -> dict[str, Any]:
    """Parse the model's answer, tolerating a fenced ```json block."""
    m = _FENCED_JSON.search(text)
    payload = m.group(1) if m else text.strip()
    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise LLMCallError(f"LLM returned invalid JSON: {payload[:200]}") from exc
    if not isinstance(parsed, dict):
        raise LLMCallError(f"LLM returned non-object JSON: {payload[:200]}")
    return parsed


class LLMClient:
    """Anthropic or OpenAI(-compatible) chat client that returns one JSON object per call."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
    ):
        settings = get_settings()
        self.provider = provider or settings.llm_provider
        if self.provider not in PROVIDERS:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")
        self.model = model or settings.llm_model or DEFAULT_MODELS[self.provider]
        self.timeout = timeout if timeout is not None else settings.gateway_timeout_seconds
        if self.provider == "anthropic":
            import anthropic
            self._client: Any = anthropic.AsyncAnthropic(
                api_key=api_key or os.environ.get("ANTHROPIC_API_KEY"),
            )
        else:
            import openai
            kwargs: dict[str, Any] = {}
            if key := api_key or os.environ.get("OPENAI_API_KEY"):
                kwargs["api_key"] = key
            if url := base_url or os.environ.get("OPENAI_BASE_URL"):
                kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)

    async def _anthropic_text(self, system: str, user: str, max_tokens: int) -> str:
        response = await self._client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            system=system,
            messages=[{"role": "user", "content": user}],
        )
        return response.content[0].text

    async def _openai_text(self, system: str, user: str, max_tokens: int) -> str:
        response = await self._client.chat.completions.create(
            model=self.model,
            max_tokens=max_tokens,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        )
        return response.choices[0].message.content or "{}"

    async def _complete(self, system: str, user: str, max_tokens: int) -> str:
        if self.provider == "anthropic":
            return await self._anthropic_text(system, user, max_tokens)
        return await self._openai_text(system, user, max_tokens)

    async def call(self, system: str, user: str, max_tokens: int = 1024) -> dict[str, Any]:
        """Send one system+user exchange and return the parsed JSON object.

        Raises:
            LLMCallError: transport failures and timeouts (``retryable=True``)
                or an answer that is not a JSON object (``retryable=False``).
        """
        try:
            text = await asyncio.wait_for(self._complete(system, user, max_tokens), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise LLMCallError(f"{self.provider} call timed out after {self.timeout}s", retryable=True) from exc
        except Exception as exc:
            raise LLMCallError(f"{self.provider} call failed: {exc}", retryable=True) from exc
        log.debug("%s/%s answered %d chars", self.provider, self.model, len(text))
        return extract_json_object(text)
