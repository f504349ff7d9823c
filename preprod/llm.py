from __future__ import annotations

import json
import logging
import re
from typing import Any

from preprod.config import get_settings
from preprod.errors import LLMCallError

log = logging.getLogger(__name__)

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*\})\s*```", re.DOTALL)


def parse_json_text(text: str) -> dict[str, Any]:
    """Parse an LLM reply as a JSON object, unwrapping a fenced code block if present."""
    text = text.strip()
    m = _FENCED_JSON.search(text)
    if m:
        text = m.group(1)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise LLMCallError(f"LLM returned invalid JSON: {text[:200]}", raw_text=text) from exc
    if not isinstance(data, dict):
        raise LLMCallError(f"LLM returned JSON {type(data).__name__}, expected object", raw_text=text)
    return data


class LLMClient:
    """Unified async LLM client supporting Anthropic and OpenAI."""

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
        self.model = model or settings.llm_model
        self.timeout = timeout or settings.llm_timeout_seconds
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-haiku-4-5-20251001"
            self._client = anthropic.AsyncAnthropic(api_key=self._api_key, timeout=self.timeout)
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or "gpt-4o-mini"
            kwargs: dict[str, Any] = {"timeout": self.timeout}
            if self._api_key:
                kwargs["api_key"] = self._api_key
            if self._base_url:
                kwargs["base_url"] = self._base_url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def _send(
        self, system: str, content: str | list[dict[str, Any]],
        max_tokens: int, temperature: float, json_mode: bool = False,
    ) -> str:
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    system=system,
                    messages=[{"role": "user", "content": content}],
                )
                return response.content[0].text.strip()
            kwargs: dict[str, Any] = {}
            if json_mode:
                kwargs["response_format"] = {"type": "json_object"}
            response = await self._client.chat.completions.create(
                model=self.model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": content},
                ],
                **kwargs,
            )
            return (response.choices[0].message.content or "").strip()
        except LLMCallError:
            raise
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc

    async def call(
        self, system: str, user: str, max_tokens: int = 1500, temperature: float = 0.4,
    ) -> dict[str, Any]:
        """Send system+user message to the LLM, return parsed JSON."""
        text = await self._send(system, user, max_tokens, temperature, json_mode=True)
        return parse_json_text(text or "{}")

    async def complete(
        self, system: str, user: str, max_tokens: int = 300, temperature: float = 0.4,
    ) -> str:
        """Send system+user message to the LLM, return plain text."""
        return await self._send(system, user, max_tokens, temperature)

    async def describe_media(self, url: str, instruction: str, max_tokens: int = 1500) -> str:
        """Extract text and a description from an image or document URL (vision/OCR)."""
        if self.provider == "anthropic":
            content: list[dict[str, Any]] = [
                {"type": "image", "source": {"type": "url", "url": url}},
                {"type": "text", "text": instruction},
            ]
        else:
            content = [
                {"type": "image_url", "image_url": {"url": url}},
                {"type": "text", "text": instruction},
            ]
        return await self._send(
            "You extract text and describe visual content precisely.",
            content, max_tokens, temperature=0.0,
        )
