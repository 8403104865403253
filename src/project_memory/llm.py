import json
import logging
import os
import re

import anthropic
import openai
from anthropic.types import TextBlock

from .config import OPENAI_COMPATIBLE, LLMSettings

logger = logging.getLogger(__name__)

DEFAULT_MODELS = {
    "anthropic": "claude-haiku-4-5-20251001",
    "bedrock": "us.anthropic.claude-haiku-4-5-20251001-v1:0",
    "openai": "gpt-4o-mini",
    "ollama": "llama3",
    "openrouter": "anthropic/claude-haiku-4.5",
}

DEFAULT_BASE_URLS = {
    "ollama": "http://localhost:11434/v1",
    "openrouter": "https://openrouter.ai/api/v1",
}


class LLMError(Exception):
    """The language-model call failed or returned something unusable."""


def parse_json(text: str):
    """Parse JSON from LLM response, stripping markdown fences if present."""
    text = text.strip()
    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?\s*\n?", "", text)
        text = re.sub(r"\n?```\s*$", "", text)
    return json.loads(text)


class LLMClient:
    """One ``complete(system, user)`` call over Anthropic, Bedrock or an OpenAI-compatible API.

    ``complete`` uses the blocking SDK clients; ``acomplete`` uses their async
    counterparts so a cancelled caller aborts the request in flight.
    """

    def __init__(self, settings: LLMSettings, client=None, timeout: float = 30.0, async_client=None):
        self.settings = settings
        self.provider = settings.provider
        self.model = settings.model or DEFAULT_MODELS[self.provider]
        self.timeout = timeout
        self._client = client
        self._async_client = async_client

    @property
    def client(self):
        if self._client is None:
            self._client = self._build_client(asynchronous=False)
        return self._client

    @property
    def async_client(self):
        if self._async_client is None:
            self._async_client = self._build_client(asynchronous=True)
        return self._async_client

    def _build_client(self, asynchronous: bool):
        s = self.settings
        if self.provider == "bedrock":
            cls = anthropic.AsyncAnthropicBedrock if asynchronous else anthropic.AnthropicBedrock
            return cls(
                aws_region=os.environ.get("AWS_REGION", "us-east-1"),
                aws_profile=os.environ.get("AWS_PROFILE"),
                timeout=self.timeout,
                max_retries=0,
            )
        if self.provider in OPENAI_COMPATIBLE:
            cls = openai.AsyncOpenAI if asynchronous else openai.OpenAI
            return cls(
                api_key=s.api_key or os.environ.get("OPENAI_API_KEY") or "not-needed",
                base_url=s.base_url or DEFAULT_BASE_URLS.get(self.provider),
                timeout=self.timeout,
                max_retries=0,
            )
        cls = anthropic.AsyncAnthropic if asynchronous else anthropic.Anthropic
        return cls(
            api_key=s.api_key,
            base_url=s.base_url,
            timeout=self.timeout,
            max_retries=0,
        )

    def _chat_request(self, system: str, user: str, max_tokens: int) -> dict:
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": 0.3,
            "max_tokens": max_tokens,
        }

    def _messages_request(self, system: str, user: str, max_tokens: int) -> dict:
        return {
            "model": self.model,
            "max_tokens": max_tokens,
            "system": system,
            "messages": [{"role": "user", "content": user}],
        }

    def complete(self, system: str, user: str, max_tokens: int = 2048) -> str:
        try:
            if self.provider in OPENAI_COMPATIBLE:
                response = self.client.chat.completions.create(**self._chat_request(system, user, max_tokens))
                return _chat_text(response)
            response = self.client.messages.create(**self._messages_request(system, user, max_tokens))
        except (anthropic.APIError, openai.APIError) as e:
            raise LLMError(f"{self.provider} request failed: {e}") from e
        return _message_text(response)

    async def acomplete(self, system: str, user: str, max_tokens: int = 2048) -> str:
        client = self.async_client
        try:
            if self.provider in OPENAI_COMPATIBLE:
                response = await client.chat.completions.create(**self._chat_request(system, user, max_tokens))
                return _chat_text(response)
            response = await client.messages.create(**self._messages_request(system, user, max_tokens))
        except (anthropic.APIError, openai.APIError) as e:
            raise LLMError(f"{self.provider} request failed: {e}") from e
        return _message_text(response)


def _chat_text(response) -> str:
    if not response.choices:
        raise LLMError("no choices in chat completion response")
    return response.choices[0].message.content or ""


def _message_text(response) -> str:
    for block in response.content:
        if isinstance(block, TextBlock):
            return block.text
    raise LLMError("no text content in model response")
