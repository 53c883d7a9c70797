"""AI provider clients — HTTP connection to a chat-completion backend.

The core only depends on the protocol:

    async def generate_response(self, messages, config=None) -> str: ...

`messages` is a list of AIMessage. System messages carry the rules and the
serialised game state; those marked with `cache_control` form the cacheable
prompt prefix.

Three implementations are provided:

    ClaudeProvider  — Anthropic Messages API. System messages become system
                      blocks, keeping their cache_control markers.
    OpenAIProvider  — OpenAI chat completions API.
    EchoProvider    — returns the last user message. No network calls.

Production code builds a provider from the stored settings with
create_provider(). Tests use EchoProvider or a stub with canned responses.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Literal, Protocol

import httpx
from pydantic import BaseModel

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Wire types
# ---------------------------------------------------------------------------

class AIMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str
    cache_control: dict[str, str] | None = None


ProviderName = Literal["claude", "openai", "echo"]


class ProviderConfig(BaseModel):
    provider: ProviderName = "claude"
    api_key: str = ""
    model: str = ""
    base_url: str = ""
    temperature: float = 1.0
    max_tokens: int = 4096
    timeout: float = 120.0


# ---------------------------------------------------------------------------
# Protocol: every provider must match this signature
# ---------------------------------------------------------------------------

class AIProvider(Protocol):
    async def generate_response(
        self, messages: list[AIMessage], config: ProviderConfig | None = None
    ) -> str: ...


# ---------------------------------------------------------------------------
# HTTP providers
# ---------------------------------------------------------------------------

class _HttpProvider:
    """Shared request/response plumbing. Subclasses define the wire format."""

    name = "http"
    default_base_url = ""
    default_model = ""

    def __init__(self, config: ProviderConfig) -> None:
        self._config = config
        self._base_url = (config.base_url or self.default_base_url).rstrip("/")

    def _settings(self, override: ProviderConfig | None) -> ProviderConfig:
        return override if override is not None else self._config

    def _headers(self, config: ProviderConfig) -> dict[str, str]:
        raise NotImplementedError

    def _build_request(self, messages: list[AIMessage], config: ProviderConfig) -> tuple[str, dict]:
        raise NotImplementedError

    def _parse_response(self, data: dict) -> str:
        raise NotImplementedError

    async def generate_response(
        self, messages: list[AIMessage], config: ProviderConfig | None = None
    ) -> str:
        settings = self._settings(config)
        url, body = self._build_request(messages, settings)
        logger.debug(
            "%s call url=%s model=%s messages=%d", self.name, url, body.get("model"), len(messages)
        )

        try:
            async with httpx.AsyncClient(timeout=settings.timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers(settings))
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise ProviderError(f"Cannot connect to {self.name} API at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            hint = " (check your API key)" if status in (401, 403) else ""
            raise ProviderError(f"{self.name} API returned HTTP {status}{hint}") from e
        except httpx.TimeoutException as e:
            raise ProviderError(f"{self.name} API timed out after {settings.timeout}s") from e
        except httpx.RequestError as e:
            raise ProviderError(f"{self.name} API request failed: {e!r}") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderError(f"{self.name} API returned a non-JSON response") from e
        text = self._parse_response(data)
        logger.debug("%s response len=%d", self.name, len(text))
        return text


class ClaudeProvider(_HttpProvider):
    """Anthropic Messages API.

      POST /v1/messages  {"model", "system": [blocks], "messages": [...], ...}
      Response: {"content": [{"type": "text", "text": "..."}]}
    """

    name = "claude"
    default_base_url = "https://api.anthropic.com"
    default_model = "claude-sonnet-4-5-20250929"
    api_version = "2023-06-01"

    def _headers(self, config: ProviderConfig) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": config.api_key,
            "anthropic-version": self.api_version,
        }

    def _build_request(self, messages: list[AIMessage], config: ProviderConfig) -> tuple[str, dict]:
        system = []
        for m in messages:
            if m.role != "system":
                continue
            block: dict = {"type": "text", "text": m.content}
            if m.cache_control:
                block["cache_control"] = m.cache_control
            system.append(block)

        conversation = []
        for m in messages:
            if m.role == "system":
                continue
            if m.cache_control:
                content: str | list = [
                    {"type": "text", "text": m.content, "cache_control": m.cache_control}
                ]
            else:
                content = m.content
            conversation.append({"role": m.role, "content": content})

        body: dict = {
            "model": config.model or self.default_model,
            "max_tokens": config.max_tokens,
            "temperature": config.temperature,
            "messages": conversation,
        }
        if system:
            body["system"] = system
        return f"{self._base_url}/v1/messages", body

    def _parse_response(self, data: dict) -> str:
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise ProviderError("Unexpected response format from claude API")
        return "".join(b.get("text", "") for b in blocks if b.get("type") == "text")


class OpenAIProvider(_HttpProvider):
    """OpenAI chat completions API.

      POST /v1/chat/completions  {"model", "messages": [{"role", "content"}]}
      Response: {"choices": [{"message": {"content": "..."}}]}
    """

    name = "openai"
    default_base_url = "https://api.openai.com"
    default_model = "gpt-4o"

    def _headers(self, config: ProviderConfig) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"
        return headers

    def _build_request(self, messages: list[AIMessage], config: ProviderConfig) -> tuple[str, dict]:
        body = {
            "model": config.model or self.default_model,
            "max_tokens": config.max_tokens,
            "temperature": config.temperature,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
        }
        return f"{self._base_url}/v1/chat/completions", body

    def _parse_response(self, data: dict) -> str:
        choices = data.get("choices")
        if not choices or "message" not in choices[0]:
            raise ProviderError("Unexpected response format from openai API")
        return choices[0]["message"].get("content") or ""


# ---------------------------------------------------------------------------
# EchoProvider: no network, for wiring checks and offline play
# ---------------------------------------------------------------------------

class EchoProvider:
    """Returns the last user message unchanged. No network calls.

    Lets the whole turn pipeline run without an API key: a user message that
    contains directives is executed as if the AI had written it.
    """

    async def generate_response(
        self, messages: list[AIMessage], config: ProviderConfig | None = None
    ) -> str:
        last = next((m for m in reversed(messages) if m.role == "user"), None)
        logger.debug("EchoProvider messages=%d", len(messages))
        return last.content if last else ""


def create_provider(config: ProviderConfig) -> AIProvider:
    if config.provider == "echo":
        return EchoProvider()
    if not config.api_key:
        raise ProviderError(f"No API key configured for {config.provider}")
    if config.provider == "claude":
        return ClaudeProvider(config)
    return OpenAIProvider(config)


# ---------------------------------------------------------------------------
# Model list: static catalogue behind a one-hour cache
# ---------------------------------------------------------------------------

class ModelInfo(BaseModel):
    id: str
    name: str
    recommended: bool = False


CLAUDE_MODELS = [
    ModelInfo(id="claude-sonnet-4-5-20250929", name="Claude Sonnet 4.5", recommended=True),
    ModelInfo(id="claude-opus-4-1-20250805", name="Claude Opus 4.1"),
    ModelInfo(id="claude-3-7-sonnet-20250219", name="Claude 3.7 Sonnet"),
    ModelInfo(id="claude-3-5-haiku-20241022", name="Claude 3.5 Haiku (Fast)"),
]

OPENAI_MODELS = [
    ModelInfo(id="gpt-4o", name="GPT-4o", recommended=True),
    ModelInfo(id="gpt-4-turbo", name="GPT-4 Turbo"),
    ModelInfo(id="gpt-4", name="GPT-4"),
    ModelInfo(id="gpt-3.5-turbo", name="GPT-3.5 Turbo"),
]

MODEL_CACHE_SECONDS = 60 * 60

_models_cache: tuple[float, dict[str, list[ModelInfo]]] | None = None


def list_models(clock: Callable[[], float] = time.monotonic) -> dict[str, list[ModelInfo]]:
    """Available models per provider, cached for an hour."""
    global _models_cache
    now = clock()
    if _models_cache is not None and now - _models_cache[0] < MODEL_CACHE_SECONDS:
        return _models_cache[1]
    models = {"claude": list(CLAUDE_MODELS), "openai": list(OPENAI_MODELS)}
    _models_cache = (now, models)
    return models


def clear_models_cache() -> None:
    global _models_cache
    _models_cache = None


# ---------------------------------------------------------------------------
# ProviderError: raised for all connection and protocol failures
# ---------------------------------------------------------------------------

class ProviderError(RuntimeError):
    """Raised when the AI provider cannot be reached or returns an error."""
