"""
Narrative providers: the Anthropic API or a local Ollama server.

A spawn job asks for at most two pieces of prose (the awakening chronicle
and a lore boost). Each is one :class:`NarrativeRequest`, a system prompt
plus a single user prompt, answered with one :class:`NarrativeText`.

Providers raise ``LLMUnavailableError`` for every transport or API
failure and never return partial text; the narrators catch it and use
their templates. Provider choice is read from ``NODEFORGE_LLM_PROVIDER``
(``anthropic``, ``ollama`` or ``none``) by :func:`client_from_env`.
"""

from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from dataclasses import dataclass

logger = logging.getLogger(__name__)

PROVIDERS = ("anthropic", "ollama")


class LLMUnavailableError(Exception):
    """No provider could produce the requested narrative."""


@dataclass(frozen=True)
class NarrativeRequest:
    system: str
    prompt: str
    max_tokens: int = 512
    temperature: float = 0.8


@dataclass(frozen=True)
class NarrativeText:
    """Generated prose plus token accounting for the job log."""

    text: str
    model: str
    provider: str
    input_tokens: int = 0
    output_tokens: int = 0


class LLMClient(ABC):
    provider: str

    def __init__(self, model: str) -> None:
        self.model = model

    @abstractmethod
    def generate(self, request: NarrativeRequest) -> NarrativeText: ...

    def _text(self, text: str, input_tokens: int, output_tokens: int, model: str | None = None) -> NarrativeText:
        logger.debug("%s narrative: %d in / %d out tokens", self.provider, input_tokens, output_tokens)
        return NarrativeText(text, model or self.model, self.provider, input_tokens, output_tokens)


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------

DEFAULT_CLAUDE_MODEL = "claude-sonnet-4-20250514"


class ClaudeClient(LLMClient):
    """Narratives from the Anthropic Messages API (``pip install 'nodeforge[llm]'``)."""

    provider = "anthropic"

    def __init__(self, api_key: str | None = None, model: str = DEFAULT_CLAUDE_MODEL, timeout: float = 60.0) -> None:
        super().__init__(model)
        key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        if not key:
            raise LLMUnavailableError("ANTHROPIC_API_KEY is not set; narratives need it or an api_key argument")
        try:
            import anthropic
        except ImportError as exc:
            raise LLMUnavailableError("anthropic is not installed: pip install 'nodeforge[llm]'") from exc
        self._api_error = anthropic.APIError
        # Job steps carry their own retry policy
        self._client = anthropic.Anthropic(api_key=key, timeout=timeout, max_retries=0)

    @staticmethod
    def is_available() -> bool:
        if not os.environ.get("ANTHROPIC_API_KEY"):
            return False
        try:
            import anthropic  # noqa: F401
        except ImportError:
            return False
        return True

    def generate(self, request: NarrativeRequest) -> NarrativeText:
        try:
            message = self._client.messages.create(
                model=self.model,
                system=request.system,
                messages=[{"role": "user", "content": request.prompt}],
                max_tokens=request.max_tokens,
                temperature=request.temperature,
            )
        except self._api_error as exc:
            raise LLMUnavailableError(f"Anthropic request failed: {exc}") from exc
        text = "".join(getattr(block, "text", "") for block in message.content or [])
        return self._text(text, message.usage.input_tokens, message.usage.output_tokens, message.model)


# ---------------------------------------------------------------------------
# Ollama
# ---------------------------------------------------------------------------

DEFAULT_OLLAMA_MODEL = "llama3.2"
OLLAMA_PORT = 11434


def ollama_base_url() -> str:
    """``OLLAMA_HOST`` if set, else the Docker host alias inside a container,
    else localhost."""
    host = os.environ.get("OLLAMA_HOST")
    if host:
        return host if host.startswith("http") else f"http://{host}"
    in_docker = bool(os.environ.get("DOCKER_CONTAINER")) or os.path.exists("/.dockerenv")
    return f"http://{'host.docker.internal' if in_docker else 'localhost'}:{OLLAMA_PORT}"


class OllamaClient(LLMClient):
    """Narratives from a local Ollama chat endpoint; no key needed."""

    provider = "ollama"

    def __init__(self, model: str = DEFAULT_OLLAMA_MODEL, base_url: str | None = None, timeout: float = 120.0) -> None:
        super().__init__(model)
        self.base_url = (base_url or ollama_base_url()).rstrip("/")
        self.timeout = timeout

    @staticmethod
    def is_available(base_url: str | None = None) -> bool:
        url = (base_url or ollama_base_url()).rstrip("/") + "/api/tags"
        try:
            with urllib.request.urlopen(urllib.request.Request(url, method="GET"), timeout=3) as resp:
                return resp.status == 200
        except (urllib.error.URLError, OSError):
            return False

    def generate(self, request: NarrativeRequest) -> NarrativeText:
        body = {
            "model": self.model,
            "stream": False,
            "messages": [
                {"role": "system", "content": request.system},
                {"role": "user", "content": request.prompt},
            ],
            "options": {"num_predict": request.max_tokens, "temperature": request.temperature},
        }
        http_request = urllib.request.Request(
            f"{self.base_url}/api/chat",
            data=json.dumps(body).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(http_request, timeout=self.timeout) as resp:
                reply = json.loads(resp.read().decode("utf-8"))
        except (urllib.error.URLError, OSError, ValueError) as exc:
            raise LLMUnavailableError(f"Ollama request to {self.base_url} failed: {exc}") from exc
        if "error" in reply:
            raise LLMUnavailableError(f"Ollama model {self.model}: {reply['error']}")
        return self._text(
            (reply.get("message") or {}).get("content", ""),
            reply.get("prompt_eval_count") or 0,
            reply.get("eval_count") or 0,
        )


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

def create_client(
    provider: str = "anthropic",
    model: str | None = None,
    api_key: str | None = None,
    ollama_base_url: str | None = None,
) -> LLMClient:
    if provider == "anthropic":
        return ClaudeClient(api_key=api_key, model=model or DEFAULT_CLAUDE_MODEL)
    if provider == "ollama":
        return OllamaClient(model=model or DEFAULT_OLLAMA_MODEL, base_url=ollama_base_url)
    raise ValueError(f"Unknown provider: {provider!r}. Use one of {PROVIDERS}")


def client_from_env() -> LLMClient | None:
    """Client named by ``NODEFORGE_LLM_PROVIDER`` (model from ``NODEFORGE_LLM_MODEL``).

    Unset means Anthropic when a key is present, otherwise templates only.
    """
    provider = os.environ.get("NODEFORGE_LLM_PROVIDER", "").strip().lower()
    model = os.environ.get("NODEFORGE_LLM_MODEL") or None
    if provider == "none":
        return None
    if not provider:
        if not ClaudeClient.is_available():
            logger.info("No LLM provider configured; narratives use templates")
            return None
        provider = "anthropic"
    return create_client(provider=provider, model=model)
