"""LLM integration for awakening narratives and lore boosts."""

from nodeforge.llm.client import (
    ClaudeClient,
    OllamaClient,
    LLMClient,
    LLMUnavailableError,
    NarrativeRequest,
    NarrativeText,
    client_from_env,
    create_client,
)
from nodeforge.llm.narrator import AwakeningNarrator, LoreBoostEvent, LoreBooster

__all__ = [
    "ClaudeClient",
    "OllamaClient",
    "LLMClient",
    "LLMUnavailableError",
    "NarrativeRequest",
    "NarrativeText",
    "client_from_env",
    "create_client",
    "AwakeningNarrator",
    "LoreBoostEvent",
    "LoreBooster",
]
