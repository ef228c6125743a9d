"""
Narrative side-effects of spawn jobs: awakening chronicles and lore boosts.

Both generators treat the LLM as optional. Without a client, or when the
provider fails, they return the template text from ``prompts`` so the job
result always carries a narrative.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any

from nodeforge.core.quota import Rarity
from nodeforge.llm.client import LLMClient, LLMUnavailableError, NarrativeRequest
from nodeforge.llm.prompts import (
    AWAKENING_SYSTEM_PROMPT,
    LORE_BOOST_SYSTEM_PROMPT,
    build_awakening_context,
    build_lore_boost_context,
    fallback_lore_boost,
    fallback_phase_narrative,
)

logger = logging.getLogger(__name__)


class AwakeningNarrator:
    """Chronicles a phase awakening.

    Parameters
    ----------
    client : LLMClient | None
        Any LLM provider (Anthropic or Ollama). ``None`` always uses the
        per-phase template.
    """

    def __init__(self, client: LLMClient | None = None) -> None:
        self.client = client

    def narrate(
        self,
        node_types: list[dict[str, Any]],
        phase: int,
        total_nodes: int,
        region: str = "global",
    ) -> str:
        """Return the awakening narrative for a spawned phase.

        Parameters
        ----------
        node_types : list[dict]
            ``{"name": ..., "lore": ...}`` per awakened type.
        phase : int
            Phase number.
        total_nodes : int
            Nodes spawned.
        region : str
            Target region or ``"global"``.
        """
        if self.client is None:
            return fallback_phase_narrative(phase, total_nodes, region)

        context = build_awakening_context(node_types, phase, total_nodes, region)
        try:
            resp = self.client.generate(
                NarrativeRequest(AWAKENING_SYSTEM_PROMPT, f"Chronicle this awakening:\n\n{context}", max_tokens=512)
            )
        except LLMUnavailableError as exc:
            logger.warning("Awakening narrative failed, using phase %d template: %s", phase, exc)
            return fallback_phase_narrative(phase, total_nodes, region)

        text = resp.text.strip()
        return text or fallback_phase_narrative(phase, total_nodes, region)


@dataclass(frozen=True)
class LoreBoostEvent:
    """Follow-up request for richer lore in one region and tier."""

    region: str
    rarity: Rarity
    story_theme: str

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["rarity"] = self.rarity.value
        return d


class LoreBooster:
    """Turns a ``LoreBoostEvent`` into extended lore text."""

    def __init__(self, client: LLMClient | None = None) -> None:
        self.client = client

    def boost(self, event: LoreBoostEvent) -> str:
        if self.client is None:
            return fallback_lore_boost(event.region, event.rarity, event.story_theme)

        context = build_lore_boost_context(event.region, event.rarity, event.story_theme)
        try:
            resp = self.client.generate(NarrativeRequest(LORE_BOOST_SYSTEM_PROMPT, context, max_tokens=256))
        except LLMUnavailableError as exc:
            logger.warning("Lore boost for %s failed, using %s template: %s",
                           event.region, event.rarity.value, exc)
            return fallback_lore_boost(event.region, event.rarity, event.story_theme)

        return resp.text.strip() or fallback_lore_boost(event.region, event.rarity, event.story_theme)
