"""
System prompts, context builders and template fallbacks for narratives.

Two modes:
  - Awakening: third-person chronicle of a freshly spawned phase
  - Lore boost: extended lore for one rarity tier in one region

Every LLM-backed text has a template fallback here, so a spawn job never
depends on a provider being reachable.
"""

from __future__ import annotations

from typing import Any

from nodeforge.core.quota import Rarity


# ---------------------------------------------------------------------------
# System prompts
# ---------------------------------------------------------------------------

AWAKENING_SYSTEM_PROMPT = """You are the archivist of the Lattice, a world map where nodes crystallize out of the digits of pi.

Write an epic phase narrative of 4-6 sentences that:
- Celebrates the cosmic significance of this awakening
- Weaves the new node types into a unified story
- Ends with a rallying call for pioneers to explore the new frequencies

Style: mystical yet accessible. Use the node counts and region you are given; do not invent other statistics."""

LORE_BOOST_SYSTEM_PROMPT = """You are the archivist of the Lattice, a world map where nodes crystallize out of the digits of pi.

Given a region, a rarity tier and a story theme, write extended lore of 2-3 sentences for the nodes of that tier.
Higher tiers should feel older and more dangerous. Stay consistent with the theme."""


# ---------------------------------------------------------------------------
# Context builders
# ---------------------------------------------------------------------------

def build_awakening_context(
    node_types: list[dict[str, Any]],
    phase: int,
    total_nodes: int,
    region: str,
) -> str:
    """Build context for an awakening narrative.

    Parameters
    ----------
    node_types : list[dict]
        ``{"name": ..., "lore": ...}`` per awakened type.
    phase : int
        Phase number.
    total_nodes : int
        Nodes spawned in this phase.
    region : str
        Target region or ``"global"``.
    """
    parts: list[str] = []
    parts.append(f"HARMONIC AWAKENING {phase}")
    parts.append(f"Region: {region}")
    parts.append(f"New frequencies detected: {total_nodes}")

    if node_types:
        parts.append("\nAWAKENED NODE TYPES:")
        for t in node_types:
            parts.append(f"  - {t.get('name', 'Unnamed')}: {t.get('lore', '')}")

    return "\n".join(parts)


def build_lore_boost_context(region: str, rarity: Rarity, story_theme: str) -> str:
    return "\n".join([
        f"REGION: {region}",
        f"RARITY: {rarity.value}",
        f"STORY THEME: {story_theme}",
    ])


# ---------------------------------------------------------------------------
# Template fallbacks
# ---------------------------------------------------------------------------

_PHASE_NARRATIVES: dict[int, str] = {
    1: (
        "The Genesis Awakening has begun! Across {region}, {total_nodes} new cosmic "
        "frequencies have crystallized into the Lattice, marking the first stirring of "
        "mathematical consciousness. Pioneers, the ancient echoes call to you: venture "
        "forth and discover the infinite patterns that bind reality itself!"
    ),
    2: (
        "Harmonic Awakening {phase} resonates across {region}! The Lattice's frequency has "
        "deepened, manifesting {total_nodes} new mathematical mysteries. Each node pulses "
        "with evolved cosmic energy, awaiting pioneers brave enough to unlock its secrets."
    ),
    3: (
        "Sacred geometry emerges in Harmonic Awakening {phase}! {total_nodes} profound "
        "frequencies now grace {region}. The halving has made each resonance precious "
        "beyond measure, while new Echo Guardians awaken to protect these treasures."
    ),
    4: (
        "The Infinite Echo of Awakening {phase} transforms {region}! {total_nodes} "
        "transcendent frequencies breach the veil between mathematics and mysticism, "
        "challenging even the most dedicated pioneers."
    ),
    5: (
        "Transcendent Convergence! Awakening {phase} has achieved perfect harmony across "
        "{region}, where {total_nodes} reality-bending frequencies rewrite the laws of "
        "existence. Master pioneers, become one with the infinite mathematics!"
    ),
}

_GENERIC_NARRATIVE = (
    "Harmonic Awakening {phase} has manifested across {region}! {total_nodes} new cosmic "
    "frequencies have joined the Lattice, awaiting pioneers ready to explore the infinite "
    "patterns of reality itself."
)


def fallback_phase_narrative(phase: int, total_nodes: int, region: str) -> str:
    """Per-phase template (phases 1-5), generic text for later phases."""
    template = _PHASE_NARRATIVES.get(phase, _GENERIC_NARRATIVE)
    return template.format(phase=phase, total_nodes=total_nodes, region=region)


_BOOST_FLAVOR: dict[Rarity, str] = {
    Rarity.COMMON: "a steady hum that any pioneer can follow",
    Rarity.UNCOMMON: "a subtle harmonic rewarding the early and the patient",
    Rarity.RARE: "a pulse of moderate cosmic power that few can hear",
    Rarity.EPIC: "an immense resonance guarded by echoes of the first sequence",
    Rarity.LEGENDARY: "the deepest digits, whose frequency only true masters can hold",
}


def fallback_lore_boost(region: str, rarity: Rarity, story_theme: str) -> str:
    return (
        f"In {region}, the theme of {story_theme} gathers around the {rarity.value} nodes: "
        f"{_BOOST_FLAVOR[rarity]}."
    )
