"""
Template lore and display names for spawned nodes.

Names and lore are chosen deterministically from the node's digit-stream
offset so repeated runs over the same inputs produce identical records.
The text itself is opaque to the spawn pipelines.
"""

from __future__ import annotations

from dataclasses import dataclass

from nodeforge.core.quota import Rarity

# ---------------------------------------------------------------------------
# Vocabulary per rarity tier
# ---------------------------------------------------------------------------

ADJECTIVES: dict[Rarity, list[str]] = {
    Rarity.COMMON: ["Quiet", "Steady", "Humble", "Faint", "Worn", "Simple", "Dim", "Plain"],
    Rarity.UNCOMMON: ["Humming", "Bright", "Twisted", "Glinting", "Restless", "Silvered"],
    Rarity.RARE: ["Radiant", "Spiral", "Resonant", "Veiled", "Prismatic", "Shifting"],
    Rarity.EPIC: ["Thundering", "Celestial", "Fractal", "Ancient", "Luminous"],
    Rarity.LEGENDARY: ["Infinite", "Transcendent", "Primordial", "Eternal"],
}

NOUNS: dict[Rarity, list[str]] = {
    Rarity.COMMON: ["Stone", "Spring", "Ridge", "Hollow", "Marker", "Well", "Cairn"],
    Rarity.UNCOMMON: ["Conduit", "Grove", "Beacon", "Crossing", "Basin", "Shard"],
    Rarity.RARE: ["Nexus", "Spire", "Prism", "Vortex", "Sanctum"],
    Rarity.EPIC: ["Citadel", "Maelstrom", "Monolith", "Observatory"],
    Rarity.LEGENDARY: ["Singularity", "Axis", "Heart", "Origin"],
}

ENVIRONMENTS: dict[Rarity, list[str]] = {
    Rarity.COMMON: ["quiet meadow", "dusty crossroads", "riverside clearing", "hillside path"],
    Rarity.UNCOMMON: ["misty valley", "old market square", "forest edge", "coastal cliff"],
    Rarity.RARE: ["hidden canyon", "moonlit plateau", "forgotten ruin"],
    Rarity.EPIC: ["storm-wracked summit", "crystal cavern", "sunken temple"],
    Rarity.LEGENDARY: ["fold between numbers", "still point of the lattice"],
}

LORE_ITEMS: dict[Rarity, list[str]] = {
    Rarity.COMMON: ["a faint digit echo", "a worn tally mark", "a single steady pulse"],
    Rarity.UNCOMMON: ["a recurring chord", "a spiral of minor digits", "a warm harmonic"],
    Rarity.RARE: ["a fragment of the first sequence", "a pioneer's lost compass"],
    Rarity.EPIC: ["a guardian's sealed cipher", "a storm of converging series"],
    Rarity.LEGENDARY: ["the memory of the circle itself", "an unbroken run of digits"],
}

EXTENDED_SUFFIX: dict[Rarity, str] = {
    Rarity.COMMON: " A common nexus for mining shares in the Realm.",
    Rarity.UNCOMMON: " It hums with subtle power, rewarding early Harmonizers.",
    Rarity.RARE: " It pulses with moderate cosmic power, yielding shares attuned to Pioneers.",
    Rarity.EPIC: " Legends of the Lattice speak of its immense resonance, guarded by echoes.",
    Rarity.LEGENDARY: " Ultimate harmony from the deep digits; only true Harmonizers can master its frequency.",
}


@dataclass(frozen=True)
class LoreText:
    name: str
    lore: str
    extended_lore: str


def _pick(words: list[str], seed: int, salt: int = 0) -> str:
    """Deterministic choice keyed by a non-negative seed."""
    return words[(abs(seed) // 7 ** salt) % len(words)]


def offset_tag(offset: int) -> str:
    """Upper-case hex of the offset. Offsets never repeat across placements,
    so neither do tags; keep every digit."""
    return format(abs(offset), "X")


def generate_node_name(rarity: Rarity, offset: int) -> str:
    """``"<Adjective> <Noun> Lattice (<Rarity> #<HEX>)"``."""
    adjective = _pick(ADJECTIVES[rarity], offset)
    noun = _pick(NOUNS[rarity], offset, salt=1)
    return f"{adjective} {noun} Lattice ({rarity.value} #{offset_tag(offset)})"


def generate_lore(rarity: Rarity, phase: int, seed: int = 0) -> LoreText:
    """Rarity-flavored name, one-line lore and extended lore for a phase."""
    adjective = _pick(ADJECTIVES[rarity], seed)
    noun = _pick(NOUNS[rarity], seed, salt=1)
    environment = _pick(ENVIRONMENTS[rarity], seed, salt=2)
    item = _pick(LORE_ITEMS[rarity], seed, salt=3)

    name = f"{adjective} {noun} (Phase {phase})"
    lore = (
        f"A {adjective.lower()} {noun.lower()} resonating in a {environment}, "
        f"holding {item}."
    )
    extended = (
        f"Born from the digits in Harmonic Awakening {phase}, this node echoes "
        f"guardians' whispers." + EXTENDED_SUFFIX[rarity]
    )
    return LoreText(name=name, lore=lore, extended_lore=extended)


def generate_surge_lore(activity_score: float, rank: int) -> str:
    """Lore for a surge node from its hex's activity score and rank."""
    if activity_score > 100_000:
        return (
            f"Born from intense harmonic convergence. This Surge node pulses with "
            f"cosmic energy, ranking #{rank} in today's resonance wave. Mine it to "
            f"anchor this frequency forever."
        )
    if activity_score > 50_000:
        return (
            f"A strong resonance echo manifests here. Rank #{rank} among today's "
            f"Surge nodes. Claim it before the 24-hour window closes."
        )
    return (
        f"A moderate frequency disturbance. Rank #{rank} in the daily Surge cycle. "
        f"Mine to stabilize it into the Lattice permanently."
    )
