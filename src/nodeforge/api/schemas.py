"""
Pydantic models for API request/response validation.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


# === Triggers ===

class SpawnRequest(BaseModel):
    total_pioneers: int
    phase: int = 1
    target_region: str | None = None
    spawn_time: datetime | None = None
    layers: list[str] = Field(default_factory=list)
    game_event_type: str = "GENESIS"
    lore_boost: bool = False


class NextPhaseRequest(BaseModel):
    phase: int


class SurgeRequest(BaseModel):
    spawn_cycle: str = Field(description="Cycle date as YYYY-MM-DD")


# === Results ===

class NodesSpawnedResponse(BaseModel):
    phase: int
    nodes_spawned: int
    narrative: str
    node_types_stored: int
    nodes_stored: int
    fallback_count: int
    rarity_totals: dict[str, int] = Field(default_factory=dict)


class SurgeAuditResponse(BaseModel):
    spawn_cycle: str
    total_spawned: int
    hexes_considered: int
    zero_activity_fallback: bool
    diversity_penalty_hex_count: int
    top_hexes: list[dict[str, Any]] = Field(default_factory=list)
    hexes_used: int = 0


class SurgeCycleResponse(BaseModel):
    spawn_cycle: str
    nodes_spawned: int
    nodes_stored: int
    fallback_count: int
    audit: SurgeAuditResponse
    cleanup: dict[str, int] = Field(default_factory=dict)


class PhaseResponse(BaseModel):
    phase: int
    total_pioneers: int
    nodes_spawned: int
    game_event_type: str
    narrative: str | None = None
    started_at: str
