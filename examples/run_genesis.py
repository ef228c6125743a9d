#!/usr/bin/env python3
"""Run a small genesis spawn plus one surge cycle and print the results."""

from pathlib import Path

from nodeforge.api.persistence import NodeStore
from nodeforge.core.activity import StaticActivityStore
from nodeforge.core.config import SpawnConfig
from nodeforge.core.digits import DigitStreamSource
from nodeforge.core.hex_index import HexIndex
from nodeforge.core.land_mask import LandMaskSource
from nodeforge.jobs import SpawnEngine, genesis_workflow, surge_workflow

LAND_PATH = Path(__file__).resolve().parents[1] / "data" / "land-coarse.geojson"


def main():
    config = SpawnConfig(total_population=4_000, lat_step=30.0, lon_step=30.0)
    hexes = HexIndex(config.hex_resolution)
    activity = StaticActivityStore(
        scores_by_cycle={"2025-01-15": {
            hexes.latlng_to_hex(40.71, -74.0): 120_000.0,   # New York
            hexes.latlng_to_hex(51.51, -0.13): 40_000.0,    # London
        }},
    )
    engine = SpawnEngine.build(
        config=config,
        digits=DigitStreamSource(computed_digits=20_000),
        land=LandMaskSource(LAND_PATH),
        store=NodeStore(":memory:"),
        activity_store=activity,
    )

    print(f"=== Genesis: {config.total_population} pioneers, "
          f"{config.lat_step:g}x{config.lon_step:g} degree cells ===")
    result = genesis_workflow(engine)
    print(f"Nodes spawned:  {result.nodes_spawned}")
    print(f"Stored:         {result.nodes_stored} nodes, {result.node_types_stored} types")
    print(f"Fallbacks:      {result.fallback_count}")
    for rarity, count in result.rarity_totals.items():
        print(f"  {rarity:10s} {count:5d}")
    print()
    print(result.narrative)
    print()

    print("=== Surge cycle 2025-01-15 ===")
    surge = surge_workflow(engine, "2025-01-15")
    audit = surge.audit
    print(f"Nodes spawned:  {surge.nodes_spawned} over {audit.hexes_used} hexes")
    print(f"Zero-activity fallback: {audit.zero_activity_fallback}")
    print(f"Diversity-penalized hexes: {audit.diversity_penalty_hex_count}")
    for row in audit.top_hexes:
        print(f"  {row['hex_id']:>12s}  score={row['score']:>10.0f}  nodes={row['nodes_spawned']}")


if __name__ == "__main__":
    main()
