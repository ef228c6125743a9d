"""
Lore layers: optional perturbations of region weights.

Layers hook into the region metrics pass after neighbor boosting and
cell noise. Each layer is looked up by name from a :class:`LayerRegistry`;
jobs request layers by name in their trigger payload.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import numpy as np

from nodeforge.core.errors import InvalidInputError

if TYPE_CHECKING:
    from nodeforge.core.config import SpawnConfig
    from nodeforge.core.grid import Cell

logger = logging.getLogger(__name__)


class LoreLayer(ABC):
    """
    Abstract base for weight-perturbing lore layers.

    ``deterministic`` layers are pure functions of their inputs. Results
    that include a non-deterministic layer are never cached.
    """

    deterministic: bool = True

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier used in trigger payloads."""

    @property
    @abstractmethod
    def description(self) -> str:
        """Human-readable description."""

    @abstractmethod
    def apply(
        self, weights: np.ndarray, cells: list[Cell], config: SpawnConfig,
    ) -> np.ndarray:
        """Return perturbed weights. Must not modify ``weights`` in place."""


class EnvironmentalLayer(LoreLayer):
    """Cosmetic ±jitter on a small random fraction of cells.

    Draws from an unseeded generator unless one is injected, so two runs
    with this layer differ. That variance is intended.
    """

    deterministic = False

    def __init__(self, rng: np.random.Generator | None = None) -> None:
        self._rng = rng

    @property
    def name(self) -> str:
        return "environmental"

    @property
    def description(self) -> str:
        return "Weather and terrain variance on a handful of cells"

    def apply(
        self, weights: np.ndarray, cells: list[Cell], config: SpawnConfig,
    ) -> np.ndarray:
        rng = self._rng if self._rng is not None else np.random.default_rng()
        result = weights.copy()
        n = len(result)
        k = int(round(n * config.environmental_fraction))
        if k == 0:
            return result
        chosen = rng.choice(n, size=k, replace=False)
        factors = rng.uniform(
            1.0 - config.environmental_jitter, 1.0 + config.environmental_jitter, size=k,
        )
        result[chosen] *= factors
        logger.debug("Environmental layer jittered %d of %d cells", k, n)
        return result


class LayerRegistry:
    """
    Named lore layers available to the region metrics generator.

    Usage::

        registry = LayerRegistry()
        registry.register(EnvironmentalLayer())
        layers = registry.resolve(["environmental"])
    """

    def __init__(self) -> None:
        self._layers: dict[str, LoreLayer] = {}

    @classmethod
    def with_defaults(cls) -> LayerRegistry:
        registry = cls()
        registry.register(EnvironmentalLayer())
        return registry

    def register(self, layer: LoreLayer) -> None:
        self._layers[layer.name] = layer

    def get(self, name: str) -> LoreLayer | None:
        return self._layers.get(name)

    def resolve(self, names: list[str]) -> list[LoreLayer]:
        """Layers for the given names in request order. Unknown names are invalid input."""
        unknown = [n for n in names if n not in self._layers]
        if unknown:
            raise InvalidInputError(
                f"Unknown lore layer(s): {', '.join(sorted(unknown))}"
            )
        seen: list[str] = []
        for n in names:
            if n not in seen:
                seen.append(n)
        return [self._layers[n] for n in seen]

    @property
    def registered_names(self) -> list[str]:
        return list(self._layers.keys())
