from __future__ import annotations

import logging
import math
import re
from collections.abc import Iterable

import numpy as np
from numpy.typing import NDArray

from actlens.accumulator import StatsAccumulator
from actlens.models import (
    FamilyImportance,
    LayerImportanceReport,
    LayerImportanceScore,
    LayerImportanceSkip,
    TensorStats,
)

logger = logging.getLogger(__name__)

_LAYER_KEY = re.compile(r"^blk\.(\d+)\.(.+)$")


def parse_layer_key(key: str) -> tuple[int, str] | None:
    """Split ``blk.<N>.<family>.<suffix>`` into ``(N, family)``.

    ``blk.17.ffn_gate.weight`` gives ``(17, "ffn_gate")``.  Keys outside the
    ``blk.`` convention return None.
    """
    match = _LAYER_KEY.match(key)
    if match is None:
        return None
    rest = match.group(2)
    family, dot, _ = rest.rpartition(".")
    return int(match.group(1)), family if dot else rest


def cosine_similarity(a: NDArray[np.floating], b: NDArray[np.floating]) -> float | None:
    """Cosine similarity in double precision, or None for a zero vector."""
    a64 = a.astype(np.float64, copy=False)
    b64 = b.astype(np.float64, copy=False)
    norm_a = math.sqrt(float(np.dot(a64, a64)))
    norm_b = math.sqrt(float(np.dot(b64, b64)))
    if norm_a == 0.0 or norm_b == 0.0:
        return None
    return float(np.dot(a64, b64)) / (norm_a * norm_b)


class LayerImportanceScorer:
    """Score layers by how much their input activations diverge from the next layer's.

    Within a tensor family, layer ``i`` scores ``-cos(a_i, a_{i+1})`` where
    ``a`` is the last observed activation.  Higher means less redundant.
    """

    def score(self, accumulator: StatsAccumulator) -> LayerImportanceReport:
        return self.score_entries(accumulator.entries())

    def score_entries(
        self, entries: Iterable[tuple[str, TensorStats]]
    ) -> LayerImportanceReport:
        groups: dict[str, list[tuple[int, NDArray[np.float32]]]] = {}
        for key, stats in entries:
            parsed = parse_layer_key(key)
            if parsed is None:
                logger.debug("Skipping %s: not a per-layer tensor.", key)
                continue
            layer, family = parsed
            groups.setdefault(family, []).append((layer, stats.last_activation))

        families: list[FamilyImportance] = []
        for family, layers in groups.items():
            layers.sort(key=lambda item: item[0])
            families.append(self._score_family(family, layers))
        logger.info("Computed layer importance for %d tensor families.", len(families))
        return LayerImportanceReport(families=families)

    @staticmethod
    def _score_family(
        family: str, layers: list[tuple[int, NDArray[np.float32]]]
    ) -> FamilyImportance:
        if len(layers) < 2:
            return FamilyImportance(
                family=family,
                scores=[],
                skipped=[],
                note="Need at least 2 layers to compute LIM scores",
            )

        scores: list[LayerImportanceScore] = []
        skipped: list[LayerImportanceSkip] = []
        for (layer, current), (_, following) in zip(layers, layers[1:]):
            if current.size != following.size:
                reason = f"dimension mismatch: {current.size} vs {following.size}"
                logger.warning("Skipping %s layer %d: %s.", family, layer, reason)
                skipped.append(LayerImportanceSkip(layer=layer, reason=reason))
                continue
            similarity = cosine_similarity(current, following)
            if similarity is None:
                logger.warning("Skipping %s layer %d: zero magnitude.", family, layer)
                skipped.append(LayerImportanceSkip(layer=layer, reason="zero magnitude"))
                continue
            scores.append(LayerImportanceScore(layer=layer, score=-similarity))
        return FamilyImportance(family=family, scores=scores, skipped=skipped)
