from __future__ import annotations

from dataclasses import dataclass
from typing import Any, cast

import numpy as np
from numpy.typing import NDArray
from pydantic import BaseModel, ConfigDict


@dataclass
class TensorStats:
    """Running activation statistics for a single tensor key."""

    last_activation: NDArray[np.float32]
    sum_of_squares: NDArray[np.float64]
    sample_counts: NDArray[np.int64]
    call_count: int = 0
    expert_count: int = 1

    def __post_init__(self) -> None:
        for field_name in ("last_activation", "sum_of_squares", "sample_counts"):
            if not isinstance(cast(Any, getattr(self, field_name)), np.ndarray):
                raise TypeError(f"{field_name} must be a numpy.ndarray")
        size = self.sum_of_squares.size
        if self.sample_counts.size != size or self.last_activation.size != size:
            raise ValueError("TensorStats arrays must share one length")
        if self.expert_count < 1:
            raise ValueError("expert_count must be >= 1")
        if size % self.expert_count != 0:
            raise ValueError("array length must be divisible by expert_count")

    @classmethod
    def zeros(cls, size: int, expert_count: int = 1) -> TensorStats:
        return cls(
            last_activation=np.zeros(size, dtype=np.float32),
            sum_of_squares=np.zeros(size, dtype=np.float64),
            sample_counts=np.zeros(size, dtype=np.int64),
            expert_count=expert_count,
        )

    @property
    def size(self) -> int:
        return int(self.sum_of_squares.size)

    @property
    def per_expert_size(self) -> int:
        return self.size // self.expert_count

    def copy(self) -> TensorStats:
        return TensorStats(
            last_activation=self.last_activation.copy(),
            sum_of_squares=self.sum_of_squares.copy(),
            sample_counts=self.sample_counts.copy(),
            call_count=self.call_count,
            expert_count=self.expert_count,
        )


class SnapshotInfo(BaseModel):
    """Header and trailer metadata read from a snapshot stream."""

    model_config = ConfigDict(extra="forbid", strict=True, frozen=True)

    entry_count: int
    last_call_count: int | None = None
    source_description: str | None = None


class SnapshotEntrySummary(BaseModel):
    """Per-entry summary used by the inspect report."""

    model_config = ConfigDict(extra="forbid", strict=True)

    key: str
    call_count: int
    value_count: int
    expert_count: int
    mean_value: float


class PerplexityEstimate(BaseModel):
    """Final perplexity point estimate with its standard error."""

    model_config = ConfigDict(extra="forbid", strict=True, frozen=True)

    ppl: float
    stderr: float | None
    token_count: int


class LayerImportanceScore(BaseModel):
    """Negative cosine similarity between a layer and the next one."""

    model_config = ConfigDict(extra="forbid", strict=True)

    layer: int
    score: float


class LayerImportanceSkip(BaseModel):
    """A layer pair that could not be scored."""

    model_config = ConfigDict(extra="forbid", strict=True)

    layer: int
    reason: str


class FamilyImportance(BaseModel):
    """Scores for one tensor family (e.g. ``ffn_gate``) across layers."""

    model_config = ConfigDict(extra="forbid", strict=True)

    family: str
    scores: list[LayerImportanceScore]
    skipped: list[LayerImportanceSkip]
    note: str | None = None


class LayerImportanceReport(BaseModel):
    """Immutable layer-importance result bundle."""

    model_config = ConfigDict(extra="forbid", strict=True, frozen=True)

    families: list[FamilyImportance]
