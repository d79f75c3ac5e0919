from __future__ import annotations

import numpy as np
import pytest
from pydantic import ValidationError

from actlens.config import ImatrixConfig
from actlens.models import (
    LayerImportanceReport,
    PerplexityEstimate,
    SnapshotInfo,
    TensorStats,
)


def test_tensor_stats_zeros() -> None:
    stats = TensorStats.zeros(8, expert_count=4)
    assert stats.size == 8
    assert stats.per_expert_size == 2
    assert stats.call_count == 0
    assert stats.sum_of_squares.dtype == np.float64
    assert stats.sample_counts.dtype == np.int64


def test_tensor_stats_rejects_mismatched_lengths() -> None:
    with pytest.raises(ValueError, match="one length"):
        TensorStats(
            last_activation=np.zeros(3, dtype=np.float32),
            sum_of_squares=np.zeros(3),
            sample_counts=np.zeros(2, dtype=np.int64),
        )


def test_tensor_stats_rejects_indivisible_expert_blocks() -> None:
    with pytest.raises(ValueError, match="divisible"):
        TensorStats.zeros(5, expert_count=2)


def test_tensor_stats_requires_arrays() -> None:
    with pytest.raises(TypeError, match="numpy.ndarray"):
        TensorStats(
            last_activation=[0.0],  # type: ignore[arg-type]
            sum_of_squares=np.zeros(1),
            sample_counts=np.zeros(1, dtype=np.int64),
        )


def test_tensor_stats_copy_is_independent() -> None:
    stats = TensorStats.zeros(2)
    clone = stats.copy()
    clone.sum_of_squares[0] = 1.0
    assert stats.sum_of_squares[0] == 0.0


def test_config_defaults() -> None:
    config = ImatrixConfig()
    assert config.out_file == "imatrix.dat"
    assert config.output_frequency == 10
    assert config.save_frequency == 0
    assert config.min_rows == 16
    assert config.min_fraction_threshold == 0.95


def test_config_clamps_batch_to_context() -> None:
    config = ImatrixConfig(n_ctx=128, n_batch=512)
    assert config.n_batch == 128


def test_config_rejects_invalid_values() -> None:
    with pytest.raises(ValidationError):
        ImatrixConfig(output_frequency=0)
    with pytest.raises(ValidationError):
        ImatrixConfig(unknown_field=1)  # type: ignore[call-arg]


def test_result_models_are_frozen() -> None:
    info = SnapshotInfo(entry_count=1)
    with pytest.raises(ValidationError):
        info.entry_count = 2  # type: ignore[misc]
    estimate = PerplexityEstimate(ppl=5.0, stderr=None, token_count=10)
    assert estimate.stderr is None
    report = LayerImportanceReport(families=[])
    assert report.families == []
