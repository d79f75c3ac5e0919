from __future__ import annotations

import enum
import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import numpy as np
from numpy.typing import NDArray

from actlens.errors import (
    ExpertIndexError,
    InconsistentShapeError,
    NonFiniteActivationError,
)
from actlens.models import TensorStats
from actlens.tensor_utils import as_float_array, as_index_array

logger = logging.getLogger(__name__)


class SnapshotRequest(enum.Flag):
    """Which snapshots the caller should write after an observation."""

    NONE = 0
    PERIODIC = enum.auto()
    NUMBERED = enum.auto()


class CheckpointPolicy:
    """Decide when the collected statistics should be written to disk.

    A request is only issued when a call count exceeds the highest one seen
    so far.  ``PERIODIC`` fires on multiples of *output_frequency*;
    ``NUMBERED`` fires on multiples of *save_frequency* (``0`` disables it).
    """

    def __init__(self, output_frequency: int = 10, save_frequency: int = 0) -> None:
        if output_frequency < 1:
            raise ValueError("output_frequency must be >= 1")
        if save_frequency < 0:
            raise ValueError("save_frequency must be >= 0")
        self._output_frequency = output_frequency
        self._save_frequency = save_frequency
        self._last_call = 0
        self._lock = threading.Lock()

    @property
    def last_call(self) -> int:
        return self._last_call

    def evaluate(self, call_count: int) -> SnapshotRequest:
        with self._lock:
            if call_count <= self._last_call:
                return SnapshotRequest.NONE
            self._last_call = call_count

        request = SnapshotRequest.NONE
        if call_count % self._output_frequency == 0:
            request |= SnapshotRequest.PERIODIC
        if self._save_frequency > 0 and call_count % self._save_frequency == 0:
            request |= SnapshotRequest.NUMBERED
        if request:
            logger.debug("Snapshot requested at call %d: %s.", call_count, request)
        return request


class StatsAccumulator:
    """Thread-safe online accumulator of per-tensor squared activations.

    Every mutation, including host conversion of incoming buffers, happens
    under a single lock.  Entries are created lazily and never change size.
    """

    def __init__(self) -> None:
        self._stats: dict[str, TensorStats] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._stats)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._stats

    @contextmanager
    def locked(self) -> Iterator[dict[str, TensorStats]]:
        """Hold the accumulator lock and expose the live mapping."""
        with self._lock:
            yield self._stats

    def observe(
        self,
        key: str,
        activations: Any,
        expert_count: int = 1,
        expert_ids: Any | None = None,
        *,
        copied: bool = False,
    ) -> int:
        """Fold one batch of activations into the entry for *key*.

        Plain tensors take any array whose last axis is the row width.
        Routed tensors take activations shaped ``(tokens, slots, width)``
        and ids shaped ``(tokens, experts_used)``; the slot read for
        ``(token, k)`` is ``k % slots``.  Returns the entry's call count.
        """
        if expert_count < 1:
            raise ValueError("expert_count must be >= 1")
        with self._lock:
            data, host_copy = as_float_array(activations)
            if copied or host_copy:
                logger.debug("Observing %s from a device copy.", key)
            if expert_ids is None:
                if expert_count != 1:
                    raise ValueError(
                        f"expert_ids are required for routed tensor {key}"
                    )
                return self._observe_plain(key, data)
            return self._observe_routed(
                key, data, as_index_array(expert_ids), expert_count
            )

    def entries(self) -> list[tuple[str, TensorStats]]:
        """Return a point-in-time copy of every entry."""
        with self._lock:
            return [(key, stats.copy()) for key, stats in self._stats.items()]

    def get(self, key: str) -> TensorStats | None:
        with self._lock:
            stats = self._stats.get(key)
            return stats.copy() if stats is not None else None

    def max_call_count(self) -> int:
        with self._lock:
            return max((s.call_count for s in self._stats.values()), default=0)

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()
        logger.warning("Accumulator state discarded.")

    def _resolve_entry(
        self, key: str, size: int, expert_count: int
    ) -> tuple[TensorStats, bool]:
        entry = self._stats.get(key)
        if entry is None:
            return TensorStats.zeros(size, expert_count), True
        if entry.size != size:
            logger.error(
                "Inconsistent size for %s (%d vs %d).", key, entry.size, size
            )
            raise InconsistentShapeError(key, entry.size, size)
        if entry.expert_count != expert_count and entry.expert_count != 1:
            logger.warning(
                "Inconsistent expert count for %s (%d vs %d).",
                key,
                entry.expert_count,
                expert_count,
            )
        return entry, False

    def _commit(self, key: str, entry: TensorStats, is_new: bool) -> int:
        entry.call_count += 1
        if is_new:
            self._stats[key] = entry
        return entry.call_count

    def _observe_plain(self, key: str, data: NDArray[np.float32]) -> int:
        if data.ndim == 0 or data.shape[-1] == 0:
            raise ValueError(f"Activations for {key} have no columns")
        width = int(data.shape[-1])
        rows = data.reshape(-1, width)
        entry, is_new = self._resolve_entry(key, width, 1)

        updated = entry.sum_of_squares + np.square(rows, dtype=np.float64).sum(axis=0)
        self._check_finite(key, updated)

        entry.sum_of_squares[...] = updated
        entry.sample_counts += rows.shape[0]
        if rows.shape[0]:
            entry.last_activation[...] = rows[-1]
        call_count = self._commit(key, entry, is_new)
        logger.debug(
            "Observed %s: %d x %d, call=%d.", key, rows.shape[0], width, call_count
        )
        return call_count

    def _observe_routed(
        self,
        key: str,
        data: NDArray[np.float32],
        ids: NDArray[np.int64],
        expert_count: int,
    ) -> int:
        if ids.ndim == 1:
            ids = ids[:, None]
        if data.ndim == 2:
            data = data[:, None, :]
        if data.ndim != 3 or ids.ndim != 2 or ids.shape[0] != data.shape[0]:
            raise ValueError(
                f"Routed activations {data.shape} do not match expert ids "
                f"{ids.shape} for {key}"
            )
        n_tokens, n_slots, width = (int(d) for d in data.shape)
        n_used = int(ids.shape[1])
        if width == 0 or n_slots == 0:
            raise ValueError(f"Activations for {key} have no columns")

        entry, is_new = self._resolve_entry(key, width * expert_count, expert_count)
        out_of_range = (ids < 0) | (ids >= expert_count)
        if out_of_range.any():
            bad = int(ids[out_of_range][0])
            logger.error("Expert id %d out of range for %s.", bad, key)
            raise ExpertIndexError(key, bad, expert_count)

        # Rows ordered by selection slot, then token.
        experts = ids.T.reshape(-1)
        slots = np.arange(n_used) % n_slots
        rows = data[:, slots, :].transpose(1, 0, 2).reshape(-1, width)

        per_expert = np.zeros((expert_count, width), dtype=np.float64)
        np.add.at(per_expert, experts, np.square(rows, dtype=np.float64))
        hits = np.bincount(experts, minlength=expert_count)

        updated = entry.sum_of_squares.reshape(expert_count, width) + per_expert
        self._check_finite(key, updated)

        if entry.expert_count == 1 and expert_count > 1:
            logger.info("Adopting expert count %d for %s.", expert_count, key)
            entry.expert_count = expert_count
        entry.sum_of_squares[...] = updated.reshape(-1)
        entry.sample_counts.reshape(expert_count, width)[...] += hits[:, None]
        if experts.size:
            reversed_experts = experts[::-1]
            seen, first_in_reverse = np.unique(reversed_experts, return_index=True)
            last_rows = experts.size - 1 - first_in_reverse
            entry.last_activation.reshape(expert_count, width)[seen] = rows[last_rows]

        call_count = self._commit(key, entry, is_new)
        logger.debug(
            "Observed routed %s: %d tokens x %d experts used of %d, call=%d.",
            key,
            n_tokens,
            n_used,
            expert_count,
            call_count,
        )
        return call_count

    @staticmethod
    def _check_finite(key: str, values: NDArray[np.float64]) -> None:
        finite = np.isfinite(values)
        if not finite.all():
            value = float(values[~finite].flat[0])
            logger.error("%s detected in %s.", value, key)
            raise NonFiniteActivationError(key, value)
