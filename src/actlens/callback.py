from __future__ import annotations

import enum
import logging
import math
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from actlens.accumulator import CheckpointPolicy, SnapshotRequest, StatsAccumulator
from actlens.contracts import TensorSelector
from actlens.name_filter import filter_tensor_name

logger = logging.getLogger(__name__)

SnapshotHandler = Callable[[SnapshotRequest, int], None]


class OperationKind(enum.Enum):
    MUL_MAT = "mul_mat"
    MUL_MAT_ID = "mul_mat_id"
    OTHER = "other"


def _dtype_name(buffer: Any) -> str:
    return str(getattr(buffer, "dtype", "float32")).removeprefix("torch.")


def _leading_rows(buffer: Any) -> int:
    shape = tuple(getattr(buffer, "shape", ()))
    return math.prod(shape[:-1]) if shape else 0


@dataclass
class GraphOperation:
    """One instrumented operation as seen by the collection callback."""

    kind: OperationKind
    weight_name: str
    activations: Any
    dtype: str
    rows: int
    expert_count: int = 1
    expert_ids: Any | None = None
    copied: bool = False

    @classmethod
    def matmul(
        cls, weight_name: str, activations: Any, *, copied: bool = False
    ) -> GraphOperation:
        return cls(
            kind=OperationKind.MUL_MAT,
            weight_name=weight_name,
            activations=activations,
            dtype=_dtype_name(activations),
            rows=_leading_rows(activations),
            copied=copied,
        )

    @classmethod
    def routed(
        cls,
        weight_name: str,
        activations: Any,
        expert_ids: Any,
        expert_count: int,
        *,
        copied: bool = False,
    ) -> GraphOperation:
        return cls(
            kind=OperationKind.MUL_MAT_ID,
            weight_name=weight_name,
            activations=activations,
            dtype=_dtype_name(activations),
            rows=_leading_rows(activations),
            expert_count=expert_count,
            expert_ids=expert_ids,
            copied=copied,
        )


class ImatrixCallback:
    """Two-phase collection callback handed to the execution engine.

    Called with ``ask=True`` to decide whether an operation is of interest,
    then with ``ask=False`` to fold its inputs into the accumulator.
    """

    def __init__(
        self,
        accumulator: StatsAccumulator,
        selector: TensorSelector,
        policy: CheckpointPolicy | None = None,
        on_snapshot: SnapshotHandler | None = None,
    ) -> None:
        self._accumulator = accumulator
        self._selector = selector
        self._policy = policy
        self._on_snapshot = on_snapshot
        # Observation and policy check must be ordered together per call count.
        self._lock = threading.Lock()

    @property
    def accumulator(self) -> StatsAccumulator:
        return self._accumulator

    def __call__(self, op: GraphOperation, ask: bool) -> bool:
        if ask:
            return self._selector.wants(op)

        key = filter_tensor_name(op.weight_name)
        request = SnapshotRequest.NONE
        with self._lock:
            if op.kind is OperationKind.MUL_MAT_ID:
                call_count = self._accumulator.observe(
                    key,
                    op.activations,
                    op.expert_count,
                    op.expert_ids,
                    copied=op.copied,
                )
            else:
                call_count = self._accumulator.observe(
                    key, op.activations, copied=op.copied
                )
            if self._policy is not None:
                request = self._policy.evaluate(call_count)

        if request and self._on_snapshot is not None:
            self._on_snapshot(request, call_count)
        return True

    def collect(self, op: GraphOperation) -> bool:
        """Run both phases; return whether the operation was collected."""
        if not self(op, ask=True):
            return False
        return self(op, ask=False)
