from __future__ import annotations

from actlens.callback import GraphOperation, OperationKind
from actlens.contracts import TensorSelector
from actlens.name_filter import filter_tensor_name


class DefaultTensorSelector(TensorSelector):
    """Collect every routed matmul and per-block float32 matmuls."""

    def __init__(
        self,
        *,
        process_output: bool = False,
        output_tensor_name: str = "output.weight",
        min_rows: int = 16,
    ) -> None:
        self._process_output = process_output
        self._output_tensor_name = output_tensor_name
        self._min_rows = min_rows

    def wants(self, op: GraphOperation) -> bool:
        if op.kind is OperationKind.MUL_MAT_ID:
            return True
        if op.kind is not OperationKind.MUL_MAT:
            return False

        # --- small batches and non-float32 inputs are ignored ---
        if op.rows < self._min_rows or op.dtype != "float32":
            return False

        name = filter_tensor_name(op.weight_name)
        if name.startswith("blk."):
            return True
        return self._process_output and name == self._output_tensor_name
