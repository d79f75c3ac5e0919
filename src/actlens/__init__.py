import logging
import sys

from .accumulator import CheckpointPolicy, SnapshotRequest, StatsAccumulator
from .contracts import LogitsProvider, Reporter, TensorSelector
from .errors import ActLensError, UnrecoverableError
from .name_filter import filter_tensor_name

__all__ = [
    "ActLensError",
    "CheckpointPolicy",
    "LogitsProvider",
    "Reporter",
    "SnapshotRequest",
    "StatsAccumulator",
    "TensorSelector",
    "UnrecoverableError",
    "filter_tensor_name",
]

# Diagnostics go to stderr so the perplexity stream on stdout stays parseable.
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    handlers=[logging.StreamHandler(sys.stderr)],
    force=True,
)
