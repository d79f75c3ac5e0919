from __future__ import annotations

from typing import Any

import numpy as np
import torch
from numpy.typing import NDArray


def tensor_to_numpy(tensor: torch.Tensor) -> tuple[NDArray[np.float32], bool]:
    """Convert a PyTorch tensor to a float32 numpy array on the host.

    Returns the array and whether a device-to-host copy was required.
    Avoids unnecessary copies: when the tensor is already float32,
    contiguous, and on CPU, ``numpy()`` is zero-copy.
    """
    t = tensor.detach()
    copied = not t.is_cpu
    if copied:
        t = t.cpu()
    if not t.is_contiguous():
        t = t.contiguous()
    if t.dtype != torch.float32:
        t = t.to(torch.float32)
    return t.numpy(), copied


def ids_to_numpy(ids: torch.Tensor) -> NDArray[np.int64]:
    """Copy an expert-assignment tensor to the host as int64."""
    t = ids.detach()
    if not t.is_cpu:
        t = t.cpu()
    return t.to(torch.int64).numpy()


def as_float_array(buffer: Any) -> tuple[NDArray[np.float32], bool]:
    """Accept a torch tensor or array-like and return a host float32 array."""
    if isinstance(buffer, torch.Tensor):
        return tensor_to_numpy(buffer)
    return np.asarray(buffer, dtype=np.float32), False


def as_index_array(buffer: Any) -> NDArray[np.int64]:
    if isinstance(buffer, torch.Tensor):
        return ids_to_numpy(buffer)
    return np.asarray(buffer, dtype=np.int64)
