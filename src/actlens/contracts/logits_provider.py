from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray


class LogitsProvider(ABC):
    """Run the model over token batches and expose per-position logits."""

    @property
    @abstractmethod
    def n_ctx(self) -> int:
        """Context length of one evaluation chunk."""
        raise NotImplementedError

    @property
    @abstractmethod
    def n_vocab(self) -> int:
        raise NotImplementedError

    @property
    def bos_token(self) -> int | None:
        """Token placed at the start of each chunk, or None to leave it."""
        return None

    def reset(self) -> None:
        """Clear any cached state before a new chunk."""

    @abstractmethod
    def evaluate(self, tokens: Sequence[int], n_past: int) -> NDArray[np.float32]:
        """Return logits shaped ``(len(tokens), n_vocab)`` for the batch."""
        raise NotImplementedError
