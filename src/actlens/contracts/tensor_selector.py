from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from actlens.callback import GraphOperation


class TensorSelector(ABC):
    """Answer the interest query for an operation about to execute."""

    @abstractmethod
    def wants(self, op: GraphOperation) -> bool:
        """Return True if the operation's inputs should be collected.

        Selection looks at operation kind, name, row count and dtype,
        never at activation values.
        """
        raise NotImplementedError
