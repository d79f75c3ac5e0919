from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from actlens.models import LayerImportanceReport, SnapshotEntrySummary


class Reporter(ABC):
    """Render results for presentation."""

    @abstractmethod
    def render_importance(self, report: LayerImportanceReport) -> None:
        """Render a layer-importance report."""
        raise NotImplementedError

    @abstractmethod
    def render_snapshot(
        self, summaries: list[SnapshotEntrySummary], filename: str
    ) -> None:
        """Render per-entry statistics of a loaded snapshot."""
        raise NotImplementedError
