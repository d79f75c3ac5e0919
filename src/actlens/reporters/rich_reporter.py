from __future__ import annotations

from rich import box
from rich.console import Console
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from actlens.contracts import Reporter
from actlens.models import (
    FamilyImportance,
    LayerImportanceReport,
    SnapshotEntrySummary,
)


class RichReporter(Reporter):
    """Render layer-importance and snapshot reports using Rich tables."""

    def __init__(self, console: Console | None = None) -> None:
        self._console = console or Console()

    def render_importance(self, report: LayerImportanceReport) -> None:
        self._console.print()
        self._console.print(
            "Layer Importance Modification (LIM) Scores", style="bold underline"
        )
        self._console.print(Rule(style="dim"))
        for family in report.families:
            self._console.print(f"Tensor: {family.family}", style="bold")
            self._console.print(self._build_family_table(family))
            self._console.print()

    @staticmethod
    def _build_family_table(family: FamilyImportance) -> Table:
        table = Table(box=box.SIMPLE_HEAD, show_header=True, header_style="bold")
        table.add_column("Layer", justify="right")
        table.add_column("LIM Score")

        if family.note is not None:
            table.add_row("-", Text(f"({family.note})", style="dim"))
            return table

        rows: list[tuple[int, Text]] = [
            (entry.layer, Text(f"{entry.score:.4f}")) for entry in family.scores
        ]
        rows.extend(
            (skip.layer, Text(f"(skipped - {skip.reason})", style="yellow"))
            for skip in family.skipped
        )
        for layer, cell in sorted(rows, key=lambda row: row[0]):
            table.add_row(str(layer), cell)
        return table

    def render_snapshot(
        self, summaries: list[SnapshotEntrySummary], filename: str
    ) -> None:
        self._console.print()
        self._console.print(f"Entries in {filename}", style="bold underline")
        self._console.print(Rule(style="dim"))

        if not summaries:
            self._console.print("[dim]None[/dim]")
            return

        table = Table(
            box=box.SIMPLE_HEAD,
            show_header=True,
            header_style="bold",
            expand=True,
            padding=(0, 2),
        )
        table.add_column("Tensor", ratio=4)
        table.add_column("Calls", justify="right", ratio=1)
        table.add_column("Values", justify="right", ratio=1)
        table.add_column("Mean sq. activation", justify="right", ratio=2)
        for summary in summaries:
            table.add_row(
                summary.key,
                f"{summary.call_count:,}",
                f"{summary.value_count:,}",
                f"{summary.mean_value:.6f}",
            )
        self._console.print(table)
