from __future__ import annotations

import argparse
import logging
from collections.abc import Sequence
from pathlib import Path

from rich.console import Console
from rich.table import Table

from actlens.accumulator import StatsAccumulator
from actlens.codec import (
    decode_and_merge,
    load_snapshot,
    snapshot_path,
    summarize,
    write_snapshot,
)
from actlens.config import ImatrixConfig, verbosity_level
from actlens.errors import UnrecoverableError
from actlens.models import SnapshotInfo
from actlens.reporters import RichReporter

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="actlens", description="ActLens CLI")
    parser.add_argument(
        "-v",
        "--verbosity",
        type=int,
        default=0,
        help="0: warnings only, 1: progress, 2: per-tensor debug output",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    merge = subparsers.add_parser(
        "merge", help="Merge several importance-matrix snapshots into one"
    )
    merge.add_argument(
        "--in-file",
        dest="in_files",
        action="append",
        required=True,
        help="Snapshot to merge (repeat for several files)",
    )
    merge.add_argument(
        "-o",
        "--output",
        type=str,
        default=None,
        help="Output snapshot path (default: imatrix.dat)",
    )
    merge.add_argument(
        "--source",
        type=str,
        default="",
        help="Source description stored in the combined snapshot",
    )
    merge.add_argument(
        "--min-fraction-threshold",
        type=float,
        default=0.95,
        help="Fraction of experts that must have data for partial routed entries",
    )

    inspect = subparsers.add_parser("inspect", help="Summarize a snapshot file")
    inspect.add_argument("snapshot", type=str, help="Path to the snapshot file")
    return parser


def _configure_logging(verbosity: int) -> None:
    logging.getLogger().setLevel(verbosity_level(verbosity))


def _render_info(console: Console, info: SnapshotInfo) -> None:
    table = Table(title="Snapshot")
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("entry_count", str(info.entry_count))
    last_call = "n/a" if info.last_call_count is None else str(info.last_call_count)
    table.add_row("last_call_count", last_call)
    table.add_row("source", info.source_description or "n/a")
    console.print(table)


def _run_merge(args: argparse.Namespace, *, console: Console) -> int:
    config = ImatrixConfig(
        out_file=str(snapshot_path(args.output)),
        in_files=list(args.in_files),
        prompt_file=args.source,
        min_fraction_threshold=args.min_fraction_threshold,
    )
    accumulator = StatsAccumulator()
    for in_file in config.in_files:
        console.print(f"Loading imatrix from '{in_file}'", markup=False)
        if not load_snapshot(in_file, accumulator):
            console.print(f"Failed to load {in_file}", markup=False)
            return 2

    target = write_snapshot(
        config.out_file,
        accumulator,
        source_description=config.prompt_file,
        min_fraction_threshold=config.min_fraction_threshold,
    )
    console.print(
        f"Saved combined imatrix with {len(accumulator)} entries to '{target}'",
        markup=False,
    )
    return 0


def _run_inspect(args: argparse.Namespace, *, console: Console) -> int:
    path = Path(args.snapshot)
    try:
        payload = path.read_bytes()
    except OSError:
        logger.exception("Failed to open %s.", path)
        console.print(f"Snapshot not found: {path}", markup=False)
        return 2

    accumulator = StatsAccumulator()
    info = decode_and_merge(payload, accumulator)
    _render_info(console, info)
    RichReporter(console).render_snapshot(summarize(accumulator), path.name)
    return 0


def run_cli(
    argv: Sequence[str] | None = None, *, console: Console | None = None
) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbosity)
    out_console = console or Console()

    try:
        if args.command == "merge":
            return _run_merge(args, console=out_console)
        if args.command == "inspect":
            return _run_inspect(args, console=out_console)
    except UnrecoverableError as exc:
        logger.critical("Aborting: %s", exc)
        out_console.print(f"Aborted: {exc}", markup=False)
        return 1
    parser.error("Unknown command.")


def main() -> None:
    raise SystemExit(run_cli())
