"""Binary snapshot format for collected importance statistics.

Layout (little-endian, no padding)::

    int32 entry_count
    entry_count times:
        int32 key_length, bytes key (not null-terminated)
        int32 call_count
        int32 value_count
        float32 values[value_count]   # (sum_of_squares / counts) * call_count
    int32 last_call_count
    int32 source_length, bytes source

Values are stored pre-scaled by the call count so that merging several
snapshots reduces to plain addition.
"""

from __future__ import annotations

import io
import logging
import math
import struct
from pathlib import Path
from typing import BinaryIO

import numpy as np
from numpy.typing import NDArray

from actlens.accumulator import StatsAccumulator
from actlens.errors import NonFiniteActivationError, SnapshotFormatError
from actlens.models import SnapshotEntrySummary, SnapshotInfo, TensorStats

logger = logging.getLogger(__name__)

_INT32 = struct.Struct("<i")
_FLOAT32 = np.dtype("<f4")
DEFAULT_SNAPSHOT_NAME = "imatrix.dat"


def _round_half_away(value: float) -> int:
    return int(math.floor(value + 0.5))


def _missing_experts(stats: TensorStats) -> list[int]:
    blocks = stats.sample_counts.reshape(stats.expert_count, stats.per_expert_size)
    return [int(i) for i in np.flatnonzero((blocks == 0).any(axis=1))]


def _select_entries(
    stats: dict[str, TensorStats], min_fraction_threshold: float
) -> list[str]:
    """Return the keys worth persisting, repairing sparse routed entries."""
    kept: list[str] = []
    for key, entry in stats.items():
        n_all = entry.size
        if n_all == 0:
            continue
        n_zeros = int(np.count_nonzero(entry.sample_counts == 0))
        if n_zeros == n_all:
            logger.warning("Entry %s has no data - skipping.", key)
            continue
        if n_zeros == 0:
            kept.append(key)
            continue

        coverage = 100.0 * (n_all - n_zeros) / n_all
        if entry.expert_count == 1:
            logger.warning(
                "Entry %s has partial data (%.2f%%) - skipping.", key, coverage
            )
            continue

        bad_experts = _missing_experts(entry)
        allowed = _round_half_away(entry.expert_count * (1.0 - min_fraction_threshold))
        if len(bad_experts) >= allowed:
            logger.warning(
                "Entry %s has partial data (%.2f%%): %d out of %d experts are "
                "missing data - skipping.",
                key,
                coverage,
                len(bad_experts),
                entry.expert_count,
            )
            continue

        logger.warning(
            "Entry %s has partial data (%.2f%%): %d out of %d experts are "
            "missing data. Storing with unit statistics for those experts.",
            key,
            coverage,
            len(bad_experts),
            entry.expert_count,
        )
        width = entry.per_expert_size
        counts = entry.sample_counts.reshape(entry.expert_count, width)
        values = entry.sum_of_squares.reshape(entry.expert_count, width)
        counts[bad_experts] = 1
        values[bad_experts] = 1.0
        kept.append(key)

    if len(kept) < len(stats):
        logger.warning("Storing only %d out of %d entries.", len(kept), len(stats))
    return kept


def _check_storable(key: str, values: NDArray[np.float32]) -> None:
    finite = np.isfinite(values)
    if not finite.all():
        value = float(values[~finite][0])
        logger.error("%s detected in %s.", value, key)
        raise NonFiniteActivationError(key, value)


def encode(
    accumulator: StatsAccumulator,
    *,
    source_description: str = "",
    min_fraction_threshold: float = 0.95,
) -> bytes:
    """Serialize the accumulator's current state.

    Partially observed routed entries may be repaired in place before
    writing; see :func:`_select_entries`.
    """
    buffer = io.BytesIO()
    with accumulator.locked() as stats:
        kept = _select_entries(stats, min_fraction_threshold)
        buffer.write(_INT32.pack(len(kept)))
        last_call_count = 0
        for key in kept:
            entry = stats[key]
            name = key.encode("utf-8")
            buffer.write(_INT32.pack(len(name)))
            buffer.write(name)
            buffer.write(_INT32.pack(entry.call_count))
            buffer.write(_INT32.pack(entry.size))
            values = entry.sum_of_squares / entry.sample_counts * entry.call_count
            with np.errstate(over="ignore"):
                stored = values.astype(_FLOAT32)
            _check_storable(key, stored)
            buffer.write(stored.tobytes())
            last_call_count = max(last_call_count, entry.call_count)

    source = source_description.encode("utf-8")
    buffer.write(_INT32.pack(last_call_count))
    buffer.write(_INT32.pack(len(source)))
    buffer.write(source)
    return buffer.getvalue()


class _Reader:
    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream

    def read_exact(self, size: int, what: str) -> bytes:
        if size < 0:
            raise SnapshotFormatError(f"Negative length reading {what}")
        data = self._stream.read(size)
        if len(data) != size:
            raise SnapshotFormatError(
                f"Truncated snapshot reading {what} ({len(data)} of {size} bytes)"
            )
        return data

    def read_int32(self, what: str) -> int:
        return int(_INT32.unpack(self.read_exact(_INT32.size, what))[0])

    def read_optional_int32(self, what: str) -> int | None:
        data = self._stream.read(_INT32.size)
        if not data:
            return None
        if len(data) != _INT32.size:
            raise SnapshotFormatError(f"Truncated snapshot reading {what}")
        return int(_INT32.unpack(data)[0])


def _merge_entries(reader: _Reader, stats: dict[str, TensorStats]) -> SnapshotInfo:
    entry_count = reader.read_int32("entry count")
    if entry_count < 1:
        raise SnapshotFormatError("No data in snapshot")

    for index in range(1, entry_count + 1):
        name_length = reader.read_int32(f"name length of entry {index}")
        raw_name = reader.read_exact(name_length, f"name of entry {index}")
        try:
            key = raw_name.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SnapshotFormatError(f"Undecodable name for entry {index}") from exc
        call_count = reader.read_int32(f"call count of {key}")
        value_count = reader.read_int32(f"value count of {key}")
        if value_count < 1:
            raise SnapshotFormatError(f"Invalid value count {value_count} for {key}")
        payload = reader.read_exact(value_count * _FLOAT32.itemsize, f"data of {key}")
        values = np.frombuffer(payload, dtype=_FLOAT32).astype(np.float64)
        if not np.isfinite(values).all():
            raise SnapshotFormatError(f"Non-finite values stored for {key}")

        entry = stats.get(key)
        if entry is None:
            entry = TensorStats.zeros(value_count)
            stats[key] = entry
        elif entry.size != value_count:
            raise SnapshotFormatError(
                f"Entry {key} has {value_count} values but {entry.size} are "
                "already collected"
            )

        # Per-element counts are not stored; every element gets the call count.
        entry.sum_of_squares += values
        entry.sample_counts += call_count
        entry.call_count += call_count

    last_call_count = reader.read_optional_int32("last call count")
    source_description = None
    if last_call_count is not None:
        source_length = reader.read_int32("source length")
        raw_source = reader.read_exact(source_length, "source description")
        source_description = raw_source.decode("utf-8", errors="replace")
    return SnapshotInfo(
        entry_count=entry_count,
        last_call_count=last_call_count,
        source_description=source_description,
    )


def decode_and_merge(
    data: bytes | BinaryIO, accumulator: StatsAccumulator
) -> SnapshotInfo:
    """Merge a snapshot stream into *accumulator*.

    Any malformed or truncated input discards the whole accumulator state
    and raises :class:`SnapshotFormatError`.
    """
    stream: BinaryIO = io.BytesIO(data) if isinstance(data, bytes) else data
    with accumulator.locked() as stats:
        try:
            info = _merge_entries(_Reader(stream), stats)
        except SnapshotFormatError as exc:
            logger.error("Failed to merge snapshot: %s.", exc)
            stats.clear()
            raise
    logger.debug("Merged %d snapshot entries.", info.entry_count)
    return info


def snapshot_path(base: str | Path | None, call_count: int | None = None) -> Path:
    """Resolve the output path, appending ``.at_<n>`` for numbered snapshots."""
    name = str(base) if base else DEFAULT_SNAPSHOT_NAME
    if call_count is not None and call_count > 0:
        name = f"{name}.at_{call_count}"
    return Path(name)


def write_snapshot(
    path: str | Path,
    accumulator: StatsAccumulator,
    *,
    source_description: str = "",
    min_fraction_threshold: float = 0.95,
) -> Path:
    target = Path(path)
    payload = encode(
        accumulator,
        source_description=source_description,
        min_fraction_threshold=min_fraction_threshold,
    )
    target.write_bytes(payload)
    logger.info(
        "Stored collected data after %d chunks in %s.",
        accumulator.max_call_count(),
        target,
    )
    return target


def load_snapshot(path: str | Path, accumulator: StatsAccumulator) -> bool:
    """Merge the snapshot at *path*; return False if it cannot be opened."""
    try:
        handle = open(path, "rb")
    except OSError as exc:
        logger.error("Failed to open %s: %s", path, exc)
        return False
    with handle:
        info = decode_and_merge(handle, accumulator)
    logger.info("Loaded %d entries from %s.", info.entry_count, path)
    return True


def summarize(accumulator: StatsAccumulator) -> list[SnapshotEntrySummary]:
    summaries: list[SnapshotEntrySummary] = []
    for key, stats in accumulator.entries():
        observed = stats.sample_counts > 0
        mean_value = (
            float(np.mean(stats.sum_of_squares[observed] / stats.sample_counts[observed]))
            if observed.any()
            else 0.0
        )
        summaries.append(
            SnapshotEntrySummary(
                key=key,
                call_count=stats.call_count,
                value_count=stats.size,
                expert_count=stats.expert_count,
                mean_value=mean_value,
            )
        )
    return summaries
