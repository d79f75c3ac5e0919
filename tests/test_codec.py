from __future__ import annotations

import logging
import struct
from pathlib import Path

import numpy as np
import pytest

from actlens.accumulator import StatsAccumulator
from actlens.codec import (
    decode_and_merge,
    encode,
    load_snapshot,
    snapshot_path,
    summarize,
    write_snapshot,
)
from actlens.errors import (
    NonFiniteActivationError,
    SnapshotFormatError,
    UnrecoverableError,
)
from actlens.models import TensorStats


def _parse(payload: bytes) -> tuple[dict[str, tuple[int, np.ndarray]], int, str]:
    offset = 0

    def take(fmt: str) -> tuple[object, ...]:
        nonlocal offset
        values = struct.unpack_from(fmt, payload, offset)
        offset += struct.calcsize(fmt)
        return values

    (count,) = take("<i")
    entries: dict[str, tuple[int, np.ndarray]] = {}
    for _ in range(count):
        (name_length,) = take("<i")
        name = payload[offset : offset + int(name_length)].decode()
        offset += int(name_length)
        call_count, value_count = take("<ii")
        values = np.frombuffer(
            payload, dtype="<f4", count=int(value_count), offset=offset
        )
        offset += 4 * int(value_count)
        entries[name] = (int(call_count), values)
    (last_call,) = take("<i")
    (source_length,) = take("<i")
    source = payload[offset : offset + int(source_length)].decode()
    assert offset + int(source_length) == len(payload)
    return entries, int(last_call), source


def _routed_accumulator(expert_count: int, missing: list[int]) -> StatsAccumulator:
    accumulator = StatsAccumulator()
    used = [e for e in range(expert_count) if e not in missing]
    activations = np.full((len(used), 1, 2), 2.0, dtype=np.float32)
    ids = np.array(used, dtype=np.int64)[:, None]
    accumulator.observe("blk.0.ffn_up_exps.weight", activations, expert_count, ids)
    return accumulator


def _populated(seed: int) -> StatsAccumulator:
    rng = np.random.default_rng(seed)
    accumulator = StatsAccumulator()
    for _ in range(3):
        accumulator.observe(
            "blk.0.attn_k.weight", rng.standard_normal((5, 6)).astype(np.float32)
        )
        accumulator.observe(
            "blk.1.attn_k.weight", rng.standard_normal((7, 6)).astype(np.float32)
        )
    ids = np.arange(8)[:, None] % 4
    accumulator.observe(
        "blk.0.ffn_gate_exps.weight",
        rng.standard_normal((8, 1, 3)).astype(np.float32),
        4,
        ids,
    )
    return accumulator


def test_single_observation_encodes_raw_squares() -> None:
    accumulator = StatsAccumulator()
    accumulator.observe("blk.0.attn_k.weight", np.array([[1.0, -2.0, 3.0]]))

    entries, last_call, source = _parse(
        encode(accumulator, source_description="wiki.train.raw")
    )

    call_count, values = entries["blk.0.attn_k.weight"]
    assert call_count == 1
    np.testing.assert_array_equal(values, [1.0, 4.0, 9.0])
    assert last_call == 1
    assert source == "wiki.train.raw"


def test_encoded_values_are_mean_scaled_by_call_count() -> None:
    accumulator = StatsAccumulator()
    accumulator.observe("blk.0.attn_k.weight", np.array([[1.0, 2.0], [3.0, 4.0]]))
    accumulator.observe("blk.0.attn_k.weight", np.array([[1.0, 2.0]]))

    entries, _, _ = _parse(encode(accumulator))

    call_count, values = entries["blk.0.attn_k.weight"]
    assert call_count == 2
    # sums [11, 24] over 3 samples, times 2 calls
    np.testing.assert_allclose(values, [22.0 / 3.0, 16.0], rtol=1e-6)


def test_round_trip_is_byte_identical() -> None:
    payload = encode(_populated(0), source_description="corpus.txt")

    restored = StatsAccumulator()
    info = decode_and_merge(payload, restored)

    assert info.entry_count == 3
    assert info.last_call_count == 3
    assert info.source_description == "corpus.txt"
    assert encode(restored, source_description="corpus.txt") == payload


def test_merge_order_does_not_matter() -> None:
    first = _populated(1)
    first.observe("blk.5.attn_q.weight", np.ones((2, 6)))
    payload_a = encode(first)
    payload_b = encode(_populated(2))

    ab = StatsAccumulator()
    decode_and_merge(payload_a, ab)
    decode_and_merge(payload_b, ab)
    ba = StatsAccumulator()
    decode_and_merge(payload_b, ba)
    decode_and_merge(payload_a, ba)

    assert sorted(key for key, _ in ab.entries()) == sorted(
        key for key, _ in ba.entries()
    )
    for key, stats in ab.entries():
        other = ba.get(key)
        assert other is not None
        assert stats.call_count == other.call_count
        np.testing.assert_array_equal(stats.sum_of_squares, other.sum_of_squares)
        np.testing.assert_array_equal(stats.sample_counts, other.sample_counts)


def test_merge_adds_call_count_uniformly() -> None:
    source = StatsAccumulator()
    source.observe("blk.0.attn_k.weight", np.array([[1.0, 2.0], [3.0, 4.0]]))
    source.observe("blk.0.attn_k.weight", np.array([[2.0, 2.0]]))
    payload = encode(source)

    target = StatsAccumulator()
    target.observe("blk.0.attn_k.weight", np.array([[1.0, 1.0]]))
    decode_and_merge(payload, target)

    stats = target.get("blk.0.attn_k.weight")
    assert stats is not None
    assert stats.call_count == 3
    np.testing.assert_array_equal(stats.sample_counts, [3, 3])
    np.testing.assert_allclose(
        stats.sum_of_squares, [1.0 + 14.0 / 3.0 * 2.0, 1.0 + 24.0 / 3.0 * 2.0], rtol=1e-6
    )


def test_entry_without_data_is_dropped() -> None:
    accumulator = StatsAccumulator()
    accumulator.observe(
        "blk.0.ffn_up_exps.weight",
        np.zeros((0, 1, 2), dtype=np.float32),
        2,
        np.zeros((0, 1), dtype=np.int64),
    )
    accumulator.observe("blk.0.attn_k.weight", np.ones((1, 2)))

    entries, last_call, _ = _parse(encode(accumulator))

    assert list(entries) == ["blk.0.attn_k.weight"]
    assert last_call == 1


def test_partial_plain_entry_is_dropped() -> None:
    accumulator = StatsAccumulator()
    with accumulator.locked() as stats:
        stats["blk.0.attn_k.weight"] = TensorStats(
            last_activation=np.zeros(3, dtype=np.float32),
            sum_of_squares=np.array([1.0, 0.0, 1.0]),
            sample_counts=np.array([1, 0, 1]),
            call_count=1,
        )

    entries, _, _ = _parse(encode(accumulator))

    assert entries == {}


def test_partial_routed_entry_at_threshold_is_dropped() -> None:
    # 1 missing expert of 20: 1 < round(20 * 0.05) == 1 is false.
    accumulator = _routed_accumulator(20, missing=[5])

    entries, _, _ = _parse(encode(accumulator))

    assert entries == {}
    stats = accumulator.get("blk.0.ffn_up_exps.weight")
    assert stats is not None
    np.testing.assert_array_equal(stats.sample_counts[10:12], [0, 0])


def test_partial_routed_entry_below_threshold_is_repaired() -> None:
    # 1 missing expert of 40: 1 < round(40 * 0.05) == 2.
    accumulator = _routed_accumulator(40, missing=[5])

    entries, _, _ = _parse(encode(accumulator))

    call_count, values = entries["blk.0.ffn_up_exps.weight"]
    assert call_count == 1
    np.testing.assert_array_equal(values[10:12], [1.0, 1.0])
    np.testing.assert_array_equal(values[:2], [4.0, 4.0])
    stats = accumulator.get("blk.0.ffn_up_exps.weight")
    assert stats is not None
    np.testing.assert_array_equal(stats.sample_counts[10:12], [1, 1])
    np.testing.assert_array_equal(stats.sum_of_squares[10:12], [1.0, 1.0])


def test_partial_routed_entry_with_too_many_missing_experts_is_dropped() -> None:
    accumulator = _routed_accumulator(40, missing=[1, 2])

    entries, _, _ = _parse(encode(accumulator))

    assert entries == {}


def test_threshold_is_configurable() -> None:
    accumulator = _routed_accumulator(20, missing=[3])

    entries, _, _ = _parse(encode(accumulator, min_fraction_threshold=0.9))

    assert "blk.0.ffn_up_exps.weight" in entries


def test_truncated_snapshot_discards_accumulator_state() -> None:
    payload = encode(_populated(3))
    accumulator = StatsAccumulator()
    accumulator.observe("blk.9.attn_v.weight", np.ones((1, 4)))

    with pytest.raises(SnapshotFormatError, match="Truncated") as excinfo:
        decode_and_merge(payload[:40], accumulator)

    assert isinstance(excinfo.value, UnrecoverableError)
    assert len(accumulator) == 0


def test_empty_snapshot_is_rejected() -> None:
    accumulator = StatsAccumulator()
    with pytest.raises(SnapshotFormatError, match="No data"):
        decode_and_merge(struct.pack("<i", 0), accumulator)


def test_size_mismatch_on_merge_is_rejected() -> None:
    source = StatsAccumulator()
    source.observe("blk.0.attn_k.weight", np.ones((1, 4)))
    target = StatsAccumulator()
    target.observe("blk.0.attn_k.weight", np.ones((1, 3)))

    with pytest.raises(SnapshotFormatError, match="already collected"):
        decode_and_merge(encode(source), target)

    assert len(target) == 0


def test_snapshot_without_trailer_is_accepted() -> None:
    source = StatsAccumulator()
    source.observe("blk.0.attn_k.weight", np.ones((1, 2)))
    payload = encode(source)
    without_trailer = payload[: -8]

    accumulator = StatsAccumulator()
    info = decode_and_merge(without_trailer, accumulator)

    assert info.last_call_count is None
    assert info.source_description is None
    assert "blk.0.attn_k.weight" in accumulator


def test_write_and_load_snapshot(tmp_path: Path) -> None:
    path = write_snapshot(
        tmp_path / "imatrix.dat", _populated(4), source_description="train.txt"
    )
    accumulator = StatsAccumulator()

    assert load_snapshot(path, accumulator) is True
    assert len(accumulator) == 3


def test_load_snapshot_reports_missing_file(tmp_path: Path) -> None:
    accumulator = StatsAccumulator()
    accumulator.observe("blk.0.attn_k.weight", np.ones((1, 2)))

    assert load_snapshot(tmp_path / "missing.dat", accumulator) is False
    assert len(accumulator) == 1


def test_snapshot_path_naming() -> None:
    assert snapshot_path(None) == Path("imatrix.dat")
    assert snapshot_path("out.dat") == Path("out.dat")
    assert snapshot_path("out.dat", 20) == Path("out.dat.at_20")
    assert snapshot_path("out.dat", 0) == Path("out.dat")


def test_summarize_reports_mean_square() -> None:
    accumulator = StatsAccumulator()
    accumulator.observe("blk.0.attn_k.weight", np.array([[1.0, 3.0]]))

    (summary,) = summarize(accumulator)

    assert summary.key == "blk.0.attn_k.weight"
    assert summary.call_count == 1
    assert summary.value_count == 2
    assert summary.mean_value == pytest.approx(5.0)


def test_values_overflowing_float32_are_fatal(tmp_path: Path) -> None:
    accumulator = StatsAccumulator()
    accumulator.observe("blk.0.attn_k.weight", np.array([[1e20, 1.0]]))
    target = tmp_path / "imatrix.dat"

    with pytest.raises(
        NonFiniteActivationError, match="inf detected in blk.0.attn_k.weight"
    ):
        write_snapshot(target, accumulator)

    assert not target.exists()


def test_non_finite_stored_values_are_rejected() -> None:
    name = b"blk.0.attn_k.weight"
    payload = (
        struct.pack("<ii", 1, len(name))
        + name
        + struct.pack("<ii", 1, 2)
        + np.array([np.nan, np.inf], dtype="<f4").tobytes()
    )
    accumulator = StatsAccumulator()
    accumulator.observe("blk.1.attn_k.weight", np.ones((1, 2)))

    with pytest.raises(SnapshotFormatError, match="Non-finite"):
        decode_and_merge(payload, accumulator)

    assert len(accumulator) == 0


def test_missing_file_is_logged_without_traceback(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    with caplog.at_level(logging.ERROR, logger="actlens"):
        assert load_snapshot(tmp_path / "missing.dat", StatsAccumulator()) is False

    (record,) = [r for r in caplog.records if "Failed to open" in r.getMessage()]
    assert record.exc_info is None
