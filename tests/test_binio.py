import random
import struct

import numpy as np
import pytest

from vamana.binio import (
    Metric,
    PivotContainer,
    convert_types,
    div_round_up,
    file_exists,
    gen_random,
    get_bin_metadata,
    get_file_size,
    get_values,
    is_aligned,
    load_aligned_bin,
    load_bin,
    load_truthset,
    round_down,
    round_up,
    save_bin,
    save_tvecs,
    validate_file_size,
)
from vamana.errors import ANNError


def test_metric_values():
    assert [m.value for m in Metric] == [0, 1, 2, 3]
    assert Metric(3) is Metric.PQ


@pytest.mark.parametrize("x", [0, 1, 7, 8, 9, 15, 16, 100])
@pytest.mark.parametrize("y", [1, 8, 512])
def test_rounding_invariants(x, y):
    up = round_up(x, y)
    down = round_down(x, y)
    assert is_aligned(up, y) and is_aligned(down, y)
    assert down <= x <= up
    assert up - x < y and x - down < y
    assert div_round_up(x, y) * y == up


def test_is_aligned_rejects_misaligned():
    assert not is_aligned(513, 512)
    assert is_aligned(4096, 512)


@pytest.mark.parametrize("seed", [0, 1, 42])
def test_gen_random_gives_distinct_ids_in_range(seed):
    ids = gen_random(random.Random(seed), 10, 50)
    assert len(ids) == 10
    assert len(set(ids)) == 10
    assert all(0 <= i < 50 for i in ids)


def test_gen_random_is_deterministic_for_seed():
    first = gen_random(random.Random(5), 4, 20)
    second = gen_random(random.Random(5), 4, 20)
    assert first == second
    assert len(first) == 4
    assert len(set(first)) == 4
    assert all(0 <= i < 20 for i in first)


def test_gen_random_requires_room():
    with pytest.raises(ValueError):
        gen_random(random.Random(0), 5, 5)


def test_pivot_container_sorts_by_descending_distance():
    near = PivotContainer(0, 1.0)
    far = PivotContainer(1, 2.0)
    assert far < near
    assert not near < far
    assert near > far
    assert sorted([near, far]) == [far, near]


def test_get_values_integers():
    assert get_values([1, 2, 3]) == "[1,2,3,]\n"
    assert get_values([]) == "[]\n"


def test_get_values_float_format():
    assert get_values([1.5]) == "[1.500000,]\n"


def test_save_and_load_bin_round_trip(tmp_path):
    path = tmp_path / "data.bin"
    data = np.arange(12, dtype=np.float32).reshape(3, 4)
    size = save_bin(path, data)
    assert size == path.stat().st_size == 12 * 4 + 8
    loaded = load_bin(path, np.float32)
    assert loaded.dtype == np.float32
    np.testing.assert_array_equal(loaded, data)
    assert get_bin_metadata(path) == (3, 4)


def test_bin_header_bytes(tmp_path):
    path = tmp_path / "u8.bin"
    save_bin(path, np.array([[1, 2]], dtype=np.uint8))
    assert path.read_bytes() == struct.pack("<II", 1, 2) + bytes([1, 2])


def test_load_bin_size_mismatch(tmp_path):
    path = tmp_path / "bad.bin"
    path.write_bytes(struct.pack("<II", 2, 3) + b"\0" * 5)
    with pytest.raises(ANNError) as info:
        load_bin(path, np.float32)
    assert info.value.error_code == -1
    assert "File size mismatch" in str(info.value)


def test_load_bin_wrong_dtype_is_mismatch(tmp_path):
    path = tmp_path / "data.bin"
    save_bin(path, np.ones((2, 2), dtype=np.uint8))
    with pytest.raises(ANNError):
        load_bin(path, np.float32)


def test_load_aligned_bin_pads_rows(tmp_path):
    path = tmp_path / "data.bin"
    data = np.arange(10, dtype=np.int8).reshape(2, 5)
    save_bin(path, data)
    aligned, dim = load_aligned_bin(path, np.int8)
    assert dim == 5
    assert aligned.shape == (2, round_up(5, 8))
    np.testing.assert_array_equal(aligned[:, :5], data)
    assert not aligned[:, 5:].any()


def test_load_aligned_bin_mismatch(tmp_path):
    path = tmp_path / "bad.bin"
    path.write_bytes(struct.pack("<II", 1, 4) + b"\0" * 3)
    with pytest.raises(ANNError):
        load_aligned_bin(path, np.float32)


def test_truthset_with_distances(tmp_path):
    path = tmp_path / "gt.bin"
    ids = np.array([[3, 1], [0, 2]], dtype=np.uint32)
    dists = np.array([[0.5, 1.5], [2.0, 2.5]], dtype=np.float32)
    path.write_bytes(struct.pack("<II", 2, 2) + ids.tobytes() + dists.tobytes())
    got_ids, got_dists = load_truthset(path)
    np.testing.assert_array_equal(got_ids, ids)
    np.testing.assert_array_equal(got_dists, dists)


def test_truthset_ids_only(tmp_path):
    path = tmp_path / "gt.bin"
    ids = np.array([[4, 5, 6]], dtype=np.uint32)
    path.write_bytes(struct.pack("<II", 1, 3) + ids.tobytes())
    got_ids, got_dists = load_truthset(path)
    np.testing.assert_array_equal(got_ids, ids)
    assert got_dists is None


def test_truthset_bad_size(tmp_path):
    path = tmp_path / "gt.bin"
    path.write_bytes(struct.pack("<II", 1, 3) + b"\0" * 7)
    with pytest.raises(ANNError):
        load_truthset(path)


def test_save_tvecs_layout(tmp_path):
    path = tmp_path / "v.fvecs"
    data = np.array([[1.0, 2.0], [3.0, 4.0]], dtype=np.float32)
    save_tvecs(path, data)
    raw = path.read_bytes()
    record = 4 + 2 * 4
    assert len(raw) == 2 * record
    for i, row in enumerate(data):
        chunk = raw[i * record:(i + 1) * record]
        assert struct.unpack("<I", chunk[:4]) == (2,)
        np.testing.assert_array_equal(np.frombuffer(chunk[4:], dtype="<f4"), row)


def test_convert_types_truncates():
    out = convert_types(np.array([1.7, -2.2, 3.0]), np.int8)
    assert out.dtype == np.int8
    assert out.tolist() == [1, -2, 3]


def test_file_exists_and_size(tmp_path):
    path = tmp_path / "f.bin"
    assert not file_exists(path)
    assert get_file_size(path) == 0
    path.write_bytes(b"abcde")
    assert file_exists(path)
    assert get_file_size(path) == 5


def test_validate_file_size(tmp_path):
    good = tmp_path / "good.idx"
    good.write_bytes(struct.pack("<Q", 12) + b"\0" * 4)
    assert validate_file_size(good) is True
    bad = tmp_path / "bad.idx"
    bad.write_bytes(struct.pack("<Q", 99) + b"\0" * 4)
    assert validate_file_size(bad) is False
    assert validate_file_size(tmp_path / "missing.idx") is False
    short = tmp_path / "short.idx"
    short.write_bytes(b"\1\2")
    assert validate_file_size(short) is False