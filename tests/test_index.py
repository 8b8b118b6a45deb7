import struct

import numpy as np
import pytest

from vamana.binio import Metric, save_bin
from vamana.errors import ANNError
from vamana.index import Index

N = 30
DIM = 4
PARAMS = {"L": 20, "R": 8, "C": 50, "alpha": 1.2, "saturate_graph": False}


def _params():
    return dict(PARAMS)


def _points_file(tmp_path, n=N, seed=7):
    rng = np.random.default_rng(seed)
    pts = rng.random((n, DIM), dtype=np.float32)
    path = tmp_path / "points.bin"
    save_bin(path, pts)
    return path, pts


def _tags(n=N):
    return [100 + i for i in range(n)]


def _built(tmp_path, **kwargs):
    path, pts = _points_file(tmp_path)
    idx = Index(Metric.L2, path, **kwargs)
    tags = _tags() if kwargs.get("enable_tags") else None
    idx.build(_params(), tags)
    return idx, pts, path


def test_save_header_records_size_width_and_entry_point(tmp_path):
    idx, _, _ = _built(tmp_path)
    out = tmp_path / "graph.idx"
    size = idx.save(out)
    raw = out.read_bytes()
    total, width, ep = struct.unpack_from("<QII", raw, 0)
    assert total == len(raw) == size
    assert width == idx.width
    assert ep == idx.ep


def test_save_load_round_trip(tmp_path):
    idx, _, path = _built(tmp_path)
    out = tmp_path / "graph.idx"
    idx.save(out)
    fresh = Index(Metric.L2, path)
    fresh.load(out)
    assert fresh.final_graph[:N] == idx.final_graph[:N]
    assert fresh.ep == idx.ep
    assert fresh.width == idx.width


def test_load_tags_from_default_file(tmp_path):
    idx, _, path = _built(tmp_path)
    out = tmp_path / "graph.idx"
    idx.save(out)
    tags = [5 + 3 * i for i in range(N)]
    (tmp_path / "graph.idx.tags").write_text("\n".join(str(t) for t in tags))
    fresh = Index(Metric.L2, path)
    fresh.load(out, True)
    assert fresh.location_to_tag[0] == tags[0]
    assert fresh.tag_to_location[tags[-1]] == N - 1
    assert len(fresh.location_to_tag) == N


def test_load_missing_tag_file_raises(tmp_path):
    idx, _, path = _built(tmp_path)
    out = tmp_path / "graph.idx"
    idx.save(out)
    fresh = Index(Metric.L2, path)
    with pytest.raises(ANNError):
        fresh.load(out, True, tmp_path / "missing.tags")


def test_load_rejects_corrupt_size(tmp_path):
    idx, _, path = _built(tmp_path)
    out = tmp_path / "graph.idx"
    idx.save(out)
    raw = bytearray(out.read_bytes())
    raw[0:8] = struct.pack("<Q", len(raw) + 4)
    out.write_bytes(bytes(raw))
    with pytest.raises(ANNError):
        Index(Metric.L2, path).load(out)


def test_load_rejects_point_count_mismatch(tmp_path):
    idx, _, path = _built(tmp_path)
    out = tmp_path / "graph.idx"
    idx.save(out)
    smaller = Index(Metric.L2, path, nd=N - 10)
    with pytest.raises(ANNError):
        smaller.load(out)


def test_enable_delete_requires_tags(tmp_path):
    idx, _, _ = _built(tmp_path)
    with pytest.raises(ANNError) as err:
        idx.enable_delete()
    assert err.value.error_code == -2


def test_enable_delete_twice_fails(tmp_path):
    idx, _, _ = _built(tmp_path, enable_tags=True)
    idx.enable_delete()
    with pytest.raises(ANNError) as err:
        idx.enable_delete()
    assert err.value.error_code == -1


def test_delete_unknown_tag_raises(tmp_path):
    idx, _, _ = _built(tmp_path, enable_tags=True)
    idx.enable_delete()
    with pytest.raises(ANNError) as err:
        idx.delete_point(-5)
    assert err.value.error_code == -1


def test_disable_delete_without_enable_raises(tmp_path):
    idx, _, _ = _built(tmp_path, enable_tags=True)
    with pytest.raises(ANNError) as err:
        idx.disable_delete(_params(), True)
    assert err.value.error_code == -1


def test_get_new_location_skips_deleted(tmp_path):
    idx, _, _ = _built(tmp_path, enable_tags=True)
    idx.enable_delete()
    location = idx.tag_to_location[103]
    idx.delete_point(103)
    new_location, active = idx.get_new_location()
    assert new_location[location] == idx.total_slots
    assert active == N - 1
    assert sorted(x for x in new_location if x < idx.total_slots) == list(range(N - 1))


def test_lazy_delete_and_consolidate(tmp_path):
    idx, pts, _ = _built(tmp_path, enable_tags=True)
    idx.enable_delete()
    idx.delete_point(100)
    idx.delete_point(105)
    idx.disable_delete(_params(), True)

    assert idx.nd == N - 2
    remaining = set(_tags()) - {100, 105}
    assert set(idx.tag_to_location) == remaining
    assert sorted(idx.tag_to_location.values()) == list(range(N - 2))
    for row in idx.final_graph[: idx.nd]:
        assert all(x < idx.nd for x in row)
    assert all(not row for row in idx.final_graph[idx.nd :])
    assert idx.ep < idx.nd

    result = idx.search_with_tags(pts[5], 5, 40)
    assert 105 not in result.tags
    assert set(result.tags) <= remaining


def test_consolidated_data_follows_tags(tmp_path):
    idx, pts, _ = _built(tmp_path, enable_tags=True)
    idx.enable_delete()
    idx.delete_point(101)
    idx.disable_delete(_params(), True)
    for tag, loc in idx.tag_to_location.items():
        np.testing.assert_array_equal(idx.data[loc, :DIM], pts[tag - 100])


def test_consolidate_after_nothing_deleted_eagerly_returns_zero(tmp_path):
    idx, _, _ = _built(tmp_path, enable_tags=True)
    assert idx.consolidate_deletes(_params()) == 0
    assert idx.nd == N


def test_reserve_location_appends_and_stops_when_full(tmp_path):
    path, _ = _points_file(tmp_path)
    idx = Index(Metric.L2, path, max_points=N + 1)
    assert idx.reserve_location() == N
    assert idx.nd == N + 1
    with pytest.raises(ANNError):
        idx.reserve_location()


def test_insert_point_is_searchable(tmp_path):
    idx, pts, _ = _built(tmp_path, enable_tags=True, max_points=N + 2)
    point = (pts[0] + pts[1]) / 2
    location = idx.insert_point(point, _params(), 999)
    assert location == N
    assert idx.nd == N + 1
    assert idx.tag_to_location[999] == location
    assert any(location in idx.final_graph[i] for i in range(N))
    result = idx.search_with_tags(point, 1, 40)
    assert result.tags == [999]
    assert result.distances[0] == pytest.approx(0.0)


def test_insert_duplicate_tag_raises(tmp_path):
    idx, pts, _ = _built(tmp_path, enable_tags=True, max_points=N + 2)
    with pytest.raises(ANNError) as err:
        idx.insert_point(pts[0], _params(), 100)
    assert err.value.error_code == -1


def test_insert_into_full_index_raises(tmp_path):
    idx, pts, _ = _built(tmp_path, enable_tags=True)
    with pytest.raises(ANNError) as err:
        idx.insert_point(pts[0], _params(), 999)
    assert err.value.error_code == -2


def test_insert_before_build_raises(tmp_path):
    path, pts = _points_file(tmp_path)
    idx = Index(Metric.L2, path, max_points=N + 2, enable_tags=True)
    with pytest.raises(ANNError):
        idx.insert_point(pts[0], _params(), 999)


def test_eager_delete_removes_point(tmp_path):
    idx, _, _ = _built(tmp_path, enable_tags=True, support_eager_delete=True)
    idx.enable_delete()
    location = idx.tag_to_location[102]
    idx.eager_delete(102, _params())
    assert idx.nd == N - 1
    assert 102 not in idx.tag_to_location
    assert idx.final_graph[location] == []
    assert all(location not in row for row in idx.final_graph)

    with pytest.raises(ANNError) as err:
        idx.delete_point(104)
    assert err.value.error_code == -1


def test_eager_delete_then_save_compacts(tmp_path):
    idx, _, _ = _built(tmp_path, enable_tags=True, support_eager_delete=True)
    idx.enable_delete()
    idx.eager_delete(110, _params())
    out = tmp_path / "graph.idx"
    size = idx.save(out)
    assert size == out.stat().st_size
    assert not idx.delete_set
    assert sorted(idx.tag_to_location.values()) == list(range(N - 1))
    for row in idx.final_graph[: N - 1]:
        assert all(x < N - 1 for x in row)


def test_eager_delete_unknown_tag_raises(tmp_path):
    idx, _, _ = _built(tmp_path, enable_tags=True, support_eager_delete=True)
    idx.enable_delete()
    with pytest.raises(ANNError) as err:
        idx.eager_delete(-1, _params())
    assert err.value.error_code == -1


def test_readjust_data_moves_frozen_point(tmp_path):
    path, _ = _points_file(tmp_path)
    idx = Index(Metric.L2, path, max_points=N + 2, num_frozen_pts=1)
    frozen_row = N + 2
    idx.final_graph = [[] for _ in range(idx.total_slots)]
    idx.final_graph[0] = [1, N]
    idx.final_graph[N] = [0]
    vec = np.full(idx.aligned_dim, 0.5, dtype=np.float32)
    idx.data[N] = vec

    idx.readjust_data(1)

    assert idx.final_graph[frozen_row] == [0]
    assert idx.final_graph[0] == [1, frozen_row]
    assert idx.final_graph[N] == []
    np.testing.assert_array_equal(idx.data[frozen_row], vec)
    assert not idx.data[N].any()


def test_readjust_data_without_frozen_points_leaves_graph(tmp_path):
    idx, _, _ = _built(tmp_path)
    before = [list(row) for row in idx.final_graph]
    idx.readjust_data(0)
    assert idx.final_graph == before