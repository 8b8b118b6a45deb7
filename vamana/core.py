"""Graph state, greedy search and neighbour pruning shared by the index."""

from __future__ import annotations

import logging
import math
import os
import threading
from dataclasses import dataclass, field

import numpy as np

from .binio import Metric, load_aligned_bin
from .errors import ANNError
from .neighbor import Neighbor, insert_into_pool

_log = logging.getLogger("vamana")

SLACK_FACTOR = 1.3
"""How far past the target degree a node's list may grow before it is re-pruned."""

_SUPPORTED_TYPES = (np.dtype(np.float32), np.dtype(np.int8), np.dtype(np.uint8))

_ONLY_L2 = (
    "Only L2 metric supported as of now. Use the L2 metric if you need "
    "cosine similarity or inner product."
)


def _squared_l2(a, b):
    diff = np.asarray(a, dtype=np.float32) - np.asarray(b, dtype=np.float32)
    return float(np.dot(diff, diff))


def get_distance_function(metric):
    """Return a function computing the distance between two vectors.

    Only the L2 metric (squared Euclidean distance) is supported.
    """
    try:
        metric = Metric(metric)
    except ValueError:
        raise ANNError(_ONLY_L2, -1) from None
    if metric is not Metric.L2:
        _log.error(_ONLY_L2)
        raise ANNError(_ONLY_L2, -1)
    return _squared_l2


@dataclass
class FixedPointResult:
    """Outcome of a greedy search from a set of start points."""

    hops: int = 0
    cmps: int = 0
    expanded: list = field(default_factory=list)
    expanded_ids: set = field(default_factory=set)
    best: list = field(default_factory=list)


def _param(parameters, name, cast):
    try:
        return cast(parameters[name])
    except KeyError:
        raise ANNError(f"Missing parameter {name!r}", -1) from None


def _f32(value):
    return float(np.float32(value))


class GraphCore:
    """Vector data plus the out-neighbour graph built over it.

    Rows ``0 .. max_points-1`` hold points, the following ``num_frozen_pts``
    rows hold frozen points. Set ``data_type`` in a subclass to load int8 or
    uint8 vectors instead of float32.
    """

    data_type = np.float32

    def __init__(
        self,
        metric,
        filename,
        max_points=0,
        nd=0,
        num_frozen_pts=0,
        enable_tags=False,
        store_data=True,
        support_eager_delete=False,
    ):
        dtype = np.dtype(self.data_type)
        if dtype not in _SUPPORTED_TYPES:
            raise ANNError(f"Unsupported data type {dtype}", -1)

        self.num_frozen_pts = int(num_frozen_pts)
        self._has_built = False
        self.width = 0
        self._can_delete = False
        self._eager_done = True
        self._lazy_done = True
        self._compacted_order = True
        self._enable_tags = bool(enable_tags)
        self._consolidated_order = True
        self._support_eager_delete = bool(support_eager_delete)
        self._store_data = bool(store_data)
        self.saturate_graph = False
        self.ep = 0

        _log.info("Number of frozen points = %d", self.num_frozen_pts)
        loaded, self.dim = load_aligned_bin(os.fspath(filename), dtype)
        self.nd = loaded.shape[0]
        self.aligned_dim = loaded.shape[1]

        if nd > 0:
            if self.nd >= nd:
                self.nd = int(nd)
            else:
                message = (
                    f"ERROR: Driver requests loading {nd} points, "
                    f"but file has fewer ({self.nd}) points"
                )
                _log.error(message)
                raise ANNError(message, -1)

        self.max_points = int(max_points) if max_points > 0 else self.nd
        if self.max_points < self.nd:
            message = (
                f"ERROR: max_points must be >= data size; max_points: "
                f"{self.max_points}  n: {self.nd}"
            )
            _log.error(message)
            raise ANNError(message, -1)

        total = self.max_points + self.num_frozen_pts
        self.data = np.zeros((total, self.aligned_dim), dtype=dtype)
        self.data[: self.nd] = loaded[: self.nd]

        self._distance = get_distance_function(metric)
        self._locks = [threading.Lock() for _ in range(total)]
        self._change_lock = threading.Lock()

        self.final_graph = [[] for _ in range(total)]
        self.in_graph = [[] for _ in range(total)]
        self.location_to_tag = {}
        self.tag_to_location = {}
        self.delete_set = set()
        self.empty_slots = set()

    @property
    def total_slots(self):
        """Number of rows for points and frozen points together."""
        return self.max_points + self.num_frozen_pts

    def distance(self, a, b):
        """Distance between two vectors under the index metric."""
        return self._distance(a, b)

    def _node_distance(self, i, j):
        return self._distance(self.data[i], self.data[j])

    def _as_row(self, coords):
        vec = np.asarray(coords, dtype=np.float32).ravel()
        if vec.size > self.aligned_dim:
            raise ValueError("vector has more dimensions than the index")
        if vec.size < self.aligned_dim:
            vec = np.concatenate(
                [vec, np.zeros(self.aligned_dim - vec.size, dtype=np.float32)]
            )
        return vec

    def calculate_entry_point(self):
        """Return the id of the point closest to the centroid of all points."""
        if self.nd == 0:
            raise ANNError("Cannot compute an entry point of an empty index", -1)
        points = self.data[: self.nd].astype(np.float32)
        center = (points.astype(np.float64).sum(axis=0) / self.nd).astype(np.float32)
        diff = points - center
        distances = np.einsum("ij,ij->i", diff, diff)
        return int(np.argmin(distances))

    def iterate_to_fixed_point(self, node_coords, lsize, init_ids):
        """Greedy search towards ``node_coords`` keeping the ``lsize`` best candidates.

        Returns a :class:`FixedPointResult` whose ``best`` list is sorted by distance.
        """
        if lsize < 1:
            raise ValueError("lsize must be at least 1")
        query = self._as_row(node_coords)
        result = FixedPointResult()
        best = result.best
        inserted = set()

        for node_id in init_ids:
            if node_id not in inserted:
                inserted.add(node_id)
                best.append(
                    Neighbor(node_id, self._distance(self.data[node_id], query), True)
                )
            if len(best) == lsize:
                break

        best.sort(key=lambda nb: nb.distance)

        k = 0
        while k < len(best):
            nk = len(best)
            current = best[k]
            if not current.flag:
                k += 1
                continue
            current.flag = False
            n = current.id
            result.expanded.append(Neighbor(n, current.distance, False))
            result.expanded_ids.add(n)

            neighbours = self.final_graph[n] if n < len(self.final_graph) else ()
            for node_id in list(neighbours):
                if node_id in inserted:
                    continue
                inserted.add(node_id)
                result.cmps += 1
                dist = self._distance(query, self.data[node_id])
                if len(best) == lsize and dist >= best[-1].distance:
                    continue
                r = insert_into_pool(best, len(best), Neighbor(node_id, dist, True))
                if len(best) > lsize:
                    del best[lsize:]
                if r < nk:
                    nk = r
            k = nk if nk <= k else k + 1

        return result

    def get_expanded_nodes(self, node_id, lindex, init_ids):
        """Search from the stored point ``node_id``.

        Returns ``(expanded, expanded_ids)``: the expanded neighbours and their ids.
        """
        ids = list(init_ids) if init_ids else [self.ep]
        result = self.iterate_to_fixed_point(self.data[node_id], lindex, ids)
        return result.expanded, result.expanded_ids

    def occlude_list(self, pool, location, alpha, degree, maxc, occlude_factor=None):
        """Select up to ``degree`` diverse neighbours from ``pool`` (sorted by distance).

        ``occlude_factor``, when given, is updated in place.
        """
        if not pool:
            return []
        if occlude_factor is None:
            occlude_factor = [0.0] * len(pool)
        alpha = _f32(alpha)
        limit = min(len(pool), maxc)
        result = []

        cur_alpha = 1.0
        while cur_alpha <= alpha and len(result) < degree:
            start = 0
            while len(result) < degree and start < limit:
                if occlude_factor[start] > cur_alpha:
                    start += 1
                    continue
                chosen = pool[start]
                occlude_factor[start] = math.inf
                result.append(chosen)
                for t in range(start + 1, limit):
                    if occlude_factor[t] > alpha:
                        continue
                    djk = self._node_distance(pool[t].id, chosen.id)
                    if djk == 0:
                        if pool[t].distance > 0:
                            occlude_factor[t] = math.inf
                        continue
                    occlude_factor[t] = max(occlude_factor[t], pool[t].distance / djk)
                start += 1
            cur_alpha = _f32(cur_alpha * 1.2)
        return result

    def prune_neighbors(self, location, pool, parameters):
        """Sort ``pool`` and return the pruned list of out-neighbour ids."""
        degree = _param(parameters, "R", int)
        maxc = _param(parameters, "C", int)
        alpha = _param(parameters, "alpha", float)

        if not pool:
            return []

        self.width = max(self.width, degree)
        pool.sort(key=lambda nb: nb.distance)
        occlude_factor = [0.0] * len(pool)
        result = self.occlude_list(pool, location, alpha, degree, maxc, occlude_factor)

        pruned = [nb.id for nb in result if nb.id != location]

        if self.saturate_graph and alpha > 1:
            chosen = set(pruned)
            for nb in pool:
                if len(pruned) >= degree:
                    break
                if nb.id not in chosen and nb.id != location:
                    pruned.append(nb.id)
                    chosen.add(nb.id)
        return pruned

    def batch_inter_insert(self, n, pruned_list, parameters, need_to_sync):
        """Add the reverse edge ``des -> n`` for each ``des`` in ``pruned_list``.

        Marks ``need_to_sync[des]`` when a list outgrows its slack.
        """
        degree = _param(parameters, "R", int)
        cap = int(degree * SLACK_FACTOR)
        for des in pruned_list:
            if des == n:
                continue
            if des > self.max_points:
                _log.error("error. %d exceeds max_pts", des)
            with self._locks[des]:
                neighbours = self.final_graph[des]
                if n not in neighbours:
                    neighbours.append(n)
                    if len(neighbours) > cap:
                        need_to_sync[des] = 1

    def inter_insert(self, n, pruned_list, parameters, update_in_graph):
        """Add reverse edges to ``n``, re-pruning any list that is full."""
        degree = _param(parameters, "R", int)
        for des in pruned_list:
            prune_needed = False
            copy_of_neighbours = []
            with self._locks[des]:
                des_pool = self.final_graph[des]
                if n not in des_pool:
                    if len(des_pool) < SLACK_FACTOR * degree:
                        des_pool.append(n)
                        if update_in_graph and des not in self.in_graph[n]:
                            self.in_graph[n].append(des)
                    else:
                        copy_of_neighbours = list(des_pool)
                        prune_needed = True

            if not prune_needed:
                continue

            copy_of_neighbours.append(n)
            seen = set()
            candidates = []
            for cur in copy_of_neighbours:
                if cur not in seen and cur != des:
                    candidates.append(Neighbor(cur, self._node_distance(des, cur), True))
                    seen.add(cur)
            new_out = self.prune_neighbors(des, candidates, parameters)
            with self._locks[des]:
                self.final_graph[des] = list(new_out)
                if update_in_graph:
                    for new_nbr in new_out:
                        self.in_graph[new_nbr].append(des)