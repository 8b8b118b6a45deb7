"""Index construction, search and frozen points on top of the graph core."""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field

import numpy as np

from .binio import div_round_up, load_aligned_bin
from .core import GraphCore
from .errors import ANNError
from .neighbor import Neighbor

_log = logging.getLogger("vamana")

_NUM_ROUNDS = 2
_MIN_SYNCS = 40
_SYNC_BATCH = 64 * 64


def _param(parameters, name, cast):
    try:
        return cast(parameters[name])
    except KeyError:
        raise ANNError(f"Missing parameter {name!r}", -1) from None


@dataclass
class SearchResult:
    """Nearest ids with their distances, search statistics and, optionally, tags."""

    ids: list = field(default_factory=list)
    distances: list = field(default_factory=list)
    hops: int = 0
    cmps: int = 0
    tags: list | None = None


class BuildableIndex(GraphCore):
    """Graph index that can be built from its data and searched."""

    def _search_and_prune(self, node, search_l, init_ids, parameters):
        expanded, expanded_ids = self.get_expanded_nodes(node, search_l, init_ids)
        pool = list(expanded)
        visited = set(expanded_ids)
        for nid in self.final_graph[node]:
            if nid not in visited and nid != node:
                pool.append(Neighbor(nid, self._node_distance(node, nid), True))
                visited.add(nid)
        return self.prune_neighbors(node, pool, parameters)

    def _reprune(self, node, parameters):
        seen = set()
        candidates = []
        for nbr in self.final_graph[node]:
            if nbr not in seen and nbr != node:
                candidates.append(Neighbor(nbr, self._node_distance(node, nbr), True))
                seen.add(nbr)
        self.final_graph[node] = list(
            self.prune_neighbors(node, candidates, parameters)
        )

    def link(self, parameters):
        """Build the graph in two passes; the second uses the requested alpha.

        ``parameters`` is a mutable mapping with ``L``, ``R``, ``C`` and ``alpha``
        and optionally ``saturate_graph``; its ``alpha`` is rewritten during the build.
        """
        search_l = _param(parameters, "L", int)
        degree = _param(parameters, "R", int)
        last_round_alpha = _param(parameters, "alpha", float)
        _param(parameters, "C", int)
        self.saturate_graph = bool(parameters.get("saturate_graph", False))

        total_pts = self.nd + self.num_frozen_pts
        num_syncs = max(div_round_up(total_pts, _SYNC_BATCH), _MIN_SYNCS)
        _log.info("Number of syncs: %d", num_syncs)

        parameters["alpha"] = 1.0

        visit_order = list(range(self.nd))
        visit_order.extend(self.max_points + i for i in range(self.num_frozen_pts))

        if self.num_frozen_pts > 0:
            self.ep = self.max_points
        else:
            self.ep = self.calculate_entry_point()

        missing = self.total_slots - len(self.final_graph)
        if missing > 0:
            self.final_graph.extend([] for _ in range(missing))
        if self._support_eager_delete:
            missing = self.total_slots - len(self.in_graph)
            if missing > 0:
                self.in_graph.extend([] for _ in range(missing))

        init_ids = [self.ep]
        round_size = div_round_up(self.nd, num_syncs)
        started = time.perf_counter()

        for rnd_no in range(_NUM_ROUNDS):
            if rnd_no == _NUM_ROUNDS - 1 and last_round_alpha > 1:
                parameters["alpha"] = last_round_alpha

            need_to_sync = [0] * self.total_slots
            search_time = inter_time = 0.0
            inter_count = 0

            for sync_num in range(num_syncs):
                start = sync_num * round_size
                end = min(total_pts, (sync_num + 1) * round_size)
                batch = visit_order[start:end]

                tick = time.perf_counter()
                pruned_lists = [
                    self._search_and_prune(node, search_l, init_ids, parameters)
                    for node in batch
                ]
                search_time += time.perf_counter() - tick

                for node, pruned in zip(batch, pruned_lists):
                    self.final_graph[node] = list(pruned)

                tick = time.perf_counter()
                for node, pruned in zip(batch, pruned_lists):
                    self.batch_inter_insert(node, pruned, parameters, need_to_sync)

                for node in visit_order:
                    if need_to_sync[node]:
                        need_to_sync[node] = 0
                        inter_count += 1
                        self._reprune(node, parameters)
                inter_time += time.perf_counter() - tick

            _log.info(
                "Completed Pass %d of data using L=%d and alpha=%s. Stats: "
                "search+prune_time=%.4fs, inter_time=%.4fs, inter_count=%d",
                rnd_no,
                search_l,
                parameters["alpha"],
                search_time,
                inter_time,
                inter_count,
            )

        for node in visit_order:
            if len(self.final_graph[node]) > degree:
                self._reprune(node, parameters)
        _log.info("done. Link time: %.4fs", time.perf_counter() - started)

    def build(self, parameters, tags=None):
        """Build the index; with tags enabled, ``tags`` must give one tag per point."""
        tags = list(tags) if tags is not None else []
        if self._enable_tags:
            if len(tags) != self.nd:
                _log.error("#Tags should be equal to #points")
                raise ANNError("#Tags must be equal to #points", -1)
            for location, tag in enumerate(tags):
                self.tag_to_location[tag] = location
                self.location_to_tag[location] = tag

        _log.info("Starting index build...")
        self.link(parameters)

        if self._support_eager_delete:
            self.update_in_graph()

        degrees = [len(self.final_graph[i]) for i in range(self.nd)]
        max_degree = max(degrees, default=0)
        min_degree = min(degrees, default=1 << 30)
        low = sum(1 for d in degrees if d < 2)
        average = sum(degrees) / self.nd if self.nd else 0.0
        _log.info(
            "Degree: max:%d  avg:%.4f  min:%d  count(deg<2):%d. Index built.",
            max_degree,
            average,
            min_degree,
            low,
        )
        self.width = max(max_degree, self.width)
        self._has_built = True

    def search(self, query, k, l, init_ids=None):
        """Return up to ``k`` nearest points found with a search list of size ``l``."""
        ids = list(init_ids) if init_ids else [self.ep]
        found = self.iterate_to_fixed_point(query, l, ids)
        best = found.best[:k]
        return SearchResult(
            ids=[nb.id for nb in best],
            distances=[nb.distance for nb in best],
            hops=found.hops,
            cmps=found.cmps,
        )

    def search_with_tags(self, query, k, l):
        """Like :meth:`search`, also giving the tag of each result (``None`` if untagged)."""
        result = self.search(query, k, l)
        result.tags = [self.location_to_tag.get(i) for i in result.ids]
        return result

    def _resize_frozen(self, count):
        if count == self.num_frozen_pts:
            return
        total = self.max_points + count
        data = np.zeros((total, self.aligned_dim), dtype=self.data.dtype)
        keep = min(total, self.data.shape[0])
        data[:keep] = self.data[:keep]
        self.data = data

        def fit(rows):
            rows = rows[:total]
            rows.extend([] for _ in range(total - len(rows)))
            return rows

        self.final_graph = fit(self.final_graph)
        self.in_graph = fit(self.in_graph)
        self._locks = self._locks[:total]
        self._locks.extend(type(self._change_lock)() for _ in range(total - len(self._locks)))
        self.num_frozen_pts = count

    def generate_random_frozen_points(self, filename=None):
        """Fill the frozen rows from a bin file, or with uniform values in [0, 1)."""
        if self._has_built:
            _log.error("Index already built. Cannot add more points")
            raise ANNError("Index already built. Cannot add more points", -1)

        if filename:
            frozen, dim = load_aligned_bin(os.fspath(filename), self.data.dtype)
            if dim != self.dim:
                raise ANNError(
                    f"Frozen points have {dim} dimensions, index has {self.dim}", -1
                )
            self._resize_frozen(frozen.shape[0])
            rows = slice(self.max_points, self.max_points + self.num_frozen_pts)
            self.data[rows] = 0
            self.data[rows, : self.dim] = frozen[:, : self.dim]
        else:
            generator = np.random.default_rng()
            values = generator.random((self.num_frozen_pts, self.dim), dtype=np.float32)
            rows = slice(self.max_points, self.max_points + self.num_frozen_pts)
            self.data[rows] = 0
            self.data[rows, : self.dim] = values.astype(self.data.dtype)

    def update_in_graph(self):
        """Rebuild the in-neighbour lists from the out-neighbour graph."""
        _log.info("Updating in_graph.....")
        self.in_graph = [[] for _ in range(max(len(self.in_graph), len(self.final_graph)))]
        for i, neighbours in enumerate(self.final_graph):
            for j in neighbours:
                if i in self.in_graph[j]:
                    _log.info("Duplicates found")
                self.in_graph[j].append(i)

        sizes = [len(lst) for lst in self.in_graph]
        max_in = max(sizes, default=0)
        others = [size for i, size in enumerate(sizes) if i != self.ep]
        min_in = min(others, default=self.max_points + 1)
        count = self.nd + self.num_frozen_pts
        average = sum(sizes) / count if count else 0.0
        _log.info(
            "Max in_degree = %d; Min in_degree = %d; Average in_degree = %.4f",
            max_in,
            min_in,
            average,
        )