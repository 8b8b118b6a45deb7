"""Persistent graph index with insertions and lazy or eager deletions."""

from __future__ import annotations

import logging
import os
import struct

import numpy as np

from .binio import validate_file_size
from .builder import BuildableIndex
from .core import _param
from .errors import ANNError
from .neighbor import Neighbor

_log = logging.getLogger("vamana")

_HEADER = struct.Struct("<QII")
_U32 = struct.Struct("<I")

_CONSOLIDATE_FIRST = "Disable deletes and consolidate index before saving."


def _remove_first(values, item):
    try:
        values.remove(item)
    except ValueError:
        pass


class Index(BuildableIndex):
    """A buildable graph index that can be saved, loaded and updated in place."""

    def save(self, filename):
        """Write the graph as an adjacency list; return the file size in bytes.

        The file holds a u64 total size, the u32 width and entry point, then for
        each point its u32 neighbour count followed by the u32 neighbour ids.
        """
        if self._support_eager_delete and self._eager_done and not self._compacted_order:
            if self.nd < self.max_points:
                new_location, active = self.get_new_location()
                _log.info("Size of new_location = %d", len(new_location))
                self.compact_data(new_location, active)
                self._compacted_order = True
                self.update_in_graph()
            elif self._enable_tags and self._can_delete:
                _log.error(_CONSOLIDATE_FIRST)
                raise ANNError(_CONSOLIDATE_FIRST, -1)
        if self._lazy_done and self._enable_tags:
            if self._can_delete or not self._consolidated_order:
                _log.error(_CONSOLIDATE_FIRST)
                raise ANNError(_CONSOLIDATE_FIRST, -1)

        count = self.nd + self.num_frozen_pts
        body = bytearray()
        total_edges = 0
        for neighbours in self.final_graph[:count]:
            body += _U32.pack(len(neighbours))
            body += np.asarray(neighbours, dtype="<u4").tobytes()
            total_edges += len(neighbours)
        size = _HEADER.size + len(body)
        with open(os.fspath(filename), "wb") as out:
            out.write(_HEADER.pack(size, self.width, self.ep))
            out.write(body)
        if count:
            _log.info("Avg degree: %.4f", total_edges / count)
        return size

    def load(self, filename, load_tags=False, tag_filename=None):
        """Read a graph written by :meth:`save`, and optionally its tags."""
        path = os.fspath(filename)
        if not validate_file_size(path):
            raise ANNError(f"Error loading {path}: size does not match its metadata", -1)
        with open(path, "rb") as reader:
            raw = reader.read()
        _, width, ep = _HEADER.unpack_from(raw, 0)
        _log.info("Loading vamana index %s...", path)

        graph = []
        edges = 0
        pos = _HEADER.size
        while pos < len(raw):
            if pos + _U32.size > len(raw):
                raise ANNError(f"Error loading {path}: truncated neighbour count", -1)
            (k,) = _U32.unpack_from(raw, pos)
            pos += _U32.size
            end = pos + k * _U32.size
            if end > len(raw):
                raise ANNError(f"Error loading {path}: truncated neighbour list", -1)
            graph.append(np.frombuffer(raw, dtype="<u4", count=k, offset=pos).tolist())
            edges += k
            pos = end

        expected = self.nd + self.num_frozen_pts
        if len(graph) != expected:
            message = (
                f"ERROR. mismatch in number of points. Graph has {len(graph)} points "
                f"and loaded dataset has {expected} points."
            )
            _log.error(message)
            raise ANNError(message, -1)

        graph.extend([] for _ in range(self.total_slots - len(graph)))
        self.final_graph = graph
        self.in_graph = [[] for _ in range(self.total_slots)]
        self.width = width
        self.ep = ep
        self._has_built = True
        _log.info("..done. Index has %d nodes and %d out-edges", expected, edges)

        if load_tags:
            if not self._enable_tags:
                _log.info("Enabling tags.")
            self._enable_tags = True
            tag_path = os.fspath(tag_filename) if tag_filename else path + ".tags"
            try:
                with open(tag_path, encoding="utf-8") as tag_file:
                    tokens = tag_file.read().split()
            except OSError:
                _log.error("Tag file not found.")
                raise ANNError(f"Tag file not found: {tag_path}", -1) from None
            for location, token in enumerate(tokens):
                tag = int(token)
                self.location_to_tag[location] = tag
                self.tag_to_location[tag] = location

    def enable_delete(self):
        """Allow deletions; tags must be enabled."""
        with self._change_lock:
            if self._can_delete:
                _log.error("Delete already enabled")
                raise ANNError("Delete already enabled", -1)
            if not self._enable_tags:
                _log.error("Tags must be instantiated for deletions")
                raise ANNError("Tags must be instantiated for deletions", -2)
            if self._consolidated_order and self._compacted_order:
                self.empty_slots.update(range(self.nd, self.max_points))
                self._consolidated_order = False
                self._compacted_order = False
            self._lazy_done = False
            self._eager_done = False
            self._can_delete = True

    def eager_delete(self, tag, parameters):
        """Remove the point with ``tag`` now, repairing its in-neighbours' lists."""
        if self._lazy_done and not self._consolidated_order:
            raise ANNError(
                "Lazy delete requests issued but data not consolidated, "
                "cannot proceed with eager deletes.",
                -1,
            )
        with self._change_lock:
            if tag not in self.tag_to_location:
                _log.error("Delete tag not found")
                raise ANNError("Delete tag not found", -1)
            node = self.tag_to_location.pop(tag)
            self.location_to_tag.pop(node, None)
            self.delete_set.add(node)
            self.empty_slots.add(node)

            degree = _param(parameters, "R", int)
            maxc = _param(parameters, "C", int)
            alpha = _param(parameters, "alpha", float)
            search_l = _param(parameters, "L", int)

            for j in self.final_graph[node]:
                _remove_first(self.in_graph[j], node)

            in_nbr = set(self.in_graph[node])
            _, visited = self.get_expanded_nodes(node, search_l, [])

            for source in in_nbr:
                self.final_graph[source] = [
                    x for x in self.final_graph[source] if x != node
                ]

            for ngh in visited:
                if ngh not in in_nbr:
                    continue
                candidates = []
                seen = set()
                for j in (*self.final_graph[node], *self.final_graph[ngh]):
                    if j in (node, ngh) or j in self.delete_set or j in seen:
                        continue
                    seen.add(j)
                    candidates.append(Neighbor(j, self._node_distance(ngh, j), True))
                candidates.sort(key=lambda nb: nb.distance)
                result = self.occlude_list(candidates, ngh, alpha, degree, maxc)

                for target in self.final_graph[ngh]:
                    self.in_graph[target] = [x for x in self.in_graph[target] if x != ngh]
                self.final_graph[ngh] = []
                for chosen in result:
                    if chosen.id not in self.delete_set:
                        self.final_graph[ngh].append(chosen.id)
                    if ngh not in self.in_graph[chosen.id]:
                        self.in_graph[chosen.id].append(ngh)

            self.final_graph[node] = []
            self.nd -= 1
            self._eager_done = True

    def consolidate_deletes(self, parameters):
        """Repair the graph around lazily deleted points and compact the data.

        Returns the number of live points left, or 0 when eager deletes were used.
        """
        if self._eager_done:
            _log.info("No consolidation required, eager deletes done")
            return 0

        degree = _param(parameters, "R", int)
        maxc = _param(parameters, "C", int)
        alpha = _param(parameters, "alpha", float)

        total = self.total_slots
        new_location, active = self.get_new_location()

        for i in range(total):
            if new_location[i] >= total:
                self.final_graph[i] = []
                continue
            candidates = {}
            modify = False
            for ngh in self.final_graph[i]:
                if new_location[ngh] >= total:
                    modify = True
                    for j in self.final_graph[ngh]:
                        if j not in self.delete_set:
                            candidates.setdefault(j, None)
                else:
                    candidates.setdefault(ngh, None)
            if not modify:
                continue
            expanded = [Neighbor(j, self._node_distance(i, j), True) for j in candidates]
            expanded.sort(key=lambda nb: nb.distance)
            result = self.occlude_list(expanded, i, alpha, degree, maxc)
            self.final_graph[i] = [nb.id for nb in result if nb.id != i]

        if self._support_eager_delete:
            self.update_in_graph()

        self.nd -= len(self.delete_set)
        self.compact_data(new_location, active)
        self._consolidated_order = True
        return self.nd

    def get_new_location(self):
        """Map each slot to its compacted position.

        Returns ``(new_location, active)``; removed slots map to the slot count.
        """
        total = self.total_slots
        new_location = [total] * total
        active = 0
        for old in range(total):
            if old not in self.empty_slots and old not in self.delete_set:
                new_location[old] = active
                active += 1
        return new_location, active

    def compact_data(self, new_location, active):
        """Move live points and their lists to the positions in ``new_location``."""
        total = self.total_slots
        if self.ep in self.delete_set:
            _log.warning("Replacing start node which has been deleted...")
            replacement = next(
                (n for n in self.final_graph[self.ep] if n not in self.delete_set), None
            )
            if replacement is None:
                message = "ERROR: Did not find a replacement for start node."
                _log.error(message)
                raise ANNError(message, -1)
            self.ep = replacement
            _log.info("New start node is %d", self.ep)

        def renumber(ids):
            return [new_location[x] for x in ids if new_location[x] < total]

        graph = [[] for _ in range(total)]
        in_graph = [[] for _ in range(total)]
        data = np.zeros_like(self.data)
        for old in range(total):
            new = new_location[old]
            if new >= total:
                continue
            graph[new] = renumber(self.final_graph[old])
            if old < len(self.in_graph):
                in_graph[new] = renumber(self.in_graph[old])
            data[new] = self.data[old]
        for row in graph[active:]:
            row.clear()

        self.final_graph = graph
        if self._support_eager_delete:
            self.in_graph = in_graph
        self.data = data
        self.ep = new_location[self.ep]

        self.tag_to_location = {
            tag: new_location[loc] for loc, tag in self.location_to_tag.items()
        }
        self.location_to_tag = {loc: tag for tag, loc in self.tag_to_location.items()}
        self.delete_set.clear()
        self.empty_slots.clear()
        _log.info("Consolidated the index (active = %d)", active)

    def reserve_location(self):
        """Claim a free slot for a new point and return its location."""
        if self.nd >= self.max_points:
            raise ANNError(f"Can not insert, reached maximum({self.max_points}) points.", -2)
        if self._consolidated_order or self._compacted_order:
            location = self.nd
        else:
            if not self.empty_slots:
                raise ANNError("No empty slot available", -2)
            location = min(self.empty_slots)
            self.empty_slots.discard(location)
            self.delete_set.discard(location)
        self.nd += 1
        return location

    def readjust_data(self, num_frozen_pts):
        """Move frozen points stored right after the points to their reserved rows."""
        if num_frozen_pts <= 0:
            _log.info("No frozen points. No re-adjustment required")
            return
        if self.final_graph[self.max_points]:
            return
        _log.info("Readjusting data to correctly position frozen point")
        nd, base = self.nd, self.max_points
        for i in range(nd):
            self.final_graph[i] = [
                base + (x - nd) if x >= nd else x for x in self.final_graph[i]
            ]
        for i in range(num_frozen_pts):
            self.final_graph[base + i].extend(self.final_graph[nd + i])
            self.final_graph[nd + i] = []
        if self._support_eager_delete:
            self.update_in_graph()
        for i in range(num_frozen_pts):
            self.data[base + i] = self.data[nd + i]
            self.data[nd + i] = 0
        _log.info("Readjustment done")

    def insert_point(self, point, parameters, tag):
        """Insert ``point`` under ``tag`` into a built index; return its location."""
        if not self._has_built:
            raise ANNError("Index must be built before inserting points", -1)
        degree = _param(parameters, "R", int)
        search_l = _param(parameters, "L", int)
        vec = np.asarray(point).ravel()
        if vec.size != self.dim:
            raise ValueError(f"point has {vec.size} dimensions, index has {self.dim}")

        with self._change_lock:
            if self._enable_tags and tag in self.tag_to_location:
                _log.error("Entry with the tag %s exists already", tag)
                raise ANNError(f"Entry with the tag {tag} exists already", -1)
            if self.nd == self.max_points:
                message = f"Can not insert, reached maximum({self.max_points}) points."
                _log.error(message)
                raise ANNError(message, -2)

            location = self.reserve_location()
            self.tag_to_location[tag] = location
            self.location_to_tag[location] = tag

            self.data[location] = 0
            self.data[location, : self.dim] = vec.astype(self.data.dtype)

            expanded, _ = self.get_expanded_nodes(location, search_l, [])
            pool = [nb for nb in expanded if nb.id != location]
            pruned = self.prune_neighbors(location, pool, parameters)

            for old in self.final_graph[location]:
                self.in_graph[old] = [x for x in self.in_graph[old] if x != location]

            self.final_graph[location] = list(pruned[:degree])
            if self._support_eager_delete:
                for link in pruned:
                    if location not in self.in_graph[link]:
                        self.in_graph[link].append(location)

            self.inter_insert(location, pruned, parameters, self._support_eager_delete)
        return location

    def disable_delete(self, parameters, consolidate=True):
        """Stop accepting deletions, consolidating lazy deletes when asked."""
        with self._change_lock:
            if not self._can_delete:
                _log.error("Delete not currently enabled")
                raise ANNError("Delete not currently enabled", -1)
            if not self._enable_tags:
                _log.error("Point tag array not instantiated")
                raise ANNError("Point tag array not instantiated", -1)
            pending = 0 if self._eager_done else len(self.delete_set)
            if len(self.tag_to_location) + pending != self.nd:
                _log.error("Tags to points array wrong sized")
                raise ANNError("Tags to points array wrong sized", -2)
            if len(self.location_to_tag) + pending != self.nd:
                _log.error("Points to tags array wrong sized")
                raise ANNError("Points to tags array wrong sized", -3)
            if consolidate:
                remaining = self.consolidate_deletes(parameters)
                _log.info(
                    "#Points after consolidation: %d", remaining + self.num_frozen_pts
                )
            self._can_delete = False

    def delete_point(self, tag):
        """Mark the point with ``tag`` deleted; it is removed on consolidation."""
        if self._eager_done and not self._compacted_order:
            raise ANNError(
                "Eager delete requests were issued but data was not compacted, "
                "cannot proceed with lazy_deletes",
                -1,
            )
        with self._change_lock:
            if tag not in self.tag_to_location:
                _log.error("Delete tag not found")
                raise ANNError("Delete tag not found", -1)
            location = self.tag_to_location.pop(tag)
            self.delete_set.add(location)
            self.location_to_tag.pop(location, None)