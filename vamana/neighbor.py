"""Candidate neighbours and the sorted and bounded pools that hold them."""

from __future__ import annotations

import heapq
import itertools
import threading
from dataclasses import dataclass

from .binio import gen_random


@dataclass(eq=False)
class Neighbor:
    """A candidate point: ordered by distance, equal when the ids match."""

    id: int
    distance: float
    flag: bool = True

    def __lt__(self, other):
        if not isinstance(other, Neighbor):
            return NotImplemented
        return self.distance < other.distance

    def __eq__(self, other):
        if not isinstance(other, Neighbor):
            return NotImplemented
        return self.id == other.id

    def __hash__(self):
        return hash(self.id)


@dataclass(eq=False)
class SimpleNeighbor:
    """A point id with its distance, without the expansion flag."""

    id: int
    distance: float

    def __lt__(self, other):
        if not isinstance(other, SimpleNeighbor):
            return NotImplemented
        return self.distance < other.distance

    def __eq__(self, other):
        if not isinstance(other, SimpleNeighbor):
            return NotImplemented
        return self.id == other.id

    def __hash__(self):
        return hash(self.id)


class Nhood:
    """Neighbourhood of one point: a bounded max-heap pool plus sample lists."""

    def __init__(self, pool_size, sample_size, rng, n):
        self.sample_size = sample_size
        self.capacity = pool_size
        self.nn_new = gen_random(rng, sample_size * 2, n)
        self.nn_old = []
        self.rnn_old = []
        self.rnn_new = []
        self._heap = []
        self._counter = itertools.count()
        self._lock = threading.Lock()

    @property
    def pool(self):
        """Neighbours in heap order; the first one has the largest distance."""
        return [entry[-1] for entry in self._heap]

    def insert(self, id, dist):
        """Offer a candidate; keep only the ``capacity`` closest distinct ids."""
        with self._lock:
            if self.capacity <= 0:
                return
            if self._heap and dist > -self._heap[0][0]:
                return
            if any(entry[-1].id == id for entry in self._heap):
                return
            entry = (-dist, next(self._counter), Neighbor(id, dist, True))
            if len(self._heap) < self.capacity:
                heapq.heappush(self._heap, entry)
            else:
                heapq.heapreplace(self._heap, entry)

    def join(self, callback):
        """Call ``callback(i, j)`` for each new-new pair with i < j and each new-old pair."""
        for i in self.nn_new:
            for j in self.nn_new:
                if i < j:
                    callback(i, j)
            for j in self.nn_old:
                callback(i, j)


def insert_into_pool(pool, k, nn):
    """Insert ``nn`` into the first ``k`` entries of ``pool``, kept sorted by distance.

    The entry at index ``k``, if any, is overwritten by the shift. Returns the
    position of the insertion, or ``k + 1`` when ``nn``'s id is already present.
    """
    if k == 0:
        pool[:1] = [nn]
        return 0

    left, right = 0, k - 1
    if pool[left].distance > nn.distance:
        position = left
    elif pool[right].distance < nn.distance:
        position = k
    else:
        while right > 1 and left < right - 1:
            mid = (left + right) // 2
            if pool[mid].distance > nn.distance:
                right = mid
            else:
                left = mid
        while left > 0:
            if pool[left].distance < nn.distance:
                break
            if pool[left].id == nn.id:
                return k + 1
            left -= 1
        if pool[left].id == nn.id or pool[right].id == nn.id:
            return k + 1
        position = right

    valid = pool[:k]
    pool[: k + 1] = valid[:position] + [nn] + valid[position:]
    return position