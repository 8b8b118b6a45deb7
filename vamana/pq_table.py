"""Product-quantisation pivot table with per-chunk distance lookup."""

from __future__ import annotations

import logging
import os

import numpy as np

from .binio import div_round_up, file_exists, load_bin
from .errors import ANNError

_log = logging.getLogger("vamana")

NUM_CENTERS = 256


class FixedChunkPQTable:
    """Pivots of a PQ codebook split into fixed chunks of dimensions."""

    def __init__(self):
        self.tables = None
        self.tables_t = None
        self.ndims = 0
        self.n_chunks = 0
        self.chunk_offsets = None
        self.rearrangement = None
        self.centroid = None

    def load_pq_centroid_bin(self, pq_table_file, num_chunks):
        """Load pivots and, when present, the permutation, chunk offsets and centroid."""
        base = os.fspath(pq_table_file)
        rearrangement_file = base + "_rearrangement_perm.bin"
        chunk_offset_file = base + "_chunk_offsets.bin"
        centroid_file = base + "_centroid.bin"

        tables = load_bin(base, np.float32)
        npts, ndims = tables.shape
        if npts != NUM_CENTERS:
            raise ANNError(
                f"Error loading PQ pivots: expected {NUM_CENTERS} centers, found {npts}",
                -1,
            )

        if file_exists(chunk_offset_file):
            rearrangement = load_bin(rearrangement_file, np.uint32)
            if rearrangement.shape != (ndims, 1):
                _log.error("Error loading rearrangement file")
                raise ANNError("Error loading rearrangement file", -1)

            offsets = load_bin(chunk_offset_file, np.uint32)
            numr, numc = offsets.shape
            if numc != 1 or numr != num_chunks + 1:
                _log.error(
                    "Error loading chunk offsets file. numc: %d (should be 1). "
                    "numr: %d (should be %d)",
                    numc,
                    numr,
                    num_chunks + 1,
                )
                raise ANNError("Error loading chunk offsets file", -1)
            n_chunks = numr - 1

            centroid = load_bin(centroid_file, np.float32)
            if centroid.shape != (ndims, 1):
                _log.error("Error loading centroid file")
                raise ANNError("Error loading centroid file", -1)

            rearrangement = rearrangement[:, 0].copy()
            offsets = offsets[:, 0].copy()
            centroid = centroid[:, 0].copy()
        else:
            if num_chunks < 1:
                raise ValueError("num_chunks must be at least 1")
            n_chunks = num_chunks
            rearrangement = np.arange(ndims, dtype=np.uint32)
            chunk_size = div_round_up(ndims, num_chunks)
            offsets = np.array(
                [min(ndims, d * chunk_size) for d in range(num_chunks + 1)],
                dtype=np.uint32,
            )
            centroid = np.zeros(ndims, dtype=np.float32)

        self.tables = tables
        self.ndims = ndims
        self.n_chunks = n_chunks
        self.rearrangement = rearrangement
        self.chunk_offsets = offsets
        self.centroid = centroid
        self.tables_t = np.ascontiguousarray(tables.T)
        _log.info(
            "PQ Pivots: #ctrs: %d, #dims: %d, #chunks: %d", npts, ndims, n_chunks
        )

    def populate_chunk_distances(self, query_vec):
        """Squared distances from the query to every center, per chunk.

        Returns a float32 array of shape ``(n_chunks, 256)``.
        """
        if self.tables_t is None:
            raise ANNError("PQ table has not been loaded", -1)
        query = np.asarray(query_vec, dtype=np.float32).ravel()
        dists = np.zeros((self.n_chunks, NUM_CENTERS), dtype=np.float32)
        bounds = zip(self.chunk_offsets[:-1], self.chunk_offsets[1:])
        for chunk_dists, (start, stop) in zip(dists, bounds):
            for j in range(int(start), int(stop)):
                dim = self.rearrangement[j]
                shift = np.float32(query[dim] - self.centroid[dim])
                diff = (self.tables_t[j] - shift).astype(np.float64)
                chunk_dists += (diff * diff).astype(np.float32)
        return dists