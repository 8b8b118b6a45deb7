"""Binary vector file formats and small numeric helpers."""

from __future__ import annotations

import enum
import logging
import os
import struct
from dataclasses import dataclass

import numpy as np

from .errors import ANNError

_log = logging.getLogger("vamana")

_HEADER = struct.Struct("<II")
_U64 = struct.Struct("<Q")
_U32 = struct.Struct("<I")


class Metric(enum.IntEnum):
    """Distance metrics known to the index."""

    L2 = 0
    INNER_PRODUCT = 1
    FAST_L2 = 2
    PQ = 3


@dataclass
class PivotContainer:
    """A pivot id with its distance; ordered so that larger distances sort first."""

    piv_id: int
    piv_dist: float

    def __lt__(self, other):
        if not isinstance(other, PivotContainer):
            return NotImplemented
        return other.piv_dist < self.piv_dist

    def __gt__(self, other):
        if not isinstance(other, PivotContainer):
            return NotImplemented
        return other.piv_dist > self.piv_dist


def round_up(x, y):
    """Round ``x`` up to the nearest multiple of ``y``."""
    return div_round_up(x, y) * y


def div_round_up(x, y):
    """Integer division of ``x`` by ``y``, rounding up."""
    return x // y + (1 if x % y else 0)


def round_down(x, y):
    """Round ``x`` down to the nearest multiple of ``y``."""
    return (x // y) * y


def is_aligned(x, y):
    """Whether ``x`` is a multiple of ``y``."""
    return x % y == 0


def gen_random(rng, size, n):
    """Return ``size`` distinct pseudo-random ids below ``n``.

    ``rng`` must provide ``getrandbits`` (as :class:`random.Random` does).
    """
    if n <= size:
        raise ValueError("n must be greater than size")
    span = n - size
    addr = sorted(rng.getrandbits(32) % span for _ in range(size))
    for i in range(1, len(addr)):
        if addr[i] <= addr[i - 1]:
            addr[i] = addr[i - 1] + 1
    off = rng.getrandbits(32) % n
    return [(a + off) % n for a in addr]


def _le(dtype):
    return np.dtype(dtype).newbyteorder("<")


def _read_header(reader):
    raw = reader.read(_HEADER.size)
    if len(raw) < _HEADER.size:
        raise ANNError("Error. File too short to hold a bin header", -1)
    return _HEADER.unpack(raw)


def get_bin_metadata(path):
    """Return ``(nrows, ncols)`` from the header of a bin file."""
    with open(path, "rb") as reader:
        return _read_header(reader)


def get_values(data):
    """Format values as ``[v1,v2,...,]`` followed by a newline."""
    parts = []
    for value in data:
        if isinstance(value, (float, np.floating)):
            parts.append(f"{float(value):f}")
        else:
            parts.append(str(int(value)))
    return "[" + "".join(f"{p}," for p in parts) + "]\n"


def _check_size(actual, npts, dim, itemsize):
    expected = npts * dim * itemsize + _HEADER.size
    if actual != expected:
        message = (
            f"Error. File size mismatch. Actual size is {actual} while expected "
            f"size is  {expected} npts = {npts} dim = {dim} size of <T>= {itemsize}"
        )
        _log.error(message)
        raise ANNError(message, -1)


def load_bin(path, dtype):
    """Load a bin file as an array of shape ``(npts, dim)``."""
    dt = _le(dtype)
    _log.info("Reading bin file %s ...", path)
    actual = os.path.getsize(path)
    with open(path, "rb") as reader:
        npts, dim = _read_header(reader)
        _log.info("Metadata: #pts = %d, #dims = %d...", npts, dim)
        _check_size(actual, npts, dim, dt.itemsize)
        raw = reader.read(npts * dim * dt.itemsize)
    data = np.frombuffer(raw, dtype=dt, count=npts * dim).reshape(npts, dim)
    return data.astype(np.dtype(dtype), copy=True)


def save_bin(path, data):
    """Write a 2-D array as a bin file and return the number of bytes written."""
    arr = np.asarray(data)
    if arr.ndim != 2:
        raise ValueError("save_bin expects a two-dimensional array")
    npts, ndims = arr.shape
    payload = np.ascontiguousarray(arr, dtype=_le(arr.dtype)).tobytes()
    _log.info("Writing bin: %s", path)
    with open(path, "wb") as writer:
        writer.write(_HEADER.pack(npts, ndims))
        writer.write(payload)
    size = len(payload) + _HEADER.size
    _log.info("bin: #pts = %d, #dims = %d, size = %dB", npts, ndims, size)
    return size


def load_aligned_bin(path, dtype):
    """Load a bin file with each row zero-padded to a multiple of 8 values.

    Returns ``(data, dim)`` where ``data`` has shape ``(npts, round_up(dim, 8))``.
    """
    dt = _le(dtype)
    _log.info("Reading bin file %s ...", path)
    actual = os.path.getsize(path)
    with open(path, "rb") as reader:
        npts, dim = _read_header(reader)
        _check_size(actual, npts, dim, dt.itemsize)
        raw = reader.read(npts * dim * dt.itemsize)
    rounded_dim = round_up(dim, 8)
    _log.info(
        "Metadata: #pts = %d, #dims = %d, aligned_dim = %d", npts, dim, rounded_dim
    )
    data = np.zeros((npts, rounded_dim), dtype=np.dtype(dtype))
    data[:, :dim] = np.frombuffer(raw, dtype=dt, count=npts * dim).reshape(npts, dim)
    return data, dim


def load_truthset(path):
    """Load a ground-truth file: ids and, when present, distances.

    Returns ``(ids, dists)``; ``dists`` is ``None`` if the file holds only ids.
    """
    actual = os.path.getsize(path)
    _log.info("Reading truthset file %s ...", path)
    with open(path, "rb") as reader:
        npts, dim = _read_header(reader)
        _log.info("Metadata: #pts = %d, #dims = %d...", npts, dim)
        with_dists = 2 * npts * dim * 4 + _HEADER.size
        just_ids = npts * dim * 4 + _HEADER.size
        if actual == just_ids:
            has_dists = False
        elif actual == with_dists:
            has_dists = True
        else:
            message = (
                "Error. File size mismatch. File should have bin format, with "
                "npts followed by ngt followed by npts*ngt ids and optionally "
                "followed by npts*ngt distance values; actual size: "
                f"{actual}, expected: {with_dists} or {just_ids}"
            )
            _log.error(message)
            raise ANNError(message, -1)
        count = npts * dim
        ids = np.frombuffer(reader.read(count * 4), dtype="<u4", count=count)
        ids = ids.reshape(npts, dim).astype(np.uint32)
        dists = None
        if has_dists:
            dists = np.frombuffer(reader.read(count * 4), dtype="<f4", count=count)
            dists = dists.reshape(npts, dim).astype(np.float32)
    return ids, dists


def save_tvecs(path, data):
    """Write rows as ``[u32 dim][dim values]`` records."""
    arr = np.asarray(data)
    if arr.ndim != 2:
        raise ValueError("save_tvecs expects a two-dimensional array")
    dims = _U32.pack(arr.shape[1])
    rows = np.ascontiguousarray(arr, dtype=_le(arr.dtype))
    with open(path, "wb") as writer:
        for row in rows:
            writer.write(dims)
            writer.write(row.tobytes())


def convert_types(data, dtype):
    """Return a copy of ``data`` cast to ``dtype``."""
    return np.asarray(data).astype(dtype)


def file_exists(path):
    """Whether ``path`` can be stat'ed."""
    try:
        os.stat(path)
    except OSError:
        _log.debug(" Stat(%s) failed", path)
        return False
    return True


def get_file_size(path):
    """Size of the file in bytes, or 0 if it cannot be opened."""
    try:
        with open(path, "rb") as reader:
            return reader.seek(0, os.SEEK_END)
    except OSError:
        _log.info("Could not open file: %s", path)
        return 0


def validate_file_size(path):
    """Check the file's leading u64 against its actual size."""
    try:
        with open(path, "rb") as reader:
            actual = reader.seek(0, os.SEEK_END)
            reader.seek(0)
            raw = reader.read(_U64.size)
    except OSError:
        return False
    if len(raw) < _U64.size:
        return False
    (expected,) = _U64.unpack(raw)
    if actual != expected:
        _log.error(
            "Error loading %s. Expected size (metadata): %d, actual file size : %d.",
            path,
            expected,
            actual,
        )
        return False
    return True