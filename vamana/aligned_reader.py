"""Batched positional reads of a file, with per-thread I/O contexts."""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass

from .errors import ANNError

_log = logging.getLogger("vamana")


@dataclass
class AlignedRead:
    """One read request: ``length`` bytes at ``offset`` into ``buf``."""

    offset: int
    length: int
    buf: bytearray | memoryview | None = None

    def __post_init__(self):
        if self.buf is None:
            self.buf = bytearray(self.length)
        elif memoryview(self.buf).nbytes < self.length:
            raise ValueError("buffer is smaller than the requested length")


class _IOContext:
    """Handle that a registered thread uses for its reads."""

    def __init__(self, thread_id):
        self.thread_id = thread_id
        self.active = True

    def __repr__(self):
        state = "active" if self.active else "destroyed"
        return f"<IOContext thread={self.thread_id} {state}>"


class AlignedFileReader:
    """Reads many byte ranges of one file; each thread registers before reading."""

    def __init__(self):
        self._fd = None
        self._contexts = {}
        self._ctx_lock = threading.Lock()
        self._seek_lock = threading.Lock()

    def open(self, fname):
        """Open ``fname`` read-only, closing any file opened before."""
        self.close()
        self._fd = os.open(os.fspath(fname), os.O_RDONLY | getattr(os, "O_BINARY", 0))
        _log.info("Opened file : %s", fname)

    def close(self):
        """Close the file if it is open."""
        if self._fd is not None:
            fd, self._fd = self._fd, None
            os.close(fd)

    def register_thread(self):
        """Create an I/O context for the calling thread."""
        my_id = threading.get_ident()
        with self._ctx_lock:
            if my_id in self._contexts:
                _log.error("multiple calls to register_thread from the same thread")
                return
            self._contexts[my_id] = _IOContext(my_id)
            _log.debug("allocating ctx to thread-id:%d", my_id)

    def deregister_thread(self):
        """Destroy the calling thread's I/O context."""
        my_id = threading.get_ident()
        with self._ctx_lock:
            ctx = self._contexts.pop(my_id, None)
        if ctx is None:
            raise ANNError("deregister_thread called from an unregistered thread", -1)
        ctx.active = False
        _log.debug("returned ctx from thread-id:%d", my_id)

    def get_ctx(self):
        """Return the calling thread's I/O context."""
        with self._ctx_lock:
            ctx = self._contexts.get(threading.get_ident())
        if ctx is None:
            raise ANNError("bad thread access: thread has no io context", -1)
        return ctx

    def read(self, read_reqs, ctx):
        """Fill each request's buffer from the file."""
        if self._fd is None:
            raise ANNError("File is not open", -1)
        if not isinstance(ctx, _IOContext) or not ctx.active:
            raise ANNError("Invalid io context", -1)
        for req in read_reqs:
            data = self._pread(req.length, req.offset)
            memoryview(req.buf).cast("B")[: len(data)] = data

    def _pread(self, length, offset):
        if hasattr(os, "pread"):
            return os.pread(self._fd, length, offset)
        with self._seek_lock:
            os.lseek(self._fd, offset, os.SEEK_SET)
            return os.read(self._fd, length)

    def __del__(self):
        try:
            self.close()
        except OSError:
            pass