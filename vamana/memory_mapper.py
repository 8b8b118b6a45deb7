"""Read-only memory mapping of a whole file."""

from __future__ import annotations

import logging
import mmap
import os

from .errors import ANNError

_log = logging.getLogger("vamana")


class MemoryMapper:
    """Maps a file read-only; ``buf`` gives its bytes and ``file_size`` its length."""

    def __init__(self, filename):
        self.filename = os.fspath(filename)
        self._file = open(self.filename, "rb")
        try:
            self.file_size = os.fstat(self._file.fileno()).st_size
            self._map = (
                mmap.mmap(self._file.fileno(), 0, access=mmap.ACCESS_READ)
                if self.file_size
                else None
            )
        except BaseException:
            self._file.close()
            raise
        self._closed = False
        _log.info("Mapped file %s (%d bytes)", self.filename, self.file_size)

    @property
    def buf(self):
        """The mapped contents, sliceable like ``bytes``."""
        if self._closed:
            raise ANNError("MemoryMapper is closed", -1)
        return self._map if self._map is not None else b""

    def close(self):
        """Release the mapping and the file; safe to call twice."""
        if self._closed:
            return
        self._closed = True
        if self._map is not None:
            self._map.close()
            self._map = None
        self._file.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
        return False