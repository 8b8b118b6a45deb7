"""A buffered text stream that writes to standard output or standard error."""

from __future__ import annotations

import enum
import sys
import threading

from .errors import ANNError

_BUFFER_SIZE = 1024


class LogLevel(enum.Enum):
    """Severity attached to a log stream."""

    INFO = "info"
    ERROR = "error"


class LogStream:
    """Write-only buffered stream over ``sys.stdout`` or ``sys.stderr``.

    Text is held back until :meth:`flush` is called or the buffer fills.
    """

    def __init__(self, stream):
        if stream is None:
            raise ANNError("File pointer passed to LogStream() cannot be null", -1)
        if stream is not sys.stdout and stream is not sys.stderr:
            raise ANNError("The custom logger only supports stdout and stderr.", -1)
        self._stream = stream
        self.level = LogLevel.INFO if stream is sys.stdout else LogLevel.ERROR
        self._buffer = []
        self._pending = 0
        self._lock = threading.Lock()

    def write(self, text):
        """Buffer ``text``, emitting the buffer once it is full."""
        text = str(text)
        with self._lock:
            self._buffer.append(text)
            self._pending += len(text)
            if self._pending >= _BUFFER_SIZE:
                self._emit()
        return len(text)

    def flush(self):
        """Emit everything buffered so far."""
        with self._lock:
            self._emit()

    def read(self):
        """Reading is not supported."""
        raise ANNError("Attempt to read on stream meant only for writing.", -1)

    def _emit(self):
        if self._buffer:
            self._stream.write("".join(self._buffer))
            self._buffer.clear()
            self._pending = 0
        self._stream.flush()