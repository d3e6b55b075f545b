import os
import threading
from pathlib import Path
from typing import Optional, Protocol, TextIO

from prodcons.core.errors import LogCloseFailure, LogOpenFailure, LogWriteFailure


class AuditSink(Protocol):
    def write(self, line: str) -> None: ...
    def close(self) -> None: ...


class AuditLog:
    """
    Append-only text log of buffer operations.

    Every write() is serialized by an internal lock, so lines written by the
    producer and the consumer never interleave, and is flushed to the OS
    before returning (and fsync'ed to disk when `durable` is set).
    The file is truncated on open: one log per run.
    """

    def __init__(self, path: str | os.PathLike, durable: bool = True):
        self.path = Path(path)
        self.durable = durable
        self._lock = threading.Lock()
        try:
            self._fh: Optional[TextIO] = open(self.path, "w", encoding="utf-8")
        except OSError as e:
            raise LogOpenFailure(f"cannot open {self.path}: {e}") from e

    @property
    def closed(self) -> bool:
        return self._fh is None

    def write(self, line: str) -> None:
        with self._lock:
            if self._fh is None:
                raise LogWriteFailure(f"{self.path} is closed")
            try:
                self._fh.write(line + "\n")
                self._fh.flush()
                if self.durable:
                    os.fsync(self._fh.fileno())
            except (OSError, ValueError) as e:
                raise LogWriteFailure(f"cannot write to {self.path}: {e}") from e

    def close(self) -> None:
        with self._lock:
            if self._fh is None:
                return
            fh, self._fh = self._fh, None
            try:
                fh.close()
            except OSError as e:
                raise LogCloseFailure(f"cannot close {self.path}: {e}") from e

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
