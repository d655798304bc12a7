"""Forward-only line reader over plain or gzip-compressed SQL dumps."""
from __future__ import annotations
import gzip
import io
import logging
import pathlib
from typing import Iterator, Optional, Union

from .exceptions import FileProcessingError

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"


def is_gzipped(path: Union[str, pathlib.Path]) -> bool:
    try:
        with open(path, "rb") as f:
            return f.read(2) == GZIP_MAGIC
    except OSError as e:
        raise FileProcessingError(f"Cannot read {path}: {e}")


class SqlDumpStreamReader:
    """Read a dump line by line without loading it into memory.

    ``line_number`` is the 1-based number of the last line returned. Lines are
    returned without their trailing newline; undecodable bytes are replaced.
    """

    def __init__(self, path: Union[str, pathlib.Path]):
        self.path = pathlib.Path(path)
        self.line_number = 0
        self._handle: Optional[io.TextIOBase] = None
        self.compressed = False

    def open(self) -> "SqlDumpStreamReader":
        if not self.path.is_file():
            raise FileProcessingError(f"File not found: {self.path}")
        self.compressed = is_gzipped(self.path)
        try:
            if self.compressed:
                self._handle = gzip.open(self.path, "rt", encoding="utf-8", errors="replace", newline="")
            else:
                self._handle = open(self.path, "r", encoding="utf-8", errors="replace", newline="")
        except OSError as e:
            raise FileProcessingError(f"Cannot open {self.path}: {e}")
        self.line_number = 0
        logger.debug(f"Opened {self.path} (gzip={self.compressed})")
        return self

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    def __enter__(self) -> "SqlDumpStreamReader":
        return self.open() if self._handle is None else self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def read_line(self) -> Optional[str]:
        """Next line, or None at end of file."""
        if self._handle is None:
            self.open()
        try:
            line = self._handle.readline()
        except (OSError, EOFError) as e:
            raise FileProcessingError(f"Read failed at line {self.line_number + 1} of {self.path}: {e}")
        if line == "":
            return None
        self.line_number += 1
        return line.rstrip("\r\n")

    def __iter__(self) -> Iterator[str]:
        while True:
            line = self.read_line()
            if line is None:
                return
            yield line

    def iter_range(self, start: int, end: Optional[int] = None) -> Iterator[str]:
        """Yield lines ``start..end`` (1-based, inclusive).

        The stream cannot seek backwards, so a start behind the current
        position reopens the file.
        """
        if start < 1:
            raise ValueError("Line numbers start at 1")
        if self._handle is None or start <= self.line_number:
            self.close()
            self.open()
        while self.line_number < start - 1:
            if self.read_line() is None:
                return
        while end is None or self.line_number < end:
            line = self.read_line()
            if line is None:
                return
            yield line
