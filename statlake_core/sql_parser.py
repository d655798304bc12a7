"""Streaming scanner and parser for ``INSERT ... VALUES (...),(...);`` dumps.

The scanner finds exact statement boundaries: a statement ends at a ``;``
outside single, double or backtick quotes and outside parentheses. Backslash
escapes and doubled quotes inside strings are honoured, so values containing
``);`` never end a statement early.
"""
from __future__ import annotations
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, List, Optional, Set, Union

from .exceptions import DumpFormatError

logger = logging.getLogger(__name__)

Scalar = Union[None, int, float, str]

_SCAN_TOKENS = re.compile(r"\\.|\\$|['\"`();]|/\*|\*/")
_ROW_TOKENS = re.compile(r"\\.|['\"`()]", re.S)
_VALUE_TOKENS = re.compile(r"\\.|['\"`(),]", re.S)

_INSERT_PREFIX = re.compile(
    r"\s*INSERT\s+(?:IGNORE\s+)?INTO\s+(?:[`\"]?\w+[`\"]?\.)?[`\"]?(\w+)[`\"]?", re.I
)
_INSERT_HEADER = re.compile(
    r"\s*INSERT\s+(?:IGNORE\s+)?INTO\s+(?:[`\"]?\w+[`\"]?\.)?[`\"]?(?P<table>\w+)[`\"]?\s*"
    r"(?:\((?P<cols>[^)]*)\)\s*)?VALUES\s*",
    re.I | re.S,
)
_INT = re.compile(r"[+-]?\d+\Z")
_FLOAT = re.compile(r"[+-]?(?:\d+\.\d*|\.\d+|\d+)(?:[eE][+-]?\d+)?\Z")
_ESCAPES = {"0": "\x00", "b": "\b", "n": "\n", "r": "\r", "t": "\t", "Z": "\x1a", "%": "\\%", "_": "\\_"}


@dataclass
class RawStatement:
    table: str
    start_line: int
    end_line: int
    text: str = field(repr=False)
    complete: bool = True


@dataclass
class InsertStatement:
    table: str
    columns: Optional[List[str]]
    rows: List[List[Scalar]]


class StatementScanner:
    """Incrementally split lines into statements.

    Only ``INSERT INTO`` statements are reported (optionally just those for
    ``tables``); the text of other statements is never buffered. With
    ``keep_text=False`` reported statements carry boundaries only.
    """

    def __init__(self, tables: Optional[Iterable[str]] = None, keep_text: bool = True):
        self.tables: Optional[Set[str]] = {t.lower() for t in tables} if tables else None
        self.keep_text = keep_text
        self.incomplete: Optional[RawStatement] = None
        self.statements_seen = 0
        self._reset()
        self._comment = False

    def _reset(self) -> None:
        self._active = False
        self._table: Optional[str] = None
        self._wanted = False
        self._start_line = 0
        self._parts: List[str] = []
        self._quote: Optional[str] = None
        self._depth = 0

    def feed(self, line: str, line_number: int) -> List[RawStatement]:
        """Consume one line; returns the statements that ended on it."""
        done: List[RawStatement] = []
        pos = 0
        length = len(line)
        while pos < length:
            if not self._active:
                if self._comment:
                    close = line.find("*/", pos)
                    if close < 0:
                        break
                    self._comment = False
                    pos = close + 2
                    continue
                rest = line[pos:].lstrip()
                if not rest or rest.startswith("--") or rest.startswith("#"):
                    break
                pos = length - len(rest)
                if rest.startswith(";"):
                    pos += 1
                    continue
                # plain comments between statements; /*! ... */ is executable
                if rest.startswith("/*") and not rest.startswith("/*!"):
                    self._comment = True
                    pos += 2
                    continue
                self._begin(rest, line_number)
            end = self._advance(line, pos)
            if self._active:
                self._collect(line[pos:end if end is not None else length])
            if end is None:
                break
            if self._active:
                statement = self._finish(line_number)
                if statement is not None:
                    done.append(statement)
            pos = end
        if self._active and self._wanted and self.keep_text:
            self._parts.append("\n")
        return done

    def _begin(self, text: str, line_number: int) -> None:
        self._reset()
        self._active = True
        self._start_line = line_number
        m = _INSERT_PREFIX.match(text)
        if m:
            self._table = m.group(1)
            self._wanted = self.tables is None or self._table.lower() in self.tables

    def _collect(self, segment: str) -> None:
        if self._wanted and self.keep_text:
            self._parts.append(segment)

    def _advance(self, line: str, pos: int) -> Optional[int]:
        """Scan ``line`` from ``pos``; index just past a terminating ``;`` or None."""
        for m in _SCAN_TOKENS.finditer(line, pos):
            tok = m.group()
            if self._comment:
                if tok == "*/":
                    self._comment = False
                continue
            if self._quote is not None:
                if tok == self._quote:
                    self._quote = None
                continue
            if tok in ("'", '"', "`"):
                self._quote = tok
            elif tok == "/*":
                self._comment = True
            elif tok == "(":
                self._depth += 1
            elif tok == ")":
                self._depth -= 1
            elif tok == ";" and self._depth <= 0:
                return m.end()
        return None

    def _finish(self, line_number: int) -> Optional[RawStatement]:
        self.statements_seen += 1
        statement = None
        if self._wanted:
            statement = RawStatement(self._table, self._start_line, line_number, "".join(self._parts))
        self._reset()
        return statement

    def close(self) -> Optional[RawStatement]:
        """End of input: report a statement left open, if any."""
        if self._active and self._wanted:
            self.incomplete = RawStatement(
                self._table, self._start_line, self._start_line, "".join(self._parts), complete=False
            )
            logger.warning(
                f"Statement for `{self._table}` starting at line {self._start_line} is incomplete"
            )
        self._reset()
        self._comment = False
        return self.incomplete

    def scan(self, lines: Iterable[str], first_line: int = 1) -> Iterator[RawStatement]:
        """Yield complete statements; an unterminated tail is kept in ``incomplete``."""
        self.incomplete = None
        line_number = first_line - 1
        for line_number, line in enumerate(lines, start=first_line):
            for statement in self.feed(line, line_number):
                yield statement
        tail = self.close()
        if tail is not None:
            tail.end_line = line_number


def split_rows(values_text: str) -> List[str]:
    """Split ``(..),(..)`` into the inner text of each row group."""
    rows: List[str] = []
    depth = 0
    quote: Optional[str] = None
    start = 0
    last_end = 0
    for m in _ROW_TOKENS.finditer(values_text):
        tok = m.group()
        if quote is not None:
            if tok == quote:
                quote = None
            continue
        if tok in ("'", '"', "`"):
            quote = tok
        elif tok == "(":
            if depth == 0:
                separator = values_text[last_end:m.start()].strip()
                if separator != ("," if rows else ""):
                    raise DumpFormatError(f"Unexpected text between rows: {separator[:40]!r}")
                start = m.end()
            depth += 1
        elif tok == ")":
            depth -= 1
            if depth < 0:
                raise DumpFormatError("Unbalanced ')' in VALUES")
            if depth == 0:
                rows.append(values_text[start:m.start()])
                last_end = m.end()
    if quote is not None:
        raise DumpFormatError("Unterminated quoted value")
    if depth != 0:
        raise DumpFormatError("Unterminated row group")
    trailing = values_text[last_end:].strip()
    if trailing not in ("", ";"):
        raise DumpFormatError(f"Unexpected text after rows: {trailing[:40]!r}")
    return rows


def split_values(row_text: str) -> List[Scalar]:
    """Split one row's inner text at top-level commas into typed scalars."""
    tokens: List[str] = []
    depth = 0
    quote: Optional[str] = None
    start = 0
    for m in _VALUE_TOKENS.finditer(row_text):
        tok = m.group()
        if quote is not None:
            if tok == quote:
                quote = None
            continue
        if tok in ("'", '"', "`"):
            quote = tok
        elif tok == "(":
            depth += 1
        elif tok == ")":
            depth -= 1
        elif tok == "," and depth == 0:
            tokens.append(row_text[start:m.start()])
            start = m.end()
    if quote is not None:
        raise DumpFormatError("Unterminated quoted value")
    tokens.append(row_text[start:])
    return [parse_scalar(t) for t in tokens]


def _unescape(inner: str, quote: str) -> str:
    def repl(m: re.Match) -> str:
        if m.group(1) is not None:
            return _ESCAPES.get(m.group(1), m.group(1))
        return quote

    return re.sub(r"\\(.)|" + re.escape(quote * 2), repl, inner, flags=re.S)


def parse_scalar(token: str) -> Scalar:
    text = token.strip()
    if not text:
        raise DumpFormatError("Empty value")
    if text.upper() == "NULL":
        return None
    if text[0] in ("'", '"') and len(text) >= 2 and text[-1] == text[0]:
        return _unescape(text[1:-1], text[0])
    if _INT.match(text):
        return int(text)
    if _FLOAT.match(text):
        return float(text)
    return text


def parse_columns(columns_text: Optional[str]) -> Optional[List[str]]:
    if columns_text is None:
        return None
    names = [c.strip().strip("`\"") for c in columns_text.split(",")]
    return [n for n in names if n] or None


def parse_insert(text: str, on_error: Optional[Callable[[DumpFormatError], None]] = None) -> InsertStatement:
    """Parse a complete INSERT statement into typed rows.

    With ``on_error`` a malformed row is reported to it and skipped instead of
    failing the whole statement; a malformed header or row structure still
    raises :class:`DumpFormatError`.
    """
    m = _INSERT_HEADER.match(text)
    if not m:
        raise DumpFormatError(f"Not an INSERT ... VALUES statement: {text[:60]!r}")
    tail = text[m.end():].rstrip()
    if tail.endswith(";"):
        tail = tail[:-1]
    if not tail.lstrip().startswith("("):
        raise DumpFormatError(f"Missing VALUES rows for `{m.group('table')}`")
    rows: List[List[Scalar]] = []
    for row in split_rows(tail):
        try:
            rows.append(split_values(row))
        except DumpFormatError as e:
            if on_error is None:
                raise
            on_error(e)
    return InsertStatement(m.group("table"), parse_columns(m.group("cols")), rows)

