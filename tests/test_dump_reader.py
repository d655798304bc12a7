"""Tests for the streaming dump reader."""
import gzip

import pytest
from statlake_core.dump_reader import SqlDumpStreamReader, is_gzipped
from statlake_core.exceptions import FileProcessingError

LINES = ['-- header', 'INSERT INTO `t` VALUES', "(1,'a'),", "(2,'b');", '-- end']


@pytest.fixture
def plain_dump(tmp_path):
    path = tmp_path / 'dump.sql'
    path.write_bytes(('\r\n'.join(LINES) + '\r\n').encode('utf-8'))
    return path


@pytest.fixture
def gz_dump(tmp_path):
    path = tmp_path / 'dump.sql.gz'
    with gzip.open(path, 'wt', encoding='utf-8') as f:
        f.write('\n'.join(LINES) + '\n')
    return path


class TestSqlDumpStreamReader:
    """Line iteration over plain and gzip dumps."""

    def test_plain_lines_without_newlines(self, plain_dump):
        with SqlDumpStreamReader(plain_dump) as reader:
            assert list(reader) == LINES
            assert reader.line_number == len(LINES)
            assert reader.compressed is False

    def test_gzip_detected_by_magic_bytes(self, gz_dump):
        assert is_gzipped(gz_dump)
        with SqlDumpStreamReader(gz_dump) as reader:
            assert reader.compressed is True
            assert list(reader) == LINES

    def test_read_line_returns_none_at_end(self, plain_dump):
        reader = SqlDumpStreamReader(plain_dump)
        try:
            for _ in LINES:
                assert reader.read_line() is not None
            assert reader.read_line() is None
        finally:
            reader.close()

    def test_iter_range(self, gz_dump):
        with SqlDumpStreamReader(gz_dump) as reader:
            assert list(reader.iter_range(2, 3)) == LINES[1:3]
            assert list(reader.iter_range(4)) == LINES[3:]

    def test_iter_range_backwards_reopens(self, plain_dump):
        with SqlDumpStreamReader(plain_dump) as reader:
            assert list(reader.iter_range(4, 5)) == LINES[3:5]
            assert list(reader.iter_range(1, 1)) == LINES[:1]
            assert reader.line_number == 1

    def test_iter_range_rejects_zero(self, plain_dump):
        with SqlDumpStreamReader(plain_dump) as reader:
            with pytest.raises(ValueError):
                list(reader.iter_range(0))

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileProcessingError):
            SqlDumpStreamReader(tmp_path / 'missing.sql').open()

    def test_invalid_utf8_replaced(self, tmp_path):
        path = tmp_path / 'latin.sql'
        path.write_bytes(b"INSERT INTO t VALUES ('caf\xe9');\n")
        with SqlDumpStreamReader(path) as reader:
            assert reader.read_line() == "INSERT INTO t VALUES ('caf�');"
