"""
Unit tests for artifact naming (dbagent/backup/naming.py).
"""

import os
from datetime import datetime, timezone

import pytest
from freezegun import freeze_time

from dbagent.backup.naming import (
    build_artifact_path,
    compression_extension,
    is_artifact_file,
    parse_artifact_timestamp,
    sanitize_scope,
    utc_timestamp
)


class TestTimestamps:
    """Test timestamp formatting and parsing."""

    @freeze_time('2024-01-05 03:00:00')
    def test_utc_timestamp_now(self):
        """Test the current time is formatted without colons."""
        assert utc_timestamp() == '2024-01-05T03-00-00Z'

    def test_utc_timestamp_converts_to_utc(self):
        """Test aware datetimes are converted to UTC."""
        from datetime import timedelta
        moment = datetime(2024, 1, 5, 5, 30, 0, tzinfo=timezone(timedelta(hours=2)))

        assert utc_timestamp(moment) == '2024-01-05T03-30-00Z'

    def test_utc_timestamp_naive_is_utc(self):
        """Test naive datetimes are taken as UTC."""
        assert utc_timestamp(datetime(2023, 12, 31, 23, 59, 59)) == '2023-12-31T23-59-59Z'

    def test_parse_artifact_timestamp(self):
        """Test the timestamp is recovered from a file name."""
        parsed = parse_artifact_timestamp('mydb_2024-01-05T03-00-00Z.dump.tar.zst')

        assert parsed == datetime(2024, 1, 5, 3, 0, 0, tzinfo=timezone.utc)

    def test_parse_artifact_timestamp_no_match(self):
        """Test names without a timestamp give None."""
        assert parse_artifact_timestamp('random_file.txt') is None

    def test_lexical_order_is_chronological(self):
        """Test sorting names sorts by creation time."""
        stamps = [
            utc_timestamp(datetime(2024, 1, 5, 3, 0, 0)),
            utc_timestamp(datetime(2023, 12, 31, 23, 59, 59)),
            utc_timestamp(datetime(2024, 1, 5, 2, 59, 59)),
        ]

        assert sorted(stamps) == [stamps[1], stamps[2], stamps[0]]


class TestSanitizeScope:
    """Test scope sanitization."""

    def test_host_port(self):
        assert sanitize_scope('db1:27017') == 'db1_27017'

    def test_host_list(self):
        assert sanitize_scope('db1.example.com:27017,db2:27017') == 'db1_example_com_27017_db2_27017'

    def test_keeps_safe_characters(self):
        assert sanitize_scope('my-db_01') == 'my-db_01'

    def test_slashes_cannot_escape_directory(self):
        """Test path separators never survive."""
        assert '/' not in sanitize_scope('../../etc')

    @pytest.mark.parametrize('raw', ['', '   ', ':::'])
    def test_empty_scope_rejected(self, raw):
        with pytest.raises(ValueError):
            sanitize_scope(raw)


class TestBuildArtifactPath:
    """Test artifact path construction."""

    def test_layout(self, tmp_path):
        """Test {output}/{mode}/{scope}/{scope}_{ts}.{ext}.{cext}."""
        name = build_artifact_path(
            str(tmp_path), 'dump', 'mydb', 'dump.tar', 'zstd', timestamp='2024-01-05T03-00-00Z'
        )

        assert name.filename == 'mydb_2024-01-05T03-00-00Z.dump.tar.zst'
        assert name.directory == os.path.join(str(tmp_path), 'dump', 'mydb')
        assert name.path == os.path.join(name.directory, name.filename)
        assert name.sidecar_path == name.path + '.sha256'
        assert name.staging_path == name.path + '.part'

    @pytest.mark.parametrize('compression,ext', [('zstd', 'zst'), ('gzip', 'gz'), ('none', 'bin')])
    def test_compression_extensions(self, tmp_path, compression, ext):
        name = build_artifact_path(str(tmp_path), 'dump', 'db', 'dump.tar', compression, timestamp='2024-01-05T03-00-00Z')

        assert name.filename.endswith(f'.dump.tar.{ext}')
        assert compression_extension(compression) == ext

    def test_invalid_compression(self, tmp_path):
        with pytest.raises(ValueError):
            build_artifact_path(str(tmp_path), 'dump', 'db', 'dump.tar', 'bzip2')

    def test_scope_is_sanitized(self, tmp_path):
        """Test unsafe scopes are sanitized in both directory and file name."""
        name = build_artifact_path(
            str(tmp_path), 'basebackup', 'pg.local:5432', 'basebackup.tar', 'gzip',
            timestamp='2024-01-05T03-00-00Z'
        )

        assert name.scope == 'pg_local_5432'
        assert name.directory.endswith(os.path.join('basebackup', 'pg_local_5432'))
        assert name.filename.startswith('pg_local_5432_')

    @freeze_time('2024-02-29 12:34:56')
    def test_default_timestamp_is_now(self, tmp_path):
        name = build_artifact_path(str(tmp_path), 'dump', 'db', 'dump.tar', 'zstd')

        assert name.timestamp == '2024-02-29T12-34-56Z'

    def test_retention_pattern(self, tmp_path):
        """Test the pattern matches artifacts of every compression kind."""
        import fnmatch
        name = build_artifact_path(str(tmp_path), 'dump', 'mydb', 'dump.tar', 'zstd', timestamp='2024-01-05T03-00-00Z')

        assert name.retention_pattern == 'mydb_*.dump.tar.*'
        assert fnmatch.fnmatch('mydb_2023-01-01T00-00-00Z.dump.tar.gz', name.retention_pattern)
        assert not fnmatch.fnmatch('otherdb_2023-01-01T00-00-00Z.dump.tar.gz', name.retention_pattern)


class TestIsArtifactFile:
    """Test sidecar and staging detection."""

    def test_artifact(self):
        assert is_artifact_file('db_2024-01-05T03-00-00Z.dump.tar.zst') is True

    def test_sidecar(self):
        assert is_artifact_file('db_2024-01-05T03-00-00Z.dump.tar.zst.sha256') is False

    def test_staging(self):
        assert is_artifact_file('db_2024-01-05T03-00-00Z.dump.tar.zst.part') is False
