"""
Unit tests for the producer interface (dbagent/backup/sources.py).
"""

import sys
from unittest.mock import MagicMock, patch

import pytest

from dbagent.backup.sources import (
    FileSetPayload,
    Producer,
    ProducerError,
    RunContext,
    StreamPayload,
    run_tool
)
from dbagent.utils.commands import CommandError


class TestFileSetPayload:
    """Test FileSetPayload."""

    def test_default_arcname_strips_root(self):
        payload = FileSetPayload()
        payload.add('/var/lib/cassandra/data/ks/t1/snapshots/snap/a.db')

        assert payload.members == [
            ('/var/lib/cassandra/data/ks/t1/snapshots/snap/a.db', 'var/lib/cassandra/data/ks/t1/snapshots/snap/a.db')
        ]

    def test_explicit_arcname(self):
        payload = FileSetPayload([('/tmp/ws/schema.cql', 'schema.cql')])

        assert payload.members == [('/tmp/ws/schema.cql', 'schema.cql')]
        assert len(payload) == 1

    def test_add_tree_is_relative_and_sorted(self, temp_files):
        """Test add_tree behaves like `tar -C dir .`."""
        payload = FileSetPayload()
        payload.add_tree(str(temp_files))

        assert [arcname for _, arcname in payload.members] == ['nested', 'test_file1.txt', 'test_file2.log']

    def test_add_tree_missing_directory(self, tmp_path):
        with pytest.raises(ProducerError, match='Output directory not found'):
            FileSetPayload().add_tree(str(tmp_path / 'missing'))

    def test_empty(self):
        payload = FileSetPayload(required=False)

        assert payload.is_empty
        assert payload.required is False


class TestStreamPayload:
    """Test StreamPayload."""

    def test_defaults(self):
        payload = StreamPayload(['/usr/bin/pg_basebackup', '-D', '-'], secrets=['', 'pw'])

        assert payload.name == 'pg_basebackup'
        assert payload.secrets == ['pw']
        assert payload.is_empty is False

    def test_requires_command(self):
        with pytest.raises(ValueError):
            StreamPayload([])


class TestRunTool:
    """Test run_tool."""

    def test_failure_becomes_producer_error(self):
        with pytest.raises(ProducerError) as exc_info:
            run_tool([sys.executable, '-c', "import sys; sys.stderr.write('bad things'); sys.exit(3)"], what='nodetool snapshot')

        message = str(exc_info.value)
        assert message.startswith('nodetool snapshot failed:')
        assert 'exited with status 3' in message
        assert 'bad things' in message

    def test_label_defaults_to_tool_name(self):
        with patch('dbagent.backup.sources.run_command', side_effect=CommandError(['/opt/bin/expdp'], 1)):
            with pytest.raises(ProducerError, match='^expdp failed'):
                run_tool(['/opt/bin/expdp', 'x'])

    def test_passes_arguments(self):
        with patch('dbagent.backup.sources.run_command', return_value='out') as mock_run:
            assert run_tool(['sqlplus', '-s', 'c'], env={'A': '1'}, input='exit;', secrets=['c'], capture_stdout=True) == 'out'

        mock_run.assert_called_once_with(
            ['sqlplus', '-s', 'c'], env={'A': '1'}, input='exit;', secrets=['c'], capture_stdout=True
        )


class TestProducer:
    """Test Producer base behaviour."""

    def test_produce_not_implemented(self):
        with pytest.raises(NotImplementedError):
            Producer('x').produce(MagicMock())

    def test_best_effort_logs_warning(self):
        messages = []
        context = RunContext(MagicMock(), '2024-01-01T00-00-00Z', log=messages.append)

        def fail():
            raise ProducerError('clearsnapshot failed')

        Producer('x').best_effort(context, fail, 'nodetool clearsnapshot')

        assert messages == ['Warning: nodetool clearsnapshot failed: clearsnapshot failed']

    def test_describe(self, stream_producer):
        assert stream_producer.describe() == 'fake/dump scope=testdb'
