"""
Unit tests for the command line interface (dbagent/cli.py).
"""

import os
import signal
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from dbagent.cli import app
from dbagent.models import BackupRun, open_session
from dbagent.backup.checksum import write_sidecar
from dbagent.backup.compression import ChainOptions, write_artifact
from dbagent.backup.sources import FileSetPayload, ProducerError
from dbagent.backup.workspace import RunInterrupted
from dbagent.utils.commands import ToolNotFoundError


runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_env(monkeypatch, tmp_path):
    """Clean pipeline environment; logging setup is left to pytest."""
    for key in ('ENCRYPT', 'ENCRYPT_PASSWORD', 'S3_UPLOAD', 'S3_BUCKET', 'SCHEDULE', 'RETENTION_COUNT', 'COMPRESS',
                'PGHOST', 'PGUSER', 'MONGODB_URI'):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv('OUTPUT_DIR', str(tmp_path / 'backups'))
    monkeypatch.setenv('TEMP_DIR', str(tmp_path / 'work'))
    monkeypatch.setenv('HISTORY_DB_URL', 'none')
    with patch('dbagent.cli.configure_logging'):
        yield


def fake_engine(producers):
    engine = MagicMock()
    engine.name = 'fake'
    engine.describe.return_value = 'fake'
    engine.producers.return_value = producers
    return engine


class TestBackupCommand:
    """Test `dbagent backup`."""

    def test_unknown_engine(self):
        result = runner.invoke(app, ['backup', 'mysql'])

        assert result.exit_code == 2
        assert 'Unknown engine' in result.output

    def test_invalid_config(self, monkeypatch):
        monkeypatch.setenv('ENCRYPT', 'true')

        result = runner.invoke(app, ['backup', 'mongo'])

        assert result.exit_code == 2
        assert 'ENCRYPT_PASSWORD is empty' in result.output

    def test_missing_engine_settings(self):
        result = runner.invoke(app, ['backup', 'postgres'])

        assert result.exit_code == 2
        assert 'PGHOST is required' in result.output

    def test_missing_tool(self):
        engine = fake_engine([])
        engine.check_tools.side_effect = ToolNotFoundError('Missing required command: nodetool')

        with patch('dbagent.cli.load_engine', return_value=engine):
            result = runner.invoke(app, ['backup', 'cassandra'])

        assert result.exit_code == 2
        assert 'Missing required command: nodetool' in result.output

    def test_success(self, tmp_path, fake_producers):
        stream_cls, _ = fake_producers

        with patch('dbagent.cli.load_engine', return_value=fake_engine([stream_cls(scope='app')])):
            result = runner.invoke(app, ['backup', 'postgres'])

        assert result.exit_code == 0, result.output
        assert 'OK' in result.output
        assert len(os.listdir(tmp_path / 'backups' / 'dump' / 'app')) == 2

    def test_partial_failure_exits_1(self, fake_producers):
        stream_cls, file_cls = fake_producers
        engine = fake_engine([file_cls(scope='bad', fail=True), stream_cls(scope='good')])

        with patch('dbagent.cli.load_engine', return_value=engine):
            result = runner.invoke(app, ['backup', 'postgres'])

        assert result.exit_code == 1
        assert 'FAILED' in result.output
        assert 'OK' in result.output

    def test_preflight_failure_exits_1(self):
        engine = fake_engine([])
        engine.preflight.side_effect = ProducerError('Cannot connect to PostgreSQL on db:5432')

        with patch('dbagent.cli.load_engine', return_value=engine):
            result = runner.invoke(app, ['backup', 'postgres'])

        assert result.exit_code == 1

    def test_history_recorded(self, monkeypatch, tmp_path, fake_producers):
        url = f'sqlite:///{tmp_path / "history.db"}'
        monkeypatch.setenv('HISTORY_DB_URL', url)
        stream_cls, _ = fake_producers

        with patch('dbagent.cli.load_engine', return_value=fake_engine([stream_cls()])):
            runner.invoke(app, ['backup', 'mongo'])

        session = open_session(url)
        assert [r.status for r in session.query(BackupRun).all()] == ['success']
        session.close()

    def test_sigterm_exit_code(self):
        with patch('dbagent.cli.load_engine', return_value=fake_engine([])):
            with patch('dbagent.cli._backup_once', side_effect=RunInterrupted(signal.SIGTERM)):
                result = runner.invoke(app, ['backup', 'mongo'])

        assert result.exit_code == 128 + signal.SIGTERM

    def test_keyboard_interrupt_exit_code(self):
        with patch('dbagent.cli.load_engine', return_value=fake_engine([])):
            with patch('dbagent.cli._backup_once', side_effect=KeyboardInterrupt()):
                result = runner.invoke(app, ['backup', 'mongo'])

        assert result.exit_code == 130

    def test_invalid_schedule(self):
        with patch('dbagent.cli.load_engine', return_value=fake_engine([])):
            result = runner.invoke(app, ['backup', 'mongo', '--schedule', 'every night'])

        assert result.exit_code == 2
        assert 'Invalid schedule' in result.output

    def test_scheduled_mode(self, monkeypatch):
        """Test SCHEDULE starts the scheduler instead of a single run."""
        monkeypatch.setenv('SCHEDULE', '0 3 * * *')
        engine = fake_engine([])

        with patch('dbagent.cli.load_engine', return_value=engine):
            with patch('dbagent.cli.run_scheduled') as mock_run_scheduled:
                result = runner.invoke(app, ['backup', 'mongo'])

        assert result.exit_code == 0
        args, kwargs = mock_run_scheduled.call_args
        assert args[1] == '0 3 * * *'
        assert kwargs['name'] == 'fake backup'
        engine.check_tools.assert_called_once()
        engine.producers.assert_not_called()


@pytest.fixture
def artifact(tmp_path):
    source = tmp_path / 'src'
    source.mkdir()
    (source / 'toc.dat').write_bytes(b'toc')
    path = tmp_path / 'out' / 'app_2024-01-05T03-00-00Z.dump.tar.zst'
    payload = FileSetPayload()
    payload.add_tree(str(source))
    write_artifact(payload, str(path), ChainOptions('zstd', 3, passphrase='s3cret'))
    write_sidecar(str(path))
    return path


class TestVerifyCommand:
    """Test `dbagent verify`."""

    def test_ok(self, artifact):
        result = runner.invoke(app, ['verify', str(artifact)])

        assert result.exit_code == 0
        assert 'OK' in result.output

    def test_mismatch(self, artifact):
        with open(artifact, 'ab') as f:
            f.write(b'corruption')

        result = runner.invoke(app, ['verify', str(artifact)])

        assert result.exit_code == 1
        assert 'Checksum mismatch' in result.output

    def test_missing_sidecar(self, artifact):
        os.remove(str(artifact) + '.sha256')

        result = runner.invoke(app, ['verify', str(artifact)])

        assert result.exit_code == 2


class TestPruneCommand:
    """Test `dbagent prune`."""

    def _make(self, directory, count):
        directory.mkdir(parents=True, exist_ok=True)
        for day in range(1, count + 1):
            path = directory / f'app_2024-01-0{day}T03-00-00Z.dump.tar.zst'
            path.write_bytes(b'x')
            os.utime(path, (1700000000 + day, 1700000000 + day))

    def test_keep(self, tmp_path):
        directory = tmp_path / 'dump' / 'app'
        self._make(directory, 4)

        result = runner.invoke(app, ['prune', str(directory), 'app_*.dump.tar.*', '--keep', '1'])

        assert result.exit_code == 0
        assert '3 artifacts deleted' in result.output
        assert os.listdir(directory) == ['app_2024-01-04T03-00-00Z.dump.tar.zst']

    def test_default_from_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv('RETENTION_COUNT', '2')
        directory = tmp_path / 'dump' / 'app'
        self._make(directory, 4)

        result = runner.invoke(app, ['prune', str(directory), 'app_*.dump.tar.*'])

        assert result.exit_code == 0
        assert len(os.listdir(directory)) == 2

    def test_invalid_keep(self, tmp_path):
        result = runner.invoke(app, ['prune', str(tmp_path), 'app_*', '--keep', '0'])

        assert result.exit_code == 2


class TestDecryptCommand:
    """Test `dbagent decrypt`."""

    def test_decrypt(self, monkeypatch, artifact, tmp_path):
        monkeypatch.setenv('ENCRYPT_PASSWORD', 's3cret')
        output = tmp_path / 'plain.tar.zst'

        result = runner.invoke(app, ['decrypt', str(artifact), str(output)])

        assert result.exit_code == 0
        assert output.read_bytes()[:4] == b'\x28\xb5\x2f\xfd'

    def test_without_password(self, artifact, tmp_path):
        result = runner.invoke(app, ['decrypt', str(artifact), str(tmp_path / 'plain')])

        assert result.exit_code == 2
        assert 'ENCRYPT_PASSWORD is empty' in result.output

    def test_missing_file(self, monkeypatch, tmp_path):
        monkeypatch.setenv('ENCRYPT_PASSWORD', 's3cret')

        result = runner.invoke(app, ['decrypt', str(tmp_path / 'nope'), str(tmp_path / 'plain')])

        assert result.exit_code == 1


class TestHistoryCommand:
    """Test `dbagent history`."""

    def test_disabled(self):
        result = runner.invoke(app, ['history'])

        assert result.exit_code == 2

    def test_empty(self, monkeypatch, tmp_path):
        monkeypatch.setenv('HISTORY_DB_URL', f'sqlite:///{tmp_path / "history.db"}')

        result = runner.invoke(app, ['history'])

        assert result.exit_code == 0
        assert 'No backup runs recorded' in result.output

    def test_lists_runs(self, monkeypatch, tmp_path):
        url = f'sqlite:///{tmp_path / "history.db"}'
        monkeypatch.setenv('HISTORY_DB_URL', url)
        session = open_session(url)
        session.add(BackupRun(
            engine='postgres', mode='dump', scope='app', status='failed',
            started_at=datetime(2024, 1, 5, 3, 0, 0), error_message='boom'
        ))
        session.add(BackupRun(
            engine='mongo', mode='dump', scope='cluster', status='success',
            started_at=datetime(2024, 1, 6, 3, 0, 0)
        ))
        session.commit()
        session.close()

        result = runner.invoke(app, ['history', '--engine', 'postgres'])

        assert result.exit_code == 0
        assert 'Backup Runs' in result.output
        assert 'app' in result.output
        assert 'cluster' not in result.output
