"""
Shared pytest fixtures for dbagent tests.

This module provides fixtures for:
- Pipeline configuration pointing at temporary directories
- Run history database with in-memory SQLite
- Fake producers (stream and file set) that need no database tools
- Mock fixtures for external services (S3)
- Temporary file fixtures
"""

import os
import sys
import dataclasses

import pytest
import boto3
from moto import mock_aws

from dbagent.config import Config, S3Settings
from dbagent.models import init_db
from dbagent.backup.sources import Producer, StreamPayload, FileSetPayload, ProducerError


class FakeStreamProducer(Producer):
    """Producer whose tool is a Python one-liner writing to stdout."""

    engine = 'fake'
    mode = 'dump'
    extension = 'dump.tar'

    def __init__(self, scope='testdb', script="import sys; sys.stdout.write('backup-bytes' * 100)"):
        super().__init__(scope)
        self.script = script
        self.finalized = None

    def produce(self, context):
        context.log(f"fake dump of {self.scope}")
        return StreamPayload([sys.executable, '-c', self.script], name='fakedump')

    def finalize(self, context, succeeded):
        self.finalized = succeeded


class FakeFileProducer(Producer):
    """Producer that writes files into the workspace, like pg_dump -Fd."""

    engine = 'fake'
    mode = 'snapshot'
    extension = 'snapshot.tar'

    def __init__(self, scope='cluster', files=None, required=True, fail=False):
        super().__init__(scope)
        self.files = files if files is not None else {'toc.dat': b'toc', 'data/1.dat': b'x' * 2048}
        self.required = required
        self.fail = fail
        self.finalized = None
        self.workspace_root = None

    def produce(self, context):
        self.workspace_root = context.workspace.root
        if self.fail:
            raise ProducerError("fake tool exited with status 1: boom")

        out_dir = context.workspace.mkdir('out')
        for name, content in self.files.items():
            path = os.path.join(out_dir, name)
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, 'wb') as f:
                f.write(content)

        payload = FileSetPayload(required=self.required)
        if self.files:
            payload.add_tree(out_dir)
        return payload

    def finalize(self, context, succeeded):
        self.finalized = succeeded


@pytest.fixture
def output_dir(tmp_path):
    """Artifact root directory."""
    path = tmp_path / 'backups'
    path.mkdir()
    return path


@pytest.fixture
def config(tmp_path, output_dir):
    """
    Pipeline configuration for tests.

    zstd, no encryption, no upload, no history, RETENTION_COUNT=3.
    """
    return Config(
        output_dir=str(output_dir),
        retention_count=3,
        compress='zstd',
        zstd_level=3,
        temp_dir=str(tmp_path / 'work'),
        history_db_url=None
    )


@pytest.fixture
def make_config(config):
    """Factory returning the test config with some fields replaced."""
    def _make(**overrides):
        return dataclasses.replace(config, **overrides)
    return _make


@pytest.fixture
def s3_settings():
    return S3Settings(
        enabled=True,
        bucket='test-bucket',
        prefix='backups/prod',
        access_key='test_access_key',
        secret_key='test_secret_key',
        region='us-east-1'
    )


@pytest.fixture(scope='function')
def db_session():
    """
    Run history session on a fresh in-memory database.

    Each test gets a fresh database.
    """
    Session = init_db('sqlite://')
    session = Session()
    yield session
    session.close()


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def stream_producer():
    return FakeStreamProducer()


@pytest.fixture
def file_producer():
    return FakeFileProducer()


@pytest.fixture
def fake_producers():
    """The fake producer classes, for tests that need custom ones."""
    return FakeStreamProducer, FakeFileProducer


@pytest.fixture
def temp_files(tmp_path):
    """
    Create temporary test files and directories.

    Creates:
    - data/test_file1.txt
    - data/test_file2.log
    - data/nested/test_file3.txt
    """
    data = tmp_path / 'data'
    data.mkdir()
    (data / 'test_file1.txt').write_text('Test content 1')
    (data / 'test_file2.log').write_text('Test log content')

    nested_dir = data / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.txt').write_text('Nested test content')

    return data
