"""
PostgreSQL adapter.

- dump: pg_dump directory format (-Fd, parallel -j) per database, archived
- basebackup: pg_basebackup tar streamed to stdout through the chain
"""

from dataclasses import dataclass, field
from typing import Dict, List, Mapping

from dbagent.config import Config, env_choice, env_int, env_required, env_str, default_parallelism
from dbagent.backup.sources import (
    Producer, ProducerError, FileSetPayload, StreamPayload, RunContext, run_tool
)
from .base import Engine


BACKUP_TYPES = ('dump', 'basebackup')

LIST_DATABASES_SQL = (
    "SELECT datname FROM pg_database WHERE datallowconn AND NOT datistemplate ORDER BY 1;"
)


@dataclass(frozen=True)
class PostgresSettings:
    host: str
    user: str
    port: int = 5432
    database: str = 'all'
    password: str = field(default='', repr=False)
    backup_type: str = 'dump'
    jobs: int = 2

    @property
    def env(self) -> Dict[str, str]:
        """Environment for libpq tools; an empty password leaves .pgpass/PGPASSFILE in charge."""
        if self.password:
            return {'PGPASSWORD': self.password}
        return {}

    def connection_args(self) -> List[str]:
        return ['-h', self.host, '-U', self.user, '-p', str(self.port)]

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> 'PostgresSettings':
        return cls(
            host=env_required(environ, 'PGHOST'),
            user=env_required(environ, 'PGUSER'),
            port=env_int(environ, 'PGPORT', 5432, minimum=1, maximum=65535),
            database=env_str(environ, 'PGDATABASE', 'all'),
            password=environ.get('PGPASSWORD', '') or '',
            backup_type=env_choice(environ, 'BACKUP_TYPE', BACKUP_TYPES, 'dump'),
            jobs=env_int(environ, 'JOBS', default_parallelism(), minimum=1),
        )


class PgDumpProducer(Producer):
    """Logical dump of one database in directory format."""

    engine = 'postgres'
    mode = 'dump'
    extension = 'dump.tar'
    required_tools = ('pg_dump',)

    def __init__(self, settings: PostgresSettings, database: str, pg_dump: str = 'pg_dump'):
        super().__init__(database)
        self.settings = settings
        self.database = database
        self.pg_dump = pg_dump

    def build_command(self, out_dir: str) -> List[str]:
        return [self.pg_dump] + self.settings.connection_args() + [
            '-d', self.database,
            '-Fd',
            '-j', str(self.settings.jobs),
            '-f', out_dir,
        ]

    def produce(self, context: RunContext) -> FileSetPayload:
        # pg_dump -Fd wants a directory that does not exist yet
        out_dir = context.workspace.path('dump')
        context.log(f"Logical dump (directory format, jobs={self.settings.jobs}): db={self.database}")

        self.run(
            self.build_command(out_dir),
            env=self.settings.env,
            secrets=[self.settings.password],
            what=f"pg_dump of {self.database}"
        )

        payload = FileSetPayload()
        payload.add_tree(out_dir)
        return payload


class PgBaseBackupProducer(Producer):
    """Physical base backup of the whole cluster as a tar stream."""

    engine = 'postgres'
    mode = 'basebackup'
    extension = 'basebackup.tar'
    required_tools = ('pg_basebackup',)

    def __init__(self, settings: PostgresSettings, pg_basebackup: str = 'pg_basebackup'):
        super().__init__(f"{settings.host}_{settings.port}")
        self.settings = settings
        self.pg_basebackup = pg_basebackup

    def build_command(self) -> List[str]:
        # WAL streaming is not possible when the tar goes to stdout, so fetch it at the end
        return [self.pg_basebackup] + self.settings.connection_args() + [
            '-D', '-',
            '-Ft',
            '--wal-method=fetch',
        ]

    def produce(self, context: RunContext) -> StreamPayload:
        context.log(f"Physical base backup of {self.settings.host}:{self.settings.port}")
        return StreamPayload(
            self.build_command(),
            env=self.settings.env,
            secrets=[self.settings.password],
            name='pg_basebackup'
        )


class PostgresEngine(Engine):
    name = 'postgres'

    def tool_names(self):
        if self.settings.backup_type == 'basebackup':
            return ['psql', 'pg_basebackup']
        return ['psql', 'pg_dump']

    def _psql(self, sql: str, database: str = 'postgres') -> str:
        argv = [self.tool('psql')] + self.settings.connection_args() + ['-d', database, '-Atc', sql]
        return run_tool(
            argv,
            env=self.settings.env,
            secrets=[self.settings.password],
            capture_stdout=True,
            what='psql'
        )

    def preflight(self):
        try:
            self._psql('SELECT 1')
        except ProducerError as e:
            raise ProducerError(
                f"Cannot connect to PostgreSQL on {self.settings.host}:{self.settings.port}: {e}"
            )

    def list_databases(self) -> List[str]:
        output = self._psql(LIST_DATABASES_SQL)
        return [line.strip() for line in output.splitlines() if line.strip()]

    def producers(self) -> List[Producer]:
        if self.settings.backup_type == 'basebackup':
            return [PgBaseBackupProducer(self.settings, pg_basebackup=self.tool('pg_basebackup'))]

        if self.settings.database.lower() == 'all':
            databases = self.list_databases()
            if not databases:
                raise ProducerError("No connectable databases found")
        else:
            databases = [self.settings.database]

        pg_dump = self.tool('pg_dump')
        return [PgDumpProducer(self.settings, db, pg_dump=pg_dump) for db in databases]

    def describe(self) -> str:
        s = self.settings
        return f"postgres type={s.backup_type} host={s.host} port={s.port} db={s.database}"


def load(config: Config, environ: Mapping[str, str]) -> PostgresEngine:
    return PostgresEngine(PostgresSettings.from_env(environ), config)
