"""
Cassandra adapter (nodetool + cqlsh).

snapshot:
    flush -> snapshot -t snap_<ts> -> archive */snapshots/<tag>/* (+ schema.cql)
    -> clearsnapshot (always attempted)
incremental:
    enablebackup -> archive */backups/* (+ schema.cql) -> remove archived hard links
"""

import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional, Sequence, Tuple

from dbagent.config import Config, env_bool, env_choice, env_int, env_str, split_csv
from dbagent.backup.sources import Producer, ProducerError, FileSetPayload, RunContext
from .base import Engine


BACKUP_MODES = ('snapshot', 'incremental')

SYSTEM_KEYSPACES = frozenset({
    'system',
    'system_schema',
    'system_traces',
    'system_distributed',
    'system_auth',
})


@dataclass(frozen=True)
class CassandraSettings:
    host: str = '127.0.0.1'
    cql_port: int = 9042
    cql_user: str = ''
    cql_pass: str = field(default='', repr=False)
    jmx_host: str = '127.0.0.1'
    jmx_port: int = 7199
    jmx_user: str = ''
    jmx_pass: str = field(default='', repr=False)
    data_dirs: Tuple[str, ...] = ('/var/lib/cassandra/data',)
    mode: str = 'snapshot'
    flush: bool = True
    keyspaces: Tuple[str, ...] = ()  # empty: all non-system keyspaces
    schema: bool = True
    incr_clear: bool = True
    scope: str = 'cassandra'
    cassandra_home: str = ''

    @property
    def all_keyspaces(self) -> bool:
        return not self.keyspaces

    @property
    def user_keyspaces(self) -> List[str]:
        return [ks for ks in self.keyspaces if ks not in SYSTEM_KEYSPACES]

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> 'CassandraSettings':
        keyspaces_value = env_str(environ, 'KEYSPACES', 'all')
        keyspaces: Tuple[str, ...] = ()
        if keyspaces_value.lower() != 'all':
            keyspaces = tuple(split_csv(keyspaces_value))

        return cls(
            host=env_str(environ, 'CASSANDRA_HOST', '127.0.0.1'),
            cql_port=env_int(environ, 'CQL_PORT', 9042, minimum=1, maximum=65535),
            cql_user=env_str(environ, 'CQL_USER'),
            cql_pass=environ.get('CQL_PASS', '') or '',
            jmx_host=env_str(environ, 'JMX_HOST', '127.0.0.1'),
            jmx_port=env_int(environ, 'JMX_PORT', 7199, minimum=1, maximum=65535),
            jmx_user=env_str(environ, 'JMX_USER'),
            jmx_pass=environ.get('JMX_PASS', '') or '',
            data_dirs=tuple(split_csv(env_str(environ, 'DATA_DIRS', '/var/lib/cassandra/data'))),
            mode=env_choice(environ, 'BACKUP_MODE', BACKUP_MODES, 'snapshot'),
            flush=env_bool(environ, 'FLUSH_BEFORE_SNAPSHOT', True),
            keyspaces=keyspaces,
            schema=env_bool(environ, 'SNAPSHOT_SCHEMA', True),
            incr_clear=env_bool(environ, 'INCR_CLEAR', True),
            scope=env_str(environ, 'CASSANDRA_SCOPE', 'cassandra'),
            cassandra_home=env_str(environ, 'CASSANDRA_HOME'),
        )


def collect_files(data_dirs: Sequence[str], keyspaces: Sequence[str], marker: Sequence[str]) -> List[str]:
    """
    Find SSTable files below a marker directory in each data directory.

    Layout: <data_dir>/<keyspace>/<table>/<marker...>/<file>

    Args:
        data_dirs: Cassandra data directories (missing ones are skipped)
        keyspaces: Keyspaces to search; empty means every non-system keyspace
        marker: Path components below the table directory,
            e.g. ('snapshots', 'snap_...') or ('backups',)

    Returns:
        Sorted absolute file paths
    """
    found = []

    for data_dir in data_dirs:
        if not os.path.isdir(data_dir):
            continue

        if keyspaces:
            roots = [ks for ks in keyspaces if ks not in SYSTEM_KEYSPACES]
        else:
            roots = [
                entry.name for entry in os.scandir(data_dir)
                if entry.is_dir() and entry.name not in SYSTEM_KEYSPACES
            ]

        for keyspace in roots:
            root = os.path.join(data_dir, keyspace)
            if not os.path.isdir(root):
                continue
            for table in os.scandir(root):
                if not table.is_dir():
                    continue
                # Marker is relative to the table directory.
                marker_dir = os.path.join(table.path, *marker)
                if not os.path.isdir(marker_dir):
                    continue
                for dirpath, _, filenames in os.walk(marker_dir):
                    for name in filenames:
                        found.append(os.path.abspath(os.path.join(dirpath, name)))

    return sorted(found)


class _CassandraProducer(Producer):
    engine = 'cassandra'

    def __init__(self, settings: CassandraSettings, nodetool: str = 'nodetool', cqlsh: str = 'cqlsh'):
        super().__init__(settings.scope)
        self.settings = settings
        self.nodetool = nodetool
        self.cqlsh = cqlsh

    def nodetool_command(self, *args: str) -> List[str]:
        s = self.settings
        argv = [self.nodetool]
        if s.jmx_host:
            argv += ['-h', s.jmx_host]
        if s.jmx_port:
            argv += ['-p', str(s.jmx_port)]
        if s.jmx_user:
            argv += ['-u', s.jmx_user]
        if s.jmx_pass:
            argv += ['-pw', s.jmx_pass]
        return argv + list(args)

    def nodetool_run(self, *args: str):
        self.run(
            self.nodetool_command(*args),
            secrets=[self.settings.jmx_pass],
            what=f"nodetool {args[0]}"
        )

    def schema_command(self) -> List[str]:
        s = self.settings
        argv = [self.cqlsh, s.host, str(s.cql_port)]
        if s.cql_user:
            argv += ['-u', s.cql_user]
        if s.cql_pass:
            argv += ['-p', s.cql_pass]
        return argv + ['-e', 'DESCRIBE FULL SCHEMA']

    def dump_schema(self, context: RunContext) -> str:
        """Write `DESCRIBE FULL SCHEMA` into the workspace and return its path."""
        context.log("Dumping schema")
        output = self.run(
            self.schema_command(),
            secrets=[self.settings.cql_pass],
            capture_stdout=True,
            what='schema dump'
        )
        path = context.workspace.path('schema.cql')
        with open(path, 'w', encoding='utf-8') as f:
            f.write(output)
        return path


class CassandraSnapshotProducer(_CassandraProducer):
    """Full snapshot of the selected keyspaces."""

    mode = 'snapshot'
    extension = 'snapshot.tar'
    required_tools = ('nodetool', 'cqlsh')

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.tag: Optional[str] = None

    def produce(self, context: RunContext) -> FileSetPayload:
        s = self.settings
        tag = f"snap_{context.timestamp}"
        context.log(f"Snapshot tag: {tag}")

        if s.flush:
            if s.all_keyspaces:
                context.log("Flushing all keyspaces")
                self.nodetool_run('flush')
            else:
                for ks in s.user_keyspaces:
                    context.log(f"Flushing keyspace: {ks}")
                    self.nodetool_run('flush', ks)

        # From here on finalize() has a snapshot to clear
        self.tag = tag
        if s.all_keyspaces:
            context.log(f"Taking snapshot (all keyspaces) tag={tag}")
            self.nodetool_run('snapshot', '-t', tag)
        else:
            for ks in s.user_keyspaces:
                context.log(f"Taking snapshot for keyspace={ks} tag={tag}")
                self.nodetool_run('snapshot', '-t', tag, ks)

        files = collect_files(s.data_dirs, s.keyspaces, ('snapshots', tag))
        if not files:
            raise ProducerError(f"No snapshot files found for tag={tag}. Check DATA_DIRS and keyspaces.")
        context.log(f"Collected {len(files)} snapshot files")

        payload = FileSetPayload()
        for path in files:
            payload.add(path)

        if s.schema:
            payload.add(self.dump_schema(context), 'schema.cql')

        return payload

    def finalize(self, context: RunContext, succeeded: bool):
        if self.tag is None:
            return
        tag, self.tag = self.tag, None
        context.log(f"Clearing snapshot tag={tag}")
        self.best_effort(context, lambda: self.nodetool_run('clearsnapshot', '-t', tag), 'clearsnapshot')


class CassandraIncrementalProducer(_CassandraProducer):
    """Incremental hard links collected since the last run."""

    mode = 'incremental'
    extension = 'incremental.tar'
    required_tools = ('nodetool', 'cqlsh')

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.archived: List[str] = []

    def produce(self, context: RunContext) -> FileSetPayload:
        s = self.settings
        self.archived = []

        context.log("Ensuring incremental hard links are enabled")
        self.best_effort(
            context,
            lambda: self.nodetool_run('enablebackup'),
            'enablebackup (maybe already enabled)'
        )

        files = collect_files(s.data_dirs, s.keyspaces, ('backups',))
        if not files:
            context.log("No incremental files found. Nothing to do.")
            return FileSetPayload(required=False)
        context.log(f"Collected {len(files)} incremental files")

        payload = FileSetPayload()
        for path in files:
            payload.add(path)

        if s.schema:
            try:
                schema_path = self.dump_schema(context)
            except ProducerError as e:
                context.log(f"Warning: schema dump failed (continuing): {e}")
            else:
                if os.path.getsize(schema_path) > 0:
                    payload.add(schema_path, 'schema.cql')

        self.archived = files
        return payload

    def finalize(self, context: RunContext, succeeded: bool):
        archived, self.archived = self.archived, []
        if not (succeeded and self.settings.incr_clear and archived):
            return

        context.log("Clearing incremental hard links that were archived")
        failed = 0
        for path in archived:
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
            except OSError:
                failed += 1
        if failed:
            context.log(f"Warning: failed to clear {failed} incremental files")


class CassandraEngine(Engine):
    name = 'cassandra'

    def tool_names(self):
        return ['nodetool', 'cqlsh']

    def tool_dirs(self):
        if self.settings.cassandra_home:
            return [os.path.join(self.settings.cassandra_home, 'bin')]
        return []

    def producers(self) -> List[Producer]:
        kwargs = dict(nodetool=self.tool('nodetool'), cqlsh=self.tool('cqlsh'))
        if self.settings.mode == 'incremental':
            return [CassandraIncrementalProducer(self.settings, **kwargs)]
        return [CassandraSnapshotProducer(self.settings, **kwargs)]

    def describe(self) -> str:
        s = self.settings
        keyspaces = 'all' if s.all_keyspaces else ','.join(s.keyspaces)
        return f"cassandra mode={s.mode} keyspaces={keyspaces}"


def load(config: Config, environ: Mapping[str, str]) -> CassandraEngine:
    return CassandraEngine(CassandraSettings.from_env(environ), config)
