"""
Oracle adapter.

- datapump: expdp into a DIRECTORY object, then dp_<ts>.log and the
  dp_<ts>_NN.dmp pieces are archived
- rman: compressed backupsets written into the workspace, then archived
"""

import os
import re
import glob
from dataclasses import dataclass, field
from typing import List, Mapping, Tuple

from dbagent.config import (
    Config, ConfigError, env_bool, env_choice, env_int, env_required, env_str, split_csv, default_parallelism
)
from dbagent.backup.sources import Producer, ProducerError, FileSetPayload, RunContext
from .base import Engine


BACKUP_TYPES = ('datapump', 'rman')
DP_SCOPES = ('full', 'schemas', 'tablespaces')

# Unquoted Oracle identifier; the name is interpolated into SQL
_IDENTIFIER = re.compile(r'^[A-Za-z][A-Za-z0-9_$#]{0,127}$')


@dataclass(frozen=True)
class OracleSettings:
    connect: str = field(repr=False)
    backup_type: str = 'datapump'
    scope: str = 'oracle'
    dp_scope: str = 'full'
    dp_schemas: Tuple[str, ...] = ()
    dp_tablespaces: Tuple[str, ...] = ()
    dp_parallel: int = 2
    dp_dir_name: str = 'BACKUP_DIR'
    dp_dir_path: str = '/backups/oracle/dpump'
    create_dir: bool = True
    dp_remove_raw: bool = False
    rman_parallel: int = 2
    rman_archivelog: bool = True
    oracle_home: str = ''

    def __post_init__(self):
        if self.dp_scope == 'schemas' and not self.dp_schemas:
            raise ConfigError("DP_SCOPE=schemas but DP_SCHEMAS is empty")
        if self.dp_scope == 'tablespaces' and not self.dp_tablespaces:
            raise ConfigError("DP_SCOPE=tablespaces but DP_TABLESPACES is empty")
        if not _IDENTIFIER.match(self.dp_dir_name):
            raise ConfigError(f"DP_DIR_NAME is not a valid Oracle identifier: {self.dp_dir_name!r}")

    @classmethod
    def from_env(cls, environ: Mapping[str, str], config: Config) -> 'OracleSettings':
        return cls(
            connect=env_required(environ, 'ORACLE_CONNECT', 'e.g. user/password@//dbhost:1521/ORCLPDB1'),
            backup_type=env_choice(environ, 'BACKUP_TYPE', BACKUP_TYPES, 'datapump'),
            scope=env_str(environ, 'ORACLE_SCOPE', 'oracle'),
            dp_scope=env_choice(environ, 'DP_SCOPE', DP_SCOPES, 'full'),
            dp_schemas=tuple(split_csv(env_str(environ, 'DP_SCHEMAS'))),
            dp_tablespaces=tuple(split_csv(env_str(environ, 'DP_TABLESPACES'))),
            dp_parallel=env_int(environ, 'DP_PARALLEL', default_parallelism(), minimum=1),
            dp_dir_name=env_str(environ, 'DP_DIR_NAME', 'BACKUP_DIR'),
            dp_dir_path=env_str(
                environ, 'DP_DIR_PATH', os.path.join(config.output_dir, 'oracle', 'dpump')
            ),
            create_dir=env_bool(environ, 'CREATE_DIR_IF_MISSING', True),
            dp_remove_raw=env_bool(environ, 'DP_REMOVE_RAW', False),
            rman_parallel=env_int(environ, 'RMAN_PARALLEL', 2, minimum=1),
            rman_archivelog=env_bool(environ, 'RMAN_INCLUDE_ARCHIVELOG', True),
            oracle_home=env_str(environ, 'ORACLE_HOME'),
        )


def _sql_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def directory_script(name: str, path: str) -> str:
    """sqlplus script that (re)points a DIRECTORY object at path."""
    return (
        "WHENEVER SQLERROR EXIT 1\n"
        f"CREATE OR REPLACE DIRECTORY {name} AS {_sql_literal(path)};\n"
        f"GRANT READ, WRITE ON DIRECTORY {name} TO PUBLIC;\n"
        "EXIT\n"
    )


def rman_script(piece_dir: str, tag: str, parallelism: int, include_archivelog: bool) -> str:
    lines = [
        f"CONFIGURE DEVICE TYPE DISK PARALLELISM {parallelism};",
        "RUN {",
        f"  ALLOCATE CHANNEL c1 DEVICE TYPE DISK FORMAT '{os.path.join(piece_dir, 'bk_%d_%T_%U.bkp')}';",
        f"  BACKUP AS COMPRESSED BACKUPSET DATABASE TAG '{tag}';",
    ]
    if include_archivelog:
        lines.append(f"  BACKUP AS COMPRESSED BACKUPSET ARCHIVELOG ALL NOT BACKED UP TAG '{tag}';")
    lines += [
        "  DELETE NOPROMPT OBSOLETE;",
        "  RELEASE CHANNEL c1;",
        "}",
        "EXIT",
    ]
    return '\n'.join(lines) + '\n'


class DataPumpProducer(Producer):
    """expdp export (full, schemas or tablespaces)."""

    engine = 'oracle'
    mode = 'datapump'
    extension = 'datapump.tar'
    required_tools = ('expdp', 'sqlplus')

    def __init__(self, settings: OracleSettings, expdp: str = 'expdp', sqlplus: str = 'sqlplus'):
        super().__init__(settings.scope)
        self.settings = settings
        self.expdp = expdp
        self.sqlplus = sqlplus
        self.pieces: List[str] = []

    def export_args(self, dumpbase: str) -> List[str]:
        s = self.settings
        args = [
            f"directory={s.dp_dir_name}",
            f"logfile={dumpbase}.log",
            f"parallel={s.dp_parallel}",
        ]
        if s.dp_scope == 'schemas':
            args.append(f"schemas={','.join(s.dp_schemas)}")
        elif s.dp_scope == 'tablespaces':
            args.append(f"tablespaces={','.join(s.dp_tablespaces)}")
        else:
            args.append('full=y')
        args.append(f"dumpfile={dumpbase}_%U.dmp")
        return args

    def ensure_directory(self, context: RunContext):
        s = self.settings
        os.makedirs(s.dp_dir_path, exist_ok=True)
        if not s.create_dir:
            return
        context.log(f"Ensuring DIRECTORY {s.dp_dir_name} -> {s.dp_dir_path}")
        self.run(
            [self.sqlplus, '-s', s.connect],
            input=directory_script(s.dp_dir_name, s.dp_dir_path),
            secrets=[s.connect],
            what='Ensuring DIRECTORY object'
        )

    def produce(self, context: RunContext) -> FileSetPayload:
        s = self.settings
        self.pieces = []
        self.ensure_directory(context)

        dumpbase = f"dp_{context.timestamp}"
        context.log(
            f"Starting Data Pump export: scope={s.dp_scope} parallel={s.dp_parallel} dir={s.dp_dir_name}"
        )
        self.run([self.expdp, s.connect] + self.export_args(dumpbase), secrets=[s.connect], what='expdp')

        dumps = sorted(glob.glob(os.path.join(glob.escape(s.dp_dir_path), f"{dumpbase}*.dmp")))
        if not dumps:
            raise ProducerError(f"No .dmp files produced in {s.dp_dir_path}")

        payload = FileSetPayload()
        logfile = os.path.join(s.dp_dir_path, f"{dumpbase}.log")
        if os.path.exists(logfile):
            payload.add(logfile, os.path.basename(logfile))
            self.pieces.append(logfile)
        for path in dumps:
            payload.add(path, os.path.basename(path))
        self.pieces.extend(dumps)
        return payload

    def finalize(self, context: RunContext, succeeded: bool):
        pieces, self.pieces = self.pieces, []
        if not (succeeded and self.settings.dp_remove_raw and pieces):
            return
        context.log(f"Removing {len(pieces)} raw Data Pump files")
        for path in pieces:
            self.best_effort(context, lambda p=path: os.remove(p), f"removing {os.path.basename(path)}")


class RmanProducer(Producer):
    """RMAN compressed backupset of the database (and archivelogs)."""

    engine = 'oracle'
    mode = 'rman'
    extension = 'rman.tar'
    required_tools = ('rman',)

    def __init__(self, settings: OracleSettings, rman: str = 'rman'):
        super().__init__(settings.scope)
        self.settings = settings
        self.rman = rman

    def produce(self, context: RunContext) -> FileSetPayload:
        s = self.settings
        piece_dir = context.workspace.mkdir('rman')
        # RMAN tags are limited to letters, digits and underscores
        tag = 'RMAN_' + re.sub(r'[^0-9A-Za-z]', '', context.timestamp)
        context.log(f"Starting RMAN backupset (tag={tag} parallel={s.rman_parallel})")

        self.run(
            [self.rman, 'target', s.connect],
            input=rman_script(piece_dir, tag, s.rman_parallel, s.rman_archivelog),
            secrets=[s.connect],
            what='RMAN'
        )

        pieces = sorted(glob.glob(os.path.join(glob.escape(piece_dir), '*.bkp')))
        if not pieces:
            raise ProducerError("No RMAN pieces produced")

        payload = FileSetPayload()
        for path in pieces:
            payload.add(path, os.path.basename(path))
        return payload


class OracleEngine(Engine):
    name = 'oracle'

    def tool_names(self):
        if self.settings.backup_type == 'rman':
            return ['rman']
        return ['expdp', 'sqlplus']

    def tool_dirs(self):
        if self.settings.oracle_home:
            return [os.path.join(self.settings.oracle_home, 'bin')]
        return []

    def producers(self) -> List[Producer]:
        if self.settings.backup_type == 'rman':
            return [RmanProducer(self.settings, rman=self.tool('rman'))]
        return [DataPumpProducer(self.settings, expdp=self.tool('expdp'), sqlplus=self.tool('sqlplus'))]

    def describe(self) -> str:
        s = self.settings
        if s.backup_type == 'datapump':
            return f"oracle type=datapump scope={s.dp_scope}"
        return f"oracle type=rman parallel={s.rman_parallel}"


def load(config: Config, environ: Mapping[str, str]) -> OracleEngine:
    return OracleEngine(OracleSettings.from_env(environ, config), config)
