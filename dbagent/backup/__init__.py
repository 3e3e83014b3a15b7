"""
Backup pipeline for dbagent.

This module handles everything after an engine tool has run:
- Artifact naming
- Scoped workspaces
- Compression and encryption
- Checksums
- Publishing to S3
- Retention
- Execution orchestration
"""

from .executor import BackupExecutor, RunSummary, run_engine
from .sources import Producer, StreamPayload, FileSetPayload
from .compression import write_artifact
from .storage import S3Publisher, NullPublisher
from .retention import RetentionPruner

__all__ = [
    'BackupExecutor',
    'RunSummary',
    'run_engine',
    'Producer',
    'StreamPayload',
    'FileSetPayload',
    'write_artifact',
    'S3Publisher',
    'NullPublisher',
    'RetentionPruner'
]
