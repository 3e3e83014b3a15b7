"""
Backup executor - runs one producer through the artifact pipeline.

Workflow:
1. Create BackupRun record (status: running)
2. Resolve the artifact name for this run
3. Acquire a scoped workspace and let the producer run its tool
4. Stream the payload through tar/compress/encrypt into the artifact
5. Write the .sha256 sidecar
6. Upload artifact and sidecar (if configured)
7. Prune old artifacts of the same scope
8. Run the producer's post-run hooks and release the workspace
9. Update BackupRun (status: success/skipped/failed/cancelled)
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from dbagent.config import Config
from dbagent.models import BackupRun, utcnow
from .naming import build_artifact_path, utc_timestamp
from .workspace import ScopedWorkspace
from .sources import Producer, ProducerError, FileSetPayload, RunContext
from .compression import ChainOptions, write_artifact
from .checksum import write_sidecar, read_sidecar
from .storage import PublishError, build_publisher
from .retention import RetentionPruner


logger = logging.getLogger(__name__)


class BackupExecutor:
    """
    Orchestrates the complete pipeline for one producer (one scope).
    """

    def __init__(self, config: Config, producer: Producer, publisher=None, session=None):
        """
        Initialize backup executor.

        Args:
            config: Pipeline configuration
            producer: Producer for the scope to back up
            publisher: S3Publisher or NullPublisher (built from config when None)
            session: SQLAlchemy session for run history, or None
        """
        self.config = config
        self.producer = producer
        self.publisher = publisher if publisher is not None else build_publisher(config.s3)
        self.session = session
        self.record = None
        self.artifact = None
        self.logs = []
        self._log_flush_counter = 0

    def execute(self) -> BackupRun:
        """
        Execute the backup.

        Returns:
            BackupRun record with execution results

        Raises:
            KeyboardInterrupt: Re-raised after the run is recorded as cancelled
        """
        self.record = BackupRun(
            engine=self.producer.engine,
            mode=self.producer.mode,
            scope=self.producer.scope,
            status='running',
            started_at=utcnow(),
            pruned_count=0
        )
        if self.session is not None:
            self.session.add(self.record)
        self._save()

        self._log(f"Starting backup: {self.producer.describe()}")

        try:
            status = self._execute_workflow()

            self.record.status = status
            if status == 'skipped':
                self._log("Nothing to back up, no artifact written")
            else:
                self._log("Backup completed successfully")

        except KeyboardInterrupt as e:
            self.record.status = 'cancelled'
            self.record.error_message = str(e) or 'Interrupted'
            self._log(f"Backup cancelled: {self.record.error_message}")
            raise

        except Exception as e:
            self.record.status = 'failed'
            self.record.error_message = str(e)
            self._log(f"Backup failed: {e}")
            logger.debug("Backup failure details", exc_info=True)

        finally:
            self.record.completed_at = utcnow()
            self.record.logs = '\n'.join(self.logs)
            self._save()

        return self.record

    def _execute_workflow(self) -> str:
        """
        Run the pipeline steps.

        Returns:
            'success' or 'skipped'
        """
        timestamp = utc_timestamp()
        self.artifact = build_artifact_path(
            self.config.output_dir,
            self.producer.mode,
            self.producer.scope,
            self.producer.extension,
            self.config.compress,
            timestamp=timestamp
        )
        self.record.scope = self.artifact.scope

        succeeded = False
        with ScopedWorkspace(self.config.temp_dir) as workspace:
            self._log(f"Workspace: {workspace.root}")
            context = RunContext(workspace, timestamp, log=self._log)

            try:
                payload = self.producer.produce(context)

                if payload.is_empty:
                    if isinstance(payload, FileSetPayload) and not payload.required:
                        succeeded = True
                        return 'skipped'
                    raise ProducerError(f"{self.producer.describe()} produced no output")

                self._write(payload, workspace)
                publish_error = self._publish()
                self._prune()

                if publish_error is not None:
                    raise publish_error

                succeeded = True
                return 'success'

            finally:
                self._finalize(context, succeeded)

    def _write(self, payload, workspace: ScopedWorkspace):
        """Write artifact and sidecar."""
        options = ChainOptions.from_config(self.config)
        self._log(f"Writing artifact ({options.compression}, encrypted={options.encrypted})")

        size = write_artifact(payload, self.artifact.path, options, workspace)
        self.record.artifact_path = self.artifact.path
        self.record.file_size_bytes = size
        self._log(f"Artifact created: {self.artifact.filename} ({size / 1024 / 1024:.2f} MB)")

        sidecar = write_sidecar(self.artifact.path)
        self.record.sha256, _ = read_sidecar(sidecar)
        self._log(f"Checksum written: {self.record.sha256}")
        self._flush_logs_to_db()

    def _publish(self) -> Optional[PublishError]:
        """
        Upload artifact then sidecar.

        Returns:
            The upload error, if any. It is raised only after retention ran.
        """
        if not self.publisher.enabled:
            return None

        self._log(f"Uploading to {self.publisher.describe()}")
        try:
            self.record.s3_key = self.publisher.upload(self.artifact.path)
            self.publisher.upload(self.artifact.sidecar_path)
        except PublishError as e:
            self._log(f"Upload failed, local files kept: {e}")
            return e

        self._log(f"Uploaded: {self.record.s3_key}")
        self._flush_logs_to_db()
        return None

    def _prune(self):
        pruner = RetentionPruner(self.config.retention_count)
        deleted = pruner.prune(self.artifact.directory, self.artifact.retention_pattern)
        self.record.pruned_count = len(deleted)
        if deleted:
            self._log(f"Retention: deleted {len(deleted)} old artifacts (keep {self.config.retention_count})")

    def _finalize(self, context: RunContext, succeeded: bool):
        """Post-run hooks must not mask the run's own outcome."""
        try:
            self.producer.finalize(context, succeeded)
        except Exception as e:
            self._log(f"Warning: post-run cleanup failed: {e}")

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)

        # Flush logs every 5 entries
        self._log_flush_counter += 1
        if self._log_flush_counter >= 5:
            self._flush_logs_to_db()

    def _flush_logs_to_db(self):
        """Flush accumulated logs to the history database."""
        if self.record is not None and self.session is not None:
            self.record.logs = '\n'.join(self.logs)
            self._save()
        self._log_flush_counter = 0

    def _save(self):
        if self.session is None:
            return
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.warning(f"Failed to write run history: {e}")


class RunSummary:
    """Outcome of all scopes of one engine invocation."""

    def __init__(self, engine: str):
        self.engine = engine
        self.runs: List[BackupRun] = []
        self.errors: List[str] = []

    def add(self, run: BackupRun):
        self.runs.append(run)

    @property
    def failed(self) -> List[BackupRun]:
        return [run for run in self.runs if run.status == 'failed']

    @property
    def succeeded(self) -> List[BackupRun]:
        return [run for run in self.runs if run.status == 'success']

    @property
    def skipped(self) -> List[BackupRun]:
        return [run for run in self.runs if run.status == 'skipped']

    @property
    def ok(self) -> bool:
        return not self.errors and not self.failed

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    def __repr__(self):
        return (
            f'<RunSummary {self.engine} success={len(self.succeeded)} '
            f'skipped={len(self.skipped)} failed={len(self.failed)} errors={len(self.errors)}>'
        )


def run_engine(config: Config, engine, session=None, publisher=None) -> RunSummary:
    """
    Back up every scope of an engine, one after another.

    A failed scope does not stop the remaining ones; an interrupt does.

    Args:
        config: Pipeline configuration
        engine: Engine adapter (see dbagent.engines)
        session: Optional history session
        publisher: Publisher override (built from config when None)

    Returns:
        RunSummary

    Raises:
        ToolNotFoundError: If a required tool is missing
        KeyboardInterrupt: If the run is interrupted
    """
    engine.check_tools()
    if publisher is None:
        publisher = build_publisher(config.s3)

    summary = RunSummary(engine.name)
    logger.info(f"Starting backup: {engine.describe()}")

    try:
        engine.preflight()
        producers = engine.producers()
    except ProducerError as e:
        logger.error(f"Backup aborted: {e}")
        summary.errors.append(str(e))
        return summary

    for producer in producers:
        run = BackupExecutor(config, producer, publisher=publisher, session=session).execute()
        summary.add(run)

    if summary.ok:
        logger.info(f"Backup finished: {len(summary.succeeded)} succeeded, {len(summary.skipped)} skipped")
    else:
        failed_scopes = ', '.join(run.scope for run in summary.failed) or 'none'
        logger.error(f"Backup finished with failures (failed scopes: {failed_scopes})")

    return summary
