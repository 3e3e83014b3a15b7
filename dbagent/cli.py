"""
Command line interface.

Entry point: ``dbagent`` (configured via pyproject.toml scripts), or
``python -m dbagent``.

Exit codes: 0 success, 1 backup/verification failure, 2 configuration or
missing tool, 128+N when stopped by signal N.
"""

import os
import logging
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table
from sqlalchemy.exc import SQLAlchemyError

from dbagent import configure_logging
from dbagent.config import Config, ConfigError, env_int, history_url_from_env
from dbagent.engines import ENGINE_NAMES, load_engine
from dbagent.models import open_session, recent_runs
from dbagent.utils.commands import ToolNotFoundError
from dbagent.utils.crypto import DecryptionError
from dbagent.backup.workspace import RunInterrupted
from dbagent.backup.executor import run_engine
from dbagent.backup.checksum import ChecksumError, verify_artifact
from dbagent.backup.compression import decrypt_artifact
from dbagent.backup.retention import RetentionPruner, RetentionError
from dbagent.scheduler import parse_cron, run_scheduled


logger = logging.getLogger(__name__)

EXIT_FAILURE = 1
EXIT_CONFIG = 2

app = typer.Typer(
    name="dbagent",
    help="Database backup agent: native dump tools, compression, encryption, checksums, S3 and retention.",
    no_args_is_help=True,
    add_completion=False,
)

console = Console()
err_console = Console(stderr=True)


def _fail(message: str, code: int):
    err_console.print(f"[red]ERROR:[/red] {message}")
    raise typer.Exit(code=code)


def _open_history(url: Optional[str]):
    """History is optional; a broken history database must not block backups."""
    try:
        return open_session(url)
    except (SQLAlchemyError, OSError) as e:
        logger.warning(f"Run history disabled: {e}")
        return None


def _backup_once(config: Config, engine):
    session = _open_history(config.history_db_url)
    try:
        return run_engine(config, engine, session=session)
    finally:
        if session is not None:
            session.close()


@app.command(name="backup", help=f"Back up one engine ({', '.join(ENGINE_NAMES)}).")
def backup_cmd(
    engine: str = typer.Argument(..., help=f"Engine: {', '.join(ENGINE_NAMES)}."),
    schedule: Optional[str] = typer.Option(
        None, "--schedule", help="Crontab expression; keeps running and backs up on every tick."
    ),
) -> None:
    """Run a backup now, or on a schedule."""
    try:
        config = Config.from_env()
        configure_logging(config.log_level, config.log_file)
        adapter = load_engine(engine, config)
        cron = schedule or config.schedule
        if cron:
            try:
                parse_cron(cron)
            except ValueError as e:
                raise ConfigError(f"Invalid schedule {cron!r}: {e}")
        adapter.check_tools()
    except (ConfigError, ToolNotFoundError) as e:
        _fail(str(e), EXIT_CONFIG)

    if cron:
        run_scheduled(lambda: _backup_once(config, adapter), cron, name=f"{adapter.name} backup")
        return

    try:
        summary = _backup_once(config, adapter)
    except ToolNotFoundError as e:
        _fail(str(e), EXIT_CONFIG)
    except RunInterrupted as e:
        _fail(str(e), 128 + e.signum)
    except KeyboardInterrupt:
        _fail("Interrupted", 130)

    for run in summary.runs:
        if run.status == 'success':
            console.print(f"[green]OK[/green] {run.scope}: {run.artifact_path}")
        elif run.status == 'skipped':
            console.print(f"[yellow]SKIPPED[/yellow] {run.scope}: nothing to back up")
        else:
            console.print(f"[red]FAILED[/red] {run.scope}: {run.error_message}")
    for error in summary.errors:
        console.print(f"[red]FAILED[/red] {error}")

    raise typer.Exit(code=summary.exit_code)


@app.command(name="verify", help="Check an artifact against its .sha256 sidecar.")
def verify_cmd(
    artifact: str = typer.Argument(..., help="Artifact path."),
) -> None:
    try:
        ok = verify_artifact(artifact)
    except ChecksumError as e:
        _fail(str(e), EXIT_CONFIG)

    if not ok:
        _fail(f"Checksum mismatch: {artifact}", EXIT_FAILURE)
    console.print(f"[green]OK[/green] {artifact}")


@app.command(name="prune", help="Apply count-based retention to a directory.")
def prune_cmd(
    directory: str = typer.Argument(..., help="Directory holding the artifacts."),
    pattern: str = typer.Argument(..., help="Glob pattern, e.g. 'mydb_*.dump.tar.*'."),
    keep: Optional[int] = typer.Option(None, "--keep", help="Artifacts to keep (default: RETENTION_COUNT)."),
) -> None:
    try:
        if keep is None:
            keep = env_int(os.environ, 'RETENTION_COUNT', 7, minimum=1)
        pruner = RetentionPruner(keep)
    except (ConfigError, ValueError) as e:
        _fail(str(e), EXIT_CONFIG)

    try:
        deleted = pruner.prune(directory, pattern)
    except RetentionError as e:
        _fail(str(e), EXIT_FAILURE)

    for path in deleted:
        console.print(f"deleted {path}")
    console.print(f"{len(deleted)} artifacts deleted, keeping {keep}")


@app.command(name="decrypt", help="Decrypt an artifact with ENCRYPT_PASSWORD (output stays compressed).")
def decrypt_cmd(
    artifact: str = typer.Argument(..., help="Encrypted artifact path."),
    output: str = typer.Argument(..., help="Where to write the decrypted bytes."),
) -> None:
    passphrase = os.environ.get('ENCRYPT_PASSWORD', '')
    if not passphrase:
        _fail("ENCRYPT_PASSWORD is empty", EXIT_CONFIG)

    try:
        size = decrypt_artifact(artifact, output, passphrase)
    except (DecryptionError, OSError) as e:
        _fail(str(e), EXIT_FAILURE)

    console.print(f"Decrypted {artifact} -> {output} ({size} bytes)")


def _format_size(size: Optional[int]) -> str:
    if size is None:
        return '-'
    return f"{size / 1024 / 1024:.2f} MB"


@app.command(name="history", help="Show recent backup runs.")
def history_cmd(
    limit: int = typer.Option(20, "--limit", help="Number of runs to show."),
    engine: Optional[str] = typer.Option(None, "--engine", help="Only runs of this engine."),
) -> None:
    url = history_url_from_env(os.environ)
    if url is None:
        _fail("Run history is disabled (HISTORY_DB_URL=none)", EXIT_CONFIG)

    try:
        session = open_session(url)
        try:
            runs = recent_runs(session, limit=limit, engine=engine)
        finally:
            session.close()
    except (SQLAlchemyError, OSError) as e:
        _fail(f"Cannot read run history: {e}", EXIT_FAILURE)

    if not runs:
        console.print("[dim]No backup runs recorded.[/dim]")
        return

    styles = {'success': 'green', 'skipped': 'yellow', 'failed': 'red', 'cancelled': 'red'}

    table = Table(title="Backup Runs")
    table.add_column("Started (UTC)", style="cyan")
    table.add_column("Engine")
    table.add_column("Mode")
    table.add_column("Scope")
    table.add_column("Status", justify="center")
    table.add_column("Size", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Artifact / Error")

    for run in runs:
        style = styles.get(run.status, 'white')
        duration = run.duration_seconds
        table.add_row(
            run.started_at.strftime('%Y-%m-%d %H:%M:%S'),
            run.engine,
            run.mode,
            run.scope,
            f"[{style}]{run.status}[/{style}]",
            _format_size(run.file_size_bytes),
            f"{duration:.0f}s" if duration is not None else '-',
            run.error_message if run.status in ('failed', 'cancelled') else (run.artifact_path or '-'),
        )

    console.print(table)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
