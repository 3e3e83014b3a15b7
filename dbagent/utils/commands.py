"""
Helpers for running the external database tools.

Every engine tool (mongodump, pg_dump, nodetool, expdp, rman, ...) is invoked
through run_command() so that failures surface the same way and secrets never
reach the logs.
"""

import os
import re
import shutil
import logging
import subprocess
from typing import Iterable, List, Mapping, Optional, Sequence


logger = logging.getLogger(__name__)

# Flags whose following argument is a secret
SECRET_FLAGS = ('-pw', '--password', '--pass')

# user:password@ inside URIs, user/password@service for Oracle
_URI_PASSWORD = re.compile(r'(?P<prefix>[A-Za-z0-9+.\-]+://[^:/@\s]+:)[^@\s]+(?P<suffix>@)')
_CONNECT_PASSWORD = re.compile(r'^(?P<user>[^/@\s]+)/[^@\s]+(?P<rest>@.*)$')

STDERR_TAIL_LINES = 20


class ToolNotFoundError(Exception):
    """Raised when a required external binary is not installed."""
    pass


class CommandError(Exception):
    """Raised when an external command exits with a non-zero status."""

    def __init__(self, argv: Sequence[str], returncode: int, stderr: str = ''):
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr
        message = f"{os.path.basename(self.argv[0])} exited with status {returncode}"
        tail = stderr_tail(stderr)
        if tail:
            message = f"{message}: {tail}"
        super().__init__(message)


def stderr_tail(text: str, lines: int = STDERR_TAIL_LINES) -> str:
    """Return the last non-empty lines of a tool's stderr."""
    if not text:
        return ''
    kept = [line for line in text.strip().splitlines() if line.strip()]
    return '\n'.join(kept[-lines:])


def find_tool(name: str, fallback_dirs: Iterable[str] = ()) -> Optional[str]:
    """
    Locate an executable on PATH or in one of the fallback directories.

    Returns:
        Absolute path of the executable, or None
    """
    found = shutil.which(name)
    if found:
        return found

    for directory in fallback_dirs:
        if not directory:
            continue
        candidate = shutil.which(name, path=directory)
        if candidate:
            return candidate

    return None


def require_tools(names: Iterable[str], fallback_dirs: Iterable[str] = ()) -> dict:
    """
    Check that every named tool is available.

    Args:
        names: Executable names
        fallback_dirs: Extra directories searched when a tool is not on PATH

    Returns:
        Dict mapping tool name to its resolved path

    Raises:
        ToolNotFoundError: Listing every missing tool
    """
    fallback_dirs = list(fallback_dirs)
    resolved = {}
    missing = []

    for name in names:
        path = find_tool(name, fallback_dirs)
        if path:
            resolved[name] = path
        else:
            missing.append(name)

    if missing:
        raise ToolNotFoundError(f"Missing required command: {', '.join(missing)}")

    return resolved


def redact(value: str) -> str:
    """Mask a password embedded in a URI or an Oracle-style user/pass@service string."""
    value = _URI_PASSWORD.sub(r'\g<prefix>****\g<suffix>', value)
    match = _CONNECT_PASSWORD.match(value)
    if match and '://' not in value:
        value = f"{match.group('user')}/****{match.group('rest')}"
    return value


def redact_argv(argv: Sequence[str], secrets: Iterable[str] = ()) -> List[str]:
    """
    Return a copy of argv that is safe to log.

    Values following SECRET_FLAGS, passwords embedded in URIs and any
    explicitly listed secret strings are replaced with '****'.
    """
    secrets = [s for s in secrets if s]
    redacted = []
    hide_next = False

    for arg in argv:
        arg = str(arg)
        if hide_next:
            redacted.append('****')
            hide_next = False
            continue

        if arg in SECRET_FLAGS:
            redacted.append(arg)
            hide_next = True
            continue

        for secret in secrets:
            arg = arg.replace(secret, '****')

        redacted.append(redact(arg))

    return redacted


def build_env(extra: Optional[Mapping[str, str]] = None) -> dict:
    """Copy of the current environment with extra variables applied (None values removed)."""
    env = dict(os.environ)
    for key, value in (extra or {}).items():
        if value is None:
            env.pop(key, None)
        else:
            env[key] = str(value)
    return env


def run_command(
    argv: Sequence[str],
    env: Optional[Mapping[str, str]] = None,
    input: Optional[str] = None,
    cwd: Optional[str] = None,
    secrets: Iterable[str] = (),
    capture_stdout: bool = False
) -> str:
    """
    Run an external command to completion.

    Args:
        argv: Command and arguments
        env: Extra environment variables for the child process
        input: Text written to the child's stdin (scripts for sqlplus/rman)
        cwd: Working directory
        secrets: Strings to mask when logging argv
        capture_stdout: Return stdout instead of letting it through

    Returns:
        Captured stdout (empty string unless capture_stdout is set)

    Raises:
        ToolNotFoundError: If the executable does not exist
        CommandError: If the command exits non-zero
    """
    argv = [str(arg) for arg in argv]
    logger.info(f"Running: {' '.join(redact_argv(argv, secrets))}")

    try:
        result = subprocess.run(
            argv,
            env=build_env(env),
            input=input,
            cwd=cwd,
            stdout=subprocess.PIPE if capture_stdout else subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
            check=False
        )
    except FileNotFoundError:
        raise ToolNotFoundError(f"Missing required command: {argv[0]}")

    if result.returncode != 0:
        raise CommandError(argv, result.returncode, result.stderr or '')

    if result.stderr:
        logger.debug(f"{os.path.basename(argv[0])} stderr: {stderr_tail(result.stderr)}")

    return result.stdout if capture_stdout else ''
