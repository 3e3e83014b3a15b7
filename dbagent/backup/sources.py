"""
Producer interface for backup sources.

A producer wraps one engine tool invocation for one scope and hands the
transform chain either:
- StreamPayload: a command whose stdout is the backup byte stream
- FileSetPayload: files the tool wrote, to be archived into a tar stream

Producers never touch the final artifact. They report failure by raising
ProducerError; post-run hooks (clearing snapshots, removing raw pieces) go in
finalize() and are best-effort.
"""

import os
import logging
from pathlib import Path
from typing import Callable, Iterable, List, Mapping, Optional, Sequence, Tuple

from dbagent.utils.commands import run_command, CommandError
from .workspace import ScopedWorkspace


logger = logging.getLogger(__name__)


class ProducerError(Exception):
    """Raised when a backup tool fails or produces nothing where output is required."""
    pass


def run_tool(
    argv: Sequence[str],
    env: Optional[Mapping[str, str]] = None,
    input: Optional[str] = None,
    secrets: Iterable[str] = (),
    capture_stdout: bool = False,
    what: Optional[str] = None
) -> str:
    """
    run_command() with failures turned into ProducerError.

    Args:
        what: Short description used in the error message
    """
    try:
        return run_command(argv, env=env, input=input, secrets=secrets, capture_stdout=capture_stdout)
    except CommandError as e:
        label = what or os.path.basename(str(argv[0]))
        raise ProducerError(f"{label} failed: {e}")


class StreamPayload:
    """A command whose standard output is the raw backup stream."""

    def __init__(
        self,
        argv: Sequence[str],
        env: Optional[Mapping[str, str]] = None,
        secrets: Iterable[str] = (),
        name: Optional[str] = None
    ):
        if not argv:
            raise ValueError("StreamPayload needs a command")
        self.argv = [str(arg) for arg in argv]
        self.env = dict(env or {})
        self.secrets = [s for s in secrets if s]
        self.name = name or os.path.basename(self.argv[0])

    @property
    def is_empty(self) -> bool:
        return False

    def __repr__(self):
        return f'<StreamPayload {self.name}>'


class FileSetPayload:
    """
    Files to archive, in order, each with the name it gets inside the tar.

    An empty optional file set means "nothing to back up this time"; an empty
    required one is a producer failure.
    """

    def __init__(self, members: Iterable[Tuple[str, str]] = (), required: bool = True):
        self.members: List[Tuple[str, str]] = []
        self.required = required
        for path, arcname in members:
            self.add(path, arcname)

    def add(self, path: str, arcname: Optional[str] = None):
        """
        Add a file or directory.

        Args:
            path: Filesystem path
            arcname: Name inside the archive (defaults to path without leading '/')
        """
        if arcname is None:
            arcname = str(path).lstrip('/')
        self.members.append((str(path), arcname))

    def add_tree(self, directory: str):
        """
        Add the contents of a directory, relative to the directory itself.

        Equivalent to `tar -C directory .` without the './' prefix.
        """
        root = Path(directory)
        if not root.is_dir():
            raise ProducerError(f"Output directory not found: {directory}")

        for child in sorted(root.iterdir()):
            self.add(str(child), child.name)

    @property
    def is_empty(self) -> bool:
        return not self.members

    def __len__(self):
        return len(self.members)

    def __repr__(self):
        return f'<FileSetPayload members={len(self.members)} required={self.required}>'


class RunContext:
    """What a producer gets to work with during one run."""

    def __init__(self, workspace: ScopedWorkspace, timestamp: str, log: Optional[Callable[[str], None]] = None):
        self.workspace = workspace
        self.timestamp = timestamp
        self._log = log

    def log(self, message: str):
        if self._log is not None:
            self._log(message)
        else:
            logger.info(message)


class Producer:
    """
    Base class for engine producers.

    Subclasses set engine, mode, extension and required_tools and implement
    produce().
    """

    engine = ''
    mode = ''
    extension = ''
    required_tools: Tuple[str, ...] = ()

    def __init__(self, scope: str):
        self.scope = scope

    def produce(self, context: RunContext):
        """
        Run the tool and describe its output.

        Returns:
            StreamPayload or FileSetPayload

        Raises:
            ProducerError: If the tool fails
        """
        raise NotImplementedError

    def finalize(self, context: RunContext, succeeded: bool):
        """Best-effort hook run after packaging, whether or not the run succeeded."""
        pass

    def run(
        self,
        argv: Sequence[str],
        env: Optional[Mapping[str, str]] = None,
        input: Optional[str] = None,
        secrets: Iterable[str] = (),
        capture_stdout: bool = False,
        what: Optional[str] = None
    ) -> str:
        """run_tool() bound to this producer."""
        return run_tool(argv, env=env, input=input, secrets=secrets, capture_stdout=capture_stdout, what=what)

    def best_effort(self, context: RunContext, action: Callable[[], object], description: str):
        """Run a non-essential step; failures are logged as warnings."""
        try:
            action()
        except Exception as e:
            context.log(f"Warning: {description} failed: {e}")
            logger.warning(f"{description} failed: {e}")

    def describe(self) -> str:
        return f"{self.engine}/{self.mode} scope={self.scope}"

    def __repr__(self):
        return f'<{self.__class__.__name__} {self.describe()}>'
